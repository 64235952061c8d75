#!/usr/bin/env python3
"""
Provider switching utility for the runtime settings file.

Usage:
  python switch_provider.py ollama [--model llama3]
  python switch_provider.py claude [--model claude-3-5-haiku-20241022]
  python switch_provider.py disabled
  python switch_provider.py --show              # Show current settings
  python switch_provider.py --api-key sk-...    # Store the Claude API key
  python switch_provider.py --delete-api-key    # Remove the stored Claude API key
"""

import argparse
import sys
from pathlib import Path

# Add src to Python path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from common.config import load_config
from common.errors import StorageError
from common.models import ProviderKind
from common.settings_store import FileSecretStore, SettingsService, SettingsStore


def build_service(config_path: str | None = None) -> SettingsService:
    config = load_config(Path(config_path) if config_path else None)
    return SettingsService(
        SettingsStore(Path(config.settings_path)),
        FileSecretStore(Path(config.secrets_path)),
    )


def show_current_settings(service: SettingsService):
    """Show the current AI settings."""
    settings = service.load()

    print("🔍 Current AI Settings:")
    print(f"   AI Enabled: {settings.ai_enabled}")
    print(f"   Provider: {settings.active_provider.value}")
    print(f"   Ollama: {settings.ollama_model} @ {settings.ollama_base_url}")
    print(f"   Claude: {settings.claude_model}")
    print(f"   Claude API Key: {'set' if service.load_claude_api_key() else 'missing'}")
    if settings.system_prompt:
        print(f"   System Prompt: {settings.system_prompt}")


def switch_provider(service: SettingsService, provider: ProviderKind, model: str | None):
    """Switch to the specified provider, optionally selecting its model."""
    print(f"🔄 Switching to {provider.value}...")

    changes = {"active_provider": provider}
    if provider != ProviderKind.DISABLED:
        changes["ai_enabled"] = True
    if model:
        if provider == ProviderKind.DISABLED:
            print("❌ The disabled provider has no model")
            return False
        changes[f"{provider.value}_model"] = model

    try:
        service.update(**changes)
    except StorageError as e:
        print(f"❌ {e.message}; fix or delete it first")
        return False
    print(f"✅ Successfully switched to {provider.value}")
    if provider == ProviderKind.CLAUDE and not service.load_claude_api_key():
        print("⚠️  No Claude API key configured; set one with --api-key")
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Switch the Nyl AI provider")
    parser.add_argument("provider", nargs="?", choices=[p.value for p in ProviderKind])
    parser.add_argument("--model", help="Model to select for the provider")
    parser.add_argument("--show", action="store_true", help="Show current settings")
    parser.add_argument("--api-key", help="Store the Claude API key")
    parser.add_argument("--delete-api-key", action="store_true", help="Remove the Claude API key")
    parser.add_argument("--config", help="Path to config.yaml")
    args = parser.parse_args(argv)

    service = build_service(args.config)

    if args.api_key:
        service.save_claude_api_key(args.api_key.strip())
        print("🔑 Claude API key saved")
    if args.delete_api_key:
        service.delete_claude_api_key()
        print("🗑️  Claude API key removed")

    if args.provider:
        if not switch_provider(service, ProviderKind(args.provider), args.model):
            return 1
    elif not (args.api_key or args.delete_api_key or args.show):
        parser.print_help()
        return 1

    show_current_settings(service)
    return 0


if __name__ == "__main__":
    sys.exit(main())
