"""
Runtime settings and secret persistence.

The settings file is the single source of truth for the AI configuration.
Nothing is cached: every ``load()`` re-reads the file so an edit takes effect
on the next request. Secrets (the Claude API key) never go into the settings
file; they live in a separate secret store.
"""

import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from common.errors import StorageError
from common.logging import get_logger
from common.models import ProviderConfig, ProviderKind

logger = get_logger(__name__)

CLAUDE_API_KEY = "claude_api_key"

# Environment fallbacks for secrets, e.g. from a .env file
_SECRET_ENV_VARS = {CLAUDE_API_KEY: "ANTHROPIC_API_KEY"}


class SettingsStore:
    """Simple YAML file persistence for ``ProviderConfig``."""

    def __init__(self, settings_path: Optional[Path] = None):
        self.settings_path = Path(settings_path or "settings.yaml")
        self._write_lock = threading.Lock()
        self._ensure_settings_file()

    def _ensure_settings_file(self) -> None:
        """Ensure the settings file exists with defaults."""
        if not self.settings_path.exists():
            logger.info(
                event="settings_file_created",
                message="Creating default settings file",
                path=str(self.settings_path),
            )
            self.save(ProviderConfig())

    def _read(self) -> ProviderConfig:
        with open(self.settings_path, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
        return ProviderConfig.model_validate(data)

    def load(self) -> ProviderConfig:
        """
        Load settings from file.

        A missing, unreadable or invalid file yields defaults (AI disabled)
        rather than an error, so a broken settings file switches chat off.
        """
        try:
            return self._read()
        except (OSError, yaml.YAMLError, PydanticValidationError) as e:
            logger.error(
                event="settings_load_failed",
                message="Failed to load settings, using defaults",
                path=str(self.settings_path),
                error=str(e),
            )
            return ProviderConfig()

    def _write(self, settings: ProviderConfig) -> None:
        data = settings.model_dump(mode="json", by_alias=True)
        with open(self.settings_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=False)

    def save(self, settings: ProviderConfig) -> None:
        """Save settings to file."""
        with self._write_lock:
            self._write(settings)

        logger.info(
            event="settings_saved",
            message="Settings saved to file",
            path=str(self.settings_path),
        )

    def update(self, **changes: Any) -> ProviderConfig:
        """
        Apply field changes (snake_case names) atomically and return the new settings.

        Raises:
            StorageError: the file exists but is unreadable or invalid; it is
                not overwritten
        """
        with self._write_lock:
            try:
                current = self._read()
            except FileNotFoundError:
                current = ProviderConfig()
            except (OSError, yaml.YAMLError, PydanticValidationError) as e:
                logger.error(
                    event="settings_update_refused",
                    message="Settings file is unreadable, not overwriting it",
                    path=str(self.settings_path),
                    error=str(e),
                )
                raise StorageError(f"Settings file {self.settings_path} is unreadable") from e
            updated = ProviderConfig.model_validate({**current.model_dump(), **changes})
            self._write(updated)

        logger.info(event="settings_updated", fields=sorted(changes))
        return updated

    def update_selected_model(self, provider: ProviderKind, model: str) -> ProviderConfig:
        """Persist ``model`` into the slot of ``provider`` and return the new settings."""
        if provider == ProviderKind.OLLAMA:
            return self.update(ollama_model=model)
        if provider == ProviderKind.CLAUDE:
            return self.update(claude_model=model)
        raise ValueError(f"Provider '{provider.value}' has no model slot")


class SecretStore(ABC):
    """Key-value store for credentials."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the secret or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a secret, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a secret; no-op when absent."""


class FileSecretStore(SecretStore):
    """
    Secrets in a YAML file readable only by the owner.

    Lookups fall back to environment variables (``ANTHROPIC_API_KEY`` for the
    Claude key) so a ``.env`` file works without touching the store.
    """

    def __init__(self, secrets_path: Optional[Path] = None):
        self.secrets_path = Path(secrets_path or ".secrets.yaml")
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        """Stored secrets; an unreadable or malformed file reads as empty."""
        if not self.secrets_path.exists():
            return {}
        try:
            with open(self.secrets_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(
                event="secrets_load_failed",
                path=str(self.secrets_path),
                error_type=type(e).__name__,
            )
            return {}
        if not isinstance(data, dict):
            logger.error(
                event="secrets_load_failed",
                path=str(self.secrets_path),
                error_type="not_a_mapping",
            )
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        fd = os.open(self.secrets_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
        os.chmod(self.secrets_path, 0o600)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read().get(key)
        if value:
            return value
        env_var = _SECRET_ENV_VARS.get(key)
        return os.getenv(env_var) if env_var else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)
        logger.info(event="secret_saved", key=key)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is None:
                return
            self._write(data)
        logger.info(event="secret_deleted", key=key)


class SettingsService:
    """Settings collaborator consumed by the gateway: settings plus credentials."""

    def __init__(self, store: SettingsStore, secrets: SecretStore):
        self.store = store
        self.secrets = secrets

    def load(self) -> ProviderConfig:
        return self.store.load()

    def update_selected_model(self, provider: ProviderKind, model: str) -> ProviderConfig:
        return self.store.update_selected_model(provider, model)

    def update(self, **changes: Any) -> ProviderConfig:
        return self.store.update(**changes)

    def load_claude_api_key(self) -> Optional[str]:
        key = self.secrets.get(CLAUDE_API_KEY)
        return key.strip() if key and key.strip() else None

    def save_claude_api_key(self, key: str) -> None:
        self.secrets.set(CLAUDE_API_KEY, key)

    def delete_claude_api_key(self) -> None:
        self.secrets.delete(CLAUDE_API_KEY)
