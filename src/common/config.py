"""
Configuration loader for the Nyl server.

Loads settings from config.yaml. Environment variables are used ONLY for secrets.
Runtime-editable AI settings (active provider, selected models, system prompt)
live in the settings store, not here.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CLAUDE_MODELS = [
    "claude-opus-4-5-20251101",
    "claude-sonnet-4-5-20250929",
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
]


class ServerConfig(BaseModel):
    """Configuration for the HTTP/WebSocket front door."""

    host: str = Field(default="0.0.0.0", description="Host to bind to (all interfaces for LAN access)")
    port: int = Field(default=8080, description="Port to bind to")
    version: str = Field(default="1.0.0", description="Version reported by / and /v1/status")
    local_network_only: bool = Field(
        default=True, description="Reject callers outside loopback/private/link-local ranges"
    )


class AIConfig(BaseModel):
    """Static settings for the upstream chat providers."""

    request_timeout: float = Field(default=120.0, description="Upstream read timeout in seconds")
    connect_timeout: float = Field(default=10.0, description="Upstream connect timeout in seconds")
    claude_base_url: str = Field(
        default="https://api.anthropic.com", description="Anthropic API base URL"
    )
    claude_max_tokens: int = Field(default=1024, description="max_tokens sent to Claude")
    claude_models: List[str] = Field(
        default_factory=lambda: list(DEFAULT_CLAUDE_MODELS),
        description="Model ids offered when Claude is the active provider",
    )


class HubConfig(BaseModel):
    """Configuration for the WebSocket broadcast hub."""

    send_timeout: float = Field(default=10.0, description="Per-write timeout in seconds")
    max_pending: int = Field(default=256, description="Queued events per connection before it is dropped")


class HeartbeatConfig(BaseModel):
    """Configuration for the periodic heartbeat."""

    enabled: bool = Field(default=True, description="Start the heartbeat with the server")
    interval: float = Field(default=1800.0, description="Seconds between heartbeats (30 minutes)")


class Config(BaseModel):
    """Main configuration object."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    hub: HubConfig = Field(default_factory=HubConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    settings_path: str = Field(default="settings.yaml", description="Runtime settings file")
    secrets_path: str = Field(default=".secrets.yaml", description="Secret store file")
    log_level: str = Field(default="INFO", description="Logging level")
    enable_pretty_print: bool = Field(
        default=False, description="Enable custom pretty print for debugging"
    )
    save_to_file: bool = Field(default=False, description="Save logs to file")
    log_file_path: str = Field(default="server.log", description="Log file path (relative to root)")
    max_log_file_size: int = Field(
        default=10485760, description="Max log file size in bytes (10MB)"
    )
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


_LOGGING_KEYS = (
    "enable_pretty_print",
    "save_to_file",
    "log_file_path",
    "max_log_file_size",
    "backup_count",
)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Environment variables are used ONLY for secrets (API keys), not configuration.

    Args:
        config_path: Path to config.yaml file. Defaults to ./config.yaml

    Returns:
        Loaded configuration object
    """
    if config_path is None:
        config_path = Path("config.yaml")

    config_data: Dict[str, Any] = {}

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    # Nested logging section is flattened onto the top-level fields
    logging_config = config_data.pop("logging", None) or {}
    if "level" in logging_config:
        config_data["log_level"] = logging_config["level"]
    for key in _LOGGING_KEYS:
        if key in logging_config:
            config_data[key] = logging_config[key]

    return Config(**config_data)
