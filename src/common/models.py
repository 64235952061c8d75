"""
Shared data models for the Nyl server.

Wire format is camelCase JSON (what the mobile and desktop clients decode);
Python attribute names stay snake_case. Always dump with ``by_alias=True``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for every model that crosses the HTTP/WebSocket boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatRole(str, Enum):
    """Role of a chat message author."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(WireModel):
    """A single immutable chat turn."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: ChatRole
    content: str


class ChatRequest(WireModel):
    """Chat request; the caller resubmits the full conversation every time."""

    messages: List[ChatMessage] = Field(default_factory=list)
    model: Optional[str] = Field(default=None, description="Defaults to the configured model")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class ChatResponse(WireModel):
    """Complete answer from a non-streaming chat call."""

    id: str
    message: ChatMessage
    model: str
    created_at: datetime = Field(default_factory=utc_now)


class ChatStreamEventType(str, Enum):
    """Kinds of events on a chat stream."""

    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


class ChatStreamEvent(WireModel):
    """
    One event on a chat stream.

    Zero or more ``delta`` events (each with non-empty text) are followed by
    exactly one terminal ``done`` or ``error`` event.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: ChatStreamEventType
    delta: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "ChatStreamEvent":
        if self.type == ChatStreamEventType.DELTA and not self.delta:
            raise ValueError("delta events must carry non-empty text")
        if self.type == ChatStreamEventType.ERROR and self.error is None:
            raise ValueError("error events must carry a message")
        return self

    @classmethod
    def delta_event(cls, text: str) -> "ChatStreamEvent":
        return cls(type=ChatStreamEventType.DELTA, delta=text)

    @classmethod
    def done_event(cls) -> "ChatStreamEvent":
        return cls(type=ChatStreamEventType.DONE)

    @classmethod
    def error_event(cls, message: str) -> "ChatStreamEvent":
        return cls(type=ChatStreamEventType.ERROR, error=message)

    @property
    def is_terminal(self) -> bool:
        return self.type != ChatStreamEventType.DELTA

    def to_json(self) -> str:
        """Compact JSON with absent fields omitted."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Providers and models
# ---------------------------------------------------------------------------


class ProviderKind(str, Enum):
    """Upstream chat provider. ``disabled`` turns chat off entirely."""

    DISABLED = "disabled"
    OLLAMA = "ollama"
    CLAUDE = "claude"


class ProviderConfig(WireModel):
    """Runtime AI settings, re-read from the settings store on every request."""

    ai_enabled: bool = True
    active_provider: ProviderKind = ProviderKind.DISABLED
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: Optional[str] = None
    claude_model: Optional[str] = None
    system_prompt: str = ""

    def selected_model(self, provider: Optional[ProviderKind] = None) -> Optional[str]:
        """Model stored in the slot of ``provider`` (the active one by default)."""
        provider = provider or self.active_provider
        if provider == ProviderKind.OLLAMA:
            return self.ollama_model
        if provider == ProviderKind.CLAUDE:
            return self.claude_model
        return None


class ModelInfo(WireModel):
    """A model offered by the active provider."""

    id: str
    name: str
    provider: ProviderKind
    size_bytes: Optional[int] = None
    modified_at: Optional[datetime] = None


class ModelsResponse(WireModel):
    """Answer of GET /v1/models."""

    provider: ProviderKind
    selected_model: Optional[str] = None
    models: List[ModelInfo] = Field(default_factory=list)


class SelectModelRequest(WireModel):
    """Body of PUT /v1/models/selected."""

    model: str


# ---------------------------------------------------------------------------
# Status and push events
# ---------------------------------------------------------------------------


class ServerInfo(WireModel):
    version: str
    uptime: float
    port: int


class HeartbeatInfo(WireModel):
    interval: float
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    is_running: bool = False


class WeatherInfo(WireModel):
    temperature: float
    condition: str
    location: str
    last_updated: datetime


class StatusSnapshot(WireModel):
    """Full server status; also the body of GET /v1/status."""

    server: ServerInfo
    heartbeat: HeartbeatInfo
    weather: Optional[WeatherInfo] = None


StatusResponse = StatusSnapshot


class StatusEventType(str, Enum):
    """Kinds of events pushed on /ws/updates."""

    CONNECTED = "connected"
    STATUS_UPDATE = "statusUpdate"
    HEARTBEAT_FIRED = "heartbeatFired"
    WEATHER_UPDATED = "weatherUpdated"


class StatusEvent(WireModel):
    """Immutable push-channel event handed to the broadcast hub."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: StatusEventType
    timestamp: datetime = Field(default_factory=utc_now)
    payload: Optional[StatusSnapshot] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ErrorBody(BaseModel):
    """Rejection body, shaped like the clients already expect."""

    error: bool = True
    reason: str
