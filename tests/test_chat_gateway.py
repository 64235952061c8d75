"""
Tests for the chat gateway: provider resolution, dispatch and stream normalization.
"""

from typing import List

import httpx
import pytest

from adapters.base import BaseAdapter
from common.errors import (
    ConfigurationError,
    FeatureDisabledError,
    TransportError,
    UpstreamError,
    ValidationError,
)
from common.models import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    ChatStreamEvent,
    ChatStreamEventType,
    ProviderConfig,
    ProviderKind,
)
from common.settings_store import FileSecretStore, SettingsService
from router.chat_gateway import ChatGateway


class ScriptedAdapter(BaseAdapter):
    """Adapter yielding a fixed list of deltas, optionally failing afterwards."""

    provider = ProviderKind.OLLAMA

    def __init__(self, deltas: List[str], error: Exception = None):
        self.deltas = deltas
        self.error = error
        self.closed = False

    def supports_streaming(self) -> bool:
        return True

    async def chat(self, model, messages, temperature=None, system_prompt=None) -> ChatResponse:
        raise NotImplementedError

    async def stream_chat(self, model, messages, temperature=None, system_prompt=None):
        try:
            for text in self.deltas:
                yield text
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    async def list_models(self):
        return []

    async def test_connection(self) -> bool:
        return True


def ping(model: str = None) -> ChatRequest:
    return ChatRequest(messages=[ChatMessage(role=ChatRole.USER, content="ping")], model=model)


@pytest.fixture
def gateway(test_config, settings_service, mock_http_client) -> ChatGateway:
    return ChatGateway(test_config, settings_service, mock_http_client)


async def collect(gateway: ChatGateway, request: ChatRequest) -> List[ChatStreamEvent]:
    return [event async for event in gateway.stream_events(request)]


def test_resolve_uses_configured_model(gateway, use_ollama):
    use_ollama(system_prompt="You are Nyl.")

    call = gateway.resolve(ping())

    assert call.provider == ProviderKind.OLLAMA
    assert call.model == "llama3"
    assert call.system_prompt == "You are Nyl."


def test_resolve_request_model_wins(gateway, use_ollama):
    use_ollama()

    assert gateway.resolve(ping("mistral:7b")).model == "mistral:7b"


@pytest.mark.parametrize(
    "settings",
    [
        ProviderConfig(ai_enabled=False, active_provider=ProviderKind.OLLAMA, ollama_model="llama3"),
        ProviderConfig(active_provider=ProviderKind.DISABLED),
    ],
)
def test_resolve_disabled(gateway, settings_store, settings):
    settings_store.save(settings)

    with pytest.raises(FeatureDisabledError):
        gateway.resolve(ping())


def test_resolve_without_model(gateway, use_ollama):
    use_ollama(ollama_model=None)

    with pytest.raises(ValidationError, match="Model is required"):
        gateway.resolve(ping())


def test_resolve_without_messages(gateway, use_ollama):
    use_ollama()

    with pytest.raises(ValidationError):
        gateway.resolve(ChatRequest(messages=[]))


def test_resolve_claude_without_key(gateway, use_claude):
    use_claude(api_key=None)

    with pytest.raises(ConfigurationError, match="Claude API key not configured"):
        gateway.resolve(ping())


@pytest.mark.asyncio
async def test_chat_returns_adapter_response(gateway, use_ollama):
    use_ollama()

    response = await gateway.chat(ping())

    assert response.message.content == "pong"
    assert response.model == "llama3"


@pytest.mark.asyncio
async def test_chat_validation_error_never_contacts_provider(gateway, use_ollama, ollama_handler):
    use_ollama(ollama_model="")

    with pytest.raises(ValidationError):
        await gateway.chat(ping())

    assert ollama_handler.requests == []


@pytest.mark.asyncio
async def test_stream_events_deltas_then_done(gateway, use_ollama):
    use_ollama()

    events = await collect(gateway, ping())

    assert [e.type for e in events] == [
        ChatStreamEventType.DELTA,
        ChatStreamEventType.DELTA,
        ChatStreamEventType.DONE,
    ]
    assert "".join(e.delta for e in events[:-1]) == "pong"


@pytest.mark.asyncio
async def test_stream_events_resolution_failure_is_single_error(gateway, use_ollama, ollama_handler):
    use_ollama(ollama_model=None)

    events = await collect(gateway, ping())

    assert events == [ChatStreamEvent.error_event("Model is required")]
    assert ollama_handler.requests == []


@pytest.mark.asyncio
async def test_stream_events_disabled(gateway, settings_store):
    settings_store.save(ProviderConfig(active_provider=ProviderKind.DISABLED))

    events = await collect(gateway, ping())

    assert len(events) == 1
    assert events[0].type == ChatStreamEventType.ERROR


@pytest.mark.asyncio
async def test_stream_events_mid_stream_failure(gateway, use_ollama, monkeypatch):
    use_ollama()
    adapter = ScriptedAdapter(["Hel", "lo"], error=TransportError("Ollama stream interrupted"))
    monkeypatch.setattr(gateway, "_build_adapter", lambda *args, **kwargs: adapter)

    events = await collect(gateway, ping())

    assert events == [
        ChatStreamEvent.delta_event("Hel"),
        ChatStreamEvent.delta_event("lo"),
        ChatStreamEvent.error_event("Ollama stream interrupted"),
    ]
    assert adapter.closed


@pytest.mark.asyncio
async def test_stream_events_unexpected_exception(gateway, use_ollama, monkeypatch):
    use_ollama()
    adapter = ScriptedAdapter([], error=RuntimeError("kaboom"))
    monkeypatch.setattr(gateway, "_build_adapter", lambda *args, **kwargs: adapter)

    events = await collect(gateway, ping())

    assert len(events) == 1
    assert events[0].type == ChatStreamEventType.ERROR
    assert "kaboom" in events[0].error


@pytest.mark.asyncio
async def test_stream_events_early_close_releases_adapter(gateway, use_ollama, monkeypatch):
    use_ollama()
    adapter = ScriptedAdapter(["a", "b", "c"])
    monkeypatch.setattr(gateway, "_build_adapter", lambda *args, **kwargs: adapter)

    events = gateway.stream_events(ping())
    first = await events.__anext__()
    await events.aclose()

    assert first == ChatStreamEvent.delta_event("a")
    assert adapter.closed


@pytest.mark.asyncio
async def test_stream_chat_callback_sees_every_event(gateway, use_ollama):
    use_ollama()
    seen = []

    async def on_event(event):
        seen.append(event)

    await gateway.stream_chat(ping(), on_event)

    assert [e.type for e in seen][-1] == ChatStreamEventType.DONE
    assert sum(1 for e in seen if e.is_terminal) == 1


@pytest.mark.asyncio
async def test_stream_upstream_error_event(test_config, settings_service, use_ollama):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="overloaded"))
    )
    gateway = ChatGateway(test_config, settings_service, client)
    use_ollama()

    events = await collect(gateway, ping())

    assert len(events) == 1
    assert events[0].type == ChatStreamEventType.ERROR
    assert "500" in events[0].error


@pytest.mark.asyncio
async def test_list_models_ollama(gateway, use_ollama):
    use_ollama()

    response = await gateway.list_models()

    assert response.provider == ProviderKind.OLLAMA
    assert response.selected_model == "llama3"
    assert [m.id for m in response.models] == ["llama3:latest", "mistral:7b"]


@pytest.mark.asyncio
async def test_list_models_claude_without_key(gateway, use_claude, test_config):
    use_claude(api_key=None)

    response = await gateway.list_models()

    assert response.provider == ProviderKind.CLAUDE
    assert [m.id for m in response.models] == test_config.ai.claude_models


@pytest.mark.asyncio
async def test_list_models_disabled(gateway, settings_store):
    settings_store.save(ProviderConfig(active_provider=ProviderKind.DISABLED))

    response = await gateway.list_models()

    assert response.provider == ProviderKind.DISABLED
    assert response.models == []


def test_select_model_persists(gateway, use_claude, settings_service):
    use_claude()

    gateway.select_model("  claude-sonnet-4-5-20250929 ")

    settings = settings_service.load()
    assert settings.claude_model == "claude-sonnet-4-5-20250929"
    assert settings.active_provider == ProviderKind.CLAUDE


def test_select_model_disabled_leaves_settings(gateway, settings_store):
    original = ProviderConfig(active_provider=ProviderKind.DISABLED, ollama_model="llama3")
    settings_store.save(original)

    with pytest.raises(FeatureDisabledError):
        gateway.select_model("mistral:7b")

    assert settings_store.load() == original


def test_select_model_empty(gateway, use_ollama):
    use_ollama()

    with pytest.raises(ValidationError):
        gateway.select_model("   ")


def test_error_statuses():
    assert ValidationError("x").status_code == 400
    assert FeatureDisabledError("x").status_code == 403
    assert ConfigurationError("x").status_code == 400
    assert UpstreamError("x", status=500).status_code == 502


@pytest.mark.asyncio
async def test_stream_events_malformed_secrets_file_is_single_error(
    test_config, settings_store, tmp_path, use_claude, mock_http_client, monkeypatch
):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    secrets_path = tmp_path / ".secrets.yaml"
    secrets_path.write_text("just a string\n")
    gateway = ChatGateway(
        test_config, SettingsService(settings_store, FileSecretStore(secrets_path)), mock_http_client
    )
    use_claude(api_key=None)

    events = await collect(gateway, ping())

    assert events == [ChatStreamEvent.error_event("Claude API key not configured")]


@pytest.mark.asyncio
async def test_stream_events_unexpected_resolution_failure_is_single_error(
    gateway, use_ollama, ollama_handler, monkeypatch
):
    use_ollama()

    def broken_load():
        raise RuntimeError("settings backend exploded")

    monkeypatch.setattr(gateway.settings, "load", broken_load)

    events = await collect(gateway, ping())

    assert len(events) == 1
    assert events[0].type == ChatStreamEventType.ERROR
    assert "settings backend exploded" in events[0].error
    assert ollama_handler.requests == []
