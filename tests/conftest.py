"""
Shared fixtures: isolated settings files, an in-memory secret store and
mocked upstream HTTP.
"""

import json
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from common.config import Config, HeartbeatConfig
from common.models import ProviderConfig, ProviderKind
from common.settings_store import CLAUDE_API_KEY, SecretStore, SettingsService, SettingsStore

OLLAMA_URL = "http://ollama.local:11434"


class MemorySecretStore(SecretStore):
    """Dict-backed secret store for tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class RecordingHandler:
    """MockTransport handler that records requests and delegates to a responder."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def json_bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]


def ndjson(*chunks: dict) -> bytes:
    return b"".join(json.dumps(chunk).encode() + b"\n" for chunk in chunks)


def ollama_responder(request: httpx.Request) -> httpx.Response:
    """A well-behaved Ollama server answering "pong"."""
    if request.url.path == "/api/tags":
        return httpx.Response(
            200,
            json={
                "models": [
                    {
                        "name": "llama3:latest",
                        "size": 4661224676,
                        "modified_at": "2024-05-01T10:00:00.123456789Z",
                    },
                    {"name": "mistral:7b", "size": 4109865159},
                ]
            },
        )

    body = json.loads(request.content)
    if body.get("stream"):
        return httpx.Response(
            200,
            content=ndjson(
                {"model": body["model"], "message": {"role": "assistant", "content": "po"}, "done": False},
                {"model": body["model"], "message": {"role": "assistant", "content": ""}, "done": False},
                {"model": body["model"], "message": {"role": "assistant", "content": "ng"}, "done": False},
                {"model": body["model"], "message": {"role": "assistant", "content": ""}, "done": True},
            ),
        )
    return httpx.Response(
        200,
        json={
            "model": body["model"],
            "created_at": "2024-05-01T10:00:00.123456789Z",
            "message": {"role": "assistant", "content": "pong"},
            "done": True,
        },
    )


@pytest.fixture
def test_config(tmp_path) -> Config:
    """Config with files under tmp_path and no background heartbeat."""
    return Config(
        settings_path=str(tmp_path / "settings.yaml"),
        secrets_path=str(tmp_path / ".secrets.yaml"),
        heartbeat=HeartbeatConfig(enabled=False),
    )


@pytest.fixture
def secret_store() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def settings_store(tmp_path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.yaml")


@pytest.fixture
def settings_service(settings_store, secret_store) -> SettingsService:
    return SettingsService(settings_store, secret_store)


@pytest.fixture
def use_ollama(settings_store) -> Callable[..., ProviderConfig]:
    """Point the settings at the mocked Ollama server."""

    def _apply(**overrides) -> ProviderConfig:
        settings = ProviderConfig(
            ai_enabled=True,
            active_provider=ProviderKind.OLLAMA,
            ollama_base_url=OLLAMA_URL,
            ollama_model="llama3",
        ).model_copy(update=overrides)
        settings_store.save(settings)
        return settings

    return _apply


@pytest.fixture
def use_claude(settings_store, secret_store) -> Callable[..., ProviderConfig]:
    """Switch the settings to Claude, with an API key unless told otherwise."""

    def _apply(api_key: Optional[str] = "sk-test", **overrides) -> ProviderConfig:
        settings = ProviderConfig(
            ai_enabled=True,
            active_provider=ProviderKind.CLAUDE,
            claude_model="claude-3-5-haiku-20241022",
        ).model_copy(update=overrides)
        settings_store.save(settings)
        if api_key:
            secret_store.set(CLAUDE_API_KEY, api_key)
        return settings

    return _apply


@pytest.fixture
def ollama_handler() -> RecordingHandler:
    return RecordingHandler(ollama_responder)


@pytest.fixture
def mock_http_client(ollama_handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(ollama_handler))


class InterruptedStream(httpx.AsyncByteStream):
    """Response body that delivers one NDJSON chunk, then loses the connection."""

    async def __aiter__(self):
        yield ndjson({"message": {"role": "assistant", "content": "Hel"}, "done": False})
        raise httpx.ReadError("connection reset")


def interrupted_ollama_responder(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, stream=InterruptedStream())
