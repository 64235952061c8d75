"""
Ollama adapter for local-network chat.

- Native Ollama API (/api/chat, /api/tags), not the OpenAI-compatible /v1 layer
- Streaming responses are newline-delimited JSON, one object per line
- No retries, no reconnection: failures surface immediately
"""

import json
import re
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from adapters.base import BaseAdapter, coalesce_system_messages
from common.errors import ProtocolError, TransportError, UpstreamError
from common.logging import TimedLogger, get_logger
from common.models import ChatMessage, ChatResponse, ChatRole, ModelInfo, ProviderKind, utc_now

logger = get_logger(__name__)

# Ollama reports nanosecond timestamps; datetime only keeps microseconds
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def normalize_base_url(base_url: str) -> str:
    """Strip a trailing slash and a trailing /v1 (OpenAI-compat path)."""
    url = base_url.strip().rstrip("/")
    if url.endswith("/v1"):
        url = url[: -len("/v1")]
    return url


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = _FRACTION_RE.sub(r"\1", value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class OllamaAdapter(BaseAdapter):
    """Adapter for an Ollama server on the local network."""

    provider = ProviderKind.OLLAMA

    def __init__(self, base_url: str, client: httpx.AsyncClient):
        """
        Args:
            base_url: Ollama server URL from settings (``/v1`` suffix tolerated)
            client: Shared HTTP client owned by the gateway
        """
        self.base_url = normalize_base_url(base_url)
        self.client = client

    def supports_streaming(self) -> bool:
        return True

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _build_payload(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float],
        system_prompt: Optional[str],
        stream: bool,
    ) -> Dict[str, Any]:
        system_text, turns = coalesce_system_messages(messages, system_prompt)
        wire_messages = [{"role": m.role.value, "content": m.content} for m in turns]
        if system_text:
            wire_messages.insert(0, {"role": ChatRole.SYSTEM.value, "content": system_text})

        payload: Dict[str, Any] = {"model": model, "messages": wire_messages, "stream": stream}
        if temperature is not None:
            payload["options"] = {"temperature": temperature}
        return payload

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> ChatResponse:
        payload = self._build_payload(model, messages, temperature, system_prompt, stream=False)

        with TimedLogger(logger, "ollama_chat_completion", model=model, message_count=len(messages)):
            try:
                response = await self.client.post(self._url("/api/chat"), json=payload)
            except httpx.TransportError as e:
                logger.error(event="ollama_transport_error", error=str(e), error_type=type(e).__name__)
                raise TransportError(f"Ollama unreachable: {e}") from e

            if not response.is_success:
                raise UpstreamError(
                    f"Ollama HTTP error {response.status_code}: {response.text}",
                    status=response.status_code,
                )

            try:
                data = response.json()
                content = data["message"]["content"]
            except (ValueError, KeyError, TypeError) as e:
                raise ProtocolError(f"Invalid response from Ollama: {e}") from e

            if not isinstance(content, str):
                raise ProtocolError("Invalid response from Ollama: message content is not text")

        return ChatResponse(
            id=f"ollama-{uuid.uuid4().hex}",
            message=ChatMessage(role=ChatRole.ASSISTANT, content=content),
            model=data.get("model") or model,
            created_at=_parse_timestamp(data.get("created_at")) or utc_now(),
        )

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        payload = self._build_payload(model, messages, temperature, system_prompt, stream=True)
        chunk_count = 0

        try:
            async with self.client.stream("POST", self._url("/api/chat"), json=payload) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise UpstreamError(
                        f"Ollama HTTP error {response.status_code}: {body}",
                        status=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise ProtocolError(f"Invalid stream chunk from Ollama: {e}") from e
                    if not isinstance(chunk, dict):
                        raise ProtocolError("Invalid stream chunk from Ollama: not an object")

                    if chunk.get("error"):
                        raise UpstreamError(f"Ollama error: {chunk['error']}", status=response.status_code)

                    message = chunk.get("message") or {}
                    text = message.get("content") if isinstance(message, dict) else None
                    if text:
                        chunk_count += 1
                        yield text

                    if chunk.get("done"):
                        break
        except httpx.TransportError as e:
            logger.error(
                event="ollama_stream_transport_error",
                error=str(e),
                error_type=type(e).__name__,
                chunks_delivered=chunk_count,
            )
            raise TransportError(f"Ollama stream interrupted: {e}") from e

        logger.info(event="ollama_stream_complete", model=model, chunk_count=chunk_count)

    async def list_models(self) -> List[ModelInfo]:
        try:
            response = await self.client.get(self._url("/api/tags"))
        except httpx.TransportError as e:
            raise TransportError(f"Ollama unreachable: {e}") from e

        if not response.is_success:
            raise UpstreamError(
                f"Ollama HTTP error {response.status_code}", status=response.status_code
            )

        try:
            entries = response.json()["models"]
            return [
                ModelInfo(
                    id=entry["name"],
                    name=entry["name"],
                    provider=self.provider,
                    size_bytes=entry.get("size"),
                    modified_at=_parse_timestamp(entry.get("modified_at")),
                )
                for entry in entries
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ProtocolError(f"Invalid model list from Ollama: {e}") from e

    async def test_connection(self) -> bool:
        """Model list succeeded and is non-empty."""
        models = await self.list_models()
        return bool(models)
