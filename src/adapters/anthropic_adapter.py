"""
Anthropic adapter for Claude chat completions.

- Async I/O through the official SDK
- SDK retries disabled: a failure is immediately user-visible
- Never log secrets or API keys
- No incremental protocol here: "streaming" is one synthetic delta
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import anthropic
import httpx
from anthropic import AsyncAnthropic

from adapters.base import BaseAdapter, coalesce_system_messages
from common.errors import ProtocolError, TransportError, UpstreamError
from common.logging import TimedLogger, get_logger
from common.models import ChatMessage, ChatResponse, ChatRole, ModelInfo, ProviderKind

logger = get_logger(__name__)


def build_request_params(
    model: str,
    messages: Sequence[ChatMessage],
    system_prompt: Optional[str],
    temperature: Optional[float],
    max_tokens: int,
) -> Dict[str, Any]:
    """
    Build Messages API parameters.

    System messages are pulled out of the conversation and appended to the
    external prompt; the combined text goes into the dedicated ``system``
    field, which is left out entirely when empty.
    """
    system_text, turns = coalesce_system_messages(messages, system_prompt)

    params: Dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [{"role": m.role.value, "content": m.content} for m in turns],
    }
    if system_text:
        params["system"] = system_text
    if temperature is not None:
        params["temperature"] = temperature
    return params


def _error_message(error: anthropic.APIStatusError) -> str:
    """Parsed API error message when present, else the raw status code."""
    body = error.body
    if isinstance(body, dict):
        detail = body.get("error")
        if isinstance(detail, dict) and isinstance(detail.get("message"), str):
            return detail["message"]
    return f"HTTP error {error.status_code}"


class AnthropicAdapter(BaseAdapter):
    """Adapter for the Claude Messages API."""

    provider = ProviderKind.CLAUDE

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        max_tokens: int = 1024,
        model_options: Optional[List[str]] = None,
        default_model: Optional[str] = None,
    ):
        """
        Args:
            api_key: Claude API key from the secret store
            http_client: Shared HTTP client owned by the gateway
            base_url: API base URL override
            max_tokens: max_tokens sent with every request
            model_options: Model ids reported by list_models()
            default_model: Model used by test_connection() when none is given
        """
        self.client = AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            http_client=http_client,
            max_retries=0,
        )
        self.max_tokens = max_tokens
        self.model_options = list(model_options or [])
        self.default_model = default_model

    def supports_streaming(self) -> bool:
        return False

    async def _create(self, **params: Any) -> Any:
        """Call the Messages API, translating SDK errors into gateway errors."""
        try:
            return await self.client.messages.create(**params)
        except anthropic.APIStatusError as e:
            logger.error(
                event="anthropic_api_error",
                message="Anthropic API error",
                status=e.status_code,
                error=_error_message(e),
            )
            raise UpstreamError(_error_message(e), status=e.status_code) from e
        except anthropic.APIConnectionError as e:
            logger.error(
                event="anthropic_transport_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransportError(f"Claude API unreachable: {e}") from e
        except anthropic.APIResponseValidationError as e:
            raise ProtocolError(f"Invalid response from Claude API: {e}") from e

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> ChatResponse:
        params = build_request_params(model, messages, system_prompt, temperature, self.max_tokens)

        with TimedLogger(
            logger,
            "anthropic_chat_completion",
            model=model,
            message_count=len(params["messages"]),
            has_system=("system" in params),
        ):
            message = await self._create(**params)

        try:
            text = "".join(block.text for block in message.content if block.type == "text")
            message_id = message.id
        except (AttributeError, TypeError) as e:
            raise ProtocolError(f"Invalid response from Claude API: {e}") from e

        if not message_id:
            raise ProtocolError("Invalid response from Claude API: missing message id")

        return ChatResponse(
            id=message_id,
            message=ChatMessage(role=ChatRole.ASSISTANT, content=text),
            model=message.model or model,
        )

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        # Single synthetic delta carrying the whole answer
        response = await self.chat(model, messages, temperature, system_prompt)
        if response.message.content:
            yield response.message.content

    async def list_models(self) -> List[ModelInfo]:
        return [ModelInfo(id=m, name=m, provider=self.provider) for m in self.model_options]

    async def test_connection(self, model: Optional[str] = None) -> bool:
        """Make a minimal one-token request."""
        model = model or self.default_model
        if not model:
            return False
        message = await self._create(
            model=model,
            max_tokens=1,
            messages=[{"role": "user", "content": "hi"}],
        )
        return bool(message.id)
