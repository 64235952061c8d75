"""
Chat gateway: the single entry point hiding provider selection from the front door.

Responsibilities:
- Resolve the active provider and model from settings (re-read per request)
- Resolve credentials and merge the system prompt
- Dispatch to the matching adapter
- Normalize streaming output into ChatStreamEvent values with exactly one
  terminal event

Strict mode only: no fallbacks between providers and no retries.
"""

from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from adapters.anthropic_adapter import AnthropicAdapter
from adapters.base import BaseAdapter
from adapters.ollama_adapter import OllamaAdapter
from common.config import Config
from common.errors import ConfigurationError, FeatureDisabledError, GatewayError, ValidationError
from common.logging import TimedLogger, get_logger
from common.models import (
    ChatRequest,
    ChatResponse,
    ChatStreamEvent,
    ModelsResponse,
    ProviderConfig,
    ProviderKind,
)
from common.settings_store import SettingsService
from router.message_types import ChatCallState, ResolvedChatCall

logger = get_logger(__name__)

EventHandler = Callable[[ChatStreamEvent], Awaitable[None]]


class ChatGateway:
    """Provider-agnostic chat façade over the Ollama and Claude adapters."""

    def __init__(
        self,
        config: Config,
        settings: SettingsService,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.ai.request_timeout, connect=config.ai.connect_timeout)
        )

        logger.info(
            event="chat_gateway_initialized",
            request_timeout=config.ai.request_timeout,
            shared_client=not self._owns_client,
        )

    async def aclose(self) -> None:
        """Release the shared upstream client if the gateway created it."""
        if self._owns_client:
            await self.http_client.aclose()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _active_provider(self, settings: ProviderConfig) -> ProviderKind:
        if not settings.ai_enabled or settings.active_provider == ProviderKind.DISABLED:
            raise FeatureDisabledError("AI features are disabled")
        return settings.active_provider

    def _build_adapter(
        self, provider: ProviderKind, settings: ProviderConfig, require_key: bool = True
    ) -> BaseAdapter:
        if provider == ProviderKind.OLLAMA:
            return OllamaAdapter(settings.ollama_base_url, self.http_client)

        if provider == ProviderKind.CLAUDE:
            api_key = self.settings.load_claude_api_key()
            if not api_key:
                if require_key:
                    raise ConfigurationError("Claude API key not configured")
                api_key = ""
            return AnthropicAdapter(
                api_key=api_key,
                http_client=self.http_client,
                base_url=self.config.ai.claude_base_url,
                max_tokens=self.config.ai.claude_max_tokens,
                model_options=self.config.ai.claude_models,
                default_model=settings.claude_model,
            )

        raise FeatureDisabledError("AI provider disabled")

    def resolve(self, request: ChatRequest) -> ResolvedChatCall:
        """
        Validate a request against current settings.

        Raises:
            FeatureDisabledError: AI disabled or provider set to disabled
            ValidationError: no messages, or no model could be resolved
            ConfigurationError: required API key missing
        """
        settings = self.settings.load()
        provider = self._active_provider(settings)

        if not request.messages:
            raise ValidationError("At least one message is required")

        model = request.model or settings.selected_model(provider)
        if not model or not model.strip():
            raise ValidationError("Model is required")

        adapter = self._build_adapter(provider, settings)

        return ResolvedChatCall(
            request=request,
            provider=provider,
            adapter=adapter,
            model=model.strip(),
            system_prompt=settings.system_prompt,
        )

    def _log_state(self, state: ChatCallState, **context) -> None:
        logger.info(event="chat_call_state", state=state.value, **context)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Run a non-streaming chat call; the adapter's response is returned unchanged."""
        self._log_state(ChatCallState.RESOLVING, streaming=False)
        try:
            call = self.resolve(request)
        except GatewayError as e:
            self._log_state(ChatCallState.FAILED, error=e.message, error_type=type(e).__name__)
            raise

        self._log_state(ChatCallState.DISPATCHING, provider=call.provider.value, model=call.model)
        with TimedLogger(logger, "chat_request_processed", provider=call.provider.value, model=call.model):
            try:
                response = await call.adapter.chat(
                    call.model,
                    call.request.messages,
                    temperature=call.request.temperature,
                    system_prompt=call.system_prompt,
                )
            except GatewayError as e:
                self._log_state(ChatCallState.FAILED, error=e.message, error_type=type(e).__name__)
                raise

        self._log_state(ChatCallState.COMPLETED, provider=call.provider.value)
        return response

    async def stream_events(self, request: ChatRequest) -> AsyncIterator[ChatStreamEvent]:
        """
        Yield delta events in upstream order, then exactly one done or error event.

        Nothing is raised past this boundary: resolution failures become a
        single error event, and a failure after some deltas ends the stream
        with an error event (already delivered deltas stand).
        """
        self._log_state(ChatCallState.RESOLVING, streaming=True)
        try:
            call = self.resolve(request)
        except GatewayError as e:
            self._log_state(ChatCallState.FAILED, error=e.message, error_type=type(e).__name__)
            yield ChatStreamEvent.error_event(e.message)
            return
        except Exception as e:
            logger.exception(event="chat_resolve_unexpected_error", error=str(e))
            self._log_state(ChatCallState.FAILED, error_type=type(e).__name__)
            yield ChatStreamEvent.error_event(f"Chat request failed: {e}")
            return

        self._log_state(ChatCallState.DISPATCHING, provider=call.provider.value, model=call.model)
        delta_count = 0
        try:
            deltas = call.adapter.stream_chat(
                call.model,
                call.request.messages,
                temperature=call.request.temperature,
                system_prompt=call.system_prompt,
            )
            async with aclosing(deltas):
                async for text in deltas:
                    if delta_count == 0:
                        self._log_state(ChatCallState.STREAMING, provider=call.provider.value)
                    delta_count += 1
                    yield ChatStreamEvent.delta_event(text)
        except GatewayError as e:
            self._log_state(
                ChatCallState.FAILED,
                error=e.message,
                error_type=type(e).__name__,
                deltas_delivered=delta_count,
            )
            yield ChatStreamEvent.error_event(e.message)
            return
        except Exception as e:
            logger.exception(
                event="chat_stream_unexpected_error",
                error=str(e),
                deltas_delivered=delta_count,
            )
            self._log_state(ChatCallState.FAILED, error_type=type(e).__name__)
            yield ChatStreamEvent.error_event(f"Chat stream failed: {e}")
            return

        self._log_state(ChatCallState.COMPLETED, provider=call.provider.value, deltas=delta_count)
        yield ChatStreamEvent.done_event()

    async def stream_chat(self, request: ChatRequest, on_event: EventHandler) -> None:
        """Callback form of ``stream_events``: ``on_event`` sees every event in order."""
        events = self.stream_events(request)
        async with aclosing(events):
            async for event in events:
                await on_event(event)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self) -> ModelsResponse:
        """Models of the active provider; an empty list when disabled."""
        settings = self.settings.load()
        provider = settings.active_provider

        if provider == ProviderKind.DISABLED:
            return ModelsResponse(provider=provider, selected_model=None, models=[])

        adapter = self._build_adapter(provider, settings, require_key=False)
        models = await adapter.list_models()
        return ModelsResponse(
            provider=provider,
            selected_model=settings.selected_model(provider),
            models=models,
        )

    def select_model(self, model_id: str) -> ProviderConfig:
        """
        Persist ``model_id`` into the active provider's model slot.

        Raises:
            FeatureDisabledError: provider is disabled (settings untouched)
            ValidationError: empty model id
        """
        settings = self.settings.load()
        provider = settings.active_provider
        if provider == ProviderKind.DISABLED:
            raise FeatureDisabledError("AI provider disabled")

        model_id = (model_id or "").strip()
        if not model_id:
            raise ValidationError("Model is required")

        updated = self.settings.update_selected_model(provider, model_id)
        logger.info(event="model_selected", provider=provider.value, model=model_id)
        return updated
