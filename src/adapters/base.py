"""
Base adapter interface for upstream chat providers.

Each adapter translates between the internal ChatMessage/ChatResponse models
and one provider's wire format. The gateway only ever talks to this interface.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from common.models import ChatMessage, ChatResponse, ChatRole, ModelInfo, ProviderKind


def coalesce_system_messages(
    messages: Sequence[ChatMessage], system_prompt: Optional[str] = None
) -> Tuple[str, List[ChatMessage]]:
    """
    Split a conversation into one system text and the remaining turns.

    The external prompt comes first, followed by every ``system`` message in
    order, newline-joined. Blank parts are skipped and the result is trimmed.
    Returns new objects; ``messages`` is left untouched.
    """
    parts: List[str] = []
    if system_prompt and system_prompt.strip():
        parts.append(system_prompt.strip())

    turns: List[ChatMessage] = []
    for message in messages:
        if message.role == ChatRole.SYSTEM:
            if message.content.strip():
                parts.append(message.content.strip())
        else:
            turns.append(message)

    return "\n".join(parts).strip(), turns


class BaseAdapter(ABC):
    """Base class for chat provider adapters."""

    provider: ProviderKind

    @abstractmethod
    def supports_streaming(self) -> bool:
        """Capability probe - does the upstream deliver incremental deltas?"""

    @abstractmethod
    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> ChatResponse:
        """Run one non-streaming chat call."""

    @abstractmethod
    def stream_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Yield non-empty text deltas in upstream order.

        Closing the iterator early must release the upstream connection.
        """

    @abstractmethod
    async def list_models(self) -> List[ModelInfo]:
        """List models the provider offers."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check the provider is reachable and usable."""
