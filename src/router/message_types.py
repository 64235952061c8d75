"""
Internal types for chat dispatch.

Not part of the wire format; these never leave the process.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from adapters.base import BaseAdapter
from common.models import ChatRequest, ProviderKind


class ChatCallState(str, Enum):
    """Lifecycle of one chat request. No state loops back: failures are terminal."""

    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolvedChatCall:
    """Everything needed to dispatch a request, fixed at resolution time."""

    request: ChatRequest
    provider: ProviderKind
    adapter: BaseAdapter
    model: str
    system_prompt: Optional[str]
