from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


AgentRole = Literal["user", "assistant"]
AgentEventKind = Literal["text", "tool_use", "tool_result", "completion"]


class AgentAbortedError(RuntimeError):
    """Raised when a caller cancels an in-flight agent turn."""


@dataclass(frozen=True)
class AgentMessage:
    role: AgentRole
    content: str


@dataclass(frozen=True)
class AgentUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


@dataclass(frozen=True)
class ToolCall:
    tool_use_id: str
    name: str
    input: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentEvent:
    kind: AgentEventKind
    text: str = ""
    tool_name: str | None = None
    tool_use_id: str | None = None
    usage: AgentUsage | None = None


@dataclass(frozen=True)
class AgentResponse:
    text: str
    session_id: str | None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_results: tuple[str, ...] = ()
    usage: AgentUsage = AgentUsage()
    stop_reason: str | None = None


AgentEventHandler = Callable[[AgentEvent], Awaitable[None]]


class CancelToken:
    """Cooperative cancellation shared by every call in one logical turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AgentAbortedError(self.reason or "cancelled")


class ReasoningAgent(ABC):
    @abstractmethod
    async def run(
        self,
        messages: Sequence[AgentMessage],
        *,
        session_id: str | None,
        cwd: Path | None,
        cancel: CancelToken,
        on_event: AgentEventHandler | None = None,
    ) -> AgentResponse:
        """Run one agent turn, resuming `session_id` when given.

        Implementations must raise AgentAbortedError once `cancel` fires.
        """
