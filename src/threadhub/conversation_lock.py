from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time

from threadhub.models import Channel
from threadhub.observability import log_event


LOGGER = logging.getLogger("threadhub.conversation_lock")
DEFAULT_LOCK_TIMEOUT_SECONDS = 300.0


class LockTimeoutError(TimeoutError):
    def __init__(self, thread_id: str, holder: str | None, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for thread {thread_id} "
            f"(held by {holder or 'nobody'})"
        )
        self.thread_id = thread_id
        self.holder = holder
        self.timeout_seconds = timeout_seconds


@dataclass(frozen=True)
class LockInfo:
    holder: str
    acquired_at: str
    duration_seconds: float


@dataclass(frozen=True)
class QueuedMessage:
    text: str
    channel: Channel
    queued_at: str


@dataclass(eq=False)
class LockLease:
    thread_id: str
    holder: str
    acquired_at: str
    acquired_monotonic: float
    _owner: ConversationLock = field(repr=False)
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._owner._release(self)


@dataclass(eq=False)
class _Waiter:
    holder: str
    future: asyncio.Future[LockLease]


class ConversationLock:
    """Per-thread async mutex with FIFO hand-off and an inbound message queue.

    All state lives on the instance, so isolated locks can be constructed per
    router (or per test). Release hands the lock directly to the oldest waiter,
    which means a newcomer can never barge ahead of a queued caller.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_timeout_seconds = default_timeout_seconds
        self._monotonic = monotonic
        self._holders: dict[str, LockLease] = {}
        self._waiters: dict[str, deque[_Waiter]] = {}
        self._queues: dict[str, list[QueuedMessage]] = {}

    async def acquire(
        self, thread_id: str, holder: str, *, timeout_seconds: float | None = None
    ) -> LockLease:
        if self._is_free(thread_id):
            return self._grant(thread_id, holder)

        timeout = self._default_timeout_seconds if timeout_seconds is None else timeout_seconds
        current = self._holders.get(thread_id)
        log_event(
            LOGGER,
            "lock_wait_started",
            thread_id=thread_id,
            holder=holder,
            current_holder=current.holder if current is not None else None,
            waiters=len(self._waiters.get(thread_id, ())),
        )
        future: asyncio.Future[LockLease] = asyncio.get_running_loop().create_future()
        waiter = _Waiter(holder=holder, future=future)
        self._waiters.setdefault(thread_id, deque()).append(waiter)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            self._abandon(thread_id, waiter)
            if isinstance(exc, asyncio.CancelledError):
                raise
            current = self._holders.get(thread_id)
            log_event(
                LOGGER,
                "lock_wait_timed_out",
                level=logging.WARNING,
                thread_id=thread_id,
                holder=holder,
                current_holder=current.holder if current is not None else None,
                timeout_seconds=timeout,
            )
            raise LockTimeoutError(
                thread_id, current.holder if current is not None else None, timeout
            ) from None

    def try_acquire(self, thread_id: str, holder: str) -> LockLease | None:
        if not self._is_free(thread_id):
            return None
        return self._grant(thread_id, holder)

    @asynccontextmanager
    async def hold(
        self, thread_id: str, holder: str, *, timeout_seconds: float | None = None
    ) -> AsyncIterator[LockLease]:
        lease = await self.acquire(thread_id, holder, timeout_seconds=timeout_seconds)
        try:
            yield lease
        finally:
            lease.release()

    def is_locked(self, thread_id: str) -> bool:
        return thread_id in self._holders

    def get_lock_info(self, thread_id: str) -> LockInfo | None:
        lease = self._holders.get(thread_id)
        if lease is None:
            return None
        return LockInfo(
            holder=lease.holder,
            acquired_at=lease.acquired_at,
            duration_seconds=max(0.0, self._monotonic() - lease.acquired_monotonic),
        )

    def locked_threads(self) -> tuple[str, ...]:
        return tuple(sorted(self._holders))

    def force_release(self, thread_id: str) -> bool:
        lease = self._holders.pop(thread_id, None)
        if lease is None:
            return False
        lease.released = True
        log_event(
            LOGGER,
            "lock_force_released",
            level=logging.WARNING,
            thread_id=thread_id,
            holder=lease.holder,
        )
        self._hand_off(thread_id)
        return True

    def enqueue_message(self, thread_id: str, text: str, channel: Channel) -> int:
        queue = self._queues.setdefault(thread_id, [])
        queue.append(QueuedMessage(text=text, channel=channel, queued_at=_utc_now_iso8601()))
        log_event(LOGGER, "message_enqueued", thread_id=thread_id, queue_size=len(queue))
        return len(queue)

    def drain_queue(self, thread_id: str) -> tuple[QueuedMessage, ...]:
        return tuple(self._queues.pop(thread_id, ()))

    def queue_size(self, thread_id: str) -> int:
        return len(self._queues.get(thread_id, ()))

    def _is_free(self, thread_id: str) -> bool:
        return thread_id not in self._holders and not self._waiters.get(thread_id)

    def _grant(self, thread_id: str, holder: str) -> LockLease:
        lease = LockLease(
            thread_id=thread_id,
            holder=holder,
            acquired_at=_utc_now_iso8601(),
            acquired_monotonic=self._monotonic(),
            _owner=self,
        )
        self._holders[thread_id] = lease
        log_event(LOGGER, "lock_acquired", thread_id=thread_id, holder=holder)
        return lease

    def _release(self, lease: LockLease) -> None:
        # A force-released lease no longer owns the slot.
        if self._holders.get(lease.thread_id) is not lease:
            return
        del self._holders[lease.thread_id]
        log_event(
            LOGGER,
            "lock_released",
            thread_id=lease.thread_id,
            holder=lease.holder,
            held_seconds=round(self._monotonic() - lease.acquired_monotonic, 3),
        )
        self._hand_off(lease.thread_id)

    def _hand_off(self, thread_id: str) -> None:
        waiters = self._waiters.get(thread_id)
        while waiters:
            waiter = waiters.popleft()
            if waiter.future.done():
                continue
            waiter.future.set_result(self._grant(thread_id, waiter.holder))
            break
        if not waiters:
            self._waiters.pop(thread_id, None)

    def _abandon(self, thread_id: str, waiter: _Waiter) -> None:
        waiters = self._waiters.get(thread_id)
        if waiters is not None and waiter in waiters:
            waiters.remove(waiter)
            if not waiters:
                self._waiters.pop(thread_id, None)
        if waiter.future.done() and not waiter.future.cancelled():
            # The lock was handed over while the timeout fired; pass it on.
            waiter.future.result().release()
        else:
            waiter.future.cancel()


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
