"""Routes one inbound message through lock, context, agent and enforcement.

A turn holds the thread's conversation lock across every chained agent call:
the user's message, enforcement follow-ups and the completion check. Messages
that arrive meanwhile are queued and replayed as a single follow-up turn once
the lock is released.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
import logging
from pathlib import Path

from threadhub.agent_adapter import (
    AgentAbortedError,
    AgentEventHandler,
    AgentMessage,
    AgentResponse,
    CancelToken,
    ReasoningAgent,
)
from threadhub.compaction import CompactionAdvice, CompactionEngine
from threadhub.completion_detector import (
    CompletionDetector,
    DetectionResult,
    HeuristicCompletionDetector,
)
from threadhub.context_cache import CachedContextStack, ContextCache, context_stack_key
from threadhub.context_stack import ContextStackBuilder, render_delta
from threadhub.conversation_lock import ConversationLock, LockLease
from threadhub.enforcer import CompletionEnforcer, EnforcementAction
from threadhub.linking import extract_created_refs, extract_title, parse_issue_directive
from threadhub.models import Channel, EventUsage, RefType, Thread, WebhookEvent
from threadhub.observability import log_event
from threadhub.prompts import build_context_preamble, build_enforcement_directive
from threadhub.thread_store import ThreadStore
from threadhub.webhooks import describe_webhook


LOGGER = logging.getLogger("threadhub.router")

STOPPED_MESSAGE = "Stopped by user"
_REF_STATUS_BY_WEBHOOK: dict[str, str] = {
    "issue_close": "closed",
    "pr_merge": "merged",
    "pr_close": "closed",
}


@dataclass(frozen=True)
class RouterConfig:
    lock_timeout_seconds: float = 300.0
    max_enforcement_rounds: int = 3
    completion_check_enabled: bool = True
    compaction_threshold: int = 20
    cwd: Path | None = None


@dataclass(frozen=True)
class TurnResult:
    thread_id: str
    response: str | None = None
    queued: bool = False
    queue_size: int = 0
    stopped: bool = False
    enforcement_actions: tuple[EnforcementAction, ...] = ()
    completion_check: DetectionResult | None = None
    compaction: CompactionAdvice | None = None
    follow_up: TurnResult | None = None


@dataclass(frozen=True)
class WebhookOutcome:
    invalidated: int
    refs_updated: int
    thread_ids: tuple[str, ...]


class ThreadRouter:
    def __init__(
        self,
        store: ThreadStore,
        lock: ConversationLock,
        cache: ContextCache,
        stack_builder: ContextStackBuilder,
        compaction: CompactionEngine,
        enforcer: CompletionEnforcer,
        agent: ReasoningAgent,
        *,
        detector: CompletionDetector | None = None,
        config: RouterConfig = RouterConfig(),
    ) -> None:
        self._store = store
        self._lock = lock
        self._cache = cache
        self._stack_builder = stack_builder
        self._compaction = compaction
        self._enforcer = enforcer
        self._agent = agent
        self._detector = detector if detector is not None else HeuristicCompletionDetector()
        self._config = config
        self._channel_threads: dict[tuple[str, str], str] = {}
        self._running: dict[str, CancelToken] = {}

    async def handle_message(
        self,
        channel: Channel,
        channel_id: str,
        text: str,
        *,
        actor: str = "user",
        thread_id: str | None = None,
        wait: bool = False,
        on_event: AgentEventHandler | None = None,
    ) -> TurnResult:
        """Handle one inbound message.

        With `wait=False` a busy thread queues the message and returns at once;
        with `wait=True` the caller blocks on the lock up to the configured
        timeout and LockTimeoutError propagates.
        """
        thread = self._resolve_thread(channel, channel_id, thread_id)
        directive = parse_issue_directive(text)
        if directive is not None:
            self._start_issue_task(thread.id, repo=directive[0], issue_number=directive[1])
        return await self._handle_for_thread(
            thread.id, channel, actor, text, wait=wait, on_event=on_event
        )

    def stop(self, thread_id: str) -> bool:
        token = self._running.get(thread_id)
        if token is None:
            return False
        token.cancel("stopped by user")
        log_event(LOGGER, "stop_requested", thread_id=thread_id)
        return True

    def is_running(self, thread_id: str) -> bool:
        return thread_id in self._running

    def handle_webhook(self, event: WebhookEvent) -> WebhookOutcome:
        invalidated = self._cache.invalidate_for_webhook(event)
        refs_updated = 0
        thread_ids: tuple[str, ...] = ()
        if event.event_type != "push" and event.number is not None:
            ref_type: RefType = "pr" if event.event_type.startswith("pr_") else "issue"
            status = _REF_STATUS_BY_WEBHOOK.get(event.event_type)
            if status is not None:
                refs_updated = self._store.update_thread_ref_status(
                    repo=event.repo, ref_type=ref_type, number=event.number, status=status
                )
            threads = self._store.find_threads_by_ref(
                repo=event.repo, ref_type=ref_type, number=event.number
            )
            description = describe_webhook(event)
            for thread in threads:
                self._store.add_thread_event(
                    thread.id,
                    channel="webhook",
                    direction="inbound",
                    actor="forge",
                    content=[{"type": "text", "text": description}],
                    message_type="webhook",
                    metadata={
                        "event_type": event.event_type,
                        "repo": event.repo,
                        "number": event.number,
                    },
                )
            thread_ids = tuple(thread.id for thread in threads)
        log_event(
            LOGGER,
            "webhook_applied",
            event_type=event.event_type,
            repo=event.repo,
            number=event.number,
            invalidated=invalidated,
            refs_updated=refs_updated,
            threads=thread_ids,
        )
        return WebhookOutcome(
            invalidated=invalidated, refs_updated=refs_updated, thread_ids=thread_ids
        )

    def _resolve_thread(self, channel: Channel, channel_id: str, thread_id: str | None) -> Thread:
        key = (channel, channel_id)
        if thread_id is not None:
            thread = self._store.require_thread(thread_id)
            if thread.status != "active":
                thread = self._store.update_thread_status(thread.id, "active")
            self._channel_threads[key] = thread.id
            return thread

        conversation_id = f"{channel}:{channel_id}"
        for candidate in (self._channel_threads.get(key), conversation_id):
            if candidate is None:
                continue
            found = self._store.get_thread(candidate)
            if found is not None and found.status == "active":
                self._channel_threads[key] = found.id
                return found

        thread = self._store.create_thread(status="active", conversation_id=conversation_id)
        self._channel_threads[key] = thread.id
        log_event(
            LOGGER,
            "channel_thread_created",
            thread_id=thread.id,
            channel=channel,
            channel_id=channel_id,
        )
        return thread

    def _start_issue_task(self, thread_id: str, *, repo: str, issue_number: int) -> None:
        self._enforcer.start_task(thread_id, repo=repo, issue_number=issue_number)
        self._store.add_thread_ref(thread_id, ref_type="issue", repo=repo, number=issue_number)
        self._store.update_thread_kind(thread_id, "task")
        self._cache.invalidate_key(context_stack_key(thread_id))

    async def _handle_for_thread(
        self,
        thread_id: str,
        channel: Channel,
        actor: str,
        text: str,
        *,
        wait: bool,
        on_event: AgentEventHandler | None,
    ) -> TurnResult:
        lease = await self._acquire(thread_id, holder=f"{channel}:{actor}", wait=wait)
        if lease is None:
            queue_size = self._lock.enqueue_message(thread_id, text, channel)
            log_event(
                LOGGER, "turn_queued", thread_id=thread_id, channel=channel, queue_size=queue_size
            )
            return TurnResult(thread_id=thread_id, queued=True, queue_size=queue_size)

        try:
            result = await self._run_turn(thread_id, channel, actor, text, on_event=on_event)
        finally:
            lease.release()

        queued = self._lock.drain_queue(thread_id)
        if not queued:
            return result
        log_event(LOGGER, "queue_drained", thread_id=thread_id, messages=len(queued))
        follow_up = await self._handle_for_thread(
            thread_id,
            queued[0].channel,
            "user",
            "\n\n".join(message.text for message in queued),
            wait=False,
            on_event=on_event,
        )
        return replace(result, follow_up=follow_up)

    async def _acquire(self, thread_id: str, *, holder: str, wait: bool) -> LockLease | None:
        if wait:
            return await self._lock.acquire(
                thread_id, holder, timeout_seconds=self._config.lock_timeout_seconds
            )
        return self._lock.try_acquire(thread_id, holder)

    async def _run_turn(
        self,
        thread_id: str,
        channel: Channel,
        actor: str,
        text: str,
        *,
        on_event: AgentEventHandler | None,
    ) -> TurnResult:
        token = CancelToken()
        self._running[thread_id] = token
        log_event(LOGGER, "turn_started", thread_id=thread_id, channel=channel, actor=actor)
        try:
            self._store.add_thread_event(
                thread_id,
                channel=channel,
                direction="inbound",
                actor=actor,
                content=[{"type": "text", "text": text}],
            )
            response = await self._agent_turn(
                thread_id, text, channel=channel, cancel=token, on_event=on_event
            )
            actions = await self._enforce(
                thread_id, channel=channel, cancel=token, on_event=on_event
            )
            completion_check = None
            if not actions and self._config.completion_check_enabled:
                completion_check = await self._completion_check(
                    thread_id, response, channel=channel, cancel=token, on_event=on_event
                )
        except AgentAbortedError as exc:
            self._record_stop(thread_id, channel=channel, reason=token.reason or str(exc))
            return TurnResult(thread_id=thread_id, response=STOPPED_MESSAGE, stopped=True)
        finally:
            self._running.pop(thread_id, None)

        advice = self._compaction.should_compact(
            thread_id, threshold=self._config.compaction_threshold
        )
        if advice.should_compact:
            log_event(LOGGER, "compaction_advised", thread_id=thread_id, reason=advice.reason)
        log_event(
            LOGGER,
            "turn_completed",
            thread_id=thread_id,
            enforcement_rounds=len(actions),
            completion_check=completion_check.reason if completion_check is not None else None,
        )
        return TurnResult(
            thread_id=thread_id,
            response=extract_title(response.text)[1],
            enforcement_actions=actions,
            completion_check=completion_check,
            compaction=advice,
        )

    async def _agent_turn(
        self,
        thread_id: str,
        text: str,
        *,
        channel: Channel,
        cancel: CancelToken,
        on_event: AgentEventHandler | None,
    ) -> AgentResponse:
        cancel.raise_if_cancelled()
        thread = self._store.require_thread(thread_id)
        messages, stack = self._build_messages(thread, text)
        response = await self._agent.run(
            messages,
            session_id=thread.session_id,
            cwd=self._config.cwd,
            cancel=cancel,
            on_event=on_event,
        )
        self._persist_response(thread_id, response, channel=channel, stack=stack)
        return response

    def _build_messages(
        self, thread: Thread, text: str
    ) -> tuple[list[AgentMessage], CachedContextStack]:
        if thread.session_id is not None:
            built = self._stack_builder.build_cached(thread.id, session_id=thread.session_id)
            content = text
            if built.changes is not None and built.changes.has_changes:
                delta = render_delta(built.stack, built.changes.changed_layers)
                if delta:
                    content = f"{delta}\n\n{text}"
            return [AgentMessage(role="user", content=content)], built.stack

        built = self._stack_builder.build_cached(thread.id)
        messages = self._compaction.build_thread_context(thread.id)
        if built.stack.formatted:
            preamble = build_context_preamble(built.stack.formatted)
            messages.insert(0, AgentMessage(role="user", content=preamble))
        return messages, built.stack

    def _persist_response(
        self,
        thread_id: str,
        response: AgentResponse,
        *,
        channel: Channel,
        stack: CachedContextStack,
    ) -> None:
        title, stored_text = extract_title(response.text)
        metadata: dict[str, object] = {}
        if response.tool_calls:
            metadata["tool_calls"] = [
                {"id": call.tool_use_id, "name": call.name} for call in response.tool_calls
            ]
        if response.stop_reason is not None:
            metadata["stop_reason"] = response.stop_reason
        self._store.add_thread_event(
            thread_id,
            channel=channel,
            direction="outbound",
            actor="agent",
            content=[{"type": "text", "text": stored_text}],
            usage=EventUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                cost_usd=response.usage.cost_usd,
            ),
            metadata=metadata,
        )

        session_id = response.session_id
        if session_id is not None:
            self._best_effort(
                "session_update_failed",
                thread_id,
                lambda: self._store.set_thread_session(thread_id, session_id),
            )
            self._cache.record_injection(session_id, thread_id, stack.checksums)
        self._best_effort(
            "ref_linking_failed", thread_id, lambda: self._link_refs(thread_id, response)
        )
        if title is not None:
            self._best_effort(
                "title_update_failed",
                thread_id,
                lambda: self._store.update_thread_topic(thread_id, title),
            )

    def _link_refs(self, thread_id: str, response: AgentResponse) -> None:
        linked = 0
        for output in response.tool_results:
            for ref in extract_created_refs(output):
                self._store.add_thread_ref(
                    thread_id,
                    ref_type=ref.ref_type,
                    repo=ref.repo,
                    number=ref.number,
                    url=ref.url,
                    status="open",
                )
                linked += 1
        if linked:
            self._cache.invalidate_key(context_stack_key(thread_id))
            log_event(LOGGER, "refs_linked", thread_id=thread_id, count=linked)

    async def _enforce(
        self,
        thread_id: str,
        *,
        channel: Channel,
        cancel: CancelToken,
        on_event: AgentEventHandler | None,
    ) -> tuple[EnforcementAction, ...]:
        actions: list[EnforcementAction] = []
        for _ in range(self._config.max_enforcement_rounds):
            action = self._enforcer.enforce(thread_id)
            if action is None:
                break
            actions.append(action)
            directive = build_enforcement_directive(
                kind=action.kind,
                repo=action.repo,
                issue_number=action.issue_number,
                branch=action.branch,
            )
            self._record_directive(
                thread_id,
                directive,
                actor="enforcer",
                message_type="enforcement",
                metadata={"kind": action.kind, "task_id": action.task_id},
            )
            await self._agent_turn(
                thread_id, directive, channel=channel, cancel=cancel, on_event=on_event
            )
            if action.kind in ("branch_pushed", "needs_notification"):
                self._enforcer.mark_notified(
                    thread_id, repo=action.repo, issue_number=action.issue_number
                )
                break
        return tuple(actions)

    async def _completion_check(
        self,
        thread_id: str,
        response: AgentResponse,
        *,
        channel: Channel,
        cancel: CancelToken,
        on_event: AgentEventHandler | None,
    ) -> DetectionResult:
        detection = self._detector.detect(response.text, had_tool_calls=bool(response.tool_calls))
        if not detection.unfinished or detection.follow_up_prompt is None:
            return detection
        log_event(
            LOGGER,
            "completion_check_triggered",
            thread_id=thread_id,
            reason=detection.reason,
            signals=detection.signals,
        )
        self._record_directive(
            thread_id,
            detection.follow_up_prompt,
            actor="completion_check",
            message_type="completion_check",
            metadata={"reason": detection.reason},
        )
        await self._agent_turn(
            thread_id,
            detection.follow_up_prompt,
            channel=channel,
            cancel=cancel,
            on_event=on_event,
        )
        return detection

    def _record_directive(
        self,
        thread_id: str,
        text: str,
        *,
        actor: str,
        message_type: str,
        metadata: dict[str, object],
    ) -> None:
        self._store.add_thread_event(
            thread_id,
            channel="system",
            direction="inbound",
            actor=actor,
            content=[{"type": "text", "text": text}],
            message_type=message_type,
            metadata=metadata,
        )

    def _record_stop(self, thread_id: str, *, channel: Channel, reason: str) -> None:
        self._store.add_thread_event(
            thread_id,
            channel="system",
            direction="outbound",
            actor="system",
            content=[{"type": "text", "text": f"Agent stopped: {reason}"}],
            message_type="agent_stopped",
            metadata={"reason": reason},
        )
        self._store.add_thread_event(
            thread_id,
            channel=channel,
            direction="outbound",
            actor="agent",
            content=[{"type": "text", "text": STOPPED_MESSAGE}],
        )
        log_event(LOGGER, "turn_stopped", thread_id=thread_id, reason=reason)

    def _best_effort(self, event: str, thread_id: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                event,
                level=logging.WARNING,
                thread_id=thread_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )


def response_texts(result: TurnResult) -> Sequence[str]:
    """Flatten a turn and its queued follow-ups into their response texts."""
    texts: list[str] = []
    current: TurnResult | None = result
    while current is not None:
        if current.response is not None:
            texts.append(current.response)
        current = current.follow_up
    return texts
