from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import json
import logging
from typing import Protocol

from threadhub.agent_adapter import AgentMessage, AgentRole
from threadhub.models import Thread, ThreadEvent
from threadhub.observability import log_event
from threadhub.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_transcript
from threadhub.thread_store import ThreadStore


LOGGER = logging.getLogger("threadhub.compaction")

DEFAULT_KEEP_RECENT = 10
DEFAULT_COMPACT_THRESHOLD = 20
SUMMARY_MESSAGE_TYPE = "summary"
_EVENT_TEXT_CHARS = 600
_RAW_CONTENT_CHARS = 500


class NothingToCompactError(ValueError):
    pass


class Summarizer(Protocol):
    async def summarize(self, system_prompt: str, transcript: str) -> str: ...


@dataclass(frozen=True)
class CompactionResult:
    thread_id: str
    compacted_count: int
    summary_event_id: str
    summary: str
    used_fallback: bool


@dataclass(frozen=True)
class ForkCompactionResult:
    source_thread_id: str
    thread: Thread
    summary_event_id: str
    summary: str
    source_event_count: int
    used_fallback: bool


@dataclass(frozen=True)
class CompactionAdvice:
    should_compact: bool
    event_count: int
    reason: str


def extract_event_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(content)[:_RAW_CONTENT_CHARS]


def format_event_line(event: ThreadEvent) -> str:
    text = extract_event_text(event.content)
    if len(text) > _EVENT_TEXT_CHARS:
        text = text[:_EVENT_TEXT_CHARS] + "..."
    return f"[{event.created_at[:16]}] [{event.channel}/{event.direction}] {event.actor}: {text}"


def fallback_summary(events: Sequence[ThreadEvent]) -> str:
    if not events:
        return "Empty thread."
    channels = list(dict.fromkeys(event.channel for event in events))
    actors = list(dict.fromkeys(event.actor for event in events))
    first = events[0].created_at[:10]
    last = events[-1].created_at[:10]
    return (
        f"Thread with {len(events)} events from {first} to {last}. "
        f"Channels: {', '.join(channels)}. Participants: {', '.join(actors)}."
    )


class CompactionEngine:
    def __init__(self, store: ThreadStore, summarizer: Summarizer | None = None) -> None:
        self._store = store
        self._summarizer = summarizer

    async def compact_thread(
        self, thread_id: str, *, keep_recent: int = DEFAULT_KEEP_RECENT
    ) -> CompactionResult:
        if keep_recent < 1:
            raise ValueError("keep_recent must be >= 1")
        thread = self._store.require_thread(thread_id)
        events = self._store.get_thread_events(thread.id, limit=None)
        candidates = [event for event in events if event.message_type != SUMMARY_MESSAGE_TYPE]
        if len(candidates) <= keep_recent:
            raise NothingToCompactError(
                f"Nothing to compact: thread {thread.id} has {len(candidates)} events "
                f"and keep_recent is {keep_recent}"
            )

        older = candidates[:-keep_recent]
        cutoff = candidates[-keep_recent].created_at
        summary, used_fallback = await self._summarize(older, previous_summary=thread.summary)

        compacted = self._store.mark_events_compacted(thread.id, before=cutoff)
        summary_event = self._store.add_thread_event(
            thread.id,
            channel="system",
            direction="outbound",
            actor="system",
            content=[{"type": "text", "text": summary}],
            message_type=SUMMARY_MESSAGE_TYPE,
            metadata={
                "compact_type": "in_place",
                "compacted_count": compacted,
                "compacted_before": cutoff,
            },
        )
        self._store.update_thread_summary(thread.id, summary)
        log_event(
            LOGGER,
            "thread_compacted",
            thread_id=thread.id,
            compacted_count=compacted,
            kept=keep_recent,
            used_fallback=used_fallback,
        )
        return CompactionResult(
            thread_id=thread.id,
            compacted_count=compacted,
            summary_event_id=summary_event.id,
            summary=summary,
            used_fallback=used_fallback,
        )

    async def fork_compact_thread(
        self, thread_id: str, *, topic: str | None = None
    ) -> ForkCompactionResult:
        source = self._store.require_thread(thread_id)
        events = self._store.get_thread_events(source.id, include_compacted=True, limit=None)
        if not events:
            raise NothingToCompactError(f"Nothing to compact: thread {source.id} has no events")

        summary, used_fallback = await self._summarize(events, previous_summary=None)
        forked = self._store.fork_thread(
            source.id,
            compact=True,
            topic=topic or f"Fork of: {source.label}",
        )
        summary_event = self._store.add_thread_event(
            forked.id,
            channel="system",
            direction="outbound",
            actor="system",
            content=[{"type": "text", "text": summary}],
            message_type=SUMMARY_MESSAGE_TYPE,
            metadata={
                "compact_type": "fork",
                "source_thread_id": source.id,
                "source_event_count": len(events),
                "fork_point_event_id": forked.fork_point_event_id,
            },
        )
        self._store.update_thread_summary(forked.id, summary)
        log_event(
            LOGGER,
            "thread_forked",
            source_thread_id=source.id,
            thread_id=forked.id,
            source_event_count=len(events),
            used_fallback=used_fallback,
        )
        return ForkCompactionResult(
            source_thread_id=source.id,
            thread=self._store.require_thread(forked.id),
            summary_event_id=summary_event.id,
            summary=summary,
            source_event_count=len(events),
            used_fallback=used_fallback,
        )

    def build_thread_context(self, thread_id: str) -> list[AgentMessage]:
        # Summaries cover events older than anything still active and go first.
        summaries: list[AgentMessage] = []
        messages: list[AgentMessage] = []
        for event in self._store.get_thread_events(thread_id, limit=None):
            text = extract_event_text(event.content)
            if event.message_type == SUMMARY_MESSAGE_TYPE:
                condensed = event.metadata.get("compacted_count") or event.metadata.get(
                    "source_event_count"
                )
                scope = f"{condensed} earlier events" if condensed else "earlier events"
                summaries.append(
                    AgentMessage(
                        role="user", content=f"[THREAD SUMMARY: {scope} condensed]\n{text}"
                    )
                )
                continue
            if not text.strip():
                continue
            role: AgentRole = "user" if event.direction == "inbound" else "assistant"
            messages.append(AgentMessage(role=role, content=text))
        return summaries + messages

    def should_compact(
        self, thread_id: str, *, threshold: int = DEFAULT_COMPACT_THRESHOLD
    ) -> CompactionAdvice:
        count = self._store.count_thread_events(thread_id)
        if count > threshold:
            return CompactionAdvice(
                should_compact=True,
                event_count=count,
                reason=f"{count} active events exceeds threshold of {threshold}",
            )
        return CompactionAdvice(
            should_compact=False,
            event_count=count,
            reason=f"{count} active events is within threshold of {threshold}",
        )

    async def _summarize(
        self, events: Sequence[ThreadEvent], *, previous_summary: str | None
    ) -> tuple[str, bool]:
        if self._summarizer is None:
            return fallback_summary(events), True
        transcript = build_summary_transcript(
            previous_summary=previous_summary,
            event_lines=[format_event_line(event) for event in events],
        )
        try:
            summary = (await self._summarizer.summarize(SUMMARY_SYSTEM_PROMPT, transcript)).strip()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "summary_generation_failed",
                level=logging.WARNING,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return fallback_summary(events), True
        if not summary:
            return fallback_summary(events), True
        return summary, False
