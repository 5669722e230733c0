from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import hashlib
import json
import logging
import math
import time

from threadhub.models import WebhookEvent
from threadhub.observability import log_event


LOGGER = logging.getLogger("threadhub.context_cache")

KNOWLEDGE_TTL_SECONDS = 5 * 60
TICKET_TTL_SECONDS = 10 * 60
LINEAGE_TTL_SECONDS = 30 * 60
CONTEXT_STACK_TTL_SECONDS = 5 * 60
SESSION_TTL_SECONDS = 60 * 60

CHARS_PER_TOKEN = 4
LAYER_SEPARATOR = "\n\n---\n\n"
CONTEXT_STACK_PREFIX = "context_stack:"
DEFAULT_KNOWLEDGE_FILE = "CLAUDE.md"


def compute_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def knowledge_key(repo: str) -> str:
    return f"claude_md:{repo}"


def issue_key(repo: str, number: int) -> str:
    return f"issue:{repo}#{number}"


def context_stack_key(thread_id: str) -> str:
    return f"{CONTEXT_STACK_PREFIX}{thread_id}"


@dataclass(frozen=True)
class CacheEntry:
    value: str
    checksum: str
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class SessionInjection:
    session_id: str
    thread_id: str
    checksums: dict[str, str]
    injected_at: float


@dataclass(frozen=True)
class ChangeSet:
    has_changes: bool
    changed_layers: tuple[str, ...]
    previous: dict[str, str] | None
    current: dict[str, str]


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    hit_rate: float
    active_sessions: int


@dataclass(frozen=True)
class CachedLayer:
    name: str
    content: str
    checksum: str
    estimated_tokens: int


@dataclass(frozen=True)
class CachedContextStack:
    thread_id: str
    layers: tuple[CachedLayer, ...]
    total_tokens: int
    formatted: str

    @property
    def checksums(self) -> dict[str, str]:
        return {layer.name: layer.checksum for layer in self.layers}


def make_layer(name: str, content: str) -> CachedLayer:
    return CachedLayer(
        name=name,
        content=content,
        checksum=compute_checksum(content),
        estimated_tokens=estimate_tokens(content),
    )


def assemble_stack(thread_id: str, layers: tuple[CachedLayer, ...]) -> CachedContextStack:
    return CachedContextStack(
        thread_id=thread_id,
        layers=layers,
        total_tokens=sum(layer.estimated_tokens for layer in layers),
        formatted=LAYER_SEPARATOR.join(layer.content for layer in layers),
    )


class ContextCache:
    """In-memory checksum/TTL cache with per-session injection tracking.

    Not shared across processes. Staleness is bounded by each entry's TTL and
    shortened by webhook invalidation.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        session_ttl_seconds: float = SESSION_TTL_SECONDS,
        knowledge_file: str = DEFAULT_KNOWLEDGE_FILE,
    ) -> None:
        self._clock = clock
        self._session_ttl_seconds = session_ttl_seconds
        self._knowledge_file = knowledge_file
        self._entries: dict[str, CacheEntry] = {}
        self._sessions: dict[str, SessionInjection] = {}
        self._hits = 0
        self._misses = 0

    @property
    def knowledge_file(self) -> str:
        return self._knowledge_file

    def get(self, key: str) -> str | None:
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def get_with_checksum(self, key: str) -> tuple[str, str] | None:
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry.value, entry.checksum

    def set(self, key: str, value: str, *, ttl_seconds: float) -> str:
        now = self._clock()
        checksum = compute_checksum(value)
        self._entries[key] = CacheEntry(
            value=value,
            checksum=checksum,
            created_at=now,
            expires_at=now + ttl_seconds,
        )
        return checksum

    def invalidate_key(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_by_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            log_event(LOGGER, "cache_invalidated", prefix=prefix, count=len(doomed))
        return len(doomed)

    def clear_all(self) -> None:
        self._entries.clear()
        self._sessions.clear()
        self._hits = 0
        self._misses = 0

    def clear_data(self) -> None:
        self._entries.clear()

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry

    # Session injection tracking

    def record_injection(
        self, session_id: str, thread_id: str, checksums: Mapping[str, str]
    ) -> None:
        self._sessions[session_id] = SessionInjection(
            session_id=session_id,
            thread_id=thread_id,
            checksums=dict(checksums),
            injected_at=self._clock(),
        )

    def get_last_injection(self, session_id: str) -> SessionInjection | None:
        injection = self._sessions.get(session_id)
        if injection is None:
            return None
        if self._clock() - injection.injected_at > self._session_ttl_seconds:
            del self._sessions[session_id]
            return None
        return injection

    def remove_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def detect_changes(self, session_id: str, current: Mapping[str, str]) -> ChangeSet:
        current_map = dict(current)
        last = self.get_last_injection(session_id)
        if last is None:
            return ChangeSet(
                has_changes=bool(current_map),
                changed_layers=tuple(current_map),
                previous=None,
                current=current_map,
            )
        changed = [
            name
            for name, checksum in current_map.items()
            if last.checksums.get(name) != checksum
        ]
        changed.extend(name for name in last.checksums if name not in current_map)
        return ChangeSet(
            has_changes=bool(changed),
            changed_layers=tuple(changed),
            previous=dict(last.checksums),
            current=current_map,
        )

    def gc(self) -> tuple[int, int]:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        stale = [
            session_id
            for session_id, injection in self._sessions.items()
            if now - injection.injected_at > self._session_ttl_seconds
        ]
        for session_id in stale:
            del self._sessions[session_id]
        if expired or stale:
            log_event(
                LOGGER, "cache_gc", expired_entries=len(expired), stale_sessions=len(stale)
            )
        return len(expired), len(stale)

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / lookups if lookups else 0.0,
            active_sessions=len(self._sessions),
        )

    # Assembled stacks

    def cache_context_stack(
        self, stack: CachedContextStack, *, ttl_seconds: float = CONTEXT_STACK_TTL_SECONDS
    ) -> str:
        return self.set(
            context_stack_key(stack.thread_id), _dump_stack(stack), ttl_seconds=ttl_seconds
        )

    def get_cached_context_stack(self, thread_id: str) -> CachedContextStack | None:
        raw = self.get(context_stack_key(thread_id))
        if raw is None:
            return None
        return _load_stack(raw)

    def fork_context_stack(
        self,
        parent_thread_id: str,
        child_thread_id: str,
        overrides: Mapping[str, str | None],
        *,
        ttl_seconds: float = CONTEXT_STACK_TTL_SECONDS,
    ) -> CachedContextStack | None:
        parent = self.get_cached_context_stack(parent_thread_id)
        if parent is None:
            return None
        layers: list[CachedLayer] = []
        for layer in parent.layers:
            if layer.name not in overrides:
                layers.append(layer)
                continue
            replacement = overrides[layer.name]
            if replacement is not None:
                layers.append(make_layer(layer.name, replacement))
        existing = {layer.name for layer in parent.layers}
        for name, content in overrides.items():
            if name not in existing and content is not None:
                layers.append(make_layer(name, content))
        child = assemble_stack(child_thread_id, tuple(layers))
        self.cache_context_stack(child, ttl_seconds=ttl_seconds)
        log_event(
            LOGGER,
            "context_stack_forked",
            parent_thread_id=parent_thread_id,
            thread_id=child_thread_id,
            overridden_layers=tuple(sorted(overrides)),
            total_tokens=child.total_tokens,
        )
        return child

    # Webhook-driven invalidation

    def invalidate_for_webhook(self, event: WebhookEvent) -> int:
        removed = 0
        if event.event_type in ("issue_update", "issue_close", "pr_merge", "pr_close"):
            if event.number is not None:
                removed += int(self.invalidate_key(issue_key(event.repo, event.number)))
            removed += self.invalidate_by_prefix(CONTEXT_STACK_PREFIX)
        elif event.event_type == "push":
            if any(self._is_knowledge_file(path) for path in event.files):
                removed += int(self.invalidate_key(knowledge_key(event.repo)))
                removed += self.invalidate_by_prefix(CONTEXT_STACK_PREFIX)
        log_event(
            LOGGER,
            "cache_webhook_invalidation",
            event_type=event.event_type,
            repo=event.repo,
            number=event.number,
            removed=removed,
        )
        return removed

    def _is_knowledge_file(self, path: str) -> bool:
        return path == self._knowledge_file or path.endswith(f"/{self._knowledge_file}")


def _dump_stack(stack: CachedContextStack) -> str:
    return json.dumps(
        {
            "thread_id": stack.thread_id,
            "total_tokens": stack.total_tokens,
            "formatted": stack.formatted,
            "layers": [
                {
                    "name": layer.name,
                    "content": layer.content,
                    "checksum": layer.checksum,
                    "estimated_tokens": layer.estimated_tokens,
                }
                for layer in stack.layers
            ],
        }
    )


def _load_stack(raw: str) -> CachedContextStack:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Cached context stack must be a JSON object")
    layers_obj = payload.get("layers")
    layers: list[CachedLayer] = []
    if isinstance(layers_obj, list):
        for item in layers_obj:
            if not isinstance(item, dict):
                continue
            layers.append(
                CachedLayer(
                    name=str(item["name"]),
                    content=str(item["content"]),
                    checksum=str(item["checksum"]),
                    estimated_tokens=int(item["estimated_tokens"]),
                )
            )
    return CachedContextStack(
        thread_id=str(payload["thread_id"]),
        layers=tuple(layers),
        total_tokens=int(payload["total_tokens"]),
        formatted=str(payload["formatted"]),
    )
