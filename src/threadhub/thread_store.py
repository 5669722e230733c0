from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import cast
import uuid

from threadhub.models import (
    REF_TYPES,
    STATUS_TRANSITIONS,
    THREAD_STATUSES,
    Channel,
    Direction,
    EventUsage,
    RefType,
    TaskContext,
    Thread,
    ThreadEvent,
    ThreadKind,
    ThreadLineage,
    ThreadRef,
    ThreadStatus,
    UsageTotals,
    WorkspaceSnapshot,
)
from threadhub.observability import log_event


LOGGER = logging.getLogger("threadhub.thread_store")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_THREAD_COLUMNS = (
    "id, topic, kind, status, session_id, summary, parent_thread_id, "
    "fork_point_event_id, conversation_id, created_at, updated_at, closed_at, archived_at"
)
_EVENT_COLUMNS = (
    "id, thread_id, channel, direction, actor, content_json, message_type, "
    "usage_json, metadata_json, is_compacted, created_at"
)
_REF_COLUMNS = "id, thread_id, ref_type, repo, number, ref, url, status, created_at"
_TASK_COLUMNS = (
    "id, thread_id, repo, issue_number, branch, has_code_changes, pr_created, "
    "notified, workspace_snapshot_json, started_at, completed_at"
)


class ThreadStoreLookupError(LookupError):
    pass


class ThreadNotFoundError(ThreadStoreLookupError):
    pass


class EventNotFoundError(ThreadStoreLookupError):
    pass


class TaskNotFoundError(ThreadStoreLookupError):
    pass


class InvalidStatusTransitionError(ValueError):
    pass


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ThreadStore:
    def __init__(self, db_path: Path, *, clock: Callable[[], datetime] = _utc_now) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _now(self) -> str:
        return format_timestamp(self._clock())

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS threads (
                    id TEXT PRIMARY KEY,
                    topic TEXT,
                    kind TEXT NOT NULL DEFAULT 'chat',
                    status TEXT NOT NULL DEFAULT 'paused',
                    session_id TEXT,
                    summary TEXT,
                    parent_thread_id TEXT,
                    fork_point_event_id TEXT,
                    conversation_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    closed_at TEXT,
                    archived_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS thread_refs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT NOT NULL,
                    ref_type TEXT NOT NULL,
                    repo TEXT NOT NULL,
                    number INTEGER,
                    ref TEXT,
                    ref_key TEXT NOT NULL,
                    url TEXT,
                    status TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (thread_id, ref_type, repo, ref_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS thread_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    thread_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    content_json TEXT NOT NULL,
                    message_type TEXT NOT NULL DEFAULT 'text',
                    usage_json TEXT,
                    metadata_json TEXT NOT NULL DEFAULT '{}',
                    is_compacted INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_contexts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT NOT NULL,
                    repo TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    branch TEXT,
                    has_code_changes INTEGER NOT NULL DEFAULT 0,
                    pr_created INTEGER NOT NULL DEFAULT 0,
                    notified INTEGER NOT NULL DEFAULT 0,
                    workspace_snapshot_json TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    UNIQUE (thread_id, repo, issue_number)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_thread_events_timeline
                ON thread_events(thread_id, created_at)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_thread_refs_lookup
                ON thread_refs(repo, ref_type, number)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_threads_conversation
                ON threads(conversation_id)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_threads_parent
                ON threads(parent_thread_id)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_task_contexts_open
                ON task_contexts(thread_id, started_at)
                WHERE completed_at IS NULL
                """
            )

    # Threads

    def create_thread(
        self,
        *,
        topic: str | None = None,
        kind: ThreadKind = "chat",
        status: ThreadStatus = "paused",
        session_id: str | None = None,
        parent_thread_id: str | None = None,
        fork_point_event_id: str | None = None,
        conversation_id: str | None = None,
    ) -> Thread:
        _parse_status(status)
        thread_id = str(uuid.uuid4())
        now = self._now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO threads(
                    id, topic, kind, status, session_id, parent_thread_id,
                    fork_point_event_id, conversation_id, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    topic,
                    kind,
                    status,
                    session_id,
                    parent_thread_id,
                    fork_point_event_id,
                    conversation_id,
                    now,
                    now,
                ),
            )
            thread = _require_thread_row(conn, thread_id)
        log_event(LOGGER, "thread_created", thread_id=thread_id, kind=kind, status=status)
        return thread

    def get_thread(self, thread_or_conversation_id: str) -> Thread | None:
        with self._connect() as conn:
            return _fetch_thread(conn, thread_or_conversation_id)

    def require_thread(self, thread_or_conversation_id: str) -> Thread:
        thread = self.get_thread(thread_or_conversation_id)
        if thread is None:
            raise ThreadNotFoundError(f"Thread not found: {thread_or_conversation_id}")
        return thread

    def list_threads(
        self,
        *,
        status: ThreadStatus | None = None,
        parent_thread_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Thread, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(_parse_status(status))
        if parent_thread_id is not None:
            clauses.append("parent_thread_id = ?")
            params.append(parent_thread_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_THREAD_COLUMNS}
                FROM threads
                {where}
                ORDER BY updated_at DESC, id ASC
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return tuple(_parse_thread_row(row) for row in rows)

    def update_thread_status(self, thread_id: str, status: ThreadStatus) -> Thread:
        target = _parse_status(status)
        now = self._now()
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            if current.status == target:
                return current
            if target not in STATUS_TRANSITIONS[current.status]:
                raise InvalidStatusTransitionError(
                    f"Cannot move thread {current.id} from {current.status} to {target}"
                )
            if target == "stopped":
                conn.execute(
                    """
                    UPDATE threads
                    SET status = ?, closed_at = COALESCE(closed_at, ?), updated_at = ?
                    WHERE id = ?
                    """,
                    (target, now, now, current.id),
                )
            elif target == "archived":
                conn.execute(
                    """
                    UPDATE threads
                    SET status = ?, archived_at = COALESCE(archived_at, ?), updated_at = ?
                    WHERE id = ?
                    """,
                    (target, now, now, current.id),
                )
            else:
                conn.execute(
                    """
                    UPDATE threads
                    SET status = ?, closed_at = NULL, archived_at = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (target, now, current.id),
                )
            updated = _require_thread_row(conn, current.id)
        log_event(
            LOGGER,
            "thread_status_changed",
            thread_id=current.id,
            from_status=current.status,
            to_status=target,
        )
        return updated

    def set_thread_session(self, thread_id: str, session_id: str | None) -> None:
        self._update_thread_field(thread_id, "session_id", session_id)

    def update_thread_topic(self, thread_id: str, topic: str | None) -> None:
        self._update_thread_field(thread_id, "topic", topic)

    def update_thread_summary(self, thread_id: str, summary: str | None) -> None:
        self._update_thread_field(thread_id, "summary", summary)

    def update_thread_kind(self, thread_id: str, kind: ThreadKind) -> None:
        self._update_thread_field(thread_id, "kind", kind)

    def _update_thread_field(self, thread_id: str, column: str, value: object) -> None:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            conn.execute(
                f"UPDATE threads SET {column} = ?, updated_at = ? WHERE id = ?",
                (value, self._now(), current.id),
            )

    def delete_thread(self, thread_id: str) -> bool:
        with self._connect() as conn:
            current = _fetch_thread(conn, thread_id)
            if current is None:
                return False
            conn.execute("DELETE FROM thread_events WHERE thread_id = ?", (current.id,))
            conn.execute("DELETE FROM thread_refs WHERE thread_id = ?", (current.id,))
            conn.execute("DELETE FROM task_contexts WHERE thread_id = ?", (current.id,))
            conn.execute("DELETE FROM threads WHERE id = ?", (current.id,))
        log_event(LOGGER, "thread_deleted", thread_id=current.id)
        return True

    # Events

    def add_thread_event(
        self,
        thread_id: str,
        *,
        channel: Channel,
        direction: Direction,
        actor: str,
        content: object,
        message_type: str = "text",
        usage: EventUsage | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> ThreadEvent:
        event_id = str(uuid.uuid4())
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            created_at = self._next_event_timestamp(conn, current.id)
            conn.execute(
                """
                INSERT INTO thread_events(
                    id, thread_id, channel, direction, actor, content_json,
                    message_type, usage_json, metadata_json, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    current.id,
                    channel,
                    direction,
                    actor,
                    json.dumps(content),
                    message_type,
                    _dump_usage(usage),
                    json.dumps(dict(metadata or {}), sort_keys=True),
                    created_at,
                ),
            )
            conn.execute(
                "UPDATE threads SET updated_at = ? WHERE id = ?",
                (max(created_at, self._now()), current.id),
            )
            event = _fetch_event(conn, event_id)
            if event is None:
                raise EventNotFoundError(f"Event not found: {event_id}")
        return event

    def _next_event_timestamp(self, conn: sqlite3.Connection, thread_id: str) -> str:
        candidate = self._clock()
        row = conn.execute(
            "SELECT MAX(created_at) FROM thread_events WHERE thread_id = ?",
            (thread_id,),
        ).fetchone()
        latest = row[0] if row is not None else None
        if isinstance(latest, str):
            floor = parse_timestamp(latest) + timedelta(microseconds=1)
            if candidate < floor:
                candidate = floor
        return format_timestamp(candidate)

    def get_thread_event(self, event_id: str) -> ThreadEvent | None:
        with self._connect() as conn:
            return _fetch_event(conn, event_id)

    def get_thread_events(
        self,
        thread_id: str,
        *,
        channel: Channel | None = None,
        direction: Direction | None = None,
        actor: str | None = None,
        message_type: str | None = None,
        include_compacted: bool = False,
        limit: int | None = 100,
        offset: int = 0,
        newest_first: bool = False,
    ) -> tuple[ThreadEvent, ...]:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            clauses = ["thread_id = ?"]
            params: list[object] = [current.id]
            if channel is not None:
                clauses.append("channel = ?")
                params.append(channel)
            if direction is not None:
                clauses.append("direction = ?")
                params.append(direction)
            if actor is not None:
                clauses.append("actor = ?")
                params.append(actor)
            if message_type is not None:
                clauses.append("message_type = ?")
                params.append(message_type)
            if not include_compacted:
                clauses.append("is_compacted = 0")
            order = "DESC" if newest_first else "ASC"
            params.extend([-1 if limit is None else limit, offset])
            rows = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM thread_events
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at {order}, seq {order}
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return tuple(_parse_event_row(row) for row in rows)

    def count_thread_events(self, thread_id: str) -> int:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            row = conn.execute(
                "SELECT COUNT(*) FROM thread_events WHERE thread_id = ? AND is_compacted = 0",
                (current.id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def mark_events_compacted(self, thread_id: str, *, before: str) -> int:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            cursor = conn.execute(
                """
                UPDATE thread_events
                SET is_compacted = 1
                WHERE thread_id = ?
                  AND created_at < ?
                  AND is_compacted = 0
                  AND message_type != 'summary'
                """,
                (current.id, before),
            )
            count = cursor.rowcount
        log_event(LOGGER, "thread_events_compacted", thread_id=current.id, count=count)
        return count

    def get_thread_usage(self, thread_id: str) -> UsageTotals:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            rows = conn.execute(
                """
                SELECT usage_json FROM thread_events
                WHERE thread_id = ? AND usage_json IS NOT NULL
                """,
                (current.id,),
            ).fetchall()
        input_tokens = 0
        output_tokens = 0
        cost_usd = 0.0
        for (raw,) in rows:
            usage = _load_usage(raw)
            if usage is None:
                continue
            input_tokens += usage.input_tokens
            output_tokens += usage.output_tokens
            cost_usd += usage.cost_usd
        return UsageTotals(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost_usd,
            event_count=len(rows),
        )

    # Refs

    def add_thread_ref(
        self,
        thread_id: str,
        *,
        ref_type: RefType,
        repo: str,
        number: int | None = None,
        ref: str | None = None,
        url: str | None = None,
        status: str | None = None,
    ) -> ThreadRef:
        _parse_ref_type(ref_type)
        ref_key = _ref_key(number, ref)
        now = self._now()
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            conn.execute(
                """
                INSERT INTO thread_refs(
                    thread_id, ref_type, repo, number, ref, ref_key, url, status,
                    created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(thread_id, ref_type, repo, ref_key) DO UPDATE SET
                    url = COALESCE(excluded.url, thread_refs.url),
                    status = COALESCE(excluded.status, thread_refs.status),
                    updated_at = excluded.updated_at
                """,
                (current.id, ref_type, repo, number, ref, ref_key, url, status, now, now),
            )
            conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (now, current.id))
            row = conn.execute(
                f"""
                SELECT {_REF_COLUMNS} FROM thread_refs
                WHERE thread_id = ? AND ref_type = ? AND repo = ? AND ref_key = ?
                """,
                (current.id, ref_type, repo, ref_key),
            ).fetchone()
            if row is None:
                raise ThreadStoreLookupError(
                    f"Reference not found: {current.id} {ref_type} {repo} {ref_key}"
                )
        return _parse_ref_row(row)

    def get_thread_refs(self, thread_id: str) -> tuple[ThreadRef, ...]:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            rows = conn.execute(
                f"""
                SELECT {_REF_COLUMNS} FROM thread_refs
                WHERE thread_id = ?
                ORDER BY id ASC
                """,
                (current.id,),
            ).fetchall()
        return tuple(_parse_ref_row(row) for row in rows)

    def remove_thread_ref(
        self, thread_id: str, *, ref_type: RefType, repo: str, number: int
    ) -> bool:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            cursor = conn.execute(
                """
                DELETE FROM thread_refs
                WHERE thread_id = ? AND ref_type = ? AND repo = ? AND number = ?
                """,
                (current.id, ref_type, repo, number),
            )
            return cursor.rowcount > 0

    def find_thread_by_ref(self, *, repo: str, ref_type: RefType, number: int) -> Thread | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT t.id
                FROM thread_refs AS r
                JOIN threads AS t ON t.id = r.thread_id
                WHERE r.repo = ? AND r.ref_type = ? AND r.number = ?
                ORDER BY t.updated_at DESC
                LIMIT 1
                """,
                (repo, ref_type, number),
            ).fetchone()
            if row is None:
                return None
            return _fetch_thread(conn, str(row[0]))

    def find_threads_by_ref(
        self, *, repo: str, ref_type: RefType, number: int
    ) -> tuple[Thread, ...]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {', '.join(f't.{col.strip()}' for col in _THREAD_COLUMNS.split(','))}
                FROM thread_refs AS r
                JOIN threads AS t ON t.id = r.thread_id
                WHERE r.repo = ? AND r.ref_type = ? AND r.number = ?
                ORDER BY t.updated_at DESC
                """,
                (repo, ref_type, number),
            ).fetchall()
        return tuple(_parse_thread_row(row) for row in rows)

    def update_thread_ref_status(
        self, *, repo: str, ref_type: RefType, number: int, status: str
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE thread_refs
                SET status = ?, updated_at = ?
                WHERE repo = ? AND ref_type = ? AND number = ?
                """,
                (status, self._now(), repo, ref_type, number),
            )
            return cursor.rowcount

    # Forks and lineage

    def fork_thread(
        self,
        source_thread_id: str,
        *,
        at_event_id: str | None = None,
        compact: bool = False,
        topic: str | None = None,
    ) -> Thread:
        new_id = str(uuid.uuid4())
        now = self._now()
        with self._connect() as conn:
            source = _require_thread_row(conn, source_thread_id)
            if at_event_id is not None:
                fork_point = _fetch_event(conn, at_event_id)
                if fork_point is None:
                    raise EventNotFoundError(f"Event not found: {at_event_id}")
                if fork_point.thread_id != source.id:
                    raise EventNotFoundError(
                        f"Event {at_event_id} does not belong to thread {source.id}"
                    )
            else:
                fork_point = _fetch_latest_event(conn, source.id)

            fork_topic = topic or (f"Fork of: {source.topic}" if source.topic else None)
            conn.execute(
                """
                INSERT INTO threads(
                    id, topic, kind, status, parent_thread_id, fork_point_event_id,
                    created_at, updated_at
                )
                VALUES(?, ?, ?, 'paused', ?, ?, ?, ?)
                """,
                (
                    new_id,
                    fork_topic,
                    source.kind,
                    source.id,
                    fork_point.id if fork_point is not None else None,
                    now,
                    now,
                ),
            )
            conn.execute(
                """
                INSERT INTO thread_refs(
                    thread_id, ref_type, repo, number, ref, ref_key, url, status,
                    created_at, updated_at
                )
                SELECT ?, ref_type, repo, number, ref, ref_key, url, status, ?, ?
                FROM thread_refs
                WHERE thread_id = ?
                ORDER BY id ASC
                """,
                (new_id, now, now, source.id),
            )
            copied = 0
            if not compact and fork_point is not None:
                rows = conn.execute(
                    """
                    SELECT channel, direction, actor, content_json, message_type,
                           usage_json, metadata_json, is_compacted, created_at
                    FROM thread_events
                    WHERE thread_id = ? AND created_at <= ?
                    ORDER BY created_at ASC, seq ASC
                    """,
                    (source.id, fork_point.created_at),
                ).fetchall()
                for row in rows:
                    conn.execute(
                        """
                        INSERT INTO thread_events(
                            id, thread_id, channel, direction, actor, content_json,
                            message_type, usage_json, metadata_json, is_compacted,
                            created_at
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (str(uuid.uuid4()), new_id, *row),
                    )
                copied = len(rows)
            forked = _require_thread_row(conn, new_id)
        log_event(
            LOGGER,
            "thread_forked",
            source_thread_id=source.id,
            thread_id=new_id,
            compact=compact,
            copied_event_count=copied,
            fork_point_event_id=fork_point.id if fork_point is not None else None,
        )
        return forked

    def get_thread_lineage(self, thread_id: str) -> ThreadLineage:
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            parent = (
                _fetch_thread(conn, current.parent_thread_id)
                if current.parent_thread_id is not None
                else None
            )
            fork_point = (
                _fetch_event(conn, current.fork_point_event_id)
                if current.fork_point_event_id is not None
                else None
            )
            rows = conn.execute(
                f"""
                SELECT {_THREAD_COLUMNS} FROM threads
                WHERE parent_thread_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (current.id,),
            ).fetchall()
        return ThreadLineage(
            parent=parent,
            fork_point=fork_point,
            children=tuple(_parse_thread_row(row) for row in rows),
        )

    # Task contexts

    def start_task(
        self,
        thread_id: str,
        *,
        repo: str,
        issue_number: int,
        snapshot: WorkspaceSnapshot | None,
    ) -> TaskContext:
        now = self._now()
        with self._connect() as conn:
            current = _require_thread_row(conn, thread_id)
            conn.execute(
                """
                INSERT INTO task_contexts(
                    thread_id, repo, issue_number, workspace_snapshot_json, started_at
                )
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(thread_id, repo, issue_number) DO UPDATE SET
                    branch = NULL,
                    has_code_changes = 0,
                    pr_created = 0,
                    notified = 0,
                    workspace_snapshot_json = excluded.workspace_snapshot_json,
                    started_at = excluded.started_at,
                    completed_at = NULL
                """,
                (current.id, repo, issue_number, _dump_snapshot(snapshot), now),
            )
            row = conn.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task_contexts
                WHERE thread_id = ? AND repo = ? AND issue_number = ?
                """,
                (current.id, repo, issue_number),
            ).fetchone()
            if row is None:
                raise TaskNotFoundError(f"Task not found: {current.id} {repo}#{issue_number}")
        return _parse_task_row(row)

    def get_current_task(self, thread_id: str) -> TaskContext | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task_contexts
                WHERE thread_id = ? AND completed_at IS NULL
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (thread_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_task_row(row)

    def list_tasks(self, thread_id: str) -> tuple[TaskContext, ...]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task_contexts
                WHERE thread_id = ?
                ORDER BY started_at ASC, id ASC
                """,
                (thread_id,),
            ).fetchall()
        return tuple(_parse_task_row(row) for row in rows)

    def mark_task_code_changed(self, task_id: int) -> None:
        self._update_task(task_id, "has_code_changes = 1", ())

    def mark_task_pr_created(self, task_id: int, *, branch: str) -> None:
        self._update_task(task_id, "pr_created = 1, branch = ?", (branch,))

    def _update_task(self, task_id: int, assignments: str, params: tuple[object, ...]) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE task_contexts SET {assignments} WHERE id = ?",
                (*params, task_id),
            )
            if cursor.rowcount == 0:
                raise TaskNotFoundError(f"Task not found: {task_id}")

    def mark_task_notified(self, thread_id: str, *, repo: str, issue_number: int) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE task_contexts
                SET notified = 1, completed_at = ?
                WHERE thread_id = ? AND repo = ? AND issue_number = ?
                    AND completed_at IS NULL AND pr_created = 1
                """,
                (self._now(), thread_id, repo, issue_number),
            )
            if cursor.rowcount == 0:
                raise TaskNotFoundError(
                    "No open task with a recorded PR: "
                    f"thread={thread_id} repo={repo} issue={issue_number}"
                )


def _ref_key(number: int | None, ref: str | None) -> str:
    if number is not None:
        return str(number)
    return ref or ""


def _fetch_thread(conn: sqlite3.Connection, thread_or_conversation_id: str) -> Thread | None:
    row = conn.execute(
        f"""
        SELECT {_THREAD_COLUMNS}
        FROM threads
        WHERE id = ? OR conversation_id = ?
        ORDER BY (id = ?) DESC, (status = 'active') DESC, created_at DESC, rowid DESC
        LIMIT 1
        """,
        (thread_or_conversation_id, thread_or_conversation_id, thread_or_conversation_id),
    ).fetchone()
    if row is None:
        return None
    return _parse_thread_row(row)


def _require_thread_row(conn: sqlite3.Connection, thread_id: str) -> Thread:
    thread = _fetch_thread(conn, thread_id)
    if thread is None:
        raise ThreadNotFoundError(f"Thread not found: {thread_id}")
    return thread


def _fetch_event(conn: sqlite3.Connection, event_id: str) -> ThreadEvent | None:
    row = conn.execute(
        f"SELECT {_EVENT_COLUMNS} FROM thread_events WHERE id = ?",
        (event_id,),
    ).fetchone()
    if row is None:
        return None
    return _parse_event_row(row)


def _fetch_latest_event(conn: sqlite3.Connection, thread_id: str) -> ThreadEvent | None:
    row = conn.execute(
        f"""
        SELECT {_EVENT_COLUMNS} FROM thread_events
        WHERE thread_id = ?
        ORDER BY created_at DESC, seq DESC
        LIMIT 1
        """,
        (thread_id,),
    ).fetchone()
    if row is None:
        return None
    return _parse_event_row(row)


def _parse_status(value: object) -> ThreadStatus:
    if value not in THREAD_STATUSES:
        raise ValueError(f"Invalid thread status: {value!r}")
    return cast(ThreadStatus, value)


def _parse_ref_type(value: object) -> RefType:
    if value not in REF_TYPES:
        raise ValueError(f"Invalid ref type: {value!r}")
    return cast(RefType, value)


def _parse_thread_row(row: tuple[object, ...]) -> Thread:
    (
        thread_id,
        topic,
        kind,
        status,
        session_id,
        summary,
        parent_thread_id,
        fork_point_event_id,
        conversation_id,
        created_at,
        updated_at,
        closed_at,
        archived_at,
    ) = row
    return Thread(
        id=str(thread_id),
        topic=cast(str | None, topic),
        kind=cast(ThreadKind, kind),
        status=_parse_status(status),
        session_id=cast(str | None, session_id),
        summary=cast(str | None, summary),
        parent_thread_id=cast(str | None, parent_thread_id),
        fork_point_event_id=cast(str | None, fork_point_event_id),
        conversation_id=cast(str | None, conversation_id),
        created_at=str(created_at),
        updated_at=str(updated_at),
        closed_at=cast(str | None, closed_at),
        archived_at=cast(str | None, archived_at),
    )


def _parse_event_row(row: tuple[object, ...]) -> ThreadEvent:
    (
        event_id,
        thread_id,
        channel,
        direction,
        actor,
        content_json,
        message_type,
        usage_json,
        metadata_json,
        is_compacted,
        created_at,
    ) = row
    metadata = json.loads(str(metadata_json)) if metadata_json else {}
    if not isinstance(metadata, dict):
        metadata = {}
    return ThreadEvent(
        id=str(event_id),
        thread_id=str(thread_id),
        channel=cast(Channel, channel),
        direction=cast(Direction, direction),
        actor=str(actor),
        content=json.loads(str(content_json)),
        message_type=str(message_type),
        usage=_load_usage(usage_json),
        metadata=cast(dict[str, object], metadata),
        is_compacted=bool(is_compacted),
        created_at=str(created_at),
    )


def _parse_ref_row(row: tuple[object, ...]) -> ThreadRef:
    ref_id, thread_id, ref_type, repo, number, ref, url, status, created_at = row
    return ThreadRef(
        id=int(cast(int, ref_id)),
        thread_id=str(thread_id),
        ref_type=_parse_ref_type(ref_type),
        repo=str(repo),
        number=cast(int | None, number),
        ref=cast(str | None, ref),
        url=cast(str | None, url),
        status=cast(str | None, status),
        created_at=str(created_at),
    )


def _parse_task_row(row: tuple[object, ...]) -> TaskContext:
    (
        task_id,
        thread_id,
        repo,
        issue_number,
        branch,
        has_code_changes,
        pr_created,
        notified,
        snapshot_json,
        started_at,
        completed_at,
    ) = row
    return TaskContext(
        id=int(cast(int, task_id)),
        thread_id=str(thread_id),
        repo=str(repo),
        issue_number=int(cast(int, issue_number)),
        branch=cast(str | None, branch),
        has_code_changes=bool(has_code_changes),
        pr_created=bool(pr_created),
        notified=bool(notified),
        workspace_snapshot=_load_snapshot(snapshot_json),
        started_at=str(started_at),
        completed_at=cast(str | None, completed_at),
    )


def _dump_usage(usage: EventUsage | None) -> str | None:
    if usage is None:
        return None
    return json.dumps(
        {
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens,
            "cost_usd": usage.cost_usd,
        },
        sort_keys=True,
    )


def _load_usage(raw: object) -> EventUsage | None:
    if not isinstance(raw, str) or not raw:
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        return None
    return EventUsage(
        input_tokens=int(payload.get("input_tokens") or 0),
        output_tokens=int(payload.get("output_tokens") or 0),
        cost_usd=float(payload.get("cost_usd") or 0.0),
    )


def _dump_snapshot(snapshot: WorkspaceSnapshot | None) -> str | None:
    if snapshot is None:
        return None
    return json.dumps(
        {
            "head_hash": snapshot.head_hash,
            "dirty_count": snapshot.dirty_count,
            "branch": snapshot.branch,
        },
        sort_keys=True,
    )


def _load_snapshot(raw: object) -> WorkspaceSnapshot | None:
    if not isinstance(raw, str) or not raw:
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        return None
    head_hash = payload.get("head_hash")
    branch = payload.get("branch")
    return WorkspaceSnapshot(
        head_hash=head_hash if isinstance(head_hash, str) else None,
        dirty_count=int(payload.get("dirty_count") or 0),
        branch=branch if isinstance(branch, str) else None,
    )
