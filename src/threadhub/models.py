from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


ThreadStatus = Literal["active", "paused", "stopped", "archived"]
ThreadKind = Literal["chat", "task"]
RefType = Literal["issue", "pr", "commit", "branch"]
Channel = Literal["web", "bot", "forge_comment", "forge_review", "webhook", "system"]
Direction = Literal["inbound", "outbound"]
WebhookEventType = Literal["issue_update", "issue_close", "pr_merge", "pr_close", "push"]

THREAD_STATUSES: tuple[ThreadStatus, ...] = ("active", "paused", "stopped", "archived")
REF_TYPES: tuple[RefType, ...] = ("issue", "pr", "commit", "branch")
CHANNELS: tuple[Channel, ...] = (
    "web",
    "bot",
    "forge_comment",
    "forge_review",
    "webhook",
    "system",
)

# Reopening (active/paused) is always allowed; a stopped thread may be archived,
# but an archived thread has to be reopened before it can be stopped again.
STATUS_TRANSITIONS: dict[ThreadStatus, frozenset[ThreadStatus]] = {
    "active": frozenset({"paused", "stopped", "archived"}),
    "paused": frozenset({"active", "stopped", "archived"}),
    "stopped": frozenset({"active", "paused", "archived"}),
    "archived": frozenset({"active", "paused"}),
}


@dataclass(frozen=True)
class Thread:
    id: str
    topic: str | None
    kind: ThreadKind
    status: ThreadStatus
    session_id: str | None
    summary: str | None
    parent_thread_id: str | None
    fork_point_event_id: str | None
    conversation_id: str | None
    created_at: str
    updated_at: str
    closed_at: str | None = None
    archived_at: str | None = None

    @property
    def label(self) -> str:
        return self.topic or "Untitled thread"


@dataclass(frozen=True)
class ThreadRef:
    id: int
    thread_id: str
    ref_type: RefType
    repo: str
    number: int | None
    ref: str | None
    url: str | None
    status: str | None
    created_at: str

    @property
    def display(self) -> str:
        target = f"#{self.number}" if self.number is not None else f"@{self.ref or '?'}"
        status = f" ({self.status})" if self.status else ""
        return f"{self.ref_type} {self.repo}{target}{status}"


@dataclass(frozen=True)
class EventUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


@dataclass(frozen=True)
class ThreadEvent:
    id: str
    thread_id: str
    channel: Channel
    direction: Direction
    actor: str
    content: object
    message_type: str
    usage: EventUsage | None
    metadata: dict[str, object]
    is_compacted: bool
    created_at: str


@dataclass(frozen=True)
class ThreadLineage:
    parent: Thread | None
    fork_point: ThreadEvent | None
    children: tuple[Thread, ...]


@dataclass(frozen=True)
class UsageTotals:
    input_tokens: int
    output_tokens: int
    cost_usd: float
    event_count: int


@dataclass(frozen=True)
class WorkspaceSnapshot:
    head_hash: str | None
    dirty_count: int
    branch: str | None


@dataclass(frozen=True)
class TaskContext:
    id: int
    thread_id: str
    repo: str
    issue_number: int
    branch: str | None
    has_code_changes: bool
    pr_created: bool
    notified: bool
    workspace_snapshot: WorkspaceSnapshot | None
    started_at: str
    completed_at: str | None


@dataclass(frozen=True)
class ForgeIssue:
    repo: str
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    state: str = "open"


@dataclass(frozen=True)
class WebhookEvent:
    event_type: WebhookEventType
    repo: str
    number: int | None = None
    files: tuple[str, ...] = field(default_factory=tuple)
    action: str | None = None
    title: str | None = None
