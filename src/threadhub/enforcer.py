from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

from threadhub.models import TaskContext, WorkspaceSnapshot
from threadhub.observability import log_event
from threadhub.prompts import EnforcementKind
from threadhub.thread_store import ThreadStore


LOGGER = logging.getLogger("threadhub.enforcer")


class WorkspaceProbe(Protocol):
    def capture_snapshot(self, repo: str) -> WorkspaceSnapshot | None: ...

    def pushed_branch(self, repo: str) -> str | None: ...


@dataclass(frozen=True)
class EnforcementAction:
    kind: EnforcementKind
    task_id: int
    thread_id: str
    repo: str
    issue_number: int
    branch: str | None = None


def has_workspace_changed(
    before: WorkspaceSnapshot | None, after: WorkspaceSnapshot | None
) -> bool:
    if before is None or after is None:
        return False
    if before.head_hash and after.head_hash and before.head_hash != after.head_hash:
        return True
    return after.dirty_count > before.dirty_count


class CompletionEnforcer:
    """Drives a tracked task through started, code_changed, pr_created, notified.

    The enforcer only detects missing steps; the router turns each returned
    action into a follow-up agent turn.
    """

    def __init__(self, store: ThreadStore, probe: WorkspaceProbe) -> None:
        self._store = store
        self._probe = probe

    def start_task(self, thread_id: str, *, repo: str, issue_number: int) -> TaskContext:
        snapshot = self._probe.capture_snapshot(repo)
        task = self._store.start_task(
            thread_id, repo=repo, issue_number=issue_number, snapshot=snapshot
        )
        log_event(
            LOGGER,
            "task_started",
            thread_id=thread_id,
            repo=repo,
            issue_number=issue_number,
            head_hash=snapshot.head_hash if snapshot is not None else None,
            dirty_count=snapshot.dirty_count if snapshot is not None else None,
        )
        return task

    def get_current_task(self, thread_id: str) -> TaskContext | None:
        return self._store.get_current_task(thread_id)

    def enforce(self, thread_id: str) -> EnforcementAction | None:
        task = self._store.get_current_task(thread_id)
        if task is None:
            return None

        if not task.has_code_changes:
            current = self._probe.capture_snapshot(task.repo)
            if not has_workspace_changed(task.workspace_snapshot, current):
                return None
            self._store.mark_task_code_changed(task.id)
            return self._action("code_changed", task)

        if not task.pr_created:
            branch = self._probe.pushed_branch(task.repo)
            if branch is None:
                return None
            self._store.mark_task_pr_created(task.id, branch=branch)
            return self._action("branch_pushed", task, branch=branch)

        if not task.notified:
            return self._action("needs_notification", task, branch=task.branch)
        return None

    def mark_notified(self, thread_id: str, *, repo: str, issue_number: int) -> None:
        self._store.mark_task_notified(thread_id, repo=repo, issue_number=issue_number)
        log_event(
            LOGGER, "task_completed", thread_id=thread_id, repo=repo, issue_number=issue_number
        )

    def _action(
        self, kind: EnforcementKind, task: TaskContext, *, branch: str | None = None
    ) -> EnforcementAction:
        log_event(
            LOGGER,
            "enforcement_triggered",
            kind=kind,
            thread_id=task.thread_id,
            repo=task.repo,
            issue_number=task.issue_number,
        )
        return EnforcementAction(
            kind=kind,
            task_id=task.id,
            thread_id=task.thread_id,
            repo=task.repo,
            issue_number=task.issue_number,
            branch=branch,
        )
