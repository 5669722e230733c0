"""Layered, token-bounded background context for agent turns.

The stack is built from up to four layers, in priority order:

* ``repo_context``: the knowledge file of every repository the thread links to
* ``ticket_chain``: linked issues, each preceded by its parent issue when the
  body names one
* ``thread_lineage``: the parent thread's summary and refs, for forked threads
* ``execution_state``: the latest execution plan, for ``task`` threads

Each layer receives ``min(layer_budget, remaining)`` tokens. A layer whose
upstream fetch fails is omitted and the build continues.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import json
import logging
import re

from threadhub.config import CacheConfig, ContextConfig
from threadhub.context_cache import (
    CHARS_PER_TOKEN,
    CachedContextStack,
    CachedLayer,
    ChangeSet,
    ContextCache,
    assemble_stack,
    issue_key,
    knowledge_key,
    make_layer,
)
from threadhub.forge_gateway import ForgeClient, ForgeRequestError
from threadhub.models import ForgeIssue, Thread, ThreadRef
from threadhub.observability import log_event
from threadhub.thread_store import ThreadStore


LOGGER = logging.getLogger("threadhub.context_stack")

LAYER_REPO = "repo_context"
LAYER_TICKET = "ticket_chain"
LAYER_LINEAGE = "thread_lineage"
LAYER_EXECUTION = "execution_state"
LAYER_NAMES: tuple[str, ...] = (LAYER_REPO, LAYER_TICKET, LAYER_LINEAGE, LAYER_EXECUTION)

TRUNCATION_MARKER = "\n[truncated]"
_MIN_TRUNCATED_SECTION_CHARS = 200
_ISSUE_BODY_CHARS = 1200
_PARENT_BODY_CHARS = 500
_PARENT_ISSUE_PATTERN = re.compile(
    r"(?:part of|parent(?:\s+issue)?)\s*:?[^#\n]*#(\d+)", re.IGNORECASE
)
_LABEL_ICONS: tuple[tuple[str, str], ...] = (
    ("status/done", "✅"),
    ("status/in-progress", "🔄"),
    ("status/review", "👀"),
    ("status/ready", "📋"),
    ("status/blocked", "🚫"),
)
_DEFAULT_LABEL_ICON = "⬜"
_STEP_ICONS = {"done": "✅", "in_progress": "🔄", "pending": "⬚", "failed": "❌"}


@dataclass(frozen=True)
class CachedBuildResult:
    stack: CachedContextStack
    from_cache: bool
    changes: ChangeSet | None


@dataclass(frozen=True)
class ExecutionStep:
    id: str
    description: str
    status: str


@dataclass(frozen=True)
class ExecutionPlan:
    task: str
    steps: tuple[ExecutionStep, ...]
    workspace: str | None = None
    branch: str | None = None


def truncate_to_budget(content: str, max_tokens: int) -> str:
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(content) <= max_chars:
        return content
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return content[:keep].rstrip() + TRUNCATION_MARKER


def parse_parent_issue_number(body: str) -> int | None:
    match = _PARENT_ISSUE_PATTERN.search(body)
    if match is None:
        return None
    return int(match.group(1))


def status_icon(labels: Sequence[str]) -> str:
    normalized = {label.strip().lower() for label in labels}
    for label, icon in _LABEL_ICONS:
        if label in normalized:
            return icon
    return _DEFAULT_LABEL_ICON


def parse_execution_plan(content: object) -> ExecutionPlan | None:
    payload = content
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return None
    if not isinstance(payload, dict):
        return None
    task = payload.get("task")
    raw_steps = payload.get("steps")
    if not isinstance(task, str) or not isinstance(raw_steps, list):
        return None
    steps: list[ExecutionStep] = []
    for index, item in enumerate(raw_steps, start=1):
        if not isinstance(item, dict):
            continue
        steps.append(
            ExecutionStep(
                id=str(item.get("id", index)),
                description=str(item.get("description", "")),
                status=str(item.get("status", "pending")),
            )
        )
    workspace = payload.get("workspace")
    branch = payload.get("branch")
    return ExecutionPlan(
        task=task,
        steps=tuple(steps),
        workspace=workspace if isinstance(workspace, str) else None,
        branch=branch if isinstance(branch, str) else None,
    )


def render_delta(stack: CachedContextStack, changed_layers: Sequence[str]) -> str:
    """Format only the changed layers, for injection into a resumed session."""
    changed = set(changed_layers)
    parts = [layer.content for layer in stack.layers if layer.name in changed]
    removed = sorted(changed - {layer.name for layer in stack.layers})
    if removed:
        parts.append("Layers no longer present: " + ", ".join(removed))
    if not parts:
        return ""
    return "## Context Update\n\n" + "\n\n---\n\n".join(parts)


class ContextStackBuilder:
    def __init__(
        self,
        store: ThreadStore,
        forge: ForgeClient,
        cache: ContextCache,
        *,
        config: ContextConfig = ContextConfig(),
        cache_config: CacheConfig = CacheConfig(),
    ) -> None:
        self._store = store
        self._forge = forge
        self._cache = cache
        self._config = config
        self._cache_config = cache_config

    def build(
        self,
        thread_id: str,
        *,
        skip: frozenset[str] = frozenset(),
        max_tokens: int | None = None,
    ) -> CachedContextStack:
        thread = self._store.require_thread(thread_id)
        refs = self._store.get_thread_refs(thread.id)
        remaining = self._config.max_tokens if max_tokens is None else max_tokens

        plan: tuple[tuple[str, int, Callable[[int], str | None]], ...] = (
            (LAYER_REPO, self._config.repo_tokens, lambda budget: self._repo_layer(refs, budget)),
            (
                LAYER_TICKET,
                self._config.ticket_tokens,
                lambda budget: self._ticket_layer(refs, budget),
            ),
            (
                LAYER_LINEAGE,
                self._config.lineage_tokens,
                lambda budget: self._lineage_layer(thread, budget),
            ),
            (
                LAYER_EXECUTION,
                self._config.execution_tokens,
                lambda budget: self._execution_layer(thread, budget),
            ),
        )

        layers: list[CachedLayer] = []
        for name, default_budget, builder in plan:
            if name in skip:
                continue
            if remaining <= 0:
                break
            budget = min(default_budget, remaining)
            try:
                content = builder(budget)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "context_layer_degraded",
                    level=logging.WARNING,
                    thread_id=thread.id,
                    layer=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if not content:
                continue
            layer = make_layer(name, truncate_to_budget(content, budget))
            layers.append(layer)
            remaining -= layer.estimated_tokens

        stack = assemble_stack(thread.id, tuple(layers))
        log_event(
            LOGGER,
            "context_stack_built",
            thread_id=thread.id,
            layers=tuple(layer.name for layer in layers),
            total_tokens=stack.total_tokens,
        )
        return stack

    def build_cached(
        self,
        thread_id: str,
        *,
        session_id: str | None = None,
        force_refresh: bool = False,
    ) -> CachedBuildResult:
        if not force_refresh:
            cached = self._cache.get_cached_context_stack(thread_id)
            if cached is not None:
                changes = (
                    self._cache.detect_changes(session_id, cached.checksums)
                    if session_id is not None
                    else None
                )
                return CachedBuildResult(stack=cached, from_cache=True, changes=changes)

        stack = self.build(thread_id)
        self._cache.cache_context_stack(
            stack, ttl_seconds=self._cache_config.context_stack_ttl_seconds
        )
        changes = None
        if session_id is not None:
            changes = self._cache.detect_changes(session_id, stack.checksums)
            self._cache.record_injection(session_id, stack.thread_id, stack.checksums)
        return CachedBuildResult(stack=stack, from_cache=False, changes=changes)

    # Layer builders

    def _repo_layer(self, refs: Sequence[ThreadRef], budget: int) -> str | None:
        repos = list(dict.fromkeys(ref.repo for ref in refs))
        if not repos:
            return None
        max_chars = budget * CHARS_PER_TOKEN
        sections: list[str] = []
        used = 0
        for repo in repos:
            try:
                text = self._knowledge_text(repo)
            except ForgeRequestError as exc:
                _log_item_degraded("repo_context", repo, exc)
                continue
            if not text:
                continue
            section = f"## Repository Context: {repo}\n\n{text.strip()}"
            room = max_chars - used
            if len(section) > room:
                if room > _MIN_TRUNCATED_SECTION_CHARS:
                    sections.append(truncate_to_budget(section, room // CHARS_PER_TOKEN))
                break
            sections.append(section)
            used += len(section) + 2
        return "\n\n".join(sections) or None

    def _knowledge_text(self, repo: str) -> str:
        key = knowledge_key(repo)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        text = self._forge.get_file_text(repo, self._config.knowledge_file) or ""
        self._cache.set(key, text, ttl_seconds=self._cache_config.knowledge_ttl_seconds)
        return text

    def _ticket_layer(self, refs: Sequence[ThreadRef], budget: int) -> str | None:
        max_chars = budget * CHARS_PER_TOKEN
        parts: list[str] = ["## Ticket Context"]
        for ref in refs:
            if ref.ref_type != "issue" or ref.number is None:
                continue
            try:
                issue = self._issue(ref.repo, ref.number)
            except ForgeRequestError as exc:
                _log_item_degraded("ticket_chain", f"{ref.repo}#{ref.number}", exc)
                continue
            parent_number = parse_parent_issue_number(issue.body)
            if parent_number is not None and parent_number != issue.number:
                try:
                    parent = self._issue(ref.repo, parent_number)
                except ForgeRequestError as exc:
                    _log_item_degraded("ticket_chain", f"{ref.repo}#{parent_number}", exc)
                else:
                    parts.append(
                        _render_issue("Parent Issue", parent, body_chars=_PARENT_BODY_CHARS)
                    )
            remaining_chars = max_chars - sum(len(part) for part in parts)
            parts.append(
                _render_issue(
                    "Current Issue",
                    issue,
                    body_chars=max(0, min(_ISSUE_BODY_CHARS, remaining_chars)),
                )
            )
        if len(parts) == 1:
            return None
        return "\n\n".join(parts)

    def _issue(self, repo: str, number: int) -> ForgeIssue:
        key = issue_key(repo, number)
        cached = self._cache.get(key)
        if cached is not None:
            return _load_issue(cached)
        issue = self._forge.get_issue(repo, number)
        self._cache.set(
            key, _dump_issue(issue), ttl_seconds=self._cache_config.ticket_ttl_seconds
        )
        return issue

    def _lineage_layer(self, thread: Thread, budget: int) -> str | None:
        if thread.parent_thread_id is None:
            return None
        parent = self._store.get_thread(thread.parent_thread_id)
        if parent is None:
            return None
        lines = [
            "## Parent Thread Summary",
            f'Thread: "{parent.label}" ({parent.id[:8]})',
            f"Status: {parent.status}",
        ]
        if parent.summary:
            summary_chars = max(0, budget * CHARS_PER_TOKEN - 200)
            summary = parent.summary
            if len(summary) > summary_chars:
                summary = summary[:summary_chars].rstrip() + "..."
            lines.extend(["", summary])
        else:
            lines.append(f"Topic: {parent.label}")
        parent_refs = self._store.get_thread_refs(parent.id)
        if parent_refs:
            lines.extend(["", "Parent refs:"])
            lines.extend(f"- {ref.display}" for ref in parent_refs)
        return "\n".join(lines)

    def _execution_layer(self, thread: Thread, budget: int) -> str | None:
        _ = budget
        if thread.kind != "task":
            return None
        events = self._store.get_thread_events(
            thread.id,
            message_type="execution_plan",
            include_compacted=True,
            limit=1,
            newest_first=True,
        )
        if not events:
            return None
        plan = parse_execution_plan(events[0].content)
        if plan is None:
            return None
        lines = ["## Execution Plan", f"Task: {plan.task}"]
        if plan.branch:
            lines.append(f"Branch: {plan.branch}")
        if plan.workspace:
            lines.append(f"Workspace: {plan.workspace}")
        lines.extend(["", "Steps:"])
        for index, step in enumerate(plan.steps, start=1):
            icon = _STEP_ICONS.get(step.status, _STEP_ICONS["pending"])
            lines.append(f"{index}. {icon} {step.description}")
        return "\n".join(lines)


def _log_item_degraded(layer: str, item: str, exc: ForgeRequestError) -> None:
    log_event(
        LOGGER,
        "context_item_degraded",
        level=logging.WARNING,
        layer=layer,
        item=item,
        status_code=exc.status_code,
        error=str(exc),
    )


def _render_issue(heading: str, issue: ForgeIssue, *, body_chars: int) -> str:
    body = issue.body.strip()
    if len(body) > body_chars:
        body = body[:body_chars].rstrip() + "..."
    title_line = (
        f"### {heading}: {issue.repo}#{issue.number}: {issue.title} {status_icon(issue.labels)}"
    )
    if not body:
        return title_line
    return f"{title_line}\n\n{body}"


def _dump_issue(issue: ForgeIssue) -> str:
    return json.dumps(
        {
            "repo": issue.repo,
            "number": issue.number,
            "title": issue.title,
            "body": issue.body,
            "html_url": issue.html_url,
            "labels": list(issue.labels),
            "state": issue.state,
        }
    )


def _load_issue(raw: str) -> ForgeIssue:
    payload = json.loads(raw)
    return ForgeIssue(
        repo=str(payload["repo"]),
        number=int(payload["number"]),
        title=str(payload["title"]),
        body=str(payload["body"]),
        html_url=str(payload["html_url"]),
        labels=tuple(str(label) for label in payload.get("labels", [])),
        state=str(payload.get("state", "open")),
    )
