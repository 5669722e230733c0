from __future__ import annotations

from pathlib import Path

import pytest

from threadhub.config import ContextConfig
from threadhub.context_cache import ContextCache, assemble_stack, make_layer
from threadhub.context_stack import (
    LAYER_EXECUTION,
    LAYER_LINEAGE,
    LAYER_REPO,
    LAYER_TICKET,
    TRUNCATION_MARKER,
    ContextStackBuilder,
    parse_execution_plan,
    parse_parent_issue_number,
    render_delta,
    status_icon,
    truncate_to_budget,
)
from threadhub.forge_gateway import ForgeRequestError
from threadhub.models import ForgeIssue
from threadhub.observability import configure_logging
from threadhub.thread_store import ThreadStore


class FakeForge:
    def __init__(self) -> None:
        self.issues: dict[tuple[str, int], ForgeIssue] = {}
        self.files: dict[tuple[str, str], str] = {}
        self.issue_calls: list[tuple[str, int]] = []
        self.file_calls: list[tuple[str, str]] = []
        self.fail_issues = False
        self.failing_repos: set[str] = set()

    def add_issue(
        self, repo: str, number: int, title: str, body: str, labels: tuple[str, ...] = ()
    ) -> None:
        self.issues[(repo, number)] = ForgeIssue(
            repo=repo,
            number=number,
            title=title,
            body=body,
            html_url=f"https://github.com/{repo}/issues/{number}",
            labels=labels,
        )

    def get_issue(self, repo: str, number: int) -> ForgeIssue:
        self.issue_calls.append((repo, number))
        if self.fail_issues:
            raise RuntimeError("gh executable not found")
        issue = self.issues.get((repo, number))
        if issue is None:
            raise ForgeRequestError("Not Found", status_code=404)
        return issue

    def get_file_text(self, repo: str, path: str) -> str | None:
        self.file_calls.append((repo, path))
        if repo in self.failing_repos:
            raise ForgeRequestError("Bad Gateway", status_code=502)
        return self.files.get((repo, path))


def _setup(
    tmp_path: Path, config: ContextConfig = ContextConfig()
) -> tuple[ThreadStore, FakeForge, ContextStackBuilder]:
    store = ThreadStore(tmp_path / "state.db")
    forge = FakeForge()
    builder = ContextStackBuilder(store, forge, ContextCache(), config=config)
    return store, forge, builder


def test_builds_repo_and_ticket_layers_with_parent_issue(tmp_path: Path) -> None:
    store, forge, builder = _setup(tmp_path)
    forge.files[("o/r", "CLAUDE.md")] = "Use tabs.\n"
    forge.add_issue("o/r", 5, "Login", "Part of #2\nDo it", ("status/in-progress",))
    forge.add_issue("o/r", 2, "Epic", "Epic body")
    thread = store.create_thread(topic="login")
    store.add_thread_ref(thread.id, ref_type="issue", repo="o/r", number=5)

    stack = builder.build(thread.id)

    assert [layer.name for layer in stack.layers] == [LAYER_REPO, LAYER_TICKET]
    assert stack.layers[0].content == "## Repository Context: o/r\n\nUse tabs."
    assert stack.layers[1].content == (
        "## Ticket Context\n\n"
        "### Parent Issue: o/r#2: Epic ⬜\n\nEpic body\n\n"
        "### Current Issue: o/r#5: Login 🔄\n\nPart of #2\nDo it"
    )
    assert stack.total_tokens == sum(layer.estimated_tokens for layer in stack.layers)


def test_forge_reads_are_served_from_cache_on_rebuild(tmp_path: Path) -> None:
    store, forge, builder = _setup(tmp_path)
    forge.add_issue("o/r", 5, "Login", "body")
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="issue", repo="o/r", number=5)

    first = builder.build(thread.id)
    second = builder.build(thread.id)

    assert first == second
    assert forge.issue_calls == [("o/r", 5)]
    assert forge.file_calls == [("o/r", "CLAUDE.md")]
    assert [layer.name for layer in first.layers] == [LAYER_TICKET]


def test_repo_layer_is_truncated_to_its_budget(tmp_path: Path) -> None:
    store, forge, builder = _setup(tmp_path, ContextConfig(repo_tokens=100))
    forge.files[("o/r", "CLAUDE.md")] = "x" * 1000
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="pr", repo="o/r", number=1)

    stack = builder.build(thread.id)

    (layer,) = stack.layers
    assert layer.name == LAYER_REPO
    assert layer.content.endswith(TRUNCATION_MARKER)
    assert len(layer.content) == 400
    assert layer.estimated_tokens == 100


def test_small_repo_budget_drops_the_section_instead_of_a_stub(tmp_path: Path) -> None:
    store, forge, builder = _setup(tmp_path, ContextConfig(repo_tokens=10))
    forge.files[("o/r", "CLAUDE.md")] = "x" * 1000
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="pr", repo="o/r", number=1)

    assert builder.build(thread.id).layers == ()


def test_later_layers_get_only_the_remaining_total_budget(tmp_path: Path) -> None:
    config = ContextConfig(max_tokens=120, repo_tokens=100, ticket_tokens=2000)
    store, forge, builder = _setup(tmp_path, config)
    forge.files[("o/r", "CLAUDE.md")] = "x" * 1000
    forge.add_issue("o/r", 5, "Login", "y" * 500)
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="issue", repo="o/r", number=5)

    stack = builder.build(thread.id)

    repo_layer, ticket_layer = stack.layers
    assert repo_layer.estimated_tokens == 100
    assert ticket_layer.estimated_tokens <= 20
    assert ticket_layer.content.endswith(TRUNCATION_MARKER)
    assert stack.total_tokens <= 120


def test_skip_and_zero_budget(tmp_path: Path) -> None:
    store, forge, builder = _setup(tmp_path)
    forge.files[("o/r", "CLAUDE.md")] = "rules"
    forge.add_issue("o/r", 5, "Login", "body")
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="issue", repo="o/r", number=5)

    skipped = builder.build(thread.id, skip=frozenset({LAYER_REPO}))
    assert [layer.name for layer in skipped.layers] == [LAYER_TICKET]
    assert builder.build(thread.id, max_tokens=0).layers == ()


def test_failed_layer_is_omitted_and_logged(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    store, forge, builder = _setup(tmp_path)
    forge.files[("o/r", "CLAUDE.md")] = "rules"
    forge.fail_issues = True
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="issue", repo="o/r", number=5)

    stack = builder.build(thread.id)

    assert [layer.name for layer in stack.layers] == [LAYER_REPO]
    stderr = capsys.readouterr().err
    assert "event=context_layer_degraded" in stderr
    assert "layer=ticket_chain" in stderr
    assert "error_type=RuntimeError" in stderr


def test_missing_parent_issue_keeps_current_issue(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    store, forge, builder = _setup(tmp_path)
    forge.add_issue("o/r", 7, "Signup", "Part of #99\nBuild the form")
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="issue", repo="o/r", number=7)

    stack = builder.build(thread.id)

    assert [layer.name for layer in stack.layers] == [LAYER_TICKET]
    content = stack.layers[0].content
    assert "### Current Issue: o/r#7: Signup" in content
    assert "Parent Issue" not in content
    stderr = capsys.readouterr().err
    assert "event=context_item_degraded" in stderr
    assert "item=o/r#99" in stderr
    assert "status_code=404" in stderr
    assert "event=context_layer_degraded" not in stderr


def test_failed_repo_file_skips_only_that_repo(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    store, forge, builder = _setup(tmp_path)
    forge.files[("o/a", "CLAUDE.md")] = "A rules"
    forge.files[("o/b", "CLAUDE.md")] = "B rules"
    forge.failing_repos.add("o/a")
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="pr", repo="o/a", number=1)
    store.add_thread_ref(thread.id, ref_type="pr", repo="o/b", number=2)

    stack = builder.build(thread.id)

    assert [layer.name for layer in stack.layers] == [LAYER_REPO]
    assert stack.layers[0].content == "## Repository Context: o/b\n\nB rules"
    stderr = capsys.readouterr().err
    assert "event=context_item_degraded" in stderr
    assert "item=o/a" in stderr
    assert "layer=repo_context" in stderr


def test_lineage_layer_summarizes_parent_thread(tmp_path: Path) -> None:
    store, _forge, builder = _setup(tmp_path)
    parent = store.create_thread(topic="Parent topic")
    store.update_thread_summary(parent.id, "Did X")
    store.add_thread_ref(parent.id, ref_type="pr", repo="o/r", number=9, status="open")
    child = store.create_thread(topic="child", parent_thread_id=parent.id)

    stack = builder.build(child.id)

    (layer,) = stack.layers
    assert layer.name == LAYER_LINEAGE
    assert layer.content == (
        "## Parent Thread Summary\n"
        f'Thread: "Parent topic" ({parent.id[:8]})\n'
        "Status: paused\n\nDid X\n\nParent refs:\n- pr o/r#9 (open)"
    )


def test_lineage_layer_without_summary_falls_back_to_topic(tmp_path: Path) -> None:
    store, _forge, builder = _setup(tmp_path)
    parent = store.create_thread()
    child = store.create_thread(parent_thread_id=parent.id)

    (layer,) = builder.build(child.id).layers

    assert layer.content.endswith("Topic: Untitled thread")


def test_execution_layer_only_for_task_threads(tmp_path: Path) -> None:
    store, _forge, builder = _setup(tmp_path)
    plan = {
        "task": "Fix bug",
        "branch": "fix/bug",
        "steps": [
            {"id": "1", "description": "Reproduce", "status": "done"},
            {"description": "Patch", "status": "in_progress"},
            {"description": "Ship", "status": "weird"},
        ],
    }
    task = store.create_thread(kind="task")
    chat = store.create_thread()
    for thread_id in (task.id, chat.id):
        store.add_thread_event(
            thread_id,
            channel="system",
            direction="outbound",
            actor="agent",
            content=plan,
            message_type="execution_plan",
        )

    (layer,) = builder.build(task.id).layers
    assert layer.name == LAYER_EXECUTION
    assert layer.content == (
        "## Execution Plan\nTask: Fix bug\nBranch: fix/bug\n\n"
        "Steps:\n1. ✅ Reproduce\n2. 🔄 Patch\n3. ⬚ Ship"
    )
    assert builder.build(chat.id).layers == ()


def test_build_cached_tracks_session_changes(tmp_path: Path) -> None:
    store, forge, builder = _setup(tmp_path)
    forge.files[("o/r", "CLAUDE.md")] = "rules"
    thread = store.create_thread()
    store.add_thread_ref(thread.id, ref_type="pr", repo="o/r", number=1)

    fresh = builder.build_cached(thread.id, session_id="s1")
    assert fresh.from_cache is False
    assert fresh.changes is not None and fresh.changes.has_changes is True

    cached = builder.build_cached(thread.id, session_id="s1")
    assert cached.from_cache is True
    assert cached.stack == fresh.stack
    assert cached.changes is not None and cached.changes.has_changes is False

    no_session = builder.build_cached(thread.id)
    assert no_session.changes is None
    assert builder.build_cached(thread.id, force_refresh=True).from_cache is False


def test_render_delta_lists_changed_and_removed_layers() -> None:
    stack = assemble_stack(
        "t1", (make_layer(LAYER_REPO, "repo"), make_layer(LAYER_TICKET, "tix"))
    )

    assert render_delta(stack, [LAYER_TICKET, LAYER_EXECUTION]) == (
        "## Context Update\n\ntix\n\n---\n\nLayers no longer present: execution_state"
    )
    assert render_delta(stack, []) == ""


def test_helpers() -> None:
    assert truncate_to_budget("abcd", 1) == "abcd"
    truncated = truncate_to_budget("a" * 100, 5)
    assert truncated.endswith(TRUNCATION_MARKER)
    assert len(truncated) <= 20

    assert parse_parent_issue_number("Parent issue: see #42") == 42
    assert parse_parent_issue_number("part of org/repo#7") == 7
    assert parse_parent_issue_number("fixes #3") is None

    assert status_icon(["Status/Done", "status/in-progress"]) == "✅"
    assert status_icon(["status/blocked"]) == "🚫"
    assert status_icon([]) == "⬜"


def test_parse_execution_plan_accepts_json_text_and_rejects_junk() -> None:
    plan = parse_execution_plan('{"task": "t", "steps": [{"description": "a"}, 3]}')
    assert plan is not None
    assert plan.task == "t"
    assert [(step.id, step.status) for step in plan.steps] == [("1", "pending")]
    assert plan.workspace is None and plan.branch is None

    assert parse_execution_plan("not json") is None
    assert parse_execution_plan(["list"]) is None
    assert parse_execution_plan({"steps": []}) is None
