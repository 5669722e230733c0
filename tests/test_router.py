from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
import sqlite3

import pytest

from threadhub.agent_adapter import (
    AgentEvent,
    AgentEventHandler,
    AgentMessage,
    AgentResponse,
    AgentUsage,
    CancelToken,
    ReasoningAgent,
    ToolCall,
)
from threadhub.compaction import CompactionEngine
from threadhub.context_cache import ContextCache, context_stack_key, issue_key
from threadhub.context_stack import ContextStackBuilder
from threadhub.conversation_lock import ConversationLock, LockTimeoutError
from threadhub.enforcer import CompletionEnforcer
from threadhub.models import ForgeIssue, WebhookEvent, WorkspaceSnapshot
from threadhub.observability import configure_logging
from threadhub.router import (
    STOPPED_MESSAGE,
    RouterConfig,
    ThreadRouter,
    response_texts,
)
from threadhub.thread_store import ThreadStore


class FakeAgent(ReasoningAgent):
    def __init__(self, replies: Sequence[AgentResponse] = ()) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[list[AgentMessage], str | None]] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def run(
        self,
        messages: Sequence[AgentMessage],
        *,
        session_id: str | None,
        cwd: Path | None,
        cancel: CancelToken,
        on_event: AgentEventHandler | None = None,
    ) -> AgentResponse:
        _ = cwd
        self.calls.append((list(messages), session_id))
        gate, self.gate = self.gate, None
        if gate is not None:
            opened = asyncio.create_task(gate.wait())
            cancelled = asyncio.create_task(cancel.wait())
            await asyncio.wait({opened, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            opened.cancel()
            cancelled.cancel()
            cancel.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else AgentResponse(text="ok", session_id="s1")
        if on_event is not None:
            await on_event(AgentEvent(kind="text", text=reply.text))
        return reply

    async def wait_for_calls(self, count: int) -> None:
        while len(self.calls) < count:
            await asyncio.sleep(0)


class FakeForge:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self.issues: dict[int, ForgeIssue] = {}

    def get_issue(self, repo: str, number: int) -> ForgeIssue:
        _ = repo
        return self.issues[number]

    def get_file_text(self, repo: str, path: str) -> str | None:
        _ = path
        return self.files.get(repo)


class FakeInspector:
    def __init__(self, snapshots: Sequence[WorkspaceSnapshot | None] = (None,)) -> None:
        self.snapshots = list(snapshots)
        self.branch: str | None = None

    def capture_snapshot(self, repo: str) -> WorkspaceSnapshot | None:
        _ = repo
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]

    def pushed_branch(self, repo: str) -> str | None:
        _ = repo
        return self.branch


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        agent: FakeAgent | None = None,
        inspector: FakeInspector | None = None,
        config: RouterConfig = RouterConfig(),
    ) -> None:
        self.store = ThreadStore(tmp_path / "state.db")
        self.lock = ConversationLock()
        self.cache = ContextCache()
        self.forge = FakeForge()
        self.agent = agent or FakeAgent()
        self.inspector = inspector or FakeInspector()
        self.router = ThreadRouter(
            self.store,
            self.lock,
            self.cache,
            ContextStackBuilder(self.store, self.forge, self.cache),
            CompactionEngine(self.store),
            CompletionEnforcer(self.store, self.inspector),
            self.agent,
            config=config,
        )

    def texts(self, thread_id: str) -> list[tuple[str, str, str]]:
        out: list[tuple[str, str, str]] = []
        for event in self.store.get_thread_events(thread_id, limit=None):
            content = event.content
            assert isinstance(content, list)
            out.append((event.actor, event.message_type, str(content[0]["text"])))
        return out


def _snapshot(dirty: int) -> WorkspaceSnapshot:
    return WorkspaceSnapshot(head_hash="abc", dirty_count=dirty, branch="main")


def test_first_message_creates_thread_and_resumes_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    router = harness.router

    first = asyncio.run(router.handle_message("web", "conv-1", "hello"))
    second = asyncio.run(router.handle_message("web", "conv-1", "again"))
    other = asyncio.run(router.handle_message("bot", "conv-1", "elsewhere"))

    assert first.response == "ok" and first.queued is False
    assert second.thread_id == first.thread_id
    assert other.thread_id != first.thread_id
    thread = harness.store.require_thread(first.thread_id)
    assert thread.status == "active"
    assert thread.session_id == "s1"
    assert harness.agent.calls[0] == ([AgentMessage(role="user", content="hello")], None)
    assert harness.agent.calls[1] == ([AgentMessage(role="user", content="again")], "s1")
    assert harness.texts(first.thread_id) == [
        ("user", "text", "hello"),
        ("agent", "text", "ok"),
        ("user", "text", "again"),
        ("agent", "text", "ok"),
    ]
    assert first.compaction is not None and first.compaction.should_compact is False


def test_channel_thread_survives_router_restart(tmp_path: Path) -> None:
    first = asyncio.run(Harness(tmp_path).router.handle_message("web", "conv-1", "hello"))

    restarted = Harness(tmp_path)
    second = asyncio.run(restarted.router.handle_message("web", "conv-1", "again"))
    assert second.thread_id == first.thread_id
    assert restarted.agent.calls[0][1] == "s1"

    restarted.store.update_thread_status(first.thread_id, "stopped")
    third = asyncio.run(restarted.router.handle_message("web", "conv-1", "new topic"))
    assert third.thread_id != first.thread_id
    current = restarted.store.get_thread("web:conv-1")
    assert current is not None and current.id == third.thread_id


def test_fresh_thread_gets_history_with_context_preamble(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.forge.files["o/r"] = "Use tabs."
    thread = harness.store.create_thread(topic="existing")
    harness.store.add_thread_ref(thread.id, ref_type="pr", repo="o/r", number=1)
    harness.store.add_thread_event(
        thread.id, channel="web", direction="inbound", actor="user", content="earlier"
    )

    result = asyncio.run(harness.router.handle_message("web", "c", "hi", thread_id=thread.id))

    assert result.thread_id == thread.id
    assert harness.store.require_thread(thread.id).status == "active"
    messages, session_id = harness.agent.calls[0]
    assert session_id is None
    assert messages[0].role == "user"
    assert messages[0].content.startswith("# Background context\n\n## Repository Context: o/r")
    assert messages[1:] == [
        AgentMessage(role="user", content="earlier"),
        AgentMessage(role="user", content="hi"),
    ]


def test_resumed_session_receives_only_changed_layers(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    first = asyncio.run(harness.router.handle_message("web", "c", "hello"))
    harness.forge.files["o/r"] = "Use tabs."
    harness.store.add_thread_ref(first.thread_id, ref_type="pr", repo="o/r", number=1)
    harness.cache.invalidate_key(context_stack_key(first.thread_id))

    asyncio.run(harness.router.handle_message("web", "c", "next"))
    asyncio.run(harness.router.handle_message("web", "c", "then"))

    (delta_message,), _ = harness.agent.calls[1]
    assert delta_message.content.startswith("## Context Update\n\n## Repository Context: o/r")
    assert delta_message.content.endswith("\n\nnext")
    assert harness.agent.calls[2][0] == [AgentMessage(role="user", content="then")]


def test_title_usage_and_auto_linked_refs_are_persisted(tmp_path: Path) -> None:
    reply = AgentResponse(
        text="[title: Fix login] Opened the PR.",
        session_id="s1",
        tool_calls=(ToolCall(tool_use_id="t1", name="command_execution"),),
        tool_results=("https://github.com/o/r/pull/9 created",),
        usage=AgentUsage(input_tokens=100, output_tokens=20, cost_usd=0.01),
        stop_reason="completed",
    )
    harness = Harness(tmp_path, agent=FakeAgent([reply]))

    result = asyncio.run(harness.router.handle_message("web", "c", "please fix"))

    assert result.response == "Opened the PR."
    thread = harness.store.require_thread(result.thread_id)
    assert thread.topic == "Fix login"
    (ref,) = harness.store.get_thread_refs(thread.id)
    assert (ref.ref_type, ref.repo, ref.number, ref.status) == ("pr", "o/r", 9, "open")
    assert ref.url == "https://github.com/o/r/pull/9"
    outbound = harness.store.get_thread_events(thread.id, direction="outbound")
    assert outbound[0].metadata == {
        "tool_calls": [{"id": "t1", "name": "command_execution"}],
        "stop_reason": "completed",
    }
    usage = harness.store.get_thread_usage(thread.id)
    assert (usage.input_tokens, usage.output_tokens) == (100, 20)


def test_title_update_failure_is_logged_and_swallowed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging("low")
    reply = AgentResponse(text="[title: New name] done", session_id="s1")
    harness = Harness(tmp_path, agent=FakeAgent([reply]))

    def boom(thread_id: str, topic: str | None) -> None:
        _ = thread_id, topic
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(harness.store, "update_thread_topic", boom)

    result = asyncio.run(harness.router.handle_message("web", "c", "hi"))

    assert result.response == "done"
    assert harness.store.require_thread(result.thread_id).topic is None
    stderr = capsys.readouterr().err
    assert "event=title_update_failed" in stderr
    assert "error_type=OperationalError" in stderr
    assert "event=turn_completed" in stderr


def test_busy_thread_queues_and_drains_as_one_follow_up(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging("low")
    harness = Harness(tmp_path)
    router = harness.router
    thread = harness.store.create_thread(status="active")

    async def scenario() -> None:
        harness.agent.gate = asyncio.Event()
        gate = harness.agent.gate
        first = asyncio.create_task(
            router.handle_message("web", "c", "first", thread_id=thread.id)
        )
        await harness.agent.wait_for_calls(1)

        second = await router.handle_message("bot", "b", "second", thread_id=thread.id)
        third = await router.handle_message("web", "c", "third", thread_id=thread.id)
        assert (second.queued, second.queue_size) == (True, 1)
        assert (third.queued, third.queue_size) == (True, 2)
        assert second.response is None

        gate.set()
        result = await first
        assert result.follow_up is not None
        assert result.follow_up.follow_up is None
        assert response_texts(result) == ["ok", "ok"]
        assert not harness.lock.is_locked(thread.id)

    asyncio.run(scenario())

    assert len(harness.agent.calls) == 2
    inbound = harness.store.get_thread_events(thread.id, direction="inbound")
    assert [(event.channel, event.content) for event in inbound] == [
        ("web", [{"type": "text", "text": "first"}]),
        ("bot", [{"type": "text", "text": "second\n\nthird"}]),
    ]
    stderr = capsys.readouterr().err
    assert stderr.count("event=turn_queued") == 2


def test_wait_mode_times_out_on_a_held_lock(tmp_path: Path) -> None:
    harness = Harness(tmp_path, config=RouterConfig(lock_timeout_seconds=0.01))
    thread = harness.store.create_thread(status="active")

    async def scenario() -> None:
        lease = await harness.lock.acquire(thread.id, "someone")
        with pytest.raises(LockTimeoutError):
            await harness.router.handle_message(
                "web", "c", "hello", thread_id=thread.id, wait=True
            )
        lease.release()
        result = await harness.router.handle_message(
            "web", "c", "hello", thread_id=thread.id, wait=True
        )
        assert result.response == "ok"

    asyncio.run(scenario())


def test_stop_aborts_running_turn(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    router = harness.router
    thread = harness.store.create_thread(status="active")

    async def scenario() -> None:
        harness.agent.gate = asyncio.Event()
        task = asyncio.create_task(
            router.handle_message("web", "c", "long job", thread_id=thread.id)
        )
        await harness.agent.wait_for_calls(1)
        assert router.is_running(thread.id)

        assert router.stop(thread.id) is True
        result = await task

        assert result.stopped is True
        assert result.response == STOPPED_MESSAGE
        assert router.is_running(thread.id) is False
        assert router.stop(thread.id) is False
        assert not harness.lock.is_locked(thread.id)

    asyncio.run(scenario())

    assert harness.texts(thread.id) == [
        ("user", "text", "long job"),
        ("system", "agent_stopped", "Agent stopped: stopped by user"),
        ("agent", "text", STOPPED_MESSAGE),
    ]


def test_agent_failure_propagates_and_releases_lock(tmp_path: Path) -> None:
    agent = FakeAgent()
    agent.error = RuntimeError("codex exited with 1")
    harness = Harness(tmp_path, agent=agent)
    thread = harness.store.create_thread(status="active")

    with pytest.raises(RuntimeError, match="codex exited"):
        asyncio.run(harness.router.handle_message("web", "c", "hi", thread_id=thread.id))

    assert not harness.lock.is_locked(thread.id)
    assert harness.router.is_running(thread.id) is False


def test_issue_directive_runs_enforcement_rounds(tmp_path: Path) -> None:
    inspector = FakeInspector([_snapshot(0), _snapshot(2)])
    inspector.branch = "feat/login"
    harness = Harness(tmp_path, inspector=inspector)
    harness.forge.issues[7] = ForgeIssue(
        repo="o/r", number=7, title="Login", body="", html_url="", labels=()
    )

    result = asyncio.run(harness.router.handle_message("web", "c", "/issue o/r#7 fix login"))

    assert [action.kind for action in result.enforcement_actions] == [
        "code_changed",
        "branch_pushed",
    ]
    assert result.completion_check is None
    assert len(harness.agent.calls) == 3
    thread = harness.store.require_thread(result.thread_id)
    assert thread.kind == "task"
    assert [(ref.ref_type, ref.number) for ref in harness.store.get_thread_refs(thread.id)] == [
        ("issue", 7)
    ]
    directives = harness.store.get_thread_events(thread.id, actor="enforcer")
    assert [event.message_type for event in directives] == ["enforcement", "enforcement"]
    assert harness.texts(thread.id)[2][2].startswith(
        "[ENFORCER] Code changes were detected in the workspace for o/r#7"
    )
    (task,) = harness.store.list_tasks(thread.id)
    assert task.notified is True and task.branch == "feat/login"


def test_enforcement_rounds_are_capped(tmp_path: Path) -> None:
    inspector = FakeInspector([_snapshot(0), _snapshot(2)])
    inspector.branch = "feat/login"
    harness = Harness(
        tmp_path,
        inspector=inspector,
        config=RouterConfig(max_enforcement_rounds=1),
    )
    harness.forge.issues[7] = ForgeIssue(
        repo="o/r", number=7, title="Login", body="", html_url="", labels=()
    )

    result = asyncio.run(harness.router.handle_message("web", "c", "/issue o/r#7"))

    assert [action.kind for action in result.enforcement_actions] == ["code_changed"]
    assert len(harness.agent.calls) == 2
    (task,) = harness.store.list_tasks(result.thread_id)
    assert task.has_code_changes is True and task.notified is False


def test_completion_check_adds_one_follow_up_turn(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging("low")
    reply = AgentResponse(
        text="I committed the fix and pushed to fix/login. Padding so the reply is long.",
        session_id="s1",
    )
    harness = Harness(tmp_path, agent=FakeAgent([reply]))

    result = asyncio.run(harness.router.handle_message("web", "c", "fix it"))

    assert result.completion_check is not None
    assert result.completion_check.reason == "code_changes_without_pr"
    assert len(harness.agent.calls) == 2
    (check_event,) = harness.store.get_thread_events(result.thread_id, actor="completion_check")
    assert check_event.channel == "system"
    assert check_event.metadata == {"reason": "code_changes_without_pr"}
    assert harness.agent.calls[1][0][0].content.startswith("[COMPLETION CHECK]")
    assert "event=completion_check_triggered" in capsys.readouterr().err


def test_completion_check_can_be_disabled(tmp_path: Path) -> None:
    reply = AgentResponse(
        text="I committed the fix and pushed to fix/login. Padding so the reply is long.",
        session_id="s1",
    )
    harness = Harness(
        tmp_path,
        agent=FakeAgent([reply]),
        config=RouterConfig(completion_check_enabled=False),
    )

    result = asyncio.run(harness.router.handle_message("web", "c", "fix it"))

    assert result.completion_check is None
    assert len(harness.agent.calls) == 1


def test_compaction_advice_and_event_forwarding(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    harness = Harness(tmp_path, config=RouterConfig(compaction_threshold=1))
    seen: list[AgentEvent] = []

    async def on_event(event: AgentEvent) -> None:
        seen.append(event)

    result = asyncio.run(harness.router.handle_message("web", "c", "hi", on_event=on_event))

    assert result.compaction is not None
    assert result.compaction.should_compact is True
    assert result.compaction.event_count == 2
    assert seen == [AgentEvent(kind="text", text="ok")]
    assert "event=compaction_advised" in capsys.readouterr().err


def test_webhook_updates_refs_and_records_events(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging("low")
    harness = Harness(tmp_path)
    store = harness.store
    first = store.create_thread()
    second = store.create_thread()
    unrelated = store.create_thread()
    for thread in (first, second):
        store.add_thread_ref(thread.id, ref_type="pr", repo="o/r", number=5, status="open")
    store.add_thread_ref(unrelated.id, ref_type="issue", repo="o/r", number=5)
    harness.cache.set(issue_key("o/r", 5), "{}", ttl_seconds=60)

    outcome = harness.router.handle_webhook(
        WebhookEvent(event_type="pr_merge", repo="o/r", number=5, title="Fix login")
    )

    assert outcome.refs_updated == 2
    assert set(outcome.thread_ids) == {first.id, second.id}
    assert outcome.invalidated == 1
    for thread in (first, second):
        (ref,) = store.get_thread_refs(thread.id)
        assert ref.status == "merged"
        assert harness.texts(thread.id) == [
            ("forge", "webhook", "Pull request o/r#5 merged: Fix login")
        ]
    assert store.get_thread_refs(unrelated.id)[0].status is None
    assert harness.texts(unrelated.id) == []

    push = harness.router.handle_webhook(
        WebhookEvent(event_type="push", repo="o/r", files=("src/app.py",))
    )
    assert (push.invalidated, push.refs_updated, push.thread_ids) == (0, 0, ())
    assert "event=webhook_applied" in capsys.readouterr().err
