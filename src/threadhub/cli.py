from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
from pathlib import Path
from typing import cast

from threadhub.codex_adapter import CodexAgent, CodexSummarizer
from threadhub.compaction import CompactionEngine, extract_event_text
from threadhub.config import AppConfig, load_config
from threadhub.context_cache import ContextCache
from threadhub.context_stack import ContextStackBuilder
from threadhub.conversation_lock import ConversationLock
from threadhub.enforcer import CompletionEnforcer
from threadhub.forge_gateway import ForgeGateway
from threadhub.git_ops import WorkspaceInspector
from threadhub.models import CHANNELS, THREAD_STATUSES, Thread, ThreadEvent, ThreadStatus
from threadhub.observability import configure_logging
from threadhub.router import RouterConfig, ThreadRouter, response_texts
from threadhub.thread_store import ThreadStore
from threadhub.webhooks import parse_github_webhook


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="threadhub")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the base dir and state DB")
    _add_common_arguments(init_parser)

    threads_parser = subparsers.add_parser("threads", help="Inspect and manage threads")
    _add_common_arguments(threads_parser)
    threads_subparsers = threads_parser.add_subparsers(dest="threads_command", required=True)

    list_parser = threads_subparsers.add_parser("list", help="List threads, newest first")
    list_parser.add_argument("--status", choices=THREAD_STATUSES)
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--json", action="store_true", help="Print threads as JSON")

    show_parser = threads_subparsers.add_parser(
        "show", help="Show one thread with its refs, lineage and usage"
    )
    show_parser.add_argument("thread_id")
    show_parser.add_argument("--json", action="store_true", help="Print the thread as JSON")

    events_parser = threads_subparsers.add_parser("events", help="List a thread's events")
    events_parser.add_argument("thread_id")
    events_parser.add_argument(
        "--include-compacted",
        action="store_true",
        help="Include events already folded into a summary",
    )
    events_parser.add_argument("--limit", type=int, default=100)
    events_parser.add_argument("--offset", type=int, default=0)
    events_parser.add_argument("--json", action="store_true", help="Print events as JSON")

    status_parser = threads_subparsers.add_parser("status", help="Change a thread's status")
    status_parser.add_argument("thread_id")
    status_parser.add_argument("status", choices=THREAD_STATUSES)

    compact_parser = threads_subparsers.add_parser(
        "compact", help="Summarize older events in place"
    )
    compact_parser.add_argument("thread_id")
    compact_parser.add_argument(
        "--keep-recent",
        type=int,
        default=None,
        help="Number of recent events to keep verbatim (default from config)",
    )

    fork_parser = threads_subparsers.add_parser("fork", help="Fork a thread")
    fork_parser.add_argument("thread_id")
    fork_parser.add_argument("--at-event", type=str, default=None, help="Fork point event id")
    fork_parser.add_argument(
        "--compact",
        action="store_true",
        help="Start the fork from a summary of the whole source history",
    )
    fork_parser.add_argument("--topic", type=str, default=None)

    tasks_parser = subparsers.add_parser("tasks", help="Inspect tracked issue tasks")
    _add_common_arguments(tasks_parser)
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", required=True)
    tasks_list_parser = tasks_subparsers.add_parser("list", help="List a thread's tasks")
    tasks_list_parser.add_argument("thread_id")
    tasks_list_parser.add_argument("--json", action="store_true", help="Print tasks as JSON")

    send_parser = subparsers.add_parser("send", help="Route one message through the agent")
    _add_common_arguments(send_parser)
    target = send_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--thread", type=str, help="Existing thread id")
    target.add_argument("--channel-id", type=str, help="Channel conversation key")
    send_parser.add_argument("--channel", choices=CHANNELS, default="web")
    send_parser.add_argument("text")

    webhook_parser = subparsers.add_parser(
        "webhook", help="Apply a forge webhook delivery saved as JSON"
    )
    _add_common_arguments(webhook_parser)
    webhook_parser.add_argument("event_name", help="Value of the X-GitHub-Event header")
    webhook_parser.add_argument("payload", type=Path, help="Path to the JSON payload")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("threadhub.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(bool(getattr(args, "verbose", False)), state_dir=config.runtime.base_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "threads":
        _cmd_threads(config, args)
        return
    if args.command == "tasks":
        _cmd_tasks(config, args)
        return
    if args.command == "send":
        _cmd_send(config, args)
        return
    if args.command == "webhook":
        _cmd_webhook(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _open_store(config: AppConfig) -> ThreadStore:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    return ThreadStore(config.runtime.state_db_path)


def _cmd_init(config: AppConfig) -> None:
    _open_store(config)
    config.runtime.workspace_root.mkdir(parents=True, exist_ok=True)
    print(f"Initialized threadhub base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    print(f"Workspace: {config.runtime.workspace_root}")


def _cmd_threads(config: AppConfig, args: argparse.Namespace) -> None:
    store = _open_store(config)
    if args.threads_command == "list":
        _cmd_threads_list(
            store, status=args.status, limit=int(args.limit), as_json=bool(args.json)
        )
        return
    if args.threads_command == "show":
        _cmd_threads_show(store, str(args.thread_id), as_json=bool(args.json))
        return
    if args.threads_command == "events":
        _cmd_threads_events(
            store,
            str(args.thread_id),
            include_compacted=bool(args.include_compacted),
            limit=int(args.limit),
            offset=int(args.offset),
            as_json=bool(args.json),
        )
        return
    if args.threads_command == "status":
        thread = store.update_thread_status(str(args.thread_id), args.status)
        print(f"thread={thread.id} status={thread.status}")
        return
    if args.threads_command == "compact":
        keep_recent = (
            int(args.keep_recent)
            if args.keep_recent is not None
            else config.runtime.compaction_keep_recent
        )
        _cmd_threads_compact(config, store, str(args.thread_id), keep_recent=keep_recent)
        return
    if args.threads_command == "fork":
        _cmd_threads_fork(
            config,
            store,
            str(args.thread_id),
            at_event_id=args.at_event,
            compact=bool(args.compact),
            topic=args.topic,
        )
        return
    raise RuntimeError(f"Unknown threads command: {args.threads_command}")


def _cmd_threads_list(
    store: ThreadStore, *, status: str | None, limit: int, as_json: bool
) -> None:
    threads = store.list_threads(status=cast(ThreadStatus | None, status), limit=limit)
    if as_json:
        print(json.dumps([asdict(thread) for thread in threads], indent=2))
        return
    if not threads:
        print("No threads.")
        return
    for thread in threads:
        print(_thread_line(thread))


def _cmd_threads_show(store: ThreadStore, thread_id: str, *, as_json: bool) -> None:
    thread = store.require_thread(thread_id)
    refs = store.get_thread_refs(thread.id)
    lineage = store.get_thread_lineage(thread.id)
    usage = store.get_thread_usage(thread.id)
    if as_json:
        payload = {
            "thread": asdict(thread),
            "refs": [asdict(ref) for ref in refs],
            "parent_thread_id": lineage.parent.id if lineage.parent is not None else None,
            "fork_point_event_id": (
                lineage.fork_point.id if lineage.fork_point is not None else None
            ),
            "children": [child.id for child in lineage.children],
            "usage": asdict(usage),
        }
        print(json.dumps(payload, indent=2))
        return

    print(_thread_line(thread))
    if thread.summary:
        print(f"summary={thread.summary}")
    for ref in refs:
        print(f"ref={ref.display}")
    if lineage.parent is not None:
        print(f"parent={lineage.parent.id} ({lineage.parent.label})")
    for child in lineage.children:
        print(f"child={child.id} ({child.label})")
    print(
        f"usage input_tokens={usage.input_tokens} output_tokens={usage.output_tokens} "
        f"cost_usd={usage.cost_usd:.4f} events={usage.event_count}"
    )


def _cmd_threads_events(
    store: ThreadStore,
    thread_id: str,
    *,
    include_compacted: bool,
    limit: int,
    offset: int,
    as_json: bool,
) -> None:
    events = store.get_thread_events(
        thread_id, include_compacted=include_compacted, limit=limit, offset=offset
    )
    if as_json:
        print(json.dumps([asdict(event) for event in events], indent=2))
        return
    if not events:
        print("No events.")
        return
    for event in events:
        print(_event_line(event))


def _cmd_threads_compact(
    config: AppConfig, store: ThreadStore, thread_id: str, *, keep_recent: int
) -> None:
    engine = _compaction_engine(config, store)
    result = asyncio.run(engine.compact_thread(thread_id, keep_recent=keep_recent))
    print(
        f"thread={result.thread_id} compacted={result.compacted_count} "
        f"summary_event={result.summary_event_id} fallback={result.used_fallback}"
    )


def _cmd_threads_fork(
    config: AppConfig,
    store: ThreadStore,
    thread_id: str,
    *,
    at_event_id: str | None,
    compact: bool,
    topic: str | None,
) -> None:
    if compact:
        if at_event_id is not None:
            raise RuntimeError("--at-event cannot be combined with --compact")
        engine = _compaction_engine(config, store)
        result = asyncio.run(engine.fork_compact_thread(thread_id, topic=topic))
        print(
            f"forked={result.thread.id} source={result.source_thread_id} "
            f"summarized_events={result.source_event_count} fallback={result.used_fallback}"
        )
        return
    forked = store.fork_thread(thread_id, at_event_id=at_event_id, topic=topic)
    print(f"forked={forked.id} source={thread_id} fork_point={forked.fork_point_event_id}")


def _cmd_tasks(config: AppConfig, args: argparse.Namespace) -> None:
    store = _open_store(config)
    if args.tasks_command == "list":
        tasks = store.list_tasks(str(args.thread_id))
        if bool(args.json):
            print(json.dumps([asdict(task) for task in tasks], indent=2))
            return
        if not tasks:
            print("No tasks.")
            return
        for task in tasks:
            print(
                f"task={task.id} issue={task.repo}#{task.issue_number} "
                f"code_changed={task.has_code_changes} pr_created={task.pr_created} "
                f"notified={task.notified} branch={task.branch or '-'}"
            )
        return
    raise RuntimeError(f"Unknown tasks command: {args.tasks_command}")


def _cmd_send(config: AppConfig, args: argparse.Namespace) -> None:
    store = _open_store(config)
    router = _build_router(config, store)
    thread_id = str(args.thread) if args.thread is not None else None
    channel_id = str(args.channel_id) if args.channel_id is not None else f"thread:{thread_id}"
    result = asyncio.run(
        router.handle_message(args.channel, channel_id, str(args.text), thread_id=thread_id)
    )
    print(f"thread={result.thread_id}")
    if result.queued:
        print(f"queued position={result.queue_size}")
        return
    for text in response_texts(result):
        print(text)
    if result.compaction is not None and result.compaction.should_compact:
        print(f"hint: {result.compaction.reason}; run `threadhub threads compact`")


def _cmd_webhook(config: AppConfig, args: argparse.Namespace) -> None:
    payload = json.loads(Path(args.payload).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RuntimeError(f"Webhook payload must be a JSON object: {args.payload}")
    event = parse_github_webhook(str(args.event_name), payload)
    if event is None:
        print(f"ignored event={args.event_name}")
        return
    store = _open_store(config)
    outcome = _build_router(config, store).handle_webhook(event)
    print(
        f"event={event.event_type} repo={event.repo} invalidated={outcome.invalidated} "
        f"refs_updated={outcome.refs_updated} threads={len(outcome.thread_ids)}"
    )


def _compaction_engine(config: AppConfig, store: ThreadStore) -> CompactionEngine:
    summarizer = CodexSummarizer(config.codex, cwd=config.runtime.workspace_root)
    return CompactionEngine(store, summarizer if config.codex.enabled else None)


def _build_router(config: AppConfig, store: ThreadStore) -> ThreadRouter:
    cache = ContextCache(
        session_ttl_seconds=config.cache.session_ttl_seconds,
        knowledge_file=config.context.knowledge_file,
    )
    return ThreadRouter(
        store,
        ConversationLock(default_timeout_seconds=config.runtime.lock_timeout_seconds),
        cache,
        ContextStackBuilder(
            store, ForgeGateway(), cache, config=config.context, cache_config=config.cache
        ),
        _compaction_engine(config, store),
        CompletionEnforcer(store, WorkspaceInspector(config.runtime.workspace_root)),
        CodexAgent(config.codex),
        config=RouterConfig(
            lock_timeout_seconds=config.runtime.lock_timeout_seconds,
            max_enforcement_rounds=config.runtime.max_enforcement_rounds,
            completion_check_enabled=config.runtime.completion_check_enabled,
            compaction_threshold=config.runtime.compaction_threshold,
            cwd=config.runtime.workspace_root,
        ),
    )


def _thread_line(thread: Thread) -> str:
    return (
        f"thread={thread.id} status={thread.status} kind={thread.kind} "
        f"updated_at={thread.updated_at} topic={thread.label}"
    )


def _event_line(event: ThreadEvent) -> str:
    compacted = " compacted" if event.is_compacted else ""
    content = extract_event_text(event.content)
    if len(content) > 200:
        content = content[:200] + "..."
    return (
        f"{event.created_at} {event.channel}/{event.direction} {event.actor} "
        f"[{event.message_type}]{compacted} {content}"
    )
