from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import tempfile
from typing import cast

from threadhub.agent_adapter import (
    AgentAbortedError,
    AgentEvent,
    AgentEventHandler,
    AgentMessage,
    AgentResponse,
    AgentUsage,
    CancelToken,
    ReasoningAgent,
    ToolCall,
)
from threadhub.config import CodexConfig
from threadhub.observability import log_event
from threadhub.shell import CommandError, run


LOGGER = logging.getLogger("threadhub.codex_adapter")
_TOOL_ITEM_TYPES = frozenset({"command_execution", "mcp_tool_call", "file_change", "web_search"})
# Tool items embed full command output in a single JSONL line.
_STREAM_LIMIT_BYTES = 64 * 1024 * 1024


@dataclass
class _TurnState:
    session_id: str | None
    final_message: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[str] = field(default_factory=list)
    usage: AgentUsage = AgentUsage()
    stop_reason: str | None = None
    failure: str | None = None


class CodexAgent(ReasoningAgent):
    def __init__(self, config: CodexConfig) -> None:
        self._config = config

    async def run(
        self,
        messages: Sequence[AgentMessage],
        *,
        session_id: str | None,
        cwd: Path | None,
        cancel: CancelToken,
        on_event: AgentEventHandler | None = None,
    ) -> AgentResponse:
        if not self._config.enabled:
            raise RuntimeError("Codex is disabled in config")
        cancel.raise_if_cancelled()

        if session_id is None:
            cmd = ["codex", "exec", "--json", "--skip-git-repo-check", "-"]
        else:
            cmd = ["codex", "exec", "resume", "--json", "--skip-git-repo-check", session_id, "-"]
        _append_common_options(cmd, self._config, model=self._config.model)
        prompt = render_prompt(messages)

        log_event(
            LOGGER,
            "codex_invocation_started",
            resumed=session_id is not None,
            message_count=len(messages),
            prompt_chars=len(prompt),
        )
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT_BYTES,
        )
        state = _TurnState(session_id=session_id)
        consumer = asyncio.create_task(self._consume(proc, prompt, state, on_event))
        cancelled = asyncio.create_task(cancel.wait())
        finished = False
        try:
            done, _pending = await asyncio.wait(
                {consumer, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if cancelled in done and not consumer.done():
                log_event(LOGGER, "codex_invocation_aborted", reason=cancel.reason)
                raise AgentAbortedError(cancel.reason or "cancelled")
            stderr_text = await consumer
            returncode = await proc.wait()
            finished = True
        finally:
            cancelled.cancel()
            if not finished:
                consumer.cancel()
                if proc.returncode is None:
                    proc.kill()
                await proc.wait()

        if returncode != 0:
            raise CommandError(
                f"codex exited with {returncode}: {stderr_text.strip()}",
                argv=cmd,
                returncode=returncode,
                stderr=stderr_text,
            )
        if state.failure is not None:
            raise RuntimeError(f"Codex turn failed: {state.failure}")
        if state.final_message is None:
            raise RuntimeError("Codex did not emit a final agent message")

        log_event(
            LOGGER,
            "codex_invocation_finished",
            session_id=state.session_id,
            tool_call_count=len(state.tool_calls),
            input_tokens=state.usage.input_tokens,
            output_tokens=state.usage.output_tokens,
        )
        return AgentResponse(
            text=state.final_message,
            session_id=state.session_id,
            tool_calls=tuple(state.tool_calls),
            tool_results=tuple(state.tool_results),
            usage=state.usage,
            stop_reason=state.stop_reason,
        )

    async def _consume(
        self,
        proc: asyncio.subprocess.Process,
        prompt: str,
        state: _TurnState,
        on_event: AgentEventHandler | None,
    ) -> str:
        if proc.stdin is None or proc.stdout is None or proc.stderr is None:
            raise RuntimeError("Codex process was started without piped stdio")
        proc.stdin.write(prompt.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()
        stderr_task = asyncio.create_task(proc.stderr.read())
        async for raw_line in proc.stdout:
            payload = _parse_event_line(raw_line.decode("utf-8", errors="replace").strip())
            if payload is None:
                continue
            event = _apply_event(payload, state)
            if event is not None and on_event is not None:
                await on_event(event)
        return (await stderr_task).decode("utf-8", errors="replace")


class CodexSummarizer:
    """Secondary, lightweight model call used for thread compaction."""

    def __init__(self, config: CodexConfig, *, cwd: Path | None = None) -> None:
        self._config = config
        self._cwd = cwd

    async def summarize(self, system_prompt: str, transcript: str) -> str:
        return await asyncio.to_thread(self._summarize_sync, f"{system_prompt}\n\n{transcript}")

    def _summarize_sync(self, prompt: str) -> str:
        if not self._config.enabled:
            raise RuntimeError("Codex is disabled in config")
        with tempfile.TemporaryDirectory(prefix="threadhub_summary_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-last-message",
                str(output_path),
                "-",
            ]
            _append_common_options(
                cmd, self._config, model=self._config.summary_model or self._config.model
            )
            run(cmd, cwd=self._cwd, input_text=prompt)
            summary = output_path.read_text(encoding="utf-8").strip()
        if not summary:
            raise RuntimeError("Codex summary was empty")
        return summary


def render_prompt(messages: Sequence[AgentMessage]) -> str:
    if len(messages) == 1 and messages[0].role == "user":
        return messages[0].content
    parts: list[str] = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        parts.append(f"{speaker}:\n{message.content}")
    return "\n\n".join(parts)


def _append_common_options(cmd: list[str], config: CodexConfig, *, model: str | None) -> None:
    if model:
        cmd.extend(["--model", model])
    if config.sandbox:
        cmd.extend(["--sandbox", config.sandbox])
    if config.profile:
        cmd.extend(["--profile", config.profile])
    if config.extra_args:
        cmd.extend(config.extra_args)


def _apply_event(payload: dict[str, object], state: _TurnState) -> AgentEvent | None:
    event_type = payload.get("type")
    if event_type == "thread.started":
        thread_id = payload.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            state.session_id = thread_id
        return None
    if event_type == "turn.completed":
        state.usage = _parse_usage(payload.get("usage"))
        state.stop_reason = "completed"
        return AgentEvent(kind="completion", usage=state.usage)
    if event_type == "turn.failed":
        error_obj = _as_object_dict(payload.get("error"))
        message = error_obj.get("message") if error_obj is not None else None
        state.failure = message if isinstance(message, str) else "unknown error"
        state.stop_reason = "failed"
        return None

    item = _as_object_dict(payload.get("item"))
    if item is None:
        return None
    item_type = item.get("type")
    item_id = str(item.get("id") or "")
    if event_type == "item.completed" and item_type == "agent_message":
        text = item.get("text")
        if isinstance(text, str):
            state.final_message = text
            return AgentEvent(kind="text", text=text)
        return None
    if item_type not in _TOOL_ITEM_TYPES:
        return None
    tool_name = _tool_name(item)
    if event_type == "item.started":
        state.tool_calls.append(ToolCall(tool_use_id=item_id, name=tool_name, input=item))
        return AgentEvent(kind="tool_use", tool_name=tool_name, tool_use_id=item_id)
    if event_type == "item.completed":
        output = _tool_output(item)
        if not any(call.tool_use_id == item_id for call in state.tool_calls):
            state.tool_calls.append(ToolCall(tool_use_id=item_id, name=tool_name, input=item))
        state.tool_results.append(output)
        return AgentEvent(
            kind="tool_result", text=output, tool_name=tool_name, tool_use_id=item_id
        )
    return None


def _tool_name(item: dict[str, object]) -> str:
    if item.get("type") == "mcp_tool_call":
        server = item.get("server")
        tool = item.get("tool")
        if isinstance(server, str) and isinstance(tool, str):
            return f"{server}.{tool}"
    return str(item.get("type"))


def _tool_output(item: dict[str, object]) -> str:
    for key in ("aggregated_output", "output", "result"):
        value = item.get(key)
        if isinstance(value, str):
            return value
        if value is not None:
            return json.dumps(value)
    return ""


def _parse_usage(value: object) -> AgentUsage:
    usage_obj = _as_object_dict(value)
    if usage_obj is None:
        return AgentUsage()
    input_tokens = usage_obj.get("input_tokens")
    output_tokens = usage_obj.get("output_tokens")
    return AgentUsage(
        input_tokens=input_tokens if isinstance(input_tokens, int) else 0,
        output_tokens=output_tokens if isinstance(output_tokens, int) else 0,
    )


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
