from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Protocol, cast
from urllib.parse import quote

from threadhub.models import ForgeIssue
from threadhub.observability import log_event
from threadhub.shell import run


LOGGER = logging.getLogger("threadhub.forge_gateway")
_RAW_ACCEPT_HEADER = "Accept: application/vnd.github.raw+json"


class ForgeRequestError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ForgeClient(Protocol):
    def get_issue(self, repo: str, number: int) -> ForgeIssue: ...

    def get_file_text(self, repo: str, path: str) -> str | None: ...


@dataclass(frozen=True)
class ForgeGateway:
    """Read-only forge access through the `gh api` CLI."""

    def get_issue(self, repo: str, number: int) -> ForgeIssue:
        path = f"/repos/{repo}/issues/{number}"
        payload_obj = _as_object_dict(json.loads(self._api_get(path)))
        if payload_obj is None:
            raise ForgeRequestError("Unexpected forge response: expected object for issue")
        labels_obj = payload_obj.get("labels")
        label_names: list[str] = []
        if isinstance(labels_obj, list):
            for entry in labels_obj:
                entry_obj = _as_object_dict(entry)
                if entry_obj is None:
                    continue
                label = entry_obj.get("name")
                if isinstance(label, str):
                    label_names.append(label)
        issue = ForgeIssue(
            repo=repo,
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
            labels=tuple(label_names),
            state=_as_string(payload_obj.get("state")) or "open",
        )
        log_event(LOGGER, "forge_read", endpoint="issue", repo=repo, number=issue.number)
        return issue

    def get_file_text(self, repo: str, path: str) -> str | None:
        api_path = f"/repos/{repo}/contents/{quote(path)}"
        try:
            body = self._api_get(api_path, headers=(_RAW_ACCEPT_HEADER,))
        except ForgeRequestError as exc:
            if exc.status_code == 404:
                log_event(LOGGER, "forge_file_missing", repo=repo, path=path)
                return None
            raise
        log_event(LOGGER, "forge_read", endpoint="contents", repo=repo, path=path)
        return body

    def _api_get(self, path: str, *, headers: tuple[str, ...] = ()) -> str:
        cmd = ["gh", "api", "--method", "GET"]
        for header in headers:
            cmd.extend(["--header", header])
        cmd.extend(["--include", path])
        raw = run(cmd, check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_event(
                LOGGER,
                "forge_get_failed",
                level=logging.WARNING,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise ForgeRequestError(f"Forge GET failed for path {path}: {exc}") from exc
        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            log_event(
                LOGGER,
                "forge_get_failed",
                level=logging.WARNING,
                path=path,
                status_code=status_code,
                error=message,
            )
            raise ForgeRequestError(
                f"Forge API request failed with status {status_code}: {message}",
                status_code=status_code,
            )
        return body


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    index = next((i for i, line in enumerate(lines) if line.startswith("HTTP/")), -1)
    if index < 0:
        raise RuntimeError("Unexpected forge response: missing HTTP status line")

    # Interim responses (100 Continue, redirects) each bring their own header block.
    while True:
        status_code = _parse_status_line(lines[index])
        headers: dict[str, str] = {}
        index += 1
        while index < len(lines) and lines[index] != "":
            line = lines[index]
            index += 1
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
        index += 1
        if index < len(lines) and lines[index].startswith("HTTP/"):
            continue
        break

    body = "\n".join(lines[index:])
    return status_code, headers, body


def _parse_status_line(status_line: str) -> int:
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected forge response status line: {status_line!r}")
    try:
        return int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected forge response status line: {status_line!r}") from exc


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ForgeRequestError(f"Unexpected forge response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ForgeRequestError(
                f"Unexpected forge response value for {field}: {value}"
            ) from exc
    raise ForgeRequestError(f"Unexpected forge response type for {field}")
