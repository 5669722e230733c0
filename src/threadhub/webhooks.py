from __future__ import annotations

from collections.abc import Mapping
import logging

from threadhub.models import WebhookEvent
from threadhub.observability import log_event


LOGGER = logging.getLogger("threadhub.webhooks")


def parse_github_webhook(event_name: str, payload: Mapping[str, object]) -> WebhookEvent | None:
    """Reduce a forge webhook delivery to the fields the orchestrator acts on.

    Deliveries that do not affect cached context or ref status return None.
    """
    repository = _as_object_dict(payload.get("repository"))
    repo = _as_str(repository.get("full_name")) if repository is not None else None
    if repo is None:
        log_event(LOGGER, "webhook_ignored", event_name=event_name, reason="missing_repository")
        return None

    action = _as_str(payload.get("action"))
    if event_name == "issues":
        issue = _as_object_dict(payload.get("issue"))
        if issue is None:
            return None
        return WebhookEvent(
            event_type="issue_close" if action == "closed" else "issue_update",
            repo=repo,
            number=_as_int(issue.get("number")),
            action=action,
            title=_as_str(issue.get("title")),
        )

    if event_name == "pull_request":
        if action != "closed":
            return None
        pull_request = _as_object_dict(payload.get("pull_request"))
        if pull_request is None:
            return None
        merged = pull_request.get("merged") is True
        return WebhookEvent(
            event_type="pr_merge" if merged else "pr_close",
            repo=repo,
            number=_as_int(pull_request.get("number")) or _as_int(payload.get("number")),
            action=action,
            title=_as_str(pull_request.get("title")),
        )

    if event_name == "push":
        return WebhookEvent(
            event_type="push",
            repo=repo,
            files=_changed_files(payload.get("commits")),
            action=_as_str(payload.get("ref")),
        )

    log_event(LOGGER, "webhook_ignored", event_name=event_name, repo=repo, reason="unhandled")
    return None


def describe_webhook(event: WebhookEvent) -> str:
    if event.event_type == "push":
        target = event.action or "a branch"
        return f"Push to {event.repo} ({target}) touched {len(event.files)} file(s)."
    kind = "Issue" if event.event_type.startswith("issue") else "Pull request"
    verb = {
        "issue_close": "closed",
        "pr_merge": "merged",
        "pr_close": "closed without merging",
    }.get(event.event_type, event.action or "updated")
    title = f": {event.title}" if event.title else ""
    return f"{kind} {event.repo}#{event.number} {verb}{title}"


def _changed_files(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    files: list[str] = []
    for commit in value:
        commit_dict = _as_object_dict(commit)
        if commit_dict is None:
            continue
        for key in ("added", "modified", "removed"):
            paths = commit_dict.get(key)
            if not isinstance(paths, list):
                continue
            files.extend(path for path in paths if isinstance(path, str))
    return tuple(dict.fromkeys(files))


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return {str(key): item for key, item in value.items()}


def _as_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_int(value: object) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None
