from __future__ import annotations

from dataclasses import dataclass
import re

from threadhub.models import RefType


# Forges may be served under a path prefix, so only the last four segments matter.
_FORGE_URL_PATTERN = re.compile(
    r"https?://[^\s/]+(?:/[^\s/]+)*?/([\w.-]+)/([\w.-]+)/(pull|pulls|issues)/(\d+)\b"
)
_TITLE_PATTERN = re.compile(r"^\s*\[title:\s*(.+?)\]\s*")
_ISSUE_DIRECTIVE_PATTERN = re.compile(r"^\s*/issue\s+([\w.-]+/[\w.-]+)#(\d+)\b")


@dataclass(frozen=True)
class LinkedRef:
    ref_type: RefType
    repo: str
    number: int
    url: str


def extract_created_refs(text: str) -> tuple[LinkedRef, ...]:
    """Return issue and pull request links in order of first appearance."""
    seen: set[tuple[str, str, int]] = set()
    refs: list[LinkedRef] = []
    for match in _FORGE_URL_PATTERN.finditer(text):
        owner, name, kind, number_text = match.groups()
        ref_type: RefType = "issue" if kind == "issues" else "pr"
        repo = f"{owner}/{name}"
        number = int(number_text)
        key = (ref_type, repo, number)
        if key in seen:
            continue
        seen.add(key)
        refs.append(LinkedRef(ref_type=ref_type, repo=repo, number=number, url=match.group(0)))
    return tuple(refs)


def extract_title(text: str) -> tuple[str | None, str]:
    match = _TITLE_PATTERN.match(text)
    if match is None:
        return None, text
    title = match.group(1).strip()
    if not title:
        return None, text
    return title, text[match.end() :]


def parse_issue_directive(text: str) -> tuple[str, int] | None:
    match = _ISSUE_DIRECTIVE_PATTERN.match(text)
    if match is None:
        return None
    return match.group(1), int(match.group(2))
