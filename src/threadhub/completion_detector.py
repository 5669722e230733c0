"""Heuristic detection of agent replies that stop short of finishing the work.

This is a fallback for turns the task-state enforcer does not cover, such as
work started without an `/issue` directive. The patterns are a known source
of false positives and negatives; swap the detector rather than the patterns.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal, Protocol

from threadhub.prompts import build_completion_check_prompt


DetectionReason = Literal["code_changes_without_pr", "pr_without_link", "intent_without_action"]

_MIN_TEXT_CHARS = 50
_INTENT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bLet me\b", re.IGNORECASE),
    re.compile(r"\bI will\b", re.IGNORECASE),
    re.compile(r"\bI should\b", re.IGNORECASE),
    re.compile(r"\bI'll\b", re.IGNORECASE),
    re.compile(r"\bI need to\b", re.IGNORECASE),
    re.compile(r"\bnow (?:I'll|let me|I need to|I should)\b", re.IGNORECASE),
)
_PR_WITHOUT_LINK_PATTERN = re.compile(
    r"\b(?:create|open|make|submit)\s+(?:a\s+)?(?:PR|pull request)\b", re.IGNORECASE
)
_PR_LINK_PATTERN = re.compile(r"https?://\S+/pulls?/\d+")
_CODE_CHANGE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bgit commit\b", re.IGNORECASE),
    re.compile(r"\bgit push\b", re.IGNORECASE),
    re.compile(r"\bcommitted\b", re.IGNORECASE),
    re.compile(r"\bpushed to\b", re.IGNORECASE),
    re.compile(r"\bcreated branch\b", re.IGNORECASE),
    re.compile(r"\bfeat/", re.IGNORECASE),
    re.compile(r"\bfix/", re.IGNORECASE),
)
_COMPLETION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bPR\s*#?\d+", re.IGNORECASE),
    re.compile(r"\bmerged\b", re.IGNORECASE),
    re.compile(r"\bcompleted?\b", re.IGNORECASE),
    re.compile(r"\ball\s+done\b", re.IGNORECASE),
    re.compile(r"\bhere'?s?\s+the\s+(?:PR|pull request)\b", re.IGNORECASE),
)


@dataclass(frozen=True)
class DetectionResult:
    unfinished: bool
    signals: tuple[str, ...] = ()
    reason: DetectionReason | None = None
    follow_up_prompt: str | None = None


class CompletionDetector(Protocol):
    def detect(self, text: str, *, had_tool_calls: bool) -> DetectionResult: ...


class HeuristicCompletionDetector:
    def detect(self, text: str, *, had_tool_calls: bool) -> DetectionResult:
        if len(text) < _MIN_TEXT_CHARS:
            return DetectionResult(unfinished=False)

        has_pr_link = _PR_LINK_PATTERN.search(text) is not None
        if has_pr_link and any(pattern.search(text) for pattern in _COMPLETION_PATTERNS):
            return DetectionResult(unfinished=False)

        signals: list[str] = [
            f"intent:{pattern.pattern}" for pattern in _INTENT_PATTERNS if pattern.search(text)
        ]
        has_intent = bool(signals)
        pr_without_link = not has_pr_link and _PR_WITHOUT_LINK_PATTERN.search(text) is not None
        if pr_without_link:
            signals.append("pr_mentioned_no_link")
        code_without_pr = False
        if not has_pr_link:
            code_signals = [
                f"code_change:{pattern.pattern}"
                for pattern in _CODE_CHANGE_PATTERNS
                if pattern.search(text)
            ]
            signals.extend(code_signals)
            code_without_pr = bool(code_signals)

        reason: DetectionReason | None = None
        if code_without_pr:
            reason = "code_changes_without_pr"
        elif pr_without_link:
            reason = "pr_without_link"
        elif has_intent and had_tool_calls:
            reason = "intent_without_action"

        if reason is None:
            return DetectionResult(unfinished=False, signals=tuple(signals))
        return DetectionResult(
            unfinished=True,
            signals=tuple(signals),
            reason=reason,
            follow_up_prompt=build_completion_check_prompt(reason),
        )
