from __future__ import annotations

from typing import Literal


EnforcementKind = Literal["code_changed", "branch_pushed", "needs_notification"]

SUMMARY_SYSTEM_PROMPT = """You are condensing a long engineering conversation so that work can continue
in a shorter context. Write a compact summary that preserves:
- decisions that were made and why they matter
- the current state of the work (what is done, what is in progress)
- every referenced issue, pull request, branch and commit
- pending actions and open questions
- who participated and in which channels
Use short bullet points. Do not invent details that are not in the transcript."""

ENFORCER_PREFIX = "[ENFORCER]"
COMPLETION_CHECK_PREFIX = "[COMPLETION CHECK]"


def build_summary_transcript(*, previous_summary: str | None, event_lines: list[str]) -> str:
    sections: list[str] = []
    if previous_summary:
        sections.append(f"Earlier summary:\n{previous_summary}")
    sections.append("Transcript:\n" + "\n".join(event_lines))
    return "\n\n".join(sections)


def build_enforcement_directive(
    *, kind: EnforcementKind, repo: str, issue_number: int, branch: str | None
) -> str:
    target = f"{repo}#{issue_number}"
    if kind == "code_changed":
        return (
            f"{ENFORCER_PREFIX} Code changes were detected in the workspace for {target}, "
            "but the task is not finished. Commit the changes on a feature branch "
            "(never main or master), push the branch, open a pull request that references "
            f"{target}, and then post a short notification with the pull request link."
        )
    branch_text = f" from branch `{branch}`" if branch else ""
    return (
        f"{ENFORCER_PREFIX} The work for {target} has been pushed{branch_text}. "
        "Make sure a pull request exists, then send the completion notification that "
        "includes the pull request URL and a one-paragraph summary of the change."
    )


def build_completion_check_prompt(reason: str) -> str:
    if reason == "intent_without_action":
        detail = (
            "Your last reply said you were going to do something, but the turn ended "
            "before it was done."
        )
    elif reason == "code_changes_without_pr":
        detail = "Your last reply mentions code changes but no pull request link."
    else:
        detail = "Your last reply mentions a pull request but does not include its URL."
    return (
        f"{COMPLETION_CHECK_PREFIX} {detail} Finish the remaining steps now. If the work "
        "really is complete, reply with the pull request URL; if you are blocked, say so "
        "explicitly."
    )


def build_context_preamble(formatted_stack: str) -> str:
    return f"# Background context\n\n{formatted_stack}"
