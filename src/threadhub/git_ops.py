from __future__ import annotations

from pathlib import Path
import logging

from threadhub.models import WorkspaceSnapshot
from threadhub.observability import log_event
from threadhub.shell import CommandError, run


LOGGER = logging.getLogger("threadhub.git_ops")
_PROTECTED_BRANCHES = frozenset({"main", "master"})


class WorkspaceInspector:
    """Reads git state from the shared agent workspace.

    Repository `owner/name` is expected to be checked out at `workspace_root/name`.
    """

    def __init__(self, workspace_root: Path) -> None:
        self.workspace_root = workspace_root

    def checkout_path(self, repo: str) -> Path:
        return self.workspace_root / repo.rsplit("/", 1)[-1]

    def capture_snapshot(self, repo: str) -> WorkspaceSnapshot | None:
        checkout_path = self.checkout_path(repo)
        if not checkout_path.exists():
            log_event(LOGGER, "workspace_missing", repo=repo, checkout_path=str(checkout_path))
            return None
        try:
            status = run(["git", "-C", str(checkout_path), "status", "--porcelain"])
            branch = self.current_branch(checkout_path)
            head_hash = self.current_head_sha(checkout_path)
        except CommandError as exc:
            log_event(
                LOGGER,
                "workspace_snapshot_failed",
                level=logging.WARNING,
                repo=repo,
                error=str(exc).splitlines()[0],
            )
            return None
        dirty_count = sum(1 for line in status.splitlines() if line.strip())
        return WorkspaceSnapshot(head_hash=head_hash, dirty_count=dirty_count, branch=branch)

    def current_branch(self, checkout_path: Path) -> str:
        return run(["git", "-C", str(checkout_path), "rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def current_head_sha(self, checkout_path: Path) -> str:
        return run(["git", "-C", str(checkout_path), "rev-parse", "HEAD"]).strip()

    def pushed_branch(self, repo: str) -> str | None:
        """Return the current branch when it is a feature branch with an upstream."""
        checkout_path = self.checkout_path(repo)
        if not checkout_path.exists():
            return None
        try:
            branch = self.current_branch(checkout_path)
        except CommandError:
            return None
        if not branch or branch == "HEAD" or branch in _PROTECTED_BRANCHES:
            return None
        # Exits non-zero with empty stdout when the branch has no upstream.
        upstream = run(
            [
                "git",
                "-C",
                str(checkout_path),
                "rev-parse",
                "--abbrev-ref",
                f"{branch}@{{upstream}}",
            ],
            check=False,
        ).strip()
        if not upstream:
            return None
        log_event(LOGGER, "workspace_branch_pushed", repo=repo, branch=branch, upstream=upstream)
        return branch
