from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from threadhub.git_ops import WorkspaceInspector
from threadhub.models import WorkspaceSnapshot
from threadhub.observability import configure_logging
from threadhub.shell import CommandError


def _fake_git(
    outputs: dict[str, str], calls: list[list[str]], *, fail_on: str | None = None
) -> Callable[..., str]:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        key = " ".join(cmd[3:])
        if fail_on is not None and key == fail_on:
            raise CommandError(
                "Command failed\nfatal: not a git repository",
                argv=cmd,
                returncode=128,
                stderr="fatal: not a git repository",
            )
        return outputs.get(key, "")

    return fake_run


def test_checkout_path_uses_repo_name(tmp_path: Path) -> None:
    inspector = WorkspaceInspector(tmp_path)

    assert inspector.checkout_path("octo/widgets") == tmp_path / "widgets"
    assert inspector.checkout_path("widgets") == tmp_path / "widgets"


def test_capture_snapshot_counts_dirty_files(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    checkout = tmp_path / "widgets"
    checkout.mkdir()
    calls: list[list[str]] = []
    outputs = {
        "status --porcelain": " M a.py\n?? b.py\n\n",
        "rev-parse --abbrev-ref HEAD": "feat/x\n",
        "rev-parse HEAD": "abc123\n",
    }
    monkeypatch.setattr("threadhub.git_ops.run", _fake_git(outputs, calls))

    snapshot = WorkspaceInspector(tmp_path).capture_snapshot("octo/widgets")

    assert snapshot == WorkspaceSnapshot(head_hash="abc123", dirty_count=2, branch="feat/x")
    assert calls[0] == ["git", "-C", str(checkout), "status", "--porcelain"]


def test_capture_snapshot_missing_checkout_or_git_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    calls: list[list[str]] = []
    monkeypatch.setattr(
        "threadhub.git_ops.run", _fake_git({}, calls, fail_on="status --porcelain")
    )
    inspector = WorkspaceInspector(tmp_path)

    assert inspector.capture_snapshot("octo/widgets") is None
    assert calls == []

    (tmp_path / "widgets").mkdir()
    assert inspector.capture_snapshot("octo/widgets") is None

    stderr = capsys.readouterr().err
    assert "event=workspace_missing" in stderr
    assert "event=workspace_snapshot_failed" in stderr
    assert 'error="Command failed"' in stderr


def test_pushed_branch_requires_feature_branch_with_upstream(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    (tmp_path / "widgets").mkdir()
    calls: list[list[str]] = []
    outputs = {
        "rev-parse --abbrev-ref HEAD": "feat/x\n",
        "rev-parse --abbrev-ref feat/x@{upstream}": "origin/feat/x\n",
    }
    monkeypatch.setattr("threadhub.git_ops.run", _fake_git(outputs, calls))
    inspector = WorkspaceInspector(tmp_path)

    assert inspector.pushed_branch("octo/widgets") == "feat/x"
    assert inspector.pushed_branch("octo/missing") is None

    del outputs["rev-parse --abbrev-ref feat/x@{upstream}"]
    assert inspector.pushed_branch("octo/widgets") is None

    for protected in ("main", "master", "HEAD"):
        outputs["rev-parse --abbrev-ref HEAD"] = f"{protected}\n"
        assert inspector.pushed_branch("octo/widgets") is None
    assert not any("main@{upstream}" in " ".join(cmd) for cmd in calls)


def test_pushed_branch_tolerates_git_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    (tmp_path / "widgets").mkdir()
    monkeypatch.setattr(
        "threadhub.git_ops.run", _fake_git({}, [], fail_on="rev-parse --abbrev-ref HEAD")
    )

    assert WorkspaceInspector(tmp_path).pushed_branch("octo/widgets") is None
