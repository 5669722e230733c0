from __future__ import annotations

from pathlib import Path
import re

import pytest

from threadhub.config import (
    AppConfig,
    CacheConfig,
    ConfigError,
    ContextConfig,
    load_config,
)


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "threadhub.toml",
        """
[runtime]
base_dir = "~/tmp/threadhub"
""",
    )

    cfg = load_config(cfg_path)

    assert isinstance(cfg, AppConfig)
    base_dir = Path("~/tmp/threadhub").expanduser()
    assert cfg.runtime.base_dir == base_dir
    assert cfg.runtime.workspace_root == base_dir / "workspace"
    assert cfg.runtime.state_db_path == base_dir / "state.db"
    assert cfg.runtime.lock_timeout_seconds == 300
    assert cfg.runtime.compaction_threshold == 20
    assert cfg.runtime.compaction_keep_recent == 10
    assert cfg.runtime.max_enforcement_rounds == 3
    assert cfg.runtime.completion_check_enabled is True
    assert cfg.context == ContextConfig()
    assert cfg.cache == CacheConfig()
    assert cfg.codex.enabled is True
    assert cfg.codex.model is None
    assert cfg.codex.extra_args == ()


def test_load_config_reads_every_table(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "threadhub.toml",
        """
[runtime]
base_dir = "/tmp/hub"
workspace_root = "/srv/checkouts"
lock_timeout_seconds = 60
compaction_threshold = 40
compaction_keep_recent = 5
max_enforcement_rounds = 0
completion_check_enabled = false

[context]
max_tokens = 5000
repo_tokens = 2500
knowledge_file = "AGENTS.md"

[cache]
ticket_ttl_seconds = 30
session_ttl_seconds = 120

[codex]
enabled = false
model = "gpt-5"
summary_model = "gpt-5-mini"
sandbox = "workspace-write"
profile = "hub"
extra_args = ["--full-auto"]
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.workspace_root == Path("/srv/checkouts")
    assert cfg.runtime.lock_timeout_seconds == 60
    assert cfg.runtime.compaction_threshold == 40
    assert cfg.runtime.compaction_keep_recent == 5
    assert cfg.runtime.max_enforcement_rounds == 0
    assert cfg.runtime.completion_check_enabled is False
    assert cfg.context.max_tokens == 5000
    assert cfg.context.repo_tokens == 2500
    assert cfg.context.ticket_tokens == 2000
    assert cfg.context.knowledge_file == "AGENTS.md"
    assert cfg.cache.ticket_ttl_seconds == 30
    assert cfg.cache.session_ttl_seconds == 120
    assert cfg.cache.knowledge_ttl_seconds == 300
    assert cfg.codex.enabled is False
    assert cfg.codex.model == "gpt-5"
    assert cfg.codex.summary_model == "gpt-5-mini"
    assert cfg.codex.sandbox == "workspace-write"
    assert cfg.codex.profile == "hub"
    assert cfg.codex.extra_args == ("--full-auto",)


@pytest.mark.parametrize(
    "content, expected",
    [
        ("[context]\nmax_tokens = 10", "[runtime] is required"),
        ("runtime = 3", "[runtime] is required"),
        ("[runtime]\nbase_dir = ''", "base_dir is required"),
        ("[runtime]\nbase_dir = '/x'\nlock_timeout_seconds = 0", "runtime.lock_timeout_seconds"),
        ("[runtime]\nbase_dir = '/x'\ncompaction_threshold = 0", "runtime.compaction_threshold"),
        (
            "[runtime]\nbase_dir = '/x'\ncompaction_keep_recent = 0",
            "runtime.compaction_keep_recent",
        ),
        (
            "[runtime]\nbase_dir = '/x'\nmax_enforcement_rounds = -1",
            "runtime.max_enforcement_rounds",
        ),
        ("[runtime]\nbase_dir = '/x'\nlock_timeout_seconds = true", "must be an integer"),
        ("[runtime]\nbase_dir = '/x'\ncompletion_check_enabled = 1", "must be a boolean"),
        ("[runtime]\nbase_dir = '/x'\n[context]\nrepo_tokens = 0", "repo_tokens must be >= 1"),
        ("[runtime]\nbase_dir = '/x'\n[context]\nknowledge_file = ''", "knowledge_file"),
        ("[runtime]\nbase_dir = '/x'\n[cache]\nticket_ttl_seconds = 'x'", "must be an integer"),
        ("[runtime]\nbase_dir = '/x'\n[codex]\nmodel = ''", "model must be a non-empty"),
        ("[runtime]\nbase_dir = '/x'\n[codex]\nextra_args = 'x'", "extra_args"),
        ("[runtime]\nbase_dir = '/x'\n[codex]\nextra_args = [1]", "extra_args"),
        ("context = 1\n[runtime]\nbase_dir = '/x'", "[context] must be a TOML table"),
    ],
)
def test_load_config_rejects_invalid_values(
    tmp_path: Path, content: str, expected: str
) -> None:
    cfg_path = _write(tmp_path / "threadhub.toml", content)

    with pytest.raises(ConfigError, match=re.escape(expected)):
        load_config(cfg_path)
