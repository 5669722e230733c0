from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    workspace_root: Path
    lock_timeout_seconds: int = 300
    compaction_threshold: int = 20
    compaction_keep_recent: int = 10
    max_enforcement_rounds: int = 3
    completion_check_enabled: bool = True

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class ContextConfig:
    max_tokens: int = 7000
    repo_tokens: int = 4000
    ticket_tokens: int = 2000
    lineage_tokens: int = 1000
    execution_tokens: int = 1000
    knowledge_file: str = "CLAUDE.md"


@dataclass(frozen=True)
class CacheConfig:
    knowledge_ttl_seconds: int = 300
    ticket_ttl_seconds: int = 600
    lineage_ttl_seconds: int = 1800
    context_stack_ttl_seconds: int = 300
    session_ttl_seconds: int = 3600


@dataclass(frozen=True)
class CodexConfig:
    enabled: bool
    model: str | None
    sandbox: str | None
    profile: str | None
    extra_args: tuple[str, ...]
    summary_model: str | None = None


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    context: ContextConfig
    cache: CacheConfig
    codex: CodexConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    context_data = _optional_table(data, "context") or {}
    cache_data = _optional_table(data, "cache") or {}
    codex_data = _optional_table(data, "codex") or {}

    base_dir = Path(_require_str(runtime_data, "base_dir")).expanduser()
    runtime = RuntimeConfig(
        base_dir=base_dir,
        workspace_root=_optional_path(runtime_data, "workspace_root") or base_dir / "workspace",
        lock_timeout_seconds=_int_with_default(runtime_data, "lock_timeout_seconds", 300),
        compaction_threshold=_int_with_default(runtime_data, "compaction_threshold", 20),
        compaction_keep_recent=_int_with_default(runtime_data, "compaction_keep_recent", 10),
        max_enforcement_rounds=_int_with_default(runtime_data, "max_enforcement_rounds", 3),
        completion_check_enabled=_bool_with_default(
            runtime_data, "completion_check_enabled", True
        ),
    )
    if runtime.lock_timeout_seconds < 1:
        raise ConfigError("runtime.lock_timeout_seconds must be >= 1")
    if runtime.compaction_threshold < 1:
        raise ConfigError("runtime.compaction_threshold must be >= 1")
    if runtime.compaction_keep_recent < 1:
        raise ConfigError("runtime.compaction_keep_recent must be >= 1")
    if runtime.max_enforcement_rounds < 0:
        raise ConfigError("runtime.max_enforcement_rounds must be >= 0")

    context = ContextConfig(
        max_tokens=_positive_int_with_default(context_data, "max_tokens", 7000),
        repo_tokens=_positive_int_with_default(context_data, "repo_tokens", 4000),
        ticket_tokens=_positive_int_with_default(context_data, "ticket_tokens", 2000),
        lineage_tokens=_positive_int_with_default(context_data, "lineage_tokens", 1000),
        execution_tokens=_positive_int_with_default(context_data, "execution_tokens", 1000),
        knowledge_file=_str_with_default(context_data, "knowledge_file", "CLAUDE.md"),
    )

    cache = CacheConfig(
        knowledge_ttl_seconds=_positive_int_with_default(
            cache_data, "knowledge_ttl_seconds", 300
        ),
        ticket_ttl_seconds=_positive_int_with_default(cache_data, "ticket_ttl_seconds", 600),
        lineage_ttl_seconds=_positive_int_with_default(cache_data, "lineage_ttl_seconds", 1800),
        context_stack_ttl_seconds=_positive_int_with_default(
            cache_data, "context_stack_ttl_seconds", 300
        ),
        session_ttl_seconds=_positive_int_with_default(cache_data, "session_ttl_seconds", 3600),
    )

    return AppConfig(
        runtime=runtime,
        context=context,
        cache=cache,
        codex=_parse_codex_config(codex_data=codex_data),
    )


def _parse_codex_config(*, codex_data: dict[str, object]) -> CodexConfig:
    return CodexConfig(
        enabled=_bool_with_default(codex_data, "enabled", True),
        model=_optional_str(codex_data, "model"),
        sandbox=_optional_str(codex_data, "sandbox"),
        profile=_optional_str(codex_data, "profile"),
        extra_args=_tuple_of_str(codex_data, "extra_args"),
        summary_model=_optional_str(codex_data, "summary_model"),
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _positive_int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = _int_with_default(data, key, default)
    if value < 1:
        raise ConfigError(f"{key} must be >= 1")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
