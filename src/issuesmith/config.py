from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from issuesmith.models import (
    MERGE_METHODS,
    AutoMergeSettings,
    ConflictFileAction,
    MergeMethod,
)


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int
    worker_count: int = 8
    max_concurrent_agents: int = 3
    stale_job_minutes: int = 30
    max_stale_recoveries: int = 3
    workspace_max_age_hours: int = 72
    workspace_sweep_interval_minutes: int = 10
    label_prefix: str = "issuesmith"

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class ConflictRule:
    pattern: str
    action: ConflictFileAction


@dataclass(frozen=True)
class CommentMonitorConfig:
    enabled: bool = True
    extra_keywords: tuple[str, ...] = ()
    min_confidence: float = 0.3
    similarity_threshold: float = 0.8
    context_window: int = 5
    create_future_fix_issues: bool = True


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str
    default_branch: str
    issue_label: str
    local_clone_source: str | None
    remote_url: str | None
    bot_logins: tuple[str, ...] = ()
    coding_guidelines: str | None = None
    conflict_rules: tuple[ConflictRule, ...] = ()
    auto_merge: AutoMergeSettings = field(default_factory=AutoMergeSettings)
    comments: CommentMonitorConfig = field(default_factory=CommentMonitorConfig)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"git@github.com:{self.owner}/{self.name}.git"

    def is_bot(self, login: str) -> bool:
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in self.bot_logins or normalized.endswith("[bot]")


@dataclass(frozen=True)
class CodexConfig:
    model: str | None
    sandbox: str | None
    profile: str | None
    extra_args: tuple[str, ...]
    timeout_seconds: int = 1800
    association_timeout_seconds: int = 120


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]
    codex: CodexConfig
    codex_overrides: tuple[tuple[str, CodexConfig], ...] = ()

    def codex_for_repo(self, repo: RepoConfig | str) -> CodexConfig:
        repo_id = repo.repo_id if isinstance(repo, RepoConfig) else repo
        for configured_repo_id, codex in self.codex_overrides:
            if configured_repo_id == repo_id:
                return codex
        return self.codex

    def find_repo(self, full_name: str) -> RepoConfig:
        for repo in self.repos:
            if repo.full_name == full_name or repo.repo_id == full_name:
                return repo
        available = ", ".join(repo.full_name for repo in self.repos)
        raise ConfigError(f"Unknown repo {full_name!r}; expected one of: {available}")


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    codex_data = _optional_table(data, "codex") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        poll_interval_seconds=_require_int(runtime_data, "poll_interval_seconds"),
        worker_count=_int_with_default(runtime_data, "worker_count", 8),
        max_concurrent_agents=_int_with_default(runtime_data, "max_concurrent_agents", 3),
        stale_job_minutes=_int_with_default(runtime_data, "stale_job_minutes", 30),
        max_stale_recoveries=_int_with_default(runtime_data, "max_stale_recoveries", 3),
        workspace_max_age_hours=_int_with_default(runtime_data, "workspace_max_age_hours", 72),
        workspace_sweep_interval_minutes=_int_with_default(
            runtime_data, "workspace_sweep_interval_minutes", 10
        ),
        label_prefix=_str_with_default(runtime_data, "label_prefix", "issuesmith"),
    )

    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.max_concurrent_agents < 1:
        raise ConfigError("runtime.max_concurrent_agents must be >= 1")
    if runtime.worker_count < runtime.max_concurrent_agents:
        raise ConfigError("runtime.worker_count must be >= runtime.max_concurrent_agents")
    if runtime.stale_job_minutes < 1:
        raise ConfigError("runtime.stale_job_minutes must be >= 1")
    if runtime.max_stale_recoveries < 1:
        raise ConfigError("runtime.max_stale_recoveries must be >= 1")
    if runtime.workspace_max_age_hours < 1:
        raise ConfigError("runtime.workspace_max_age_hours must be >= 1")

    repos = _load_repo_configs(repo_data=repo_data, label_prefix=runtime.label_prefix)
    codex = _parse_codex_config(codex_data=codex_data)
    codex_overrides = _load_codex_overrides(codex_data=codex_data, repos=repos, defaults=codex)

    return AppConfig(
        runtime=runtime,
        repos=repos,
        codex=codex,
        codex_overrides=codex_overrides,
    )


def _load_repo_configs(
    *, repo_data: dict[str, object], label_prefix: str
) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        repo_table = _require_sub_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(
            _parse_repo_config(repo_id=repo_id, repo_data=repo_table, label_prefix=label_prefix)
        )
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _parse_repo_config(
    *, repo_id: str, repo_data: dict[str, object], label_prefix: str
) -> RepoConfig:
    auto_merge_data = _optional_table(repo_data, "auto_merge") or {}
    comments_data = _optional_table(repo_data, "comments") or {}
    return RepoConfig(
        repo_id=repo_id,
        owner=_require_str(repo_data, "owner"),
        name=_str_with_default(repo_data, "name", repo_id),
        default_branch=_str_with_default(repo_data, "default_branch", "main"),
        issue_label=_str_with_default(repo_data, "issue_label", label_prefix),
        local_clone_source=_optional_str(repo_data, "local_clone_source"),
        remote_url=_optional_str(repo_data, "remote_url"),
        bot_logins=_logins_with_default(repo_data, "bot_logins", ()),
        coding_guidelines=_optional_str(repo_data, "coding_guidelines"),
        conflict_rules=_parse_conflict_rules(repo_data, "conflict_rules"),
        auto_merge=parse_auto_merge_settings(auto_merge_data),
        comments=_parse_comment_monitor_config(comments_data),
    )


def parse_auto_merge_settings(
    data: dict[str, object], *, defaults: AutoMergeSettings | None = None
) -> AutoMergeSettings:
    base = defaults or AutoMergeSettings()
    settings = AutoMergeSettings(
        enabled=_bool_with_default(data, "enabled", base.enabled),
        auto_merge_clean=_bool_with_default(data, "auto_merge_clean", base.auto_merge_clean),
        auto_resolve_conflicts=_bool_with_default(
            data, "auto_resolve_conflicts", base.auto_resolve_conflicts
        ),
        merge_method=parse_merge_method(
            data.get("merge_method", base.merge_method), key="merge_method"
        ),
        stale_pr_days=_float_with_default(data, "stale_pr_days", base.stale_pr_days),
        max_resolution_attempts=_int_with_default(
            data, "max_resolution_attempts", base.max_resolution_attempts
        ),
    )
    if settings.stale_pr_days < 0:
        raise ConfigError("stale_pr_days must be >= 0")
    if settings.max_resolution_attempts < 1:
        raise ConfigError("max_resolution_attempts must be >= 1")
    return settings


def parse_merge_method(value: object, *, key: str) -> MergeMethod:
    if not isinstance(value, str) or value.strip().lower() not in MERGE_METHODS:
        raise ConfigError(f"{key} must be one of: {', '.join(MERGE_METHODS)}")
    return cast(MergeMethod, value.strip().lower())


def _parse_comment_monitor_config(data: dict[str, object]) -> CommentMonitorConfig:
    config = CommentMonitorConfig(
        enabled=_bool_with_default(data, "enabled", True),
        extra_keywords=tuple(
            keyword.strip().lower() for keyword in _tuple_of_str(data, "keywords")
        ),
        min_confidence=_float_with_default(data, "min_confidence", 0.3),
        similarity_threshold=_float_with_default(data, "similarity_threshold", 0.8),
        context_window=_int_with_default(data, "context_window", 5),
        create_future_fix_issues=_bool_with_default(data, "create_future_fix_issues", True),
    )
    if not 0.0 <= config.min_confidence <= 1.0:
        raise ConfigError("comments.min_confidence must be between 0 and 1")
    if not 0.0 < config.similarity_threshold <= 1.0:
        raise ConfigError("comments.similarity_threshold must be in (0, 1]")
    if config.context_window < 0:
        raise ConfigError("comments.context_window must be >= 0")
    return config


def _parse_conflict_rules(data: dict[str, object], key: str) -> tuple[ConflictRule, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of {{pattern, action}} tables")
    rules: list[ConflictRule] = []
    for index, item in enumerate(value):
        table = _require_sub_table(item, table_name=f"{key}[{index}]")
        pattern = _require_str(table, "pattern")
        action = _require_str(table, "action").strip().lower()
        if action not in {"resolve", "ignore", "escalate"}:
            raise ConfigError(f"{key}[{index}].action must be one of: resolve, ignore, escalate")
        rules.append(ConflictRule(pattern=pattern, action=cast(ConflictFileAction, action)))
    return tuple(rules)


def _parse_codex_config(
    *, codex_data: dict[str, object], defaults: CodexConfig | None = None
) -> CodexConfig:
    config = CodexConfig(
        model=_optional_str_with_default(
            codex_data, "model", defaults.model if defaults is not None else None
        ),
        sandbox=_optional_str_with_default(
            codex_data, "sandbox", defaults.sandbox if defaults is not None else None
        ),
        profile=_optional_str_with_default(
            codex_data, "profile", defaults.profile if defaults is not None else None
        ),
        extra_args=_tuple_of_str_with_default(
            codex_data, "extra_args", defaults.extra_args if defaults is not None else ()
        ),
        timeout_seconds=_int_with_default(
            codex_data, "timeout_seconds", defaults.timeout_seconds if defaults else 1800
        ),
        association_timeout_seconds=_int_with_default(
            codex_data,
            "association_timeout_seconds",
            defaults.association_timeout_seconds if defaults else 120,
        ),
    )
    if config.timeout_seconds < 1 or config.association_timeout_seconds < 1:
        raise ConfigError("codex timeouts must be >= 1 second")
    return config


def _load_codex_overrides(
    *,
    codex_data: dict[str, object],
    repos: tuple[RepoConfig, ...],
    defaults: CodexConfig,
) -> tuple[tuple[str, CodexConfig], ...]:
    repo_data = _optional_table(codex_data, "repo")
    if repo_data is None:
        return ()

    configured_repo_ids = {repo.repo_id for repo in repos}
    overrides: list[tuple[str, CodexConfig]] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        if repo_id not in configured_repo_ids:
            available = ", ".join(sorted(configured_repo_ids))
            raise ConfigError(
                f"Unknown repo id {repo_id!r} in [codex.repo.{repo_id}]; expected one of: "
                f"{available}"
            )
        override_table = _require_sub_table(raw_value, table_name=f"[codex.repo.{repo_id}]")
        overrides.append(
            (repo_id, _parse_codex_config(codex_data=override_table, defaults=defaults))
        )
    return tuple(overrides)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return _require_sub_table(value, table_name=f"[{key}]")


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    return _require_sub_table(value, table_name=f"[{key}]")


def _require_sub_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
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


def _optional_str_with_default(
    data: dict[str, object], key: str, default: str | None
) -> str | None:
    if key not in data:
        return default
    return _optional_str(data, key)


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, int | float) or isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    return float(value)


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


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _logins_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    normalized: list[str] = []
    for item in _tuple_of_str_with_default(data, key, default):
        login = item.strip().lower()
        if not login:
            raise ConfigError(f"{key} entries must be non-empty strings")
        if login not in normalized:
            normalized.append(login)
    return tuple(normalized)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        existing_id = seen.get(repo.full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[repo.full_name] = repo.repo_id
