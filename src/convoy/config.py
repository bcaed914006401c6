"""Configuration management for convoy."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_FILE_NAME = "convoy.yaml"
PROTECTED_BRANCHES = frozenset({"develop", "main", "master"})


class ConfigError(RuntimeError):
    """Raised when the project configuration file cannot be used."""


class ConvoySettings(BaseSettings):
    """Runtime configuration sourced from environment variables, .env and convoy.yaml.

    One instance is resolved at process start and handed to every component;
    nothing derives the current project from the working directory on its own.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    project_root: Path = Field(default=Path("."), validation_alias="CONVOY_PROJECT_ROOT")
    project_name: str | None = Field(default=None, validation_alias="CONVOY_PROJECT_NAME")
    build_dir: Path | None = Field(default=None, validation_alias="CONVOY_BUILD_DIR")
    state_dir: Path | None = Field(default=None, validation_alias="CONVOY_STATE_DIR")

    develop_branch: str = Field(default="main", validation_alias="CONVOY_DEVELOP_BRANCH")
    git_remote: str = Field(default="origin", validation_alias="CONVOY_GIT_REMOTE")
    feature_branch: str = Field(default="feature/{name}", validation_alias="CONVOY_FEATURE_BRANCH")
    bugfix_branch: str = Field(default="fix/{id}", validation_alias="CONVOY_BUGFIX_BRANCH")
    chore_branch: str = Field(default="chore/{id}", validation_alias="CONVOY_CHORE_BRANCH")
    workspace_mode: str = Field(default="worktree", validation_alias="CONVOY_WORKSPACE_MODE")

    merge_poll_interval: float = Field(default=30.0, validation_alias="CONVOY_MERGE_POLL_INTERVAL")
    worker_poll_interval: float = Field(default=5.0, validation_alias="CONVOY_WORKER_POLL_INTERVAL")
    backoff_base: float = Field(default=5.0, validation_alias="CONVOY_BACKOFF_BASE")
    backoff_cap: float = Field(default=300.0, validation_alias="CONVOY_BACKOFF_CAP")
    prune_retention_hours: float = Field(default=6.0, validation_alias="CONVOY_PRUNE_RETENTION_HOURS")
    prune_interval: float = Field(default=600.0, validation_alias="CONVOY_PRUNE_INTERVAL")
    conflict_retry_limit: int = Field(default=1, validation_alias="CONVOY_CONFLICT_RETRY_LIMIT")
    issue_resume_limit: int = Field(default=1, validation_alias="CONVOY_ISSUE_RESUME_LIMIT")
    lock_retry_attempts: int = Field(default=5, validation_alias="CONVOY_LOCK_RETRY_ATTEMPTS")
    lock_retry_delay: float = Field(default=1.0, validation_alias="CONVOY_LOCK_RETRY_DELAY")

    agent_command: str = Field(default="claude", validation_alias="CONVOY_AGENT_COMMAND")
    resume_command: str | None = Field(default=None, validation_alias="CONVOY_RESUME_COMMAND")
    resolve_command: str | None = Field(default=None, validation_alias="CONVOY_RESOLVE_COMMAND")
    resolve_timeout: float = Field(default=300.0, validation_alias="CONVOY_RESOLVE_TIMEOUT")
    tracker_path: str | None = Field(default=None, validation_alias="CONVOY_TRACKER_PATH")
    git_path: str | None = Field(default=None, validation_alias="CONVOY_GIT_PATH")
    tmux_path: str | None = Field(default=None, validation_alias="CONVOY_TMUX_PATH")

    chroma_persist_path: Path | None = Field(default=None, validation_alias="CHROMA_PERSIST_PATH")
    log_level: str = Field(default="INFO", validation_alias="CONVOY_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CONVOY_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("workspace_mode")
    @classmethod
    def _validate_workspace_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"worktree", "clone"}:
            raise ValueError("CONVOY_WORKSPACE_MODE must be 'worktree' or 'clone'")
        return normalized

    @field_validator("conflict_retry_limit", "issue_resume_limit")
    @classmethod
    def _validate_retry_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry limits must be >= 0")
        return value

    @field_validator("lock_retry_attempts")
    @classmethod
    def _validate_lock_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CONVOY_LOCK_RETRY_ATTEMPTS must be >= 1")
        return value

    @property
    def project(self) -> str:
        return self.project_name or self.project_root.resolve().name

    @property
    def build_path(self) -> Path:
        return self.build_dir or self.project_root / ".convoy" / "build"

    @property
    def state_path(self) -> Path:
        return self.state_dir or Path.home() / ".local" / "state" / "convoy" / self.project

    @property
    def operations_dir(self) -> Path:
        return self.build_path / "operations"

    @property
    def mergeq_dir(self) -> Path:
        return self.build_path / "mergeq"

    @property
    def queue_file(self) -> Path:
        return self.mergeq_dir / "queue.json"

    @property
    def queue_lock_file(self) -> Path:
        return self.mergeq_dir / ".queue.lock"

    @property
    def merge_lock_file(self) -> Path:
        return self.mergeq_dir / ".merge.lock"

    @property
    def mergeq_log_file(self) -> Path:
        return self.mergeq_dir / "logs" / "daemon.log"

    @property
    def workspace_dir(self) -> Path:
        return self.state_path / "workspace" / self.project

    @property
    def tree_dir(self) -> Path:
        return self.state_path / "tree"

    @property
    def workers_dir(self) -> Path:
        return self.state_path / "workers"

    @property
    def chroma_path(self) -> Path:
        return self.chroma_persist_path or self.state_path / "chroma"

    @property
    def remote_develop(self) -> str:
        return f"{self.git_remote}/{self.develop_branch}"

    def branch_for(self, kind: str, identifier: str) -> str:
        """Return the conventional branch name for an operation kind."""

        if kind == "fix":
            return self.bugfix_branch.format(id=identifier, name=identifier)
        if kind == "chore":
            return self.chore_branch.format(id=identifier, name=identifier)
        return self.feature_branch.format(name=identifier, id=identifier)


def load_project_file(root: Path) -> dict[str, Any]:
    """Read convoy.yaml from the project root, returning settings overrides."""

    path = Path(root) / PROJECT_FILE_NAME
    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML in {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"{path} must contain a mapping of setting names")

    unknown = sorted(set(document) - set(ConvoySettings.model_fields))
    if unknown:
        raise ConfigError(f"Unknown settings in {path}: {', '.join(unknown)}")
    return document


def load_settings(**overrides: Any) -> ConvoySettings:
    """Build settings from the environment, then apply convoy.yaml and explicit overrides."""

    base = ConvoySettings(**overrides)
    project_values = load_project_file(base.project_root)
    if project_values:
        try:
            base = ConvoySettings(**{**project_values, **overrides})
        except ValidationError as exc:
            raise ConfigError(f"Invalid value in {PROJECT_FILE_NAME}: {exc}") from exc
    base.project_root = base.project_root.expanduser().resolve()
    for attr in ("build_dir", "state_dir", "chroma_persist_path"):
        value = getattr(base, attr)
        if value is not None:
            setattr(base, attr, value.expanduser().resolve())
    return base


@lru_cache(maxsize=1)
def get_settings() -> ConvoySettings:
    """Return cached settings instance."""

    return load_settings()


__all__ = [
    "ConfigError",
    "ConvoySettings",
    "PROTECTED_BRANCHES",
    "get_settings",
    "load_project_file",
    "load_settings",
]
