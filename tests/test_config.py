from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from convoy.config import ConfigError, ConvoySettings, get_settings, load_project_file, load_settings


def test_defaults_derive_layout_from_project_root(tmp_path: Path) -> None:
    root = tmp_path / "shop"
    root.mkdir()
    settings = load_settings(project_root=root, state_dir=tmp_path / "state")

    assert settings.project == "shop"
    assert settings.build_path == root.resolve() / ".convoy" / "build"
    assert settings.queue_file == settings.build_path / "mergeq" / "queue.json"
    assert settings.merge_lock_file.name == ".merge.lock"
    assert settings.queue_lock_file.name == ".queue.lock"
    assert settings.mergeq_log_file == settings.build_path / "mergeq" / "logs" / "daemon.log"
    assert settings.tree_dir == (tmp_path / "state").resolve() / "tree"
    assert settings.chroma_path == (tmp_path / "state").resolve() / "chroma"
    assert settings.remote_develop == "origin/main"


def test_environment_variables_are_read(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONVOY_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("CONVOY_DEVELOP_BRANCH", "develop")
    monkeypatch.setenv("CONVOY_MERGE_POLL_INTERVAL", "12")
    monkeypatch.setenv("CONVOY_LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.develop_branch == "develop"
    assert settings.merge_poll_interval == 12.0
    assert settings.log_level == "DEBUG"
    assert settings.remote_develop == "origin/develop"


def test_project_file_overrides_environment(monkeypatch, tmp_path: Path) -> None:
    (tmp_path / "convoy.yaml").write_text(
        "develop_branch: trunk\nconflict_retry_limit: 2\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CONVOY_DEVELOP_BRANCH", "develop")

    settings = load_settings(project_root=tmp_path)

    assert settings.develop_branch == "trunk"
    assert settings.conflict_retry_limit == 2


def test_project_file_rejects_unknown_keys(tmp_path: Path) -> None:
    (tmp_path / "convoy.yaml").write_text("develop: trunk\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown settings"):
        load_project_file(tmp_path)


def test_project_file_rejects_invalid_yaml(tmp_path: Path) -> None:
    (tmp_path / "convoy.yaml").write_text("develop_branch: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        load_settings(project_root=tmp_path)


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        ConvoySettings(project_root=tmp_path, workspace_mode="symlink")
    with pytest.raises(ValidationError):
        ConvoySettings(project_root=tmp_path, conflict_retry_limit=-1)
    with pytest.raises(ValidationError):
        ConvoySettings(project_root=tmp_path, log_level="chatty")


def test_branch_templates(tmp_path: Path) -> None:
    settings = load_settings(project_root=tmp_path)

    assert settings.branch_for("fix", "app-12") == "fix/app-12"
    assert settings.branch_for("chore", "app-7") == "chore/app-7"
    assert settings.branch_for("feature", "auth") == "feature/auth"


def test_get_settings_is_cached(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONVOY_PROJECT_ROOT", str(tmp_path))
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
