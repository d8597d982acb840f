from __future__ import annotations

from pathlib import Path

import pytest

from forge_pipeline.settings import RuntimeSettings


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.repair_budget == 3
    assert settings.output_truncate_chars == 5_000
    assert settings.command_timeout_seconds == 300
    assert settings.workspace_app_dir == "app"
    assert settings.classification_rules_path is None
    assert settings.workspace_root_path == Path.cwd() / "workspaces"


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FORGE_REPAIR_BUDGET", "5")
    monkeypatch.setenv("FORGE_WORKSPACE_ROOT", str(tmp_path))
    monkeypatch.setenv("FORGE_WORKSPACE_APP_DIR", "/site/")
    monkeypatch.setenv("FORGE_CLASSIFICATION_RULES", "rules.json")

    settings = RuntimeSettings.from_env()

    assert settings.repair_budget == 5
    assert settings.workspace_root_path == tmp_path
    assert settings.workspace_app_dir == "site"
    assert settings.classification_rules_path == Path("rules.json")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("FORGE_REPAIR_BUDGET", "abc", "must be an integer"),
        ("FORGE_REPAIR_BUDGET", "0", "must be >= 1"),
        ("FORGE_OUTPUT_TRUNCATE_CHARS", "10", "must be >= 256"),
        ("FORGE_WORKSPACE_APP_DIR", "../escape", "must not traverse upwards"),
        ("FORGE_CLASSIFICATION_RULES", "rules.yaml", "must point to a .json file"),
        ("FORGE_STATE_STORE_ROOT", "  ", "must be non-empty"),
    ],
)
def test_runtime_settings_invalid_env_raises(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_relative_paths_resolve_under_roots(tmp_path: Path) -> None:
    settings = RuntimeSettings()
    assert settings.state_store_path(tmp_path) == tmp_path / "state_store"
    assert settings.checkpoint_path(tmp_path / "state_store") == tmp_path / "state_store" / "checkpoints" / "repair_loop.sqlite"

    absolute = RuntimeSettings(state_store_root=str(tmp_path / "elsewhere"))
    assert absolute.state_store_path(Path("/ignored")) == tmp_path / "elsewhere"
