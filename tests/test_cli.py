from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import write_app
from forge_pipeline.__main__ import main
from forge_pipeline.models import ArtifactType
from forge_pipeline.provenance import compute_hash


@pytest.fixture
def cli_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FORGE_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    return tmp_path


def test_init_status_and_transition(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init", "pipe-1"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "idea"

    assert main(["transition", "pipe-1", "base_prompt_ready", "--stage", "foundry_architect"]) == 0
    capsys.readouterr()

    assert main(["status", "pipe-1"]) == 0
    snapshot = json.loads(capsys.readouterr().out)
    assert snapshot["status"] == "base_prompt_ready"
    assert snapshot["last_stage"] == "foundry_architect"
    assert (cli_root / "state_store" / "pipelines" / "pipe-1" / "state.json").is_file()


def test_invalid_transition_exits_nonzero(cli_root: Path, caplog: pytest.LogCaptureFixture) -> None:
    assert main(["init", "pipe-1"]) == 0
    assert main(["transition", "pipe-1", "completed"]) == 1
    assert "Invalid transition: idea → completed" in caplog.text


def test_next_reports_stage(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(["init", "pipe-1"])
    capsys.readouterr()
    assert main(["next", "pipe-1"]) == 0
    action = json.loads(capsys.readouterr().out)
    assert action == {
        "action": "run_stage",
        "stage": "foundry_architect",
        "reason": None,
        "allowed_next_states": ["base_prompt_ready", "failed"],
    }


def test_hash_command(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    payload = {"screens": ["home"], "ignored": True}
    payload_file = cli_root / "payload.json"
    payload_file.write_text(json.dumps(payload), encoding="utf-8")

    assert main(["hash", "screen_index", str(payload_file), "--upstream", "a" * 64]) == 0
    assert capsys.readouterr().out.strip() == compute_hash(ArtifactType.SCREEN_INDEX, payload, ["a" * 64])


def test_repair_loop_command_completes(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(["init", "pipe-1"])
    for target in (
        "base_prompt_ready",
        "planning",
        "screens_defined",
        "flows_defined",
        "designs_ready",
        "rules_locked",
        "build_prompts_ready",
        "building",
    ):
        assert main(["transition", "pipe-1", target]) == 0
    write_app(cli_root / "workspaces" / "pipe-1" / "app")
    capsys.readouterr()

    assert main(["repair-loop", "pipe-1"]) == 0
    outcome = json.loads(capsys.readouterr().out)
    assert outcome["outcome"] == "completed"
    assert outcome["final_status"] == "completed"

    assert main(["events", "pipe-1"]) == 0
    event_types = [json.loads(line)["event_type"] for line in capsys.readouterr().out.splitlines()]
    assert "verification_passed" in event_types
    assert event_types[-1] == "conductor_transition"


def test_preconditions_command_reports_failure(cli_root: Path, caplog: pytest.LogCaptureFixture) -> None:
    main(["init", "pipe-1"])
    assert main(["preconditions", "pipe-1"]) == 1
    assert "No completion decision found" in caplog.text


def test_invalid_settings_exit_nonzero(cli_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FORGE_REPAIR_BUDGET", "zero")
    assert main(["status", "pipe-1"]) == 1


def test_dotenv_file_is_loaded(cli_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Registered so teardown removes the value load_dotenv puts into os.environ.
    monkeypatch.setenv("FORGE_STATE_STORE_ROOT", "state_store")
    monkeypatch.delenv("FORGE_STATE_STORE_ROOT")
    (cli_root / ".env").write_text("FORGE_STATE_STORE_ROOT=custom_state\n", encoding="utf-8")
    assert main(["init", "pipe-1"]) == 0
    assert (cli_root / "custom_state" / "pipelines" / "pipe-1" / "state.json").is_file()
