from __future__ import annotations

from pathlib import Path

import pytest

from forge_pipeline.conductor import Conductor
from forge_pipeline.errors import IntegrityViolation, StateViolation
from forge_pipeline.models import (
    ApprovalStatus,
    Artifact,
    ArtifactType,
    CompletionDecision,
    DecisionType,
    ExecutionPlanProgress,
    ExecutionUnit,
    ExecutionUnitStatus,
    PipelineEvent,
    PipelineState,
    PipelineStatus,
    StepStatus,
    VerificationResult,
)
from forge_pipeline.state_store import PipelineStateStore, safe_path_component


def test_safe_path_component_accepts_only_unambiguous_ids() -> None:
    assert safe_path_component("ok_id.v2") == "ok_id.v2"
    assert safe_path_component("a" * 128) == "a" * 128
    for bad in ("", "   ", "pipe 1", "pipe/1", " pipe-1", "..", ".hidden", "-x", "a" * 129):
        with pytest.raises(ValueError, match="identifier must be 1-128 characters"):
            safe_path_component(bad)


def test_distinct_pipeline_ids_never_share_storage(store: PipelineStateStore) -> None:
    conductor = Conductor(store)
    conductor.initialize("pipe-1")
    for colliding in ("pipe 1", "pipe/1"):
        with pytest.raises(StateViolation, match="identifier must be"):
            conductor.initialize(colliding)
    assert [path.name for path in store.pipelines_dir.iterdir()] == ["pipe-1"]


def test_state_roundtrip_and_duplicate_create(store: PipelineStateStore) -> None:
    store.create_state(PipelineState(pipeline_id="pipe-1"))
    assert store.state_exists("pipe-1")
    assert store.read_state("pipe-1").status == PipelineStatus.IDEA

    with pytest.raises(ValueError, match="already exists"):
        store.create_state(PipelineState(pipeline_id="pipe-1"))


def test_read_missing_state_raises(store: PipelineStateStore) -> None:
    with pytest.raises(FileNotFoundError):
        store.read_state("missing")


def test_update_state_discards_failed_mutation(store: PipelineStateStore) -> None:
    store.create_state(PipelineState(pipeline_id="pipe-1"))

    def explode(state: PipelineState) -> PipelineState:
        state.locked = True
        raise RuntimeError("mutation failed")

    with pytest.raises(RuntimeError, match="mutation failed"):
        store.update_state("pipe-1", explode)
    assert store.read_state("pipe-1").locked is False


def test_corrupt_state_raises_value_error(store: PipelineStateStore) -> None:
    store.create_state(PipelineState(pipeline_id="pipe-1"))
    store.state_path("pipe-1").write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="is empty"):
        store.read_state("pipe-1")


def _artifact(version: int = 1, **overrides: object) -> Artifact:
    fields: dict[str, object] = {
        "pipeline_id": "pipe-1",
        "artifact_type": ArtifactType.SCREEN_INDEX,
        "producing_stage": "screen_cartographer",
        "version": version,
        "payload": {"screens": [f"v{version}"]},
    }
    fields.update(overrides)
    return Artifact(**fields)


def test_approved_artifact_cannot_be_updated(store: PipelineStateStore) -> None:
    artifact = _artifact(approval_status=ApprovalStatus.APPROVED)
    store.create_artifact(artifact)

    with pytest.raises(IntegrityViolation, match="approved and immutable"):
        store.update_artifact(artifact.artifact_id, lambda a: a)


def test_list_and_latest_artifacts(store: PipelineStateStore) -> None:
    first = _artifact(1, approval_status=ApprovalStatus.APPROVED)
    second = _artifact(2)
    other_pipeline = _artifact(1, pipeline_id="pipe-2")
    for artifact in (second, first, other_pipeline):
        store.create_artifact(artifact)

    listed = store.list_artifacts("pipe-1", ArtifactType.SCREEN_INDEX)
    assert [a.version for a in listed] == [1, 2]
    assert store.latest_artifact("pipe-1", ArtifactType.SCREEN_INDEX).artifact_id == second.artifact_id
    approved = store.latest_artifact("pipe-1", ArtifactType.SCREEN_INDEX, approved_only=True)
    assert approved.artifact_id == first.artifact_id
    assert store.latest_artifact("pipe-1", ArtifactType.BASE_PROMPT) is None


def _verification(attempt: int) -> VerificationResult:
    return VerificationResult(
        pipeline_id="pipe-1",
        attempt=attempt,
        workspace_ref="pipe-1",
        steps=(),
        overall_status=StepStatus.PASSED,
    )


def test_verification_results_are_sequenced_and_write_once(store: PipelineStateStore) -> None:
    first = _verification(1)
    second = _verification(2)
    first_path = store.write_verification(first)
    second_path = store.write_verification(second)

    assert first_path.name.startswith("000001-")
    assert second_path.name.startswith("000002-")
    assert [r.attempt for r in store.list_verifications("pipe-1")] == [1, 2]
    assert store.latest_verification("pipe-1").result_id == second.result_id

    with pytest.raises(ValueError, match="write-once"):
        store.write_verification(first)


def test_decisions_are_sequenced(store: PipelineStateStore) -> None:
    assert store.latest_decision("pipe-1") is None
    decision = CompletionDecision(
        pipeline_id="pipe-1",
        decision_type=DecisionType.MARK_COMPLETED,
        attempt=1,
        verification_result_id="VER-1",
    )
    store.write_decision(decision)
    assert store.latest_decision("pipe-1") == decision


def test_plan_defaults_to_empty_and_roundtrips(store: PipelineStateStore) -> None:
    assert store.read_plan("pipe-1").units == []
    plan = ExecutionPlanProgress(
        pipeline_id="pipe-1",
        units=[ExecutionUnit(unit_id="u1"), ExecutionUnit(unit_id="u2")],
    )
    plan.start_next()
    store.write_plan(plan)

    stored = store.read_plan("pipe-1")
    assert [u.status for u in stored.units] == [ExecutionUnitStatus.IN_PROGRESS, ExecutionUnitStatus.PENDING]


def test_event_log_appends_in_order(store: PipelineStateStore, tmp_path: Path) -> None:
    for index in range(3):
        store.append_event(PipelineEvent(pipeline_id="pipe-1", event_type="tick", message=f"tick {index}"))
    assert [e.message for e in store.read_events("pipe-1")] == ["tick 0", "tick 1", "tick 2"]
    assert store.read_events("pipe-2") == []
    assert (tmp_path / "state" / "pipelines" / "pipe-1" / "events.jsonl").is_file()
