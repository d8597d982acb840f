from __future__ import annotations

import json

import pytest

from conftest import advance_to
from forge_pipeline.artifacts import ArtifactService
from forge_pipeline.conductor import Conductor
from forge_pipeline.errors import IntegrityViolation, StateViolation
from forge_pipeline.models import ApprovalStatus, ArtifactType, PipelineStatus
from forge_pipeline.provenance import compute_hash
from forge_pipeline.state_store import PipelineStateStore

BASE_PROMPT = {"content": "Build a habit tracker", "sections": ["goals", "audience"]}
PLAN = {"master_plan": "three screens", "implementation_plan": ["home", "stats", "settings"]}


@pytest.fixture
def service(store: PipelineStateStore, conductor: Conductor) -> ArtifactService:
    conductor.initialize("pipe-1")
    return ArtifactService(store, conductor)


def test_create_draft_stamps_hash(service: ArtifactService) -> None:
    draft = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)

    assert draft.approval_status == ApprovalStatus.DRAFT
    assert draft.content_hash == compute_hash(ArtifactType.BASE_PROMPT, BASE_PROMPT)
    assert service.get(draft.artifact_id) == draft


def test_create_draft_requires_pipeline(service: ArtifactService) -> None:
    with pytest.raises(StateViolation, match="Pipeline state not found"):
        service.create_draft("missing", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)


def test_approve_hash_locks_and_blocks_reapproval(service: ArtifactService) -> None:
    draft = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    approved = service.approve(draft.artifact_id)

    assert approved.is_locked
    assert approved.approved_at is not None
    assert service.latest("pipe-1", ArtifactType.BASE_PROMPT, approved_only=True) == approved

    with pytest.raises(IntegrityViolation, match="approved and immutable"):
        service.approve(draft.artifact_id)
    with pytest.raises(IntegrityViolation):
        service.reject(draft.artifact_id, "too late")


def test_approve_detects_tampered_draft(service: ArtifactService, store: PipelineStateStore) -> None:
    draft = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    path = store.artifact_path(draft.artifact_id)
    record = json.loads(path.read_text(encoding="utf-8"))
    record["payload"]["content"] = "Build something else"
    path.write_text(json.dumps(record), encoding="utf-8")

    with pytest.raises(IntegrityViolation, match="Hash mismatch"):
        service.approve(draft.artifact_id)
    assert service.get(draft.artifact_id).approval_status == ApprovalStatus.DRAFT


def test_approve_requires_approved_upstream(service: ArtifactService) -> None:
    base = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    plan = service.create_draft(
        "pipe-1", ArtifactType.PRODUCT_PLAN, "product_strategist", PLAN, upstream_hashes=[base.content_hash]
    )

    with pytest.raises(IntegrityViolation, match="no approved artifact"):
        service.approve(plan.artifact_id)

    service.approve(base.artifact_id)
    assert service.approve(plan.artifact_id).is_locked


def test_reject_only_applies_to_drafts(service: ArtifactService) -> None:
    draft = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    rejected = service.reject(draft.artifact_id, "missing audience")

    assert rejected.approval_status == ApprovalStatus.REJECTED
    assert rejected.rejected_reason == "missing audience"
    with pytest.raises(StateViolation, match="only drafts can be approved"):
        service.approve(draft.artifact_id)


def test_revise_creates_new_version_and_keeps_prior(service: ArtifactService) -> None:
    first = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    service.approve(first.artifact_id)

    revised_payload = {**BASE_PROMPT, "content": "Build a habit tracker with streaks"}
    second = service.revise(first.artifact_id, revised_payload)

    assert second.version == 2
    assert second.supersedes == first.artifact_id
    assert second.content_hash != first.content_hash
    assert service.get(first.artifact_id).is_locked
    assert service.latest("pipe-1", ArtifactType.BASE_PROMPT).artifact_id == second.artifact_id


def test_approve_and_advance_opens_human_gate(service: ArtifactService, conductor: Conductor) -> None:
    draft = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    conductor.pause_for_human("pipe-1", "Review base prompt")

    approved, snapshot = service.approve_and_advance(draft.artifact_id, PipelineStatus.BASE_PROMPT_READY)

    assert approved.is_locked
    assert snapshot.status == PipelineStatus.BASE_PROMPT_READY
    assert not snapshot.awaiting_human
    assert snapshot.last_stage == "foundry_architect"


def test_verify_chain_and_integrity_halt(service: ArtifactService, store: PipelineStateStore, conductor: Conductor) -> None:
    advance_to(conductor, "pipe-1", PipelineStatus.PLANNING)
    base = service.create_draft("pipe-1", ArtifactType.BASE_PROMPT, "foundry_architect", BASE_PROMPT)
    service.approve(base.artifact_id)
    plan = service.create_draft(
        "pipe-1", ArtifactType.PRODUCT_PLAN, "product_strategist", PLAN, upstream_hashes=[base.content_hash]
    )
    service.approve(plan.artifact_id)

    assert {a.artifact_id for a in service.verify_chain("pipe-1")} == {base.artifact_id, plan.artifact_id}

    path = store.artifact_path(base.artifact_id)
    record = json.loads(path.read_text(encoding="utf-8"))
    record["payload"]["sections"] = ["goals"]
    path.write_text(json.dumps(record), encoding="utf-8")

    with pytest.raises(IntegrityViolation, match="Hash mismatch"):
        service.ensure_chain_intact("pipe-1")

    snapshot = conductor.get_state_snapshot("pipe-1")
    assert snapshot.status == PipelineStatus.FAILED
    assert snapshot.locked
    assert snapshot.awaiting_human
