from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping

from .conductor import Conductor
from .errors import IntegrityViolation, StateViolation
from .models import ApprovalStatus, Artifact, ArtifactType, PipelineEvent, PipelineStatus, StateSnapshot
from .provenance import compute_hash, verify
from .state_store import PipelineStateStore

logger = logging.getLogger(__name__)


class ArtifactService:
    """Lifecycle of stage artifacts: draft, approve (hash-lock), reject, revise, chain audit.

    A hash is always stamped before a record is persisted, and approval
    re-verifies it, so no approved artifact can exist without a matching hash.
    """

    def __init__(self, store: PipelineStateStore, conductor: Conductor | None = None) -> None:
        self.store = store
        self.conductor = conductor or Conductor(store)

    def _emit(self, artifact: Artifact, event_type: str, message: str) -> None:
        self.store.append_event(
            PipelineEvent(
                pipeline_id=artifact.pipeline_id,
                event_type=event_type,
                message=message,
                payload={
                    "artifact_id": artifact.artifact_id,
                    "artifact_type": artifact.artifact_type.value,
                    "version": artifact.version,
                    "content_hash": artifact.content_hash,
                },
            )
        )

    def create_draft(
        self,
        pipeline_id: str,
        artifact_type: ArtifactType,
        stage: str,
        payload: Mapping[str, Any],
        upstream_hashes: Iterable[str] = (),
    ) -> Artifact:
        if not self.store.state_exists(pipeline_id):
            raise StateViolation(f"Pipeline state not found: {pipeline_id}")
        upstream = list(upstream_hashes)
        artifact = Artifact(
            pipeline_id=pipeline_id,
            artifact_type=ArtifactType(artifact_type),
            producing_stage=stage,
            payload=dict(payload),
            content_hash=compute_hash(artifact_type, payload, upstream),
            upstream_hashes=upstream,
        )
        self.store.create_artifact(artifact)
        self._emit(artifact, "artifact_created", f"{artifact.artifact_type.value} v{artifact.version} drafted by {stage}")
        logger.info("Drafted %s %s for %s", artifact.artifact_type.value, artifact.artifact_id, pipeline_id)
        return artifact

    def get(self, artifact_id: str) -> Artifact:
        return self.store.read_artifact(artifact_id)

    def latest(
        self, pipeline_id: str, artifact_type: ArtifactType, *, approved_only: bool = False
    ) -> Artifact | None:
        return self.store.latest_artifact(pipeline_id, artifact_type, approved_only=approved_only)

    def approve(self, artifact_id: str) -> Artifact:
        """Hash-lock a draft.

        Raises:
            IntegrityViolation: If the stored hash does not recompute, an upstream
                hash does not resolve to an approved artifact, or the artifact is
                already approved.
            StateViolation: If the artifact was rejected.
        """

        def mutate(artifact: Artifact) -> Artifact:
            if artifact.approval_status != ApprovalStatus.DRAFT:
                raise StateViolation(
                    f"Artifact {artifact_id} is {artifact.approval_status.value}; only drafts can be approved"
                )
            verify(artifact)
            self._require_resolved_upstream(artifact)
            artifact.approval_status = ApprovalStatus.APPROVED
            artifact.approved_at = datetime.now(UTC)
            return artifact

        approved = self.store.update_artifact(artifact_id, mutate)
        self._emit(approved, "artifact_approved", f"{approved.artifact_type.value} v{approved.version} approved and hash-locked")
        logger.info("Approved %s (%s)", artifact_id, approved.content_hash)
        return approved

    def approve_and_advance(self, artifact_id: str, target: PipelineStatus) -> tuple[Artifact, StateSnapshot]:
        """Approve an artifact, then advance its pipeline as the approving human.

        Opens the human gate if the producing stage paused for sign-off.
        """
        approved = self.approve(artifact_id)
        snapshot = self.conductor.get_state_snapshot(approved.pipeline_id)
        if snapshot.awaiting_human:
            snapshot = self.conductor.approve(approved.pipeline_id, target, stage=approved.producing_stage)
        else:
            snapshot = self.conductor.transition(approved.pipeline_id, target, stage=approved.producing_stage)
        return approved, snapshot

    def reject(self, artifact_id: str, reason: str) -> Artifact:
        def mutate(artifact: Artifact) -> Artifact:
            if artifact.approval_status != ApprovalStatus.DRAFT:
                raise StateViolation(
                    f"Artifact {artifact_id} is {artifact.approval_status.value}; only drafts can be rejected"
                )
            artifact.approval_status = ApprovalStatus.REJECTED
            artifact.rejected_reason = reason
            return artifact

        rejected = self.store.update_artifact(artifact_id, mutate)
        self._emit(rejected, "artifact_rejected", reason)
        logger.info("Rejected %s: %s", artifact_id, reason)
        return rejected

    def revise(
        self,
        artifact_id: str,
        payload: Mapping[str, Any],
        *,
        upstream_hashes: Iterable[str] | None = None,
        stage: str | None = None,
    ) -> Artifact:
        """Create the next version of an artifact. The prior record is never modified."""
        previous = self.store.read_artifact(artifact_id)
        upstream = list(upstream_hashes) if upstream_hashes is not None else list(previous.upstream_hashes)
        revision = Artifact(
            pipeline_id=previous.pipeline_id,
            artifact_type=previous.artifact_type,
            producing_stage=stage or previous.producing_stage,
            version=previous.version + 1,
            payload=dict(payload),
            content_hash=compute_hash(previous.artifact_type, payload, upstream),
            upstream_hashes=upstream,
            supersedes=previous.artifact_id,
        )
        self.store.create_artifact(revision)
        self._emit(revision, "artifact_revised", f"{revision.artifact_type.value} v{revision.version} supersedes {artifact_id}")
        return revision

    def _approved_by_hash(self, pipeline_id: str) -> dict[str, Artifact]:
        return {
            artifact.content_hash: artifact
            for artifact in self.store.list_artifacts(pipeline_id)
            if artifact.is_locked and artifact.content_hash is not None
        }

    def _require_resolved_upstream(self, artifact: Artifact, approved: dict[str, Artifact] | None = None) -> None:
        known = approved if approved is not None else self._approved_by_hash(artifact.pipeline_id)
        for upstream in artifact.upstream_hashes:
            if upstream not in known:
                raise IntegrityViolation(
                    f"Artifact {artifact.artifact_id} references upstream hash {upstream} "
                    f"with no approved artifact in pipeline {artifact.pipeline_id}",
                    artifact_id=artifact.artifact_id,
                )

    def verify_chain(self, pipeline_id: str) -> list[Artifact]:
        """Re-verify every approved artifact and every upstream link of the pipeline.

        Returns:
            The approved artifacts, in store order.

        Raises:
            IntegrityViolation: On the first broken hash or dangling upstream link.
        """
        approved = [a for a in self.store.list_artifacts(pipeline_id) if a.is_locked]
        for artifact in approved:
            verify(artifact)
        index = {a.content_hash: a for a in approved if a.content_hash is not None}
        for artifact in approved:
            self._require_resolved_upstream(artifact, index)
        logger.info("Hash chain intact for %s (%d approved artifacts)", pipeline_id, len(approved))
        return approved

    def ensure_chain_intact(self, pipeline_id: str) -> list[Artifact]:
        """Run :meth:`verify_chain`; on a break, halt the pipeline before re-raising."""
        try:
            return self.verify_chain(pipeline_id)
        except IntegrityViolation as exc:
            self.conductor.halt_for_integrity(pipeline_id, exc)
            raise
