from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn

from .errors import PreconditionFailure
from .models import ArtifactType, DecisionType
from .state_store import PipelineStateStore
from .workspace import WorkspaceAccessor

logger = logging.getLogger(__name__)


class PreconditionValidator:
    """Gate in front of downstream execution (e.g. preview) for a completed pipeline.

    Checks run in a fixed order and stop at the first failure, which is
    raised as :class:`PreconditionFailure` with that check's diagnostics only.
    """

    def __init__(self, store: PipelineStateStore, workspace: WorkspaceAccessor) -> None:
        self.store = store
        self.workspace = workspace

    def validate(self, pipeline_id: str) -> None:
        if not self.store.state_exists(pipeline_id):
            self._fail(f"Pipeline not found: {pipeline_id}")

        decision = self.store.latest_decision(pipeline_id)
        if decision is None:
            self._fail(
                "No completion decision found",
                "Downstream execution requires the completion auditor to have run",
            )
        if decision.decision_type != DecisionType.MARK_COMPLETED:
            self._fail(
                f"Completion decision is {decision.decision_type.value} (expected: {DecisionType.MARK_COMPLETED.value})",
                "Downstream execution can only run for completed builds",
            )

        manifest = self.store.latest_artifact(pipeline_id, ArtifactType.ASSEMBLY_MANIFEST)
        if manifest is None:
            self._fail(
                "Assembly manifest not found",
                "Downstream execution requires the assembly stage to have run",
            )
        if not manifest.content_hash:
            self._fail(
                "Assembly manifest is not hash-locked",
                "A manifest content hash is required for downstream execution",
            )

        workspace_dir = self.workspace.workspace_dir(pipeline_id)
        if not workspace_dir.is_dir():
            self._fail(
                f"Workspace directory does not exist: {workspace_dir}",
                "The assembly stage may have failed to create the app",
            )

        if self.store.read_state(pipeline_id).locked:
            self._fail(
                "Conductor is currently locked (build in progress)",
                "Downstream execution cannot run while a build is active",
            )

        logger.info("Preconditions satisfied for %s", pipeline_id)

    def manifest_hash(self, pipeline_id: str) -> str:
        manifest = self.store.latest_artifact(pipeline_id, ArtifactType.ASSEMBLY_MANIFEST)
        if manifest is None or not manifest.content_hash:
            raise PreconditionFailure(["Assembly manifest not found or not hash-locked"])
        return manifest.content_hash

    def workspace_dir(self, pipeline_id: str) -> Path:
        return self.workspace.workspace_dir(pipeline_id)

    @staticmethod
    def _fail(*diagnostics: str) -> NoReturn:
        logger.warning("Precondition failed: %s", "; ".join(diagnostics))
        raise PreconditionFailure(list(diagnostics))
