from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

HexDigest = Annotated[str, StringConstraints(pattern=r"^[0-9a-f]{64}$")]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class PipelineStatus(str, Enum):
    IDEA = "idea"
    BASE_PROMPT_READY = "base_prompt_ready"
    PLANNING = "planning"
    SCREENS_DEFINED = "screens_defined"
    FLOWS_DEFINED = "flows_defined"
    DESIGNS_READY = "designs_ready"
    RULES_LOCKED = "rules_locked"
    BUILD_PROMPTS_READY = "build_prompts_ready"
    BUILDING = "building"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    VERIFICATION_FAILED = "verification_failed"
    FAILED = "failed"


# Static transition graph. Forward chain through the producer stages, the
# verifying -> building repair back-edge, two terminal edges out of verifying,
# and an escape edge to FAILED from every non-terminal status.
ALLOWED_TRANSITIONS: dict[PipelineStatus, tuple[PipelineStatus, ...]] = {
    PipelineStatus.IDEA: (PipelineStatus.BASE_PROMPT_READY, PipelineStatus.FAILED),
    PipelineStatus.BASE_PROMPT_READY: (PipelineStatus.PLANNING, PipelineStatus.FAILED),
    PipelineStatus.PLANNING: (PipelineStatus.SCREENS_DEFINED, PipelineStatus.FAILED),
    PipelineStatus.SCREENS_DEFINED: (PipelineStatus.FLOWS_DEFINED, PipelineStatus.FAILED),
    PipelineStatus.FLOWS_DEFINED: (PipelineStatus.DESIGNS_READY, PipelineStatus.FAILED),
    PipelineStatus.DESIGNS_READY: (PipelineStatus.RULES_LOCKED, PipelineStatus.FAILED),
    PipelineStatus.RULES_LOCKED: (PipelineStatus.BUILD_PROMPTS_READY, PipelineStatus.FAILED),
    PipelineStatus.BUILD_PROMPTS_READY: (PipelineStatus.BUILDING, PipelineStatus.FAILED),
    PipelineStatus.BUILDING: (PipelineStatus.VERIFYING, PipelineStatus.FAILED),
    PipelineStatus.VERIFYING: (
        PipelineStatus.BUILDING,
        PipelineStatus.COMPLETED,
        PipelineStatus.VERIFICATION_FAILED,
        PipelineStatus.FAILED,
    ),
    PipelineStatus.COMPLETED: (),
    PipelineStatus.VERIFICATION_FAILED: (),
    PipelineStatus.FAILED: (),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Statuses in which a completion audit may run.
AUDITABLE_STATUSES = frozenset({PipelineStatus.BUILDING, PipelineStatus.VERIFYING})

# Producer stage expected to run next from each status.
STATUS_TO_NEXT_STAGE: dict[PipelineStatus, str] = {
    PipelineStatus.IDEA: "foundry_architect",
    PipelineStatus.BASE_PROMPT_READY: "product_strategist",
    PipelineStatus.PLANNING: "screen_cartographer",
    PipelineStatus.SCREENS_DEFINED: "journey_orchestrator",
    PipelineStatus.FLOWS_DEFINED: "visual_forge",
    PipelineStatus.DESIGNS_READY: "constraint_compiler",
    PipelineStatus.RULES_LOCKED: "build_prompt_engineer",
    PipelineStatus.BUILD_PROMPTS_READY: "forge_implementer",
    PipelineStatus.BUILDING: "verification_executor",
    PipelineStatus.VERIFYING: "completion_auditor",
}


@dataclass(frozen=True)
class TransitionValidation:
    valid: bool
    allowed: tuple[PipelineStatus, ...]
    reason: str | None = None


class PipelineState(BaseModel):
    pipeline_id: str = Field(min_length=1)
    status: PipelineStatus = PipelineStatus.IDEA
    locked: bool = False
    awaiting_human: bool = False
    last_stage: str | None = None
    pause_reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class StateSnapshot(BaseModel):
    """Read-only view of a pipeline's conductor state."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    status: PipelineStatus
    locked: bool
    awaiting_human: bool
    last_stage: str | None
    pause_reason: str | None = None
    can_transition: bool
    allowed_next_states: tuple[PipelineStatus, ...]


class NextActionType(str, Enum):
    RUN_STAGE = "run_stage"
    AWAIT_HUMAN = "await_human"
    HALT = "halt"


class NextAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: NextActionType
    stage: str | None = None
    reason: str | None = None
    allowed_next_states: tuple[PipelineStatus, ...] = ()


class ArtifactType(str, Enum):
    BASE_PROMPT = "base_prompt"
    PRODUCT_PLAN = "product_plan"
    SCREEN_INDEX = "screen_index"
    USER_JOURNEYS = "user_journeys"
    VISUAL_DESIGNS = "visual_designs"
    PROJECT_RULES = "project_rules"
    BUILD_PROMPT = "build_prompt"
    EXECUTION_PLAN = "execution_plan"
    ASSEMBLY_MANIFEST = "assembly_manifest"


class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"


class Artifact(BaseModel):
    """Output of one producer stage, bound to its inputs by ``content_hash``."""

    artifact_id: str = Field(default_factory=lambda: _new_id("ART"))
    pipeline_id: str = Field(min_length=1)
    artifact_type: ArtifactType
    producing_stage: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    payload: dict[str, Any]
    content_hash: HexDigest | None = None
    upstream_hashes: list[HexDigest] = Field(default_factory=list)
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    created_at: datetime = Field(default_factory=_utcnow)
    approved_at: datetime | None = None
    rejected_reason: str | None = None
    supersedes: str | None = None

    @property
    def is_locked(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED


class StepStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"


class VerificationStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    check: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    status: StepStatus
    diagnostics: tuple[str, ...] = ()


class VerificationResult(BaseModel):
    """One verification attempt. Written once, never mutated."""

    model_config = ConfigDict(frozen=True)

    result_id: str = Field(default_factory=lambda: _new_id("VER"))
    pipeline_id: str
    attempt: int = Field(ge=1)
    workspace_ref: str
    steps: tuple[VerificationStep, ...]
    overall_status: StepStatus
    diagnostics: tuple[str, ...] = ()
    result_hash: HexDigest | None = None
    executed_at: datetime = Field(default_factory=_utcnow)

    @property
    def failed_steps(self) -> list[VerificationStep]:
        return [step for step in self.steps if step.status == StepStatus.FAILED]


class ExecutionUnitStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ExecutionUnit(BaseModel):
    unit_id: str
    title: str = ""
    status: ExecutionUnitStatus = ExecutionUnitStatus.PENDING


class ExecutionPlanProgress(BaseModel):
    """Ordered execution units of the build stage and their progress."""

    pipeline_id: str
    units: list[ExecutionUnit] = Field(default_factory=list)

    def pending_units(self) -> list[ExecutionUnit]:
        return [unit for unit in self.units if unit.status == ExecutionUnitStatus.PENDING]

    def current_unit(self) -> ExecutionUnit | None:
        for unit in self.units:
            if unit.status == ExecutionUnitStatus.IN_PROGRESS:
                return unit
        completed = [unit for unit in self.units if unit.status == ExecutionUnitStatus.COMPLETED]
        return completed[-1] if completed else None

    def start_next(self) -> ExecutionUnit | None:
        if any(unit.status == ExecutionUnitStatus.IN_PROGRESS for unit in self.units):
            raise ValueError(f"Pipeline {self.pipeline_id} already has a unit in progress")
        pending = self.pending_units()
        if not pending:
            return None
        pending[0].status = ExecutionUnitStatus.IN_PROGRESS
        return pending[0]

    def complete_current(self) -> ExecutionUnit | None:
        for unit in self.units:
            if unit.status == ExecutionUnitStatus.IN_PROGRESS:
                unit.status = ExecutionUnitStatus.COMPLETED
                return unit
        return None


class ErrorCategory(str, Enum):
    REPAIRABLE = "repairable"
    NON_REPAIRABLE = "non_repairable"
    UNCLASSIFIED = "unclassified"


class ErrorClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    matched_rule: str | None = None
    reason: str

    @property
    def is_repairable(self) -> bool:
        # Unclassified failures take the bounded retry path.
        return self.category != ErrorCategory.NON_REPAIRABLE


class DecisionType(str, Enum):
    PROCEED_TO_NEXT_UNIT = "proceed_to_next_unit"
    RETRY_WITH_REPAIR = "retry_with_repair"
    ESCALATE_TO_HUMAN = "escalate_to_human"
    MARK_COMPLETED = "mark_completed"
    MARK_FAILED = "mark_failed"


DECISION_EVENT_TYPES: dict[DecisionType, str] = {
    DecisionType.PROCEED_TO_NEXT_UNIT: "completion_audit_passed",
    DecisionType.RETRY_WITH_REPAIR: "completion_audit_retry",
    DecisionType.ESCALATE_TO_HUMAN: "completion_audit_escalated",
    DecisionType.MARK_COMPLETED: "completion_audit_completed",
    DecisionType.MARK_FAILED: "completion_audit_failed",
}


class CompletionDecision(BaseModel):
    """Exactly one per auditor invocation. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    decision_id: str = Field(default_factory=lambda: _new_id("DEC"))
    pipeline_id: str
    decision_type: DecisionType
    reason: str | None = None
    execution_unit_id: str | None = None
    attempt: int = Field(ge=1)
    classification: ErrorCategory | None = None
    verification_result_id: str
    created_at: datetime = Field(default_factory=_utcnow)


class PipelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: _new_id("EVT"))
    pipeline_id: str
    event_type: str
    message: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class HumanResolutionAction(str, Enum):
    RETRY = "retry"
    ABANDON = "abandon"


class HumanResolution(BaseModel):
    action: HumanResolutionAction
    rationale: str = ""
