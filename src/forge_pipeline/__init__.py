from importlib.metadata import version

from .artifacts import ArtifactService
from .auditor import DEFAULT_REPAIR_BUDGET, AuditLedger, CompletionAuditor, decide
from .checks import (
    CheckOutcome,
    CommandCheck,
    DanglingReferenceCheck,
    DuplicateIdentifierCheck,
    ForbiddenPathCheck,
    default_checks,
)
from .classification import ClassificationRules, ErrorClassifier
from .conductor import Conductor, HumanGate, MutexToken
from .errors import (
    ConductorLocked,
    ForgeError,
    IntegrityViolation,
    PreconditionFailure,
    RepairBudgetExhausted,
    StateViolation,
    VerificationFailure,
)
from .loops import RepairLoop, RepairLoopResult, RepairOutcome
from .models import (
    ALLOWED_TRANSITIONS,
    ApprovalStatus,
    Artifact,
    ArtifactType,
    CompletionDecision,
    DecisionType,
    ErrorCategory,
    ErrorClassification,
    ExecutionPlanProgress,
    ExecutionUnit,
    HumanResolution,
    HumanResolutionAction,
    NextAction,
    PipelineEvent,
    PipelineState,
    PipelineStatus,
    StateSnapshot,
    StepStatus,
    VerificationResult,
    VerificationStep,
)
from .preconditions import PreconditionValidator
from .provenance import ProvenanceHasher, compute_hash, result_hash, to_canonical_json, verify
from .settings import RuntimeSettings
from .state_store import PipelineRepository, PipelineStateStore
from .verification import VerificationPipeline
from .workspace import WorkspaceAccessor, directory_hash


def get_version() -> str:
    try:
        return version("forge-pipeline")
    except Exception:
        return "0.0.0"


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ApprovalStatus",
    "Artifact",
    "ArtifactService",
    "ArtifactType",
    "AuditLedger",
    "CheckOutcome",
    "ClassificationRules",
    "CommandCheck",
    "CompletionAuditor",
    "CompletionDecision",
    "Conductor",
    "ConductorLocked",
    "DEFAULT_REPAIR_BUDGET",
    "DanglingReferenceCheck",
    "DecisionType",
    "DuplicateIdentifierCheck",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "ExecutionPlanProgress",
    "ExecutionUnit",
    "ForbiddenPathCheck",
    "ForgeError",
    "HumanGate",
    "HumanResolution",
    "HumanResolutionAction",
    "IntegrityViolation",
    "MutexToken",
    "NextAction",
    "PipelineEvent",
    "PipelineRepository",
    "PipelineState",
    "PipelineStateStore",
    "PipelineStatus",
    "PreconditionFailure",
    "PreconditionValidator",
    "ProvenanceHasher",
    "RepairBudgetExhausted",
    "RepairLoop",
    "RepairLoopResult",
    "RepairOutcome",
    "RuntimeSettings",
    "StateSnapshot",
    "StateViolation",
    "StepStatus",
    "VerificationFailure",
    "VerificationPipeline",
    "VerificationResult",
    "VerificationStep",
    "WorkspaceAccessor",
    "compute_hash",
    "decide",
    "default_checks",
    "directory_hash",
    "get_version",
    "result_hash",
    "to_canonical_json",
    "verify",
]
