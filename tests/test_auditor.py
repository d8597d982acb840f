from __future__ import annotations

import pytest

from conftest import advance_to
from forge_pipeline.auditor import AuditLedger, CompletionAuditor, decide
from forge_pipeline.classification import ErrorClassifier
from forge_pipeline.conductor import Conductor
from forge_pipeline.errors import StateViolation
from forge_pipeline.models import (
    DecisionType,
    ErrorCategory,
    ExecutionPlanProgress,
    ExecutionUnit,
    PipelineStatus,
    StepStatus,
    VerificationResult,
)
from forge_pipeline.state_store import PipelineStateStore

CLASSIFIER = ErrorClassifier()


def _classify(*diagnostics: str):
    return CLASSIFIER.classify(diagnostics)


def test_repairable_failure_on_first_attempt_retries() -> None:
    decision, reason = decide(StepStatus.FAILED, 0, 1, _classify("Runtime error: x is undefined"))
    assert decision == DecisionType.RETRY_WITH_REPAIR
    assert reason.startswith("Repair attempt 2 of 3: Matched repairable pattern")


def test_repairable_failure_at_budget_escalates() -> None:
    decision, reason = decide(StepStatus.FAILED, 0, 3, _classify("Runtime error: x is undefined"))
    assert decision == DecisionType.ESCALATE_TO_HUMAN
    assert reason == "Maximum automated repair attempts reached (attempt 3 of 3)"


def test_non_repairable_overrides_low_attempt_count() -> None:
    decision, reason = decide(StepStatus.FAILED, 0, 1, _classify("Security violation: forbidden API"))
    assert decision == DecisionType.MARK_FAILED
    assert reason.startswith("Non-repairable verification failure:")


@pytest.mark.parametrize(
    ("pending", "expected"),
    [(2, DecisionType.PROCEED_TO_NEXT_UNIT), (0, DecisionType.MARK_COMPLETED)],
)
def test_passed_routes_on_pending_units(pending: int, expected: DecisionType) -> None:
    decision, _ = decide(StepStatus.PASSED, pending, 1, None)
    assert decision == expected


def test_unclassified_failure_retries_and_says_so() -> None:
    decision, reason = decide(StepStatus.FAILED, 0, 2, _classify("something odd"))
    assert decision == DecisionType.RETRY_WITH_REPAIR
    assert "unclassified failure treated as repairable" in reason


def test_failure_without_classification_is_rejected() -> None:
    with pytest.raises(ValueError, match="requires an error classification"):
        decide(StepStatus.FAILED, 0, 1, None)


def test_budget_is_configurable(store: PipelineStateStore) -> None:
    classification = _classify("Runtime error")
    assert decide(StepStatus.FAILED, 0, 3, classification, budget=5)[0] == DecisionType.RETRY_WITH_REPAIR
    assert decide(StepStatus.FAILED, 0, 5, classification, budget=5)[0] == DecisionType.ESCALATE_TO_HUMAN
    with pytest.raises(ValueError, match="repair budget must be >= 1"):
        CompletionAuditor(AuditLedger(store), budget=0)


def _record_verification(
    store: PipelineStateStore, status: StepStatus, attempt: int, diagnostics: tuple[str, ...] = ()
) -> VerificationResult:
    result = VerificationResult(
        pipeline_id="pipe-1",
        attempt=attempt,
        workspace_ref="pipe-1",
        steps=(),
        overall_status=status,
        diagnostics=diagnostics,
    )
    store.write_verification(result)
    return result


@pytest.fixture
def auditor(store: PipelineStateStore) -> CompletionAuditor:
    return CompletionAuditor(AuditLedger(store))


def test_audit_records_one_decision_and_event(
    store: PipelineStateStore, conductor: Conductor, auditor: CompletionAuditor
) -> None:
    advance_to(conductor, "pipe-1", PipelineStatus.VERIFYING)
    plan = ExecutionPlanProgress(pipeline_id="pipe-1", units=[ExecutionUnit(unit_id="u1"), ExecutionUnit(unit_id="u2")])
    plan.start_next()
    store.write_plan(plan)
    result = _record_verification(store, StepStatus.FAILED, 1, ("Runtime error: x is undefined",))

    decision = auditor.audit("pipe-1")

    assert decision.decision_type == DecisionType.RETRY_WITH_REPAIR
    assert decision.classification == ErrorCategory.REPAIRABLE
    assert decision.execution_unit_id == "u1"
    assert decision.verification_result_id == result.result_id
    assert store.list_decisions("pipe-1") == [decision]

    event = store.read_events("pipe-1")[-1]
    assert event.event_type == "completion_audit_retry"
    assert event.payload["decision_id"] == decision.decision_id
    assert event.payload["matched_rule"] == r"runtime\s+error"


def test_audit_does_not_change_pipeline_status(
    store: PipelineStateStore, conductor: Conductor, auditor: CompletionAuditor
) -> None:
    advance_to(conductor, "pipe-1", PipelineStatus.VERIFYING)
    _record_verification(store, StepStatus.PASSED, 1)
    before = store.read_state("pipe-1")

    decision = auditor.audit("pipe-1")

    assert decision.decision_type == DecisionType.MARK_COMPLETED
    assert decision.classification is None
    assert store.read_state("pipe-1") == before


def test_audit_requires_build_or_verify_status(conductor: Conductor, auditor: CompletionAuditor) -> None:
    advance_to(conductor, "pipe-1", PipelineStatus.PLANNING)
    with pytest.raises(StateViolation, match="Cannot audit pipe-1 in status planning"):
        auditor.audit("pipe-1")


def test_audit_requires_verification_result(
    store: PipelineStateStore, conductor: Conductor, auditor: CompletionAuditor
) -> None:
    advance_to(conductor, "pipe-1", PipelineStatus.BUILDING)
    with pytest.raises(StateViolation, match="No verification result found"):
        auditor.audit("pipe-1")
    assert store.list_decisions("pipe-1") == []


def test_audit_unknown_pipeline(auditor: CompletionAuditor) -> None:
    with pytest.raises(StateViolation, match="Pipeline state not found"):
        auditor.audit("missing")
