"""Completion auditor: the only authority on what happens after verification.

:func:`decide` is a pure function of the verification outcome, the pending
unit count, the attempt number, and the error classification. The auditor
reads and records through :class:`AuditLedger`, which has no capability to
transition status, take the lock, write artifacts or run checks. Applying a
decision is left to the caller (see ``loops.RepairLoop``).
"""

from __future__ import annotations

import logging

from .classification import ErrorClassifier
from .errors import StateViolation
from .models import (
    AUDITABLE_STATUSES,
    DECISION_EVENT_TYPES,
    CompletionDecision,
    DecisionType,
    ErrorCategory,
    ErrorClassification,
    ExecutionPlanProgress,
    PipelineEvent,
    PipelineStatus,
    StepStatus,
    VerificationResult,
)
from .state_store import PipelineRepository

logger = logging.getLogger(__name__)

DEFAULT_REPAIR_BUDGET = 3


def decide(
    overall_status: StepStatus,
    pending_units: int,
    attempt: int,
    classification: ErrorClassification | None,
    budget: int = DEFAULT_REPAIR_BUDGET,
) -> tuple[DecisionType, str]:
    """Apply the five decision rules in order; the first match wins.

    A non-repairable classification beats the attempt counter. An
    unclassified failure is treated as repairable.
    """
    if overall_status == StepStatus.PASSED:
        if pending_units > 0:
            return DecisionType.PROCEED_TO_NEXT_UNIT, f"Verification passed; {pending_units} execution unit(s) remaining"
        return DecisionType.MARK_COMPLETED, "Verification passed and all execution units are complete"

    if classification is None:
        raise ValueError("a failed verification requires an error classification")

    if classification.category == ErrorCategory.NON_REPAIRABLE:
        return DecisionType.MARK_FAILED, f"Non-repairable verification failure: {classification.reason}"

    if attempt >= budget:
        return (
            DecisionType.ESCALATE_TO_HUMAN,
            f"Maximum automated repair attempts reached (attempt {attempt} of {budget})",
        )

    if classification.category == ErrorCategory.UNCLASSIFIED:
        detail = f"unclassified failure treated as repairable ({classification.reason})"
    else:
        detail = classification.reason
    return DecisionType.RETRY_WITH_REPAIR, f"Repair attempt {attempt + 1} of {budget}: {detail}"


class AuditLedger:
    """Read-and-record view of the repository handed to the auditor."""

    def __init__(self, repository: PipelineRepository) -> None:
        self._repository = repository

    def status(self, pipeline_id: str) -> PipelineStatus:
        if not self._repository.state_exists(pipeline_id):
            raise StateViolation(f"Pipeline state not found: {pipeline_id}")
        return self._repository.read_state(pipeline_id).status

    def latest_verification(self, pipeline_id: str) -> VerificationResult | None:
        return self._repository.latest_verification(pipeline_id)

    def plan(self, pipeline_id: str) -> ExecutionPlanProgress:
        return self._repository.read_plan(pipeline_id)

    def record(self, decision: CompletionDecision, event: PipelineEvent) -> None:
        self._repository.write_decision(decision)
        self._repository.append_event(event)


class CompletionAuditor:
    def __init__(
        self,
        ledger: AuditLedger,
        classifier: ErrorClassifier | None = None,
        *,
        budget: int = DEFAULT_REPAIR_BUDGET,
    ) -> None:
        if budget < 1:
            raise ValueError(f"repair budget must be >= 1, got: {budget}")
        self.ledger = ledger
        self.classifier = classifier or ErrorClassifier()
        self.budget = budget

    def audit(self, pipeline_id: str) -> CompletionDecision:
        """Produce, persist and announce exactly one decision for the latest verification.

        Raises:
            StateViolation: If the pipeline is not in a build or verify status,
                or no verification result exists. Nothing is recorded.
        """
        status = self.ledger.status(pipeline_id)
        if status not in AUDITABLE_STATUSES:
            expected = ", ".join(sorted(s.value for s in AUDITABLE_STATUSES))
            raise StateViolation(
                f"Cannot audit {pipeline_id} in status {status.value}. Expected one of: {expected}"
            )

        verification = self.ledger.latest_verification(pipeline_id)
        if verification is None:
            raise StateViolation(f"No verification result found for {pipeline_id}")

        plan = self.ledger.plan(pipeline_id)
        pending = len(plan.pending_units())
        current = plan.current_unit()

        classification = None
        if verification.overall_status == StepStatus.FAILED:
            classification = self.classifier.classify(verification.diagnostics)

        decision_type, reason = decide(
            verification.overall_status,
            pending,
            verification.attempt,
            classification,
            self.budget,
        )
        decision = CompletionDecision(
            pipeline_id=pipeline_id,
            decision_type=decision_type,
            reason=reason,
            execution_unit_id=current.unit_id if current else None,
            attempt=verification.attempt,
            classification=classification.category if classification else None,
            verification_result_id=verification.result_id,
        )
        event = PipelineEvent(
            pipeline_id=pipeline_id,
            event_type=DECISION_EVENT_TYPES[decision_type],
            message=reason,
            payload={
                "decision_id": decision.decision_id,
                "decision_type": decision_type.value,
                "attempt": verification.attempt,
                "execution_unit_id": decision.execution_unit_id,
                "classification": decision.classification.value if decision.classification else None,
                "matched_rule": classification.matched_rule if classification else None,
            },
        )
        self.ledger.record(decision, event)
        logger.info(
            "Audit %s attempt %d: %s (%s)", pipeline_id, verification.attempt, decision_type.value, reason
        )
        return decision
