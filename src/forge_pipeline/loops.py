from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from .auditor import AuditLedger, CompletionAuditor
from .classification import ErrorClassifier
from .conductor import Conductor
from .errors import RepairBudgetExhausted, StateViolation, VerificationFailure
from .models import (
    CompletionDecision,
    DecisionType,
    ExecutionUnit,
    ExecutionUnitStatus,
    HumanResolution,
    HumanResolutionAction,
    PipelineStatus,
    VerificationResult,
)
from .settings import RuntimeSettings
from .state_store import PipelineStateStore
from .verification import VerificationPipeline

logger = logging.getLogger(__name__)

RepairAction = Callable[[str, CompletionDecision, VerificationResult], None]
UnitBuilder = Callable[[str, ExecutionUnit], None]


class RepairOutcome(str, Enum):
    PROCEED = "proceed"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    FAILED = "failed"


class RepairLoopState(TypedDict, total=False):
    pipeline_id: str
    workspace_ref: str
    attempt: int
    last_result_id: str | None
    decision: dict[str, Any] | None
    route: str | None
    outcome: str | None
    final_status: str | None
    resolution: dict[str, Any] | None


@dataclass(frozen=True)
class RepairLoopResult:
    pipeline_id: str
    outcome: RepairOutcome
    attempt: int
    final_status: PipelineStatus
    decision_type: DecisionType | None
    thread_id: str
    interrupted: bool = False


class RepairLoop:
    """Verify -> audit -> apply cycle as a LangGraph StateGraph.

    The auditor only decides; the ``apply`` node is the single place where a
    decision becomes a conductor transition. Attempts run strictly one after
    another and the attempt counter is the only retry mechanism. When the
    budget is spent the pipeline pauses for a human: with interrupts enabled
    the graph suspends on ``interrupt()`` and is resumed with a
    :class:`HumanResolution`; otherwise the run ends with outcome ``escalated``.
    """

    def __init__(
        self,
        *,
        store: PipelineStateStore,
        verification: VerificationPipeline,
        settings: RuntimeSettings | None = None,
        auditor: CompletionAuditor | None = None,
        repair: RepairAction | None = None,
        builder: UnitBuilder | None = None,
        enable_interrupts: bool = True,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.store = store
        self.conductor = Conductor(store)
        self.verification = verification
        self.auditor = auditor or CompletionAuditor(
            AuditLedger(store),
            ErrorClassifier.from_settings(self.settings),
            budget=self.settings.repair_budget,
        )
        self.repair = repair
        self.builder = builder
        self.enable_interrupts = enable_interrupts

        self.checkpoint_path = self.settings.checkpoint_path(store.root)
        self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        self._checkpoint_conn = sqlite3.connect(self.checkpoint_path, check_same_thread=False)
        self._checkpointer = SqliteSaver(self._checkpoint_conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RepairLoopState)
        graph.add_node("verify", self._verify_node)
        graph.add_node("audit", self._audit_node)
        graph.add_node("apply", self._apply_node)
        graph.add_node("repair", self._repair_node)
        graph.add_node("next_unit", self._next_unit_node)
        graph.add_node("await_human", self._await_human_node)
        graph.add_node("finish", self._finish_node)

        graph.add_edge(START, "verify")
        graph.add_edge("verify", "audit")
        graph.add_edge("audit", "apply")
        graph.add_conditional_edges(
            "apply",
            self._route,
            {
                "repair": "repair",
                "next_unit": "next_unit",
                "await_human": "await_human",
                "finish": "finish",
            },
        )
        graph.add_edge("repair", "verify")
        graph.add_edge("next_unit", "verify")
        graph.add_conditional_edges(
            "await_human",
            self._route,
            {
                "verify": "verify",
                "finish": "finish",
            },
        )
        graph.add_edge("finish", END)
        return graph

    @staticmethod
    def _route(state: RepairLoopState) -> str:
        return state.get("route") or "finish"

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _verify_node(self, state: RepairLoopState) -> dict[str, Any]:
        pipeline_id = state["pipeline_id"]
        snapshot = self.conductor.get_state_snapshot(pipeline_id)
        if snapshot.awaiting_human:
            raise StateViolation(f"Pipeline {pipeline_id} is awaiting human approval; verification will not run")
        if snapshot.status == PipelineStatus.BUILDING:
            self.conductor.transition(pipeline_id, PipelineStatus.VERIFYING, stage="verification_executor")
        elif snapshot.status != PipelineStatus.VERIFYING:
            raise StateViolation(
                f"Cannot verify {pipeline_id} in status {snapshot.status.value}. Expected one of: building, verifying"
            )

        with self.conductor.hold(pipeline_id, "verification_executor"):
            result = self.verification.run_checks(pipeline_id, state["workspace_ref"], attempt=state["attempt"])
        return {"last_result_id": result.result_id, "route": None}

    def _audit_node(self, state: RepairLoopState) -> dict[str, Any]:
        decision = self.auditor.audit(state["pipeline_id"])
        return {"decision": decision.model_dump(mode="json")}

    def _apply_node(self, state: RepairLoopState) -> dict[str, Any]:
        pipeline_id = state["pipeline_id"]
        decision = CompletionDecision.model_validate(state["decision"])
        decision_type = decision.decision_type

        if decision_type == DecisionType.RETRY_WITH_REPAIR:
            self.conductor.transition(pipeline_id, PipelineStatus.BUILDING, stage="repair")
            return {"route": "repair"}

        if decision_type == DecisionType.PROCEED_TO_NEXT_UNIT:
            plan = self.store.read_plan(pipeline_id)
            plan.complete_current()
            unit = plan.start_next()
            self.store.write_plan(plan)
            self.conductor.transition(pipeline_id, PipelineStatus.BUILDING, stage="forge_implementer")
            logger.info("Pipeline %s advancing to unit %s", pipeline_id, unit.unit_id if unit else None)
            if self.builder is None:
                return {"route": "finish", "outcome": RepairOutcome.PROCEED.value}
            return {"route": "next_unit", "attempt": 1}

        if decision_type == DecisionType.ESCALATE_TO_HUMAN:
            self.conductor.pause_for_human(pipeline_id, decision.reason)
            return {"route": "await_human"}

        if decision_type == DecisionType.MARK_COMPLETED:
            plan = self.store.read_plan(pipeline_id)
            if plan.complete_current() is not None:
                self.store.write_plan(plan)
            self.conductor.transition(pipeline_id, PipelineStatus.COMPLETED, stage="completion_auditor")
            return {"route": "finish", "outcome": RepairOutcome.COMPLETED.value}

        status = self.conductor.get_state_snapshot(pipeline_id).status
        target = PipelineStatus.VERIFICATION_FAILED if status == PipelineStatus.VERIFYING else PipelineStatus.FAILED
        self.conductor.transition(pipeline_id, target, stage="completion_auditor")
        return {"route": "finish", "outcome": RepairOutcome.FAILED.value}

    def _run_repair(self, pipeline_id: str, decision: CompletionDecision) -> None:
        if self.repair is None:
            logger.warning("No repair action configured for %s; re-verifying unchanged workspace", pipeline_id)
            return
        result = self.store.latest_verification(pipeline_id)
        if result is None:
            raise StateViolation(f"No verification result found for {pipeline_id}")
        self.repair(pipeline_id, decision, result)

    def _repair_node(self, state: RepairLoopState) -> dict[str, Any]:
        decision = CompletionDecision.model_validate(state["decision"])
        self._run_repair(state["pipeline_id"], decision)
        return {"attempt": state["attempt"] + 1, "route": None}

    def _next_unit_node(self, state: RepairLoopState) -> dict[str, Any]:
        pipeline_id = state["pipeline_id"]
        unit = self.store.read_plan(pipeline_id).current_unit()
        if unit is not None and self.builder is not None:
            self.builder(pipeline_id, unit)
        return {"route": None}

    def _await_human_node(self, state: RepairLoopState) -> dict[str, Any]:
        pipeline_id = state["pipeline_id"]
        decision = CompletionDecision.model_validate(state["decision"])

        payload = state.get("resolution")
        if payload is None:
            if not self.enable_interrupts:
                return {"route": "finish", "outcome": RepairOutcome.ESCALATED.value}
            payload = interrupt(
                {
                    "pipeline_id": pipeline_id,
                    "decision_id": decision.decision_id,
                    "reason": decision.reason,
                    "attempt": state["attempt"],
                    "resolution_options": [action.value for action in HumanResolutionAction],
                }
            )

        resolution = HumanResolution.model_validate(payload)
        if resolution.action == HumanResolutionAction.RETRY:
            self.conductor.approve(pipeline_id, PipelineStatus.BUILDING, stage="human")
            self._run_repair(pipeline_id, decision)
            logger.info("Human granted %s a fresh repair budget: %s", pipeline_id, resolution.rationale)
            return {"route": "verify", "attempt": 1, "resolution": None}

        self.conductor.approve(pipeline_id, PipelineStatus.VERIFICATION_FAILED, stage="human")
        logger.info("Human abandoned %s: %s", pipeline_id, resolution.rationale)
        return {"route": "finish", "outcome": RepairOutcome.FAILED.value, "resolution": None}

    def _finish_node(self, state: RepairLoopState) -> dict[str, Any]:
        snapshot = self.conductor.get_state_snapshot(state["pipeline_id"])
        return {"final_status": snapshot.status.value}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _start_first_unit(self, pipeline_id: str) -> None:
        plan = self.store.read_plan(pipeline_id)
        if plan.pending_units() and not any(u.status == ExecutionUnitStatus.IN_PROGRESS for u in plan.units):
            plan.start_next()
            self.store.write_plan(plan)

    def _config(self, thread_id: str) -> dict[str, Any]:
        return {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": thread_id},
        }

    def _result(
        self,
        values: dict[str, Any],
        pipeline_id: str,
        thread_id: str,
        *,
        raise_on_escalation: bool,
        raise_on_failure: bool,
    ) -> RepairLoopResult:
        interrupted = bool(self.graph.get_state(self._config(thread_id)).next)
        outcome = RepairOutcome.ESCALATED if interrupted else RepairOutcome(values.get("outcome") or "escalated")
        decision_payload = values.get("decision")
        decision = CompletionDecision.model_validate(decision_payload) if decision_payload else None
        attempt = int(values.get("attempt", 1))
        result = RepairLoopResult(
            pipeline_id=pipeline_id,
            outcome=outcome,
            attempt=attempt,
            final_status=self.conductor.get_state_snapshot(pipeline_id).status,
            decision_type=decision.decision_type if decision else None,
            thread_id=thread_id,
            interrupted=interrupted,
        )
        logger.info("Repair loop %s finished: %s at attempt %d", pipeline_id, outcome.value, attempt)

        if outcome == RepairOutcome.ESCALATED and raise_on_escalation:
            raise RepairBudgetExhausted(pipeline_id, attempt=attempt, budget=self.auditor.budget)
        if outcome == RepairOutcome.FAILED and raise_on_failure:
            latest = self.store.latest_verification(pipeline_id)
            raise VerificationFailure(
                decision.reason if decision and decision.reason else f"Verification failed for {pipeline_id}",
                repairable=False,
                diagnostics=list(latest.diagnostics) if latest else [],
            )
        return result

    def run(
        self,
        pipeline_id: str,
        workspace_ref: str | None = None,
        *,
        attempt: int = 1,
        resolution: HumanResolution | None = None,
        thread_id: str | None = None,
        raise_on_escalation: bool = False,
        raise_on_failure: bool = False,
    ) -> RepairLoopResult:
        """Drive verification and repair until a terminal, proceed, or escalation outcome."""
        thread = thread_id or f"repair-loop-{uuid.uuid4().hex[:8]}"
        self._start_first_unit(pipeline_id)
        initial_state: RepairLoopState = {
            "pipeline_id": pipeline_id,
            "workspace_ref": workspace_ref or pipeline_id,
            "attempt": attempt,
            "last_result_id": None,
            "decision": None,
            "route": None,
            "outcome": None,
            "final_status": None,
            "resolution": resolution.model_dump(mode="json") if resolution else None,
        }
        values = self.graph.invoke(initial_state, config=self._config(thread))
        return self._result(
            values,
            pipeline_id,
            thread,
            raise_on_escalation=raise_on_escalation,
            raise_on_failure=raise_on_failure,
        )

    def resume(self, thread_id: str, pipeline_id: str, resolution: HumanResolution) -> RepairLoopResult:
        """Resume a run suspended at the human gate."""
        values = self.graph.invoke(
            Command(resume=resolution.model_dump(mode="json")),
            config=self._config(thread_id),
        )
        return self._result(values, pipeline_id, thread_id, raise_on_escalation=False, raise_on_failure=False)

    def close(self) -> None:
        self._checkpoint_conn.close()

