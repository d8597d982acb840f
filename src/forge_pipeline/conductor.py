"""Pipeline conductor: the status state machine and its two gating tokens.

The primary machine is the static ``ALLOWED_TRANSITIONS`` graph over
:class:`PipelineStatus`. Two independent two-state tokens sit beside it:

* :class:`MutexToken` (free/held) serializes stage runs. A transition while
  held fails fast with :class:`ConductorLocked`; nothing queues or waits.
* :class:`HumanGate` (open/awaiting) blocks automatic advancement until a
  human approves, rejects, or resumes.

Every state change goes through ``PipelineRepository.update_state``, so a
failed check leaves the stored record untouched.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .errors import ConductorLocked, IntegrityViolation, StateViolation
from .models import (
    ALLOWED_TRANSITIONS,
    STATUS_TO_NEXT_STAGE,
    TERMINAL_STATUSES,
    NextAction,
    NextActionType,
    PipelineEvent,
    PipelineState,
    PipelineStatus,
    StateSnapshot,
    TransitionValidation,
)
from .state_store import PipelineRepository

logger = logging.getLogger(__name__)


class MutexToken:
    """Serialization lock over ``PipelineState.locked``."""

    @staticmethod
    def is_held(state: PipelineState) -> bool:
        return state.locked

    @staticmethod
    def ensure_free(state: PipelineState) -> None:
        if state.locked:
            holder = f" (held by {state.last_stage})" if state.last_stage else ""
            raise ConductorLocked(
                f"Conductor is locked for {state.pipeline_id}{holder}; retry once the running stage finishes",
                allowed=ALLOWED_TRANSITIONS[state.status],
            )

    @classmethod
    def acquire(cls, state: PipelineState, holder: str | None = None) -> None:
        cls.ensure_free(state)
        state.locked = True
        if holder:
            state.last_stage = holder

    @staticmethod
    def release(state: PipelineState) -> None:
        state.locked = False


class HumanGate:
    """Human-approval gate over ``PipelineState.awaiting_human``."""

    @staticmethod
    def is_awaiting(state: PipelineState) -> bool:
        return state.awaiting_human

    @staticmethod
    def ensure_open(state: PipelineState) -> None:
        if state.awaiting_human:
            reason = f": {state.pause_reason}" if state.pause_reason else ""
            raise StateViolation(
                f"Pipeline {state.pipeline_id} is awaiting human approval{reason}",
                allowed=ALLOWED_TRANSITIONS[state.status],
            )

    @staticmethod
    def close(state: PipelineState, reason: str) -> None:
        state.awaiting_human = True
        state.pause_reason = reason

    @staticmethod
    def open(state: PipelineState) -> None:
        state.awaiting_human = False
        state.pause_reason = None


def allowed_next(status: PipelineStatus) -> tuple[PipelineStatus, ...]:
    return ALLOWED_TRANSITIONS[PipelineStatus(status)]


def validate_transition(current: PipelineStatus, target: PipelineStatus) -> TransitionValidation:
    """Check *target* against the transition graph without touching any state."""
    current = PipelineStatus(current)
    target = PipelineStatus(target)
    allowed = allowed_next(current)
    if target not in allowed:
        listed = ", ".join(status.value for status in allowed) or "none (terminal state)"
        return TransitionValidation(
            valid=False,
            allowed=allowed,
            reason=f"Invalid transition: {current.value} → {target.value}. Allowed: {listed}",
        )
    return TransitionValidation(valid=True, allowed=allowed)


def snapshot_of(state: PipelineState) -> StateSnapshot:
    allowed = allowed_next(state.status)
    return StateSnapshot(
        pipeline_id=state.pipeline_id,
        status=state.status,
        locked=state.locked,
        awaiting_human=state.awaiting_human,
        last_stage=state.last_stage,
        pause_reason=state.pause_reason,
        can_transition=bool(allowed) and not state.locked and not state.awaiting_human,
        allowed_next_states=allowed,
    )


class Conductor:
    """Sole writer of pipeline status."""

    def __init__(self, repository: PipelineRepository) -> None:
        self.repository = repository

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _require(self, pipeline_id: str) -> PipelineState:
        if not self.repository.state_exists(pipeline_id):
            raise StateViolation(f"Pipeline state not found: {pipeline_id}")
        return self.repository.read_state(pipeline_id)

    def get_state_snapshot(self, pipeline_id: str) -> StateSnapshot:
        return snapshot_of(self._require(pipeline_id))

    allowed_next = staticmethod(allowed_next)
    validate_transition = staticmethod(validate_transition)

    def next_action(self, pipeline_id: str) -> NextAction:
        """Route the pipeline: which stage runs next, or why nothing should."""
        if not self.repository.state_exists(pipeline_id):
            return NextAction(action=NextActionType.HALT, reason=f"Pipeline state not found: {pipeline_id}")
        state = self.repository.read_state(pipeline_id)
        if state.locked:
            return NextAction(action=NextActionType.HALT, reason="Conductor is locked; a stage run is in progress")
        if state.awaiting_human:
            return NextAction(
                action=NextActionType.AWAIT_HUMAN,
                reason=state.pause_reason or "Awaiting human approval to continue",
            )
        allowed = allowed_next(state.status)
        if state.status in TERMINAL_STATUSES:
            return NextAction(action=NextActionType.HALT, reason=f"Terminal state reached: {state.status.value}")
        return NextAction(
            action=NextActionType.RUN_STAGE,
            stage=STATUS_TO_NEXT_STAGE[state.status],
            allowed_next_states=allowed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, pipeline_id: str) -> StateSnapshot:
        try:
            if self.repository.state_exists(pipeline_id):
                raise StateViolation(f"Pipeline state already exists: {pipeline_id}")
            state = self.repository.create_state(PipelineState(pipeline_id=pipeline_id))
        except ValueError as exc:
            raise StateViolation(str(exc)) from exc
        self._emit(pipeline_id, "conductor_initialized", f"Pipeline initialized at {state.status.value}")
        logger.info("Initialized pipeline %s", pipeline_id)
        return snapshot_of(state)

    def transition(
        self, pipeline_id: str, target: PipelineStatus, *, stage: str | None = None
    ) -> StateSnapshot:
        """Move the pipeline to *target* along the transition graph.

        Raises:
            ConductorLocked: If a stage run holds the lock.
            StateViolation: If the gate is awaiting a human or *target* is not allowed.
        """
        target = PipelineStatus(target)
        self._require(pipeline_id)
        previous: dict[str, PipelineStatus] = {}

        def mutate(state: PipelineState) -> PipelineState:
            MutexToken.ensure_free(state)
            HumanGate.ensure_open(state)
            previous["status"] = state.status
            self._apply_transition(state, target, stage)
            return state

        state = self._update(pipeline_id, mutate, target)
        self._record_transition(pipeline_id, previous["status"], target, stage)
        return snapshot_of(state)

    def lock(self, pipeline_id: str, stage: str | None = None) -> StateSnapshot:
        self._require(pipeline_id)
        state = self.repository.update_state(pipeline_id, lambda s: _acquired(s, stage))
        logger.debug("Locked %s for %s", pipeline_id, stage or "unnamed stage")
        return snapshot_of(state)

    def unlock(self, pipeline_id: str) -> StateSnapshot:
        self._require(pipeline_id)
        state = self.repository.update_state(pipeline_id, _released)
        logger.debug("Unlocked %s", pipeline_id)
        return snapshot_of(state)

    @contextmanager
    def hold(self, pipeline_id: str, stage: str) -> Iterator[StateSnapshot]:
        """Hold the lock for the duration of one stage run; always released on exit."""
        snapshot = self.lock(pipeline_id, stage)
        try:
            yield snapshot
        finally:
            self.unlock(pipeline_id)

    # ------------------------------------------------------------------
    # Human gate
    # ------------------------------------------------------------------

    def pause_for_human(self, pipeline_id: str, reason: str | None = None) -> StateSnapshot:
        """Close the gate and release the lock so a pause never strands the pipeline."""
        message = reason or "Awaiting human approval to continue"
        self._require(pipeline_id)

        def mutate(state: PipelineState) -> PipelineState:
            HumanGate.close(state, message)
            MutexToken.release(state)
            return state

        state = self.repository.update_state(pipeline_id, mutate)
        self._emit(pipeline_id, "conductor_paused_for_human", message)
        logger.info("Paused %s for human: %s", pipeline_id, message)
        return snapshot_of(state)

    def resume_after_human(self, pipeline_id: str) -> StateSnapshot:
        self._require(pipeline_id)
        state = self.repository.update_state(pipeline_id, _gate_opened)
        self._emit(pipeline_id, "conductor_resumed", "Human approval received - resuming orchestration")
        logger.info("Resumed %s after human", pipeline_id)
        return snapshot_of(state)

    def approve(self, pipeline_id: str, target: PipelineStatus, *, stage: str | None = None) -> StateSnapshot:
        """Human approve: open the gate and take a validated transition in one write.

        An invalid *target* leaves the gate closed.
        """
        target = PipelineStatus(target)
        self._require(pipeline_id)
        previous: dict[str, PipelineStatus] = {}

        def mutate(state: PipelineState) -> PipelineState:
            if not state.awaiting_human:
                raise StateViolation(
                    f"Pipeline {pipeline_id} is not awaiting human approval",
                    allowed=allowed_next(state.status),
                )
            MutexToken.ensure_free(state)
            previous["status"] = state.status
            self._apply_transition(state, target, stage)
            HumanGate.open(state)
            return state

        state = self._update(pipeline_id, mutate, target)
        self._emit(pipeline_id, "conductor_resumed", f"Human approved advance to {target.value}")
        self._record_transition(pipeline_id, previous["status"], target, stage)
        return snapshot_of(state)

    def reject(self, pipeline_id: str, reason: str) -> StateSnapshot:
        """Human reject: keep the gate closed so nothing advances automatically."""
        self._require(pipeline_id)

        def mutate(state: PipelineState) -> PipelineState:
            HumanGate.close(state, f"Rejected by human: {reason}")
            MutexToken.release(state)
            return state

        state = self.repository.update_state(pipeline_id, mutate)
        self._emit(pipeline_id, "conductor_rejected", reason)
        logger.warning("Human rejected %s: %s", pipeline_id, reason)
        return snapshot_of(state)

    def abort(self, pipeline_id: str, reason: str, *, stage: str | None = None) -> StateSnapshot:
        """Hard abort along the escape edge to FAILED. Clears the gate, respects the lock."""
        self._require(pipeline_id)
        previous: dict[str, PipelineStatus] = {}

        def mutate(state: PipelineState) -> PipelineState:
            MutexToken.ensure_free(state)
            previous["status"] = state.status
            self._apply_transition(state, PipelineStatus.FAILED, stage)
            HumanGate.open(state)
            state.pause_reason = reason
            return state

        state = self._update(pipeline_id, mutate, PipelineStatus.FAILED)
        self._record_transition(pipeline_id, previous["status"], PipelineStatus.FAILED, stage)
        self._emit(pipeline_id, "conductor_aborted", reason)
        return snapshot_of(state)

    def halt_for_integrity(self, pipeline_id: str, violation: IntegrityViolation | str) -> StateSnapshot:
        """Freeze a pipeline after a protocol breach pending manual investigation.

        Moves to FAILED when the escape edge is available, then holds both the
        lock and the gate so no automatic actor can touch it. Bypasses the
        mutex check.
        """
        reason = str(violation)
        self._require(pipeline_id)

        def mutate(state: PipelineState) -> PipelineState:
            if PipelineStatus.FAILED in allowed_next(state.status):
                state.status = PipelineStatus.FAILED
            state.locked = True
            state.last_stage = "integrity_guard"
            HumanGate.close(state, f"Integrity violation: {reason}")
            return state

        state = self.repository.update_state(pipeline_id, mutate)
        self._emit(pipeline_id, "conductor_integrity_halt", reason)
        logger.error("Integrity halt on %s: %s", pipeline_id, reason)
        return snapshot_of(state)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_transition(state: PipelineState, target: PipelineStatus, stage: str | None) -> None:
        validation = validate_transition(state.status, target)
        if not validation.valid:
            raise StateViolation(validation.reason or "Invalid transition", allowed=validation.allowed)
        state.status = target
        if stage:
            state.last_stage = stage

    def _update(
        self, pipeline_id: str, mutate: Callable[[PipelineState], PipelineState], target: PipelineStatus
    ) -> PipelineState:
        try:
            return self.repository.update_state(pipeline_id, mutate)
        except StateViolation as exc:
            logger.error("Rejected transition of %s to %s: %s", pipeline_id, target.value, exc)
            raise

    def _record_transition(
        self, pipeline_id: str, source: PipelineStatus, target: PipelineStatus, stage: str | None
    ) -> None:
        suffix = f" (stage: {stage})" if stage else ""
        self._emit(
            pipeline_id,
            "conductor_transition",
            f"Transitioned from {source.value} → {target.value}{suffix}",
            {"from": source.value, "to": target.value, "stage": stage},
        )
        logger.info("Pipeline %s: %s -> %s%s", pipeline_id, source.value, target.value, suffix)

    def _emit(self, pipeline_id: str, event_type: str, message: str, payload: dict[str, Any] | None = None) -> None:
        self.repository.append_event(
            PipelineEvent(pipeline_id=pipeline_id, event_type=event_type, message=message, payload=payload or {})
        )


def _acquired(state: PipelineState, stage: str | None) -> PipelineState:
    MutexToken.acquire(state, stage)
    return state


def _released(state: PipelineState) -> PipelineState:
    MutexToken.release(state)
    return state


def _gate_opened(state: PipelineState) -> PipelineState:
    HumanGate.open(state)
    return state
