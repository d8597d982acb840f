from __future__ import annotations

import logging
import time
from typing import Sequence

from .checks import Check, CheckOutcome, CommandCheck, default_checks, truncate
from .models import PipelineEvent, StepStatus, VerificationResult, VerificationStep
from .provenance import result_hash
from .settings import RuntimeSettings
from .state_store import PipelineRepository
from .workspace import WorkspaceAccessor

logger = logging.getLogger(__name__)


class VerificationPipeline:
    """Runs every registered check against a workspace and records one immutable result.

    Checks run in registration order and each becomes one step. A check that
    raises is recorded as a FAILED step carrying a ``"<name> crashed: ..."``
    diagnostic, so ``run_checks`` always returns a result. Status transitions
    and repair are the caller's job.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        workspace: WorkspaceAccessor,
        checks: Sequence[Check] | None = None,
        *,
        output_limit: int = 5_000,
    ) -> None:
        self.repository = repository
        self.workspace = workspace
        self.checks: list[Check] = list(checks) if checks is not None else default_checks()
        self.output_limit = output_limit

    @classmethod
    def from_settings(
        cls,
        repository: PipelineRepository,
        settings: RuntimeSettings,
        *,
        commands: Sequence[tuple[str, str]] = (),
    ) -> "VerificationPipeline":
        checks: list[Check] = default_checks()
        checks.extend(
            CommandCheck(
                name,
                command,
                timeout_seconds=settings.command_timeout_seconds,
                output_limit=settings.output_truncate_chars,
            )
            for name, command in commands
        )
        return cls(
            repository,
            WorkspaceAccessor.from_settings(settings),
            checks,
            output_limit=settings.output_truncate_chars,
        )

    def register(self, check: Check) -> None:
        self.checks.append(check)

    def _step(self, index: int, check: Check, outcome: CheckOutcome) -> VerificationStep:
        if not isinstance(outcome, CheckOutcome):
            raise TypeError(f"expected CheckOutcome, got {type(outcome).__name__}")
        return VerificationStep(
            index=index,
            check=check.name,
            command=outcome.command or check.name,
            exit_code=outcome.exit_code,
            stdout=truncate(outcome.stdout, self.output_limit),
            stderr=truncate(outcome.stderr, self.output_limit),
            status=StepStatus.PASSED if outcome.passed else StepStatus.FAILED,
            diagnostics=tuple(outcome.diagnostics),
        )

    def _run_one(self, index: int, check: Check, workspace_ref: str) -> tuple[VerificationStep, float]:
        """Run one check; a raise or a malformed outcome becomes a FAILED step."""
        started = time.monotonic()
        try:
            step = self._step(index, check, check.run(self.workspace.resolve(workspace_ref)))
        except Exception as exc:
            logger.exception("Check %s crashed", check.name)
            step = VerificationStep(
                index=index,
                check=check.name,
                command=str(getattr(check, "command", f"static:{check.name}")),
                exit_code=1,
                stderr=truncate(f"{type(exc).__name__}: {exc}", self.output_limit),
                status=StepStatus.FAILED,
                diagnostics=(f"{check.name} crashed: {exc}",),
            )
        return step, time.monotonic() - started

    def run_checks(self, pipeline_id: str, workspace_ref: str, *, attempt: int) -> VerificationResult:
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got: {attempt}")

        steps: list[VerificationStep] = []
        diagnostics: list[str] = []
        for index, check in enumerate(self.checks):
            step, elapsed = self._run_one(index, check, workspace_ref)
            logger.info(
                "Verification %s attempt %d step %d (%s): %s in %.2fs",
                pipeline_id,
                attempt,
                index,
                check.name,
                step.status.value,
                elapsed,
            )
            steps.append(step)
            diagnostics.extend(step.diagnostics)

        overall = StepStatus.PASSED if all(step.status == StepStatus.PASSED for step in steps) else StepStatus.FAILED
        unhashed = VerificationResult(
            pipeline_id=pipeline_id,
            attempt=attempt,
            workspace_ref=workspace_ref,
            steps=tuple(steps),
            overall_status=overall,
            diagnostics=tuple(sorted(diagnostics)),
        )
        result = unhashed.model_copy(update={"result_hash": result_hash(unhashed)})
        self.repository.write_verification(result)

        passed = overall == StepStatus.PASSED
        self.repository.append_event(
            PipelineEvent(
                pipeline_id=pipeline_id,
                event_type="verification_passed" if passed else "verification_failed",
                message=(
                    f"Verification attempt {attempt} passed ({len(steps)} steps)"
                    if passed
                    else f"Verification attempt {attempt} failed: {len(result.failed_steps)} of {len(steps)} steps"
                ),
                payload={
                    "result_id": result.result_id,
                    "attempt": attempt,
                    "result_hash": result.result_hash,
                    "failed_steps": [step.check for step in result.failed_steps],
                },
            )
        )
        return result
