"""Error taxonomy for the build pipeline control plane.

Every error raised by the conductor, auditor, verification pipeline, and
precondition gate derives from :class:`ForgeError`, so callers at the outer
surface (CLI, HTTP handler, scheduler tick) can catch a single type and
surface the message verbatim.
"""

from __future__ import annotations


class ForgeError(RuntimeError):
    """Base class for control-plane failures."""


class StateViolation(ForgeError):
    """Raised for an invalid or out-of-order transition, or an operation in the wrong status.

    State is always left unchanged when this is raised.
    """

    def __init__(self, message: str, *, allowed: tuple[str, ...] | list[str] | None = None) -> None:
        super().__init__(message)
        self.allowed = tuple(allowed) if allowed is not None else ()


class ConductorLocked(StateViolation):
    """Raised when a transition is attempted while another stage holds the lock."""


class PreconditionFailure(ForgeError):
    """Aggregated list of unmet gating conditions for a downstream operation."""

    def __init__(self, diagnostics: list[str]) -> None:
        self.diagnostics = list(diagnostics)
        body = "\n".join(f"  - {entry}" for entry in self.diagnostics)
        super().__init__(f"PRECONDITION VALIDATION FAILED:\n{body}")


class VerificationFailure(ForgeError):
    def __init__(self, message: str, *, repairable: bool, diagnostics: list[str] | None = None) -> None:
        super().__init__(message)
        self.repairable = repairable
        self.diagnostics = list(diagnostics or [])


class RepairBudgetExhausted(ForgeError):
    """Raised when the repair budget is spent; the pipeline is paused, not failed."""

    def __init__(self, pipeline_id: str, *, attempt: int, budget: int) -> None:
        super().__init__(
            f"Repair budget exhausted for {pipeline_id}: attempt {attempt} of {budget}; escalated to human"
        )
        self.pipeline_id = pipeline_id
        self.attempt = attempt
        self.budget = budget


class IntegrityViolation(ForgeError):
    """Hash mismatch on an approved artifact, or an attempted mutation of a locked artifact.

    Never auto-repaired. The conductor halts the pipeline pending manual investigation.
    """

    def __init__(self, message: str, *, artifact_id: str | None = None) -> None:
        super().__init__(message)
        self.artifact_id = artifact_id
