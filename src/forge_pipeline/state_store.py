from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import IntegrityViolation
from .models import (
    Artifact,
    ArtifactType,
    CompletionDecision,
    ExecutionPlanProgress,
    PipelineEvent,
    PipelineState,
    VerificationResult,
)

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_ModelT = TypeVar("_ModelT", bound=BaseModel)


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file itself be swapped with ``os.replace``
    while the lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write via a same-directory temp file and ``os.replace`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Return the raw text of a JSON record.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or not valid UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def _read_model(path: Path, model: type[_ModelT], model_name: str) -> _ModelT:
    text = _safe_read_json(path, model_name)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{model_name} at {path} failed validation: {exc}") from exc


_SAFE_COMPONENT = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


def safe_path_component(value: str) -> str:
    """Return a pipeline or record ID unchanged if it is usable as one path component.

    IDs are never rewritten: two distinct IDs must never share a directory.

    Raises:
        ValueError: If the ID is empty, longer than 128 characters, does not
            start with a letter or digit, or contains characters outside
            ``[A-Za-z0-9._-]``.
    """
    if not _SAFE_COMPONENT.fullmatch(value):
        raise ValueError(
            f"identifier must be 1-128 characters of [A-Za-z0-9._-] starting with a letter or digit: {value!r}"
        )
    return value


class PipelineRepository(Protocol):
    """Persistence contract consumed by the conductor, auditor and verification pipeline."""

    def state_exists(self, pipeline_id: str) -> bool: ...

    def create_state(self, state: PipelineState) -> PipelineState: ...

    def read_state(self, pipeline_id: str) -> PipelineState: ...

    def update_state(
        self, pipeline_id: str, mutate: Callable[[PipelineState], PipelineState]
    ) -> PipelineState: ...

    def create_artifact(self, artifact: Artifact) -> Path: ...

    def read_artifact(self, artifact_id: str) -> Artifact: ...

    def update_artifact(self, artifact_id: str, mutate: Callable[[Artifact], Artifact]) -> Artifact: ...

    def list_artifacts(
        self, pipeline_id: str, artifact_type: ArtifactType | None = None
    ) -> list[Artifact]: ...

    def write_verification(self, result: VerificationResult) -> Path: ...

    def latest_verification(self, pipeline_id: str) -> VerificationResult | None: ...

    def write_decision(self, decision: CompletionDecision) -> Path: ...

    def latest_decision(self, pipeline_id: str) -> CompletionDecision | None: ...

    def read_plan(self, pipeline_id: str) -> ExecutionPlanProgress: ...

    def write_plan(self, plan: ExecutionPlanProgress) -> None: ...

    def append_event(self, event: PipelineEvent) -> None: ...

    def read_events(self, pipeline_id: str) -> list[PipelineEvent]: ...


class PipelineStateStore:
    """Filesystem implementation of :class:`PipelineRepository`.

    Layout under *root*::

        artifacts/<artifact_id>.json
        pipelines/<pipeline>/state.json
        pipelines/<pipeline>/plan.json
        pipelines/<pipeline>/events.jsonl
        pipelines/<pipeline>/verifications/<seq>-<result_id>.json
        pipelines/<pipeline>/decisions/<seq>-<decision_id>.json

    Every write is an atomic temp-file rename. Read-modify-write paths run
    under ``fcntl`` sidecar locks so concurrent processes sharing the root
    cannot interleave. Verification results and decisions are write-once.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.artifacts_dir = root / "artifacts"
        self.pipelines_dir = root / "pipelines"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.artifacts_dir, self.pipelines_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def pipeline_dir(self, pipeline_id: str) -> Path:
        return self.pipelines_dir / safe_path_component(pipeline_id)

    def state_path(self, pipeline_id: str) -> Path:
        return self.pipeline_dir(pipeline_id) / "state.json"

    def plan_path(self, pipeline_id: str) -> Path:
        return self.pipeline_dir(pipeline_id) / "plan.json"

    def events_path(self, pipeline_id: str) -> Path:
        return self.pipeline_dir(pipeline_id) / "events.jsonl"

    def artifact_path(self, artifact_id: str) -> Path:
        return self.artifacts_dir / f"{safe_path_component(artifact_id)}.json"

    # ------------------------------------------------------------------
    # Pipeline state (locked hot path)
    # ------------------------------------------------------------------

    def state_exists(self, pipeline_id: str) -> bool:
        return self.state_path(pipeline_id).is_file()

    def create_state(self, state: PipelineState) -> PipelineState:
        """Persist a brand-new pipeline state.

        Raises:
            ValueError: If state already exists for the pipeline.
        """
        path = self.state_path(state.pipeline_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Pipeline state already exists: {state.pipeline_id}")
            _atomic_write_text(path, state.model_dump_json(indent=2))
        return state

    def read_state(self, pipeline_id: str) -> PipelineState:
        """Read pipeline state under the state lock.

        Raises:
            FileNotFoundError: If the pipeline has no state.
            ValueError: If the record is corrupt.
        """
        path = self.state_path(pipeline_id)
        if not path.is_file():
            raise FileNotFoundError(f"pipeline state not found: {path}")
        with _locked_file(path):
            return _read_model(path, PipelineState, f"pipeline state {pipeline_id}")

    def update_state(
        self, pipeline_id: str, mutate: Callable[[PipelineState], PipelineState]
    ) -> PipelineState:
        """Read, mutate and write pipeline state as one locked step.

        If *mutate* raises, nothing is written and the exception propagates.
        """
        path = self.state_path(pipeline_id)
        if not path.is_file():
            raise FileNotFoundError(f"pipeline state not found: {path}")
        with _locked_file(path):
            current = _read_model(path, PipelineState, f"pipeline state {pipeline_id}")
            updated = mutate(current.model_copy(deep=True))
            updated.updated_at = datetime.now(UTC)
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def create_artifact(self, artifact: Artifact) -> Path:
        """Persist a new artifact record.

        Raises:
            ValueError: If an artifact with this ID already exists.
        """
        path = self.artifact_path(artifact.artifact_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Artifact already exists: {artifact.artifact_id}")
            _atomic_write_text(path, artifact.model_dump_json(indent=2))
        return path

    def read_artifact(self, artifact_id: str) -> Artifact:
        return _read_model(self.artifact_path(artifact_id), Artifact, f"artifact {artifact_id}")

    def update_artifact(self, artifact_id: str, mutate: Callable[[Artifact], Artifact]) -> Artifact:
        """Apply *mutate* to a stored artifact under its lock.

        Raises:
            FileNotFoundError: If the artifact does not exist.
            IntegrityViolation: If the stored artifact is already approved.
        """
        path = self.artifact_path(artifact_id)
        with _locked_file(path):
            current = _read_model(path, Artifact, f"artifact {artifact_id}")
            if current.is_locked:
                raise IntegrityViolation(
                    f"Artifact {artifact_id} is approved and immutable; create a new version instead",
                    artifact_id=artifact_id,
                )
            updated = mutate(current.model_copy(deep=True))
            if updated.artifact_id != artifact_id:
                raise ValueError(f"artifact_id must not change on update: {artifact_id} -> {updated.artifact_id}")
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def list_artifacts(self, pipeline_id: str, artifact_type: ArtifactType | None = None) -> list[Artifact]:
        """Return a pipeline's artifacts ordered by type, version and creation time."""
        artifacts = []
        for path in sorted(self.artifacts_dir.glob("*.json")):
            artifact = _read_model(path, Artifact, f"artifact {path.stem}")
            if artifact.pipeline_id != pipeline_id:
                continue
            if artifact_type is not None and artifact.artifact_type != artifact_type:
                continue
            artifacts.append(artifact)
        return sorted(artifacts, key=lambda a: (a.artifact_type.value, a.version, a.created_at))

    def latest_artifact(
        self, pipeline_id: str, artifact_type: ArtifactType, *, approved_only: bool = False
    ) -> Artifact | None:
        candidates = [
            artifact
            for artifact in self.list_artifacts(pipeline_id, artifact_type)
            if artifact.is_locked or not approved_only
        ]
        return candidates[-1] if candidates else None

    # ------------------------------------------------------------------
    # Write-once sequenced records
    # ------------------------------------------------------------------

    def _write_sequenced(self, directory: Path, record_id: str, record: BaseModel, model_name: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        with _locked_file(directory / "sequence"):
            if list(directory.glob(f"*-{record_id}.json")):
                raise ValueError(f"{model_name} already exists and is write-once: {record_id}")
            sequence = len(list(directory.glob("*.json"))) + 1
            path = directory / f"{sequence:06d}-{record_id}.json"
            _atomic_write_text(path, record.model_dump_json(indent=2))
        return path

    def _list_sequenced(self, directory: Path, model: type[_ModelT], model_name: str) -> list[_ModelT]:
        if not directory.is_dir():
            return []
        return [_read_model(path, model, model_name) for path in sorted(directory.glob("*.json"))]

    def write_verification(self, result: VerificationResult) -> Path:
        directory = self.pipeline_dir(result.pipeline_id) / "verifications"
        return self._write_sequenced(directory, result.result_id, result, "verification result")

    def list_verifications(self, pipeline_id: str) -> list[VerificationResult]:
        directory = self.pipeline_dir(pipeline_id) / "verifications"
        return self._list_sequenced(directory, VerificationResult, "verification result")

    def latest_verification(self, pipeline_id: str) -> VerificationResult | None:
        results = self.list_verifications(pipeline_id)
        return results[-1] if results else None

    def write_decision(self, decision: CompletionDecision) -> Path:
        directory = self.pipeline_dir(decision.pipeline_id) / "decisions"
        return self._write_sequenced(directory, decision.decision_id, decision, "completion decision")

    def list_decisions(self, pipeline_id: str) -> list[CompletionDecision]:
        directory = self.pipeline_dir(pipeline_id) / "decisions"
        return self._list_sequenced(directory, CompletionDecision, "completion decision")

    def latest_decision(self, pipeline_id: str) -> CompletionDecision | None:
        decisions = self.list_decisions(pipeline_id)
        return decisions[-1] if decisions else None

    # ------------------------------------------------------------------
    # Execution plan progress
    # ------------------------------------------------------------------

    def read_plan(self, pipeline_id: str) -> ExecutionPlanProgress:
        """Return stored unit progress, or an empty plan if none was recorded."""
        path = self.plan_path(pipeline_id)
        if not path.is_file():
            return ExecutionPlanProgress(pipeline_id=pipeline_id)
        with _locked_file(path):
            return _read_model(path, ExecutionPlanProgress, f"execution plan {pipeline_id}")

    def write_plan(self, plan: ExecutionPlanProgress) -> None:
        path = self.plan_path(plan.pipeline_id)
        with _locked_file(path):
            _atomic_write_text(path, plan.model_dump_json(indent=2))

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def append_event(self, event: PipelineEvent) -> None:
        path = self.events_path(event.pipeline_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with _locked_file(path):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(event.model_dump_json() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        logger.debug("event %s for %s: %s", event.event_type, event.pipeline_id, event.message)

    def read_events(self, pipeline_id: str) -> list[PipelineEvent]:
        path = self.events_path(pipeline_id)
        if not path.is_file():
            return []
        events = []
        with _locked_file(path):
            for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
                if not line.strip():
                    continue
                try:
                    events.append(PipelineEvent.model_validate_json(line))
                except ValidationError as exc:
                    raise ValueError(f"event log {path} line {line_number} failed validation: {exc}") from exc
        return events
