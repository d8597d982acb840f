from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping
from uuid import UUID

import rfc8785
from pydantic import BaseModel

from .errors import IntegrityViolation
from .models import Artifact, ArtifactType, VerificationResult, VerificationStep

logger = logging.getLogger(__name__)

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


@dataclass(frozen=True)
class CanonicalSchema:
    """Versioned allowlist of payload fields that participate in an artifact hash."""

    schema_version: int
    fields: tuple[str, ...]

    def __post_init__(self) -> None:
        if self.fields != tuple(sorted(set(self.fields))):
            raise ValueError(f"canonical fields must be sorted and unique: {self.fields}")

    def tag(self, artifact_type: ArtifactType) -> str:
        return f"{artifact_type.value}/v{self.schema_version}"


# Adding, removing or renaming a field requires a schema_version bump so that
# stored hashes stay reproducible under the version they were stamped with.
CANONICAL_FIELDS: dict[ArtifactType, CanonicalSchema] = {
    ArtifactType.BASE_PROMPT: CanonicalSchema(1, ("content", "sections")),
    ArtifactType.PRODUCT_PLAN: CanonicalSchema(1, ("implementation_plan", "master_plan")),
    ArtifactType.SCREEN_INDEX: CanonicalSchema(1, ("screens",)),
    ArtifactType.USER_JOURNEYS: CanonicalSchema(1, ("journeys", "roles")),
    ArtifactType.VISUAL_DESIGNS: CanonicalSchema(1, ("layout_rules", "screens", "style_tokens")),
    ArtifactType.PROJECT_RULES: CanonicalSchema(1, ("dependencies", "rules")),
    ArtifactType.BUILD_PROMPT: CanonicalSchema(
        1, ("allowed_files", "feature", "forbidden_files", "instructions", "sequence")
    ),
    ArtifactType.EXECUTION_PLAN: CanonicalSchema(1, ("units",)),
    ArtifactType.ASSEMBLY_MANIFEST: CanonicalSchema(1, ("files", "framework", "workspace_hash")),
}

VERIFICATION_RESULT_FIELDS: tuple[str, ...] = (
    "attempt",
    "diagnostics",
    "overall_status",
    "pipeline_id",
    "steps",
    "workspace_ref",
)
VERIFICATION_STEP_FIELDS: tuple[str, ...] = (
    "check",
    "command",
    "diagnostics",
    "exit_code",
    "index",
    "status",
    "stderr",
    "stdout",
)


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively reduce *value* to the JSON primitives ``rfc8785.dumps`` accepts.

    Raises:
        TypeError: If a value has no canonical JSON form.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise TypeError(f"Cannot canonicalize non-finite Decimal: {value!r}")
        return float(value)
    raise TypeError(f"Cannot canonicalize type {type(value).__name__}; convert to a JSON-compatible type first")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _check_upstream(upstream_hashes: Iterable[str]) -> list[str]:
    ordered = list(upstream_hashes)
    for entry in ordered:
        if not isinstance(entry, str) or not _HEX_DIGEST.match(entry):
            raise ValueError(f"upstream hash must be 64 lowercase hex characters, got: {entry!r}")
    return ordered


def canonical_form(
    artifact_type: ArtifactType,
    payload: Mapping[str, Any],
    upstream_hashes: Iterable[str] = (),
) -> dict[str, Any]:
    """Project *payload* onto the allowlist for *artifact_type* and attach the ordered upstream chain."""
    schema = CANONICAL_FIELDS[ArtifactType(artifact_type)]
    return {
        "schema": schema.tag(ArtifactType(artifact_type)),
        "fields": {name: payload[name] for name in schema.fields if name in payload},
        "upstream": _check_upstream(upstream_hashes),
    }


def compute_hash(
    artifact_type: ArtifactType,
    payload: Mapping[str, Any],
    upstream_hashes: Iterable[str] = (),
) -> str:
    """Return the 64-char lowercase SHA-256 of the canonical artifact form.

    Fields outside the type's allowlist never affect the result, and neither
    does key order. The upstream chain is order-sensitive, so identical content
    reached through a different lineage hashes differently.
    """
    return sha256_hex(to_canonical_json(canonical_form(artifact_type, payload, upstream_hashes)))


def verify(artifact: Artifact) -> str:
    """Recompute the hash of *artifact* and compare it with the stamped value.

    Returns:
        The recomputed hash.

    Raises:
        IntegrityViolation: If the artifact is unstamped or the hashes differ.
    """
    if artifact.content_hash is None:
        raise IntegrityViolation(
            f"Artifact {artifact.artifact_id} has no content hash", artifact_id=artifact.artifact_id
        )
    recomputed = compute_hash(artifact.artifact_type, artifact.payload, artifact.upstream_hashes)
    if recomputed != artifact.content_hash:
        logger.error(
            "Hash mismatch for artifact %s: stored=%s recomputed=%s",
            artifact.artifact_id,
            artifact.content_hash,
            recomputed,
        )
        raise IntegrityViolation(
            f"Hash mismatch for artifact {artifact.artifact_id}: "
            f"stored {artifact.content_hash}, recomputed {recomputed}",
            artifact_id=artifact.artifact_id,
        )
    return recomputed


def _step_form(step: VerificationStep) -> dict[str, Any]:
    dumped = step.model_dump(mode="json")
    return {name: dumped[name] for name in VERIFICATION_STEP_FIELDS}


def result_hash(result: VerificationResult) -> str:
    """Hash a verification result over its fixed allowlist; ``executed_at`` never participates."""
    source: dict[str, Any] = {
        "attempt": result.attempt,
        "diagnostics": list(result.diagnostics),
        "overall_status": result.overall_status,
        "pipeline_id": result.pipeline_id,
        "steps": [_step_form(step) for step in result.steps],
        "workspace_ref": result.workspace_ref,
    }
    return sha256_hex(to_canonical_json({name: source[name] for name in VERIFICATION_RESULT_FIELDS}))


class ProvenanceHasher:
    """Object facade over the module functions, for components that take a hasher as a collaborator."""

    def hash(
        self,
        artifact_type: ArtifactType,
        payload: Mapping[str, Any],
        upstream_hashes: Iterable[str] = (),
    ) -> str:
        return compute_hash(artifact_type, payload, upstream_hashes)

    def verify(self, artifact: Artifact) -> str:
        return verify(artifact)

    def result_hash(self, result: VerificationResult) -> str:
        return result_hash(result)
