from __future__ import annotations

import logging
import re
from functools import cached_property
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import ErrorCategory, ErrorClassification
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

UNCLASSIFIED_REASON = "No specific pattern matched, defaulting to repairable"

DEFAULT_NON_REPAIRABLE = (
    r"security\s+violation",
    r"ruleset\s+violation",
    r"architectural\s+conflict",
    r"data\s+loss",
    r"unauthorized\s+dependency",
    r"mutation\s+outside\s+contract",
    r"forbidden\s+file\s+modified",
)

DEFAULT_REPAIRABLE = (
    r"missing\s+dom\s+id",
    r"runtime\s+error",
    r"missing\s+file",
    r"incorrect\s+import",
    r"logic\s+error",
    r"path\s+issue",
    r"undefined\s+variable",
    r"compilation\s+error",
    r"duplicate\s+id",
    r"not\s+found\s+in\s+html",
    r"absolute\s+(file://\s+)?path",
    r"asset\s+does\s+not\s+exist",
)


class ClassificationRules(BaseModel):
    """Ordered case-insensitive regex rules. Non-repairable rules are always consulted first."""

    model_config = ConfigDict(frozen=True)

    non_repairable: tuple[str, ...] = Field(default=DEFAULT_NON_REPAIRABLE)
    repairable: tuple[str, ...] = Field(default=DEFAULT_REPAIRABLE)

    @field_validator("non_repairable", "repairable")
    @classmethod
    def _patterns_compile(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for pattern in value:
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as exc:
                raise ValueError(f"invalid classification pattern {pattern!r}: {exc}") from exc
        return value

    @classmethod
    def load(cls, path: Path) -> "ClassificationRules":
        """Read rules from a JSON file.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ValueError: If the file is not valid rules JSON.
        """
        if not path.is_file():
            raise FileNotFoundError(f"classification rules not found: {path}")
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ValueError(f"classification rules at {path} failed validation: {exc}") from exc


class ErrorClassifier:
    """Maps verification diagnostics onto repairable / non_repairable / unclassified."""

    def __init__(self, rules: ClassificationRules | None = None) -> None:
        self.rules = rules or ClassificationRules()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "ErrorClassifier":
        path = settings.classification_rules_path
        if path is None:
            return cls()
        logger.info("Loading classification rules from %s", path)
        return cls(ClassificationRules.load(path))

    @cached_property
    def _compiled(self) -> tuple[tuple[ErrorCategory, str, re.Pattern[str]], ...]:
        ordered = [(ErrorCategory.NON_REPAIRABLE, p) for p in self.rules.non_repairable]
        ordered += [(ErrorCategory.REPAIRABLE, p) for p in self.rules.repairable]
        return tuple((category, p, re.compile(p, re.IGNORECASE)) for category, p in ordered)

    def classify(self, diagnostics: Iterable[str]) -> ErrorClassification:
        text = "\n".join(diagnostics)
        for category, pattern, compiled in self._compiled:
            if compiled.search(text):
                label = "non-repairable" if category == ErrorCategory.NON_REPAIRABLE else "repairable"
                return ErrorClassification(
                    category=category,
                    matched_rule=pattern,
                    reason=f"Matched {label} pattern: {pattern}",
                )
        return ErrorClassification(category=ErrorCategory.UNCLASSIFIED, reason=UNCLASSIFIED_REASON)
