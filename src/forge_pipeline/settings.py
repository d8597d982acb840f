from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    workspace_root: str = ""
    workspace_app_dir: str = "app"
    repair_budget: int = 3
    output_truncate_chars: int = 5_000
    command_timeout_seconds: int = 300
    classification_rules: str = ""
    checkpoint_db: str = "checkpoints/repair_loop.sqlite"
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("FORGE_STATE_STORE_ROOT", "state_store"),
            workspace_root=os.getenv("FORGE_WORKSPACE_ROOT", ""),
            workspace_app_dir=os.getenv("FORGE_WORKSPACE_APP_DIR", "app"),
            repair_budget=_get_env_int("FORGE_REPAIR_BUDGET", default=3, minimum=1, maximum=20),
            output_truncate_chars=_get_env_int("FORGE_OUTPUT_TRUNCATE_CHARS", default=5_000, minimum=256),
            command_timeout_seconds=_get_env_int("FORGE_COMMAND_TIMEOUT_SECONDS", default=300, minimum=1, maximum=86_400),
            classification_rules=os.getenv("FORGE_CLASSIFICATION_RULES", ""),
            checkpoint_db=os.getenv("FORGE_CHECKPOINT_DB", "checkpoints/repair_loop.sqlite"),
            recursion_limit=_get_env_int("FORGE_RECURSION_LIMIT", default=1_000, minimum=100),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to ``cwd/workspaces`` if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd() / "workspaces"

    @property
    def classification_rules_path(self) -> Path | None:
        return Path(self.classification_rules) if self.classification_rules else None

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("FORGE_STATE_STORE_ROOT must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("FORGE_CHECKPOINT_DB must be non-empty")

        app_dir = self.workspace_app_dir.strip().strip("/")
        if not app_dir:
            raise ValueError("FORGE_WORKSPACE_APP_DIR must be non-empty")
        if ".." in Path(app_dir).parts:
            raise ValueError(f"FORGE_WORKSPACE_APP_DIR must not traverse upwards, got: {self.workspace_app_dir!r}")

        # -- Numeric bounds validation --
        if self.repair_budget < 1:
            raise ValueError(f"FORGE_REPAIR_BUDGET must be >= 1, got: {self.repair_budget}")
        if self.output_truncate_chars < 256:
            raise ValueError(
                f"FORGE_OUTPUT_TRUNCATE_CHARS must be >= 256, got: {self.output_truncate_chars}"
            )
        if self.recursion_limit > 100_000:
            raise ValueError(
                f"FORGE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}"
            )

        rules = self.classification_rules.strip()
        if rules and not Path(rules).suffix.lower() == ".json":
            raise ValueError(f"FORGE_CLASSIFICATION_RULES must point to a .json file, got: {rules!r}")

        return RuntimeSettings(
            state_store_root=self.state_store_root,
            workspace_root=self.workspace_root,
            workspace_app_dir=app_dir,
            repair_budget=self.repair_budget,
            output_truncate_chars=self.output_truncate_chars,
            command_timeout_seconds=self.command_timeout_seconds,
            classification_rules=rules,
            checkpoint_db=self.checkpoint_db,
            recursion_limit=self.recursion_limit,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, state_root: Path) -> Path:
        """Resolve the LangGraph checkpoint database; relative paths land under the state store."""
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else state_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
