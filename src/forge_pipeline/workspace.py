from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from .settings import RuntimeSettings
from .state_store import safe_path_component

logger = logging.getLogger(__name__)

SKIPPED_DIRECTORIES = frozenset({"node_modules", ".next", ".git"})


def iter_files(root: Path, suffixes: tuple[str, ...] | None = None) -> list[Path]:
    """Return every regular file under *root*, sorted, skipping dependency and VCS directories.

    Args:
        root: Directory to walk.
        suffixes: Optional lowercase suffix filter such as ``(".html", ".js")``.
    """
    if not root.is_dir():
        raise FileNotFoundError(f"workspace directory not found: {root}")
    found: list[Path] = []
    pending = [root]
    while pending:
        current = pending.pop()
        for entry in sorted(current.iterdir()):
            if entry.is_dir():
                # Directory symlinks are not followed.
                if entry.name not in SKIPPED_DIRECTORIES and not entry.is_symlink():
                    pending.append(entry)
            elif entry.is_file():
                if suffixes is None or entry.suffix.lower() in suffixes:
                    found.append(entry)
    return sorted(found, key=lambda path: path.relative_to(root).as_posix())


def directory_hash(root: Path) -> str:
    """SHA-256 over every file in sorted path order.

    Each file contributes its root-relative POSIX path, a NUL byte, its size
    in bytes as decimal, another NUL byte and then its content, so no two
    distinct trees produce the same byte stream.
    """
    digest = hashlib.sha256()
    for path in iter_files(root):
        content = path.read_bytes()
        digest.update(path.relative_to(root).as_posix().encode("utf-8"))
        digest.update(b"\0" + str(len(content)).encode("ascii") + b"\0")
        digest.update(content)
    return digest.hexdigest()


class WorkspaceAccessor:
    """Read-only view of per-pipeline build workspaces.

    Workspaces live at ``<workspace_root>/<pipeline_id>/<app_dir>``. Nothing
    here creates, modifies or deletes workspace files.
    """

    def __init__(self, root: Path, *, app_dir: str = "app") -> None:
        self.root = root
        self.app_dir = app_dir

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "WorkspaceAccessor":
        return cls(settings.workspace_root_path, app_dir=settings.workspace_app_dir)

    def workspace_dir(self, pipeline_id: str) -> Path:
        return self.root / safe_path_component(pipeline_id) / self.app_dir

    def exists(self, pipeline_id: str) -> bool:
        return self.workspace_dir(pipeline_id).is_dir()

    def resolve(self, workspace_ref: str) -> Path:
        """Resolve a workspace reference: an existing directory path, or a pipeline ID."""
        candidate = Path(workspace_ref)
        if candidate.is_dir():
            return candidate
        return self.workspace_dir(workspace_ref)

    def list_files(self, pipeline_id: str, suffixes: tuple[str, ...] | None = None) -> list[Path]:
        return iter_files(self.workspace_dir(pipeline_id), suffixes)

    def read_text(self, pipeline_id: str, relative_path: str) -> str:
        root = self.workspace_dir(pipeline_id).resolve()
        target = (root / relative_path).resolve()
        if root not in target.parents:
            raise ValueError(f"path escapes workspace: {relative_path!r}")
        return target.read_text(encoding="utf-8")

    def hash(self, pipeline_id: str) -> str:
        value = directory_hash(self.workspace_dir(pipeline_id))
        logger.debug("Workspace hash for %s: %s", pipeline_id, value)
        return value
