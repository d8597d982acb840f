from __future__ import annotations

from pathlib import Path

import pytest

from forge_pipeline.conductor import Conductor
from forge_pipeline.models import PipelineStatus
from forge_pipeline.state_store import PipelineStateStore
from forge_pipeline.workspace import WorkspaceAccessor

FORWARD_CHAIN = [
    PipelineStatus.IDEA,
    PipelineStatus.BASE_PROMPT_READY,
    PipelineStatus.PLANNING,
    PipelineStatus.SCREENS_DEFINED,
    PipelineStatus.FLOWS_DEFINED,
    PipelineStatus.DESIGNS_READY,
    PipelineStatus.RULES_LOCKED,
    PipelineStatus.BUILD_PROMPTS_READY,
    PipelineStatus.BUILDING,
    PipelineStatus.VERIFYING,
]

CLEAN_HTML = """<!doctype html>
<html>
  <head><link rel="stylesheet" href="styles.css"></head>
  <body>
    <div id="app"></div>
    <button id="save">Save</button>
    <script src="app.js"></script>
  </body>
</html>
"""

CLEAN_JS = 'document.getElementById("app").textContent = "ready";\n'


@pytest.fixture(autouse=True)
def _isolated_forge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FORGE_STATE_STORE_ROOT",
        "FORGE_WORKSPACE_ROOT",
        "FORGE_WORKSPACE_APP_DIR",
        "FORGE_REPAIR_BUDGET",
        "FORGE_OUTPUT_TRUNCATE_CHARS",
        "FORGE_COMMAND_TIMEOUT_SECONDS",
        "FORGE_CLASSIFICATION_RULES",
        "FORGE_CHECKPOINT_DB",
        "FORGE_RECURSION_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store(tmp_path: Path) -> PipelineStateStore:
    return PipelineStateStore(tmp_path / "state")


@pytest.fixture
def conductor(store: PipelineStateStore) -> Conductor:
    return Conductor(store)


@pytest.fixture
def workspace(tmp_path: Path) -> WorkspaceAccessor:
    root = tmp_path / "workspaces"
    root.mkdir()
    return WorkspaceAccessor(root)


def advance_to(conductor: Conductor, pipeline_id: str, target: PipelineStatus) -> None:
    """Initialize *pipeline_id* if needed and walk the forward chain up to *target*."""
    if not conductor.repository.state_exists(pipeline_id):
        conductor.initialize(pipeline_id)
    current = conductor.get_state_snapshot(pipeline_id).status
    start = FORWARD_CHAIN.index(current)
    stop = FORWARD_CHAIN.index(target)
    for status in FORWARD_CHAIN[start + 1 : stop + 1]:
        conductor.transition(pipeline_id, status, stage="test")


def write_app(root: Path, html: str = CLEAN_HTML, js: str = CLEAN_JS) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "index.html").write_text(html, encoding="utf-8")
    (root / "app.js").write_text(js, encoding="utf-8")
    (root / "styles.css").write_text("body { margin: 0; }\n", encoding="utf-8")
    return root
