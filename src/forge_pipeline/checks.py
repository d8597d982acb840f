"""Pluggable verification checks.

A check is any object with a ``name`` attribute and a ``run(workspace)``
method returning a :class:`CheckOutcome`. Static checks inspect generated
HTML/JS in the workspace; :class:`CommandCheck` shells out to a build or
test command.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from html.parser import HTMLParser
from pathlib import Path
from typing import Protocol

from .workspace import iter_files

logger = logging.getLogger(__name__)

HTML_SUFFIXES = (".html", ".htm")
SCRIPT_SUFFIXES = (".js", ".mjs")

_FILE_URL = re.compile(r"file://[^\s\"'<>]+")
_WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:\\")
_JS_ID_LOOKUPS = (
    ("getElementById", re.compile(r"document\.getElementById\s*\(\s*['\"`]([^'\"`]+)['\"`]\s*\)")),
    ("querySelector", re.compile(r"document\.querySelector\s*\(\s*['\"`]#([^'\"`\s.:\[>]+)['\"`]\s*\)")),
    ("querySelectorAll", re.compile(r"document\.querySelectorAll\s*\(\s*['\"`]#([^'\"`\s.:\[>]+)['\"`]\s*\)")),
)
_EXTERNAL_PREFIXES = ("http://", "https://", "//", "data:", "mailto:", "tel:", "#", "javascript:")
_ASSET_ATTRIBUTES = {"script": "src", "link": "href", "img": "src"}


@dataclass(frozen=True)
class CheckOutcome:
    passed: bool
    diagnostics: tuple[str, ...] = ()
    command: str = ""
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""


class Check(Protocol):
    name: str

    def run(self, workspace: Path) -> CheckOutcome: ...


@dataclass
class _ParsedDocument:
    ids: list[str] = field(default_factory=list)
    references: list[tuple[str, str, str]] = field(default_factory=list)


class _DocumentScanner(HTMLParser):
    """Collects element ids and (tag, attribute, value) URL references in document order."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.document = _ParsedDocument()

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        for name, value in attrs:
            if value is None:
                continue
            if name == "id" and value:
                self.document.ids.append(value)
            elif name in ("src", "href"):
                self.document.references.append((tag, name, value.strip()))

    handle_startendtag = handle_starttag


def scan_document(text: str) -> _ParsedDocument:
    scanner = _DocumentScanner()
    scanner.feed(text)
    scanner.close()
    return scanner.document


def _label(path: Path, workspace: Path) -> str:
    return path.relative_to(workspace).as_posix()


def _static_outcome(name: str, diagnostics: list[str]) -> CheckOutcome:
    ordered = tuple(sorted(diagnostics))
    return CheckOutcome(
        passed=not ordered,
        diagnostics=ordered,
        command=f"static:{name}",
        exit_code=0 if not ordered else 1,
        stdout="" if not ordered else "\n".join(ordered),
    )


def collect_ids(workspace: Path) -> dict[str, str]:
    """Map each HTML element id to the first file that declares it."""
    seen: dict[str, str] = {}
    for path in iter_files(workspace, HTML_SUFFIXES):
        for element_id in scan_document(path.read_text(encoding="utf-8")).ids:
            seen.setdefault(element_id, _label(path, workspace))
    return seen


class DuplicateIdentifierCheck:
    """Flags HTML ids declared more than once, within a file or across files."""

    name = "duplicate_ids"

    def run(self, workspace: Path) -> CheckOutcome:
        seen: dict[str, str] = {}
        diagnostics: list[str] = []
        for path in iter_files(workspace, HTML_SUFFIXES):
            label = _label(path, workspace)
            for element_id in scan_document(path.read_text(encoding="utf-8")).ids:
                owner = seen.get(element_id)
                if owner is None:
                    seen[element_id] = label
                elif owner == label:
                    diagnostics.append(f'[{label}] Duplicate ID "{element_id}" found in same file')
                else:
                    diagnostics.append(f'[{label}] Duplicate ID "{element_id}" already exists in {owner}')
        return _static_outcome(self.name, diagnostics)


class DanglingReferenceCheck:
    """Flags JS id lookups that point at no element in any HTML file."""

    name = "dangling_references"

    def run(self, workspace: Path) -> CheckOutcome:
        known = collect_ids(workspace)
        diagnostics: list[str] = []
        for path in iter_files(workspace, SCRIPT_SUFFIXES):
            label = _label(path, workspace)
            source = path.read_text(encoding="utf-8")
            for lookup, pattern in _JS_ID_LOOKUPS:
                for match in pattern.finditer(source):
                    element_id = match.group(1)
                    if element_id in known:
                        continue
                    if lookup == "getElementById":
                        where = "in JS"
                    else:
                        where = f'in {lookup}("#{element_id}")'
                    diagnostics.append(
                        f'[{label}] Element ID "{element_id}" referenced {where} but not found in HTML. '
                        f'Hint: Add <element id="{element_id}"> to your HTML file.'
                    )
        return _static_outcome(self.name, diagnostics)


class ForbiddenPathCheck:
    """Flags ``file://`` URLs, absolute ``src``/``href`` paths, and local assets that do not exist."""

    name = "forbidden_paths"

    def run(self, workspace: Path) -> CheckOutcome:
        diagnostics: list[str] = []
        for path in iter_files(workspace, HTML_SUFFIXES):
            label = _label(path, workspace)
            text = path.read_text(encoding="utf-8")
            for match in _FILE_URL.finditer(text):
                diagnostics.append(
                    f'[{label}] Absolute file:// path detected: "{match.group(0)}". '
                    'Use relative paths like "styles.css" instead.'
                )
            for tag, attribute, value in scan_document(text).references:
                if not value or value.startswith("file://"):
                    continue
                if (value.startswith("/") and not value.startswith("//")) or _WINDOWS_ABSOLUTE.match(value):
                    diagnostics.append(
                        f'[{label}] Absolute path detected: {attribute}="{value}". '
                        "Use relative paths instead."
                    )
                    continue
                if _ASSET_ATTRIBUTES.get(tag) != attribute or value.lower().startswith(_EXTERNAL_PREFIXES):
                    continue
                local = value.split("#", 1)[0].split("?", 1)[0]
                if local and not (path.parent / local).exists():
                    diagnostics.append(
                        f'[{label}] Referenced {tag} asset does not exist: "{value}". '
                        "Make sure the file is created in the workspace."
                    )
        return _static_outcome(self.name, diagnostics)


def truncate(text: str, limit: int) -> str:
    return text[:limit]


class CommandCheck:
    """Runs a shell command inside the workspace; exit code 0 passes."""

    def __init__(
        self,
        name: str,
        command: str,
        *,
        timeout_seconds: int = 300,
        output_limit: int = 5_000,
    ) -> None:
        self.name = name
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.output_limit = output_limit

    def run(self, workspace: Path) -> CheckOutcome:
        logger.info("Running %s in %s: %s", self.name, workspace, self.command)
        try:
            completed = subprocess.run(
                self.command,
                shell=True,
                cwd=str(workspace),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            stdout = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else (exc.stdout or "")
            return CheckOutcome(
                passed=False,
                diagnostics=(f"{self.name}: runtime error: command timed out after {self.timeout_seconds}s",),
                command=self.command,
                exit_code=124,
                stdout=truncate(stdout, self.output_limit),
                stderr=f"Timed out after {self.timeout_seconds} seconds",
            )
        stdout = truncate(completed.stdout or "", self.output_limit)
        stderr = truncate(completed.stderr or "", self.output_limit)
        passed = completed.returncode == 0
        diagnostics: tuple[str, ...] = ()
        if not passed:
            # Every output line, not just the last.
            detail = (stderr or stdout).strip() or "no output"
            diagnostics = (f"{self.name}: exit code {completed.returncode}: {detail}",)
        return CheckOutcome(
            passed=passed,
            diagnostics=diagnostics,
            command=self.command,
            exit_code=completed.returncode,
            stdout=stdout,
            stderr=stderr,
        )


def default_checks() -> list[Check]:
    return [DuplicateIdentifierCheck(), DanglingReferenceCheck(), ForbiddenPathCheck()]
