"""Read-only consumers of a finished build."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Protocol, runtime_checkable
import json

from .graph import TargetGraph
from .orchestrator import BuildReport, TargetStatus
from .strategies import BuildContext, compile_commands
from .targets import ProjectTarget


@runtime_checkable
class ProjectExporter(Protocol):
    """Writes a project description for an external tool (IDE, indexer, ...)."""

    def export(self, graph: TargetGraph, report: BuildReport | None, destination: Path) -> Path:
        ...


class CompileCommandsExporter:
    """Emit a clang ``compile_commands.json`` for every Project target.

    The report, when given, is only consulted to leave blocked targets out.
    """

    filename = "compile_commands.json"

    def __init__(self, context: BuildContext) -> None:
        self._context = context

    def entries(self, graph: TargetGraph, report: BuildReport | None = None) -> List[Dict[str, Any]]:
        skipped = set(report.with_status(TargetStatus.BLOCKED)) if report else set()
        entries: List[Dict[str, Any]] = []
        for target in graph.topological_order():
            if not isinstance(target, ProjectTarget) or target.name in skipped:
                continue
            entries.extend(compile_commands(target, self._context))
        return entries

    def export(self, graph: TargetGraph, report: BuildReport | None, destination: Path) -> Path:
        path = destination / self.filename if destination.is_dir() or not destination.suffix else destination
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(self.entries(graph, report), handle, indent=2)
            handle.write("\n")
        return path


__all__ = ["CompileCommandsExporter", "ProjectExporter"]
