"""One build invocation: configuration in, report out."""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Sequence
import shutil

from core.command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner
from core.console import Console

from .cache import CacheStore
from .config_loader import WorkspaceConfig
from .dependencies import DependencyProvider, LocalDependencyProvider, resolve_dependencies
from .exporter import CompileCommandsExporter
from .graph import TargetGraph
from .orchestrator import BuildOrchestrator, BuildReport, CancellationToken
from .strategies import CONFIGURATIONS
from .targets import CMakeTarget, ProjectTarget
from .toolchains import ToolchainDescriptor, ToolchainKind, ToolchainResolver


@dataclass(slots=True)
class BuildOptions:
    targets: Sequence[str] = ()
    jobs: int | None = None
    dry_run: bool = False
    toolchain: str | None = None
    configuration: str | None = None
    export_compile_commands: Path | None = None


class BuildSession:
    """Wire dependencies, graph, toolchains, cache and orchestrator together.

    Construction-time errors (unresolvable dependencies, invalid graphs,
    missing toolchains) propagate before any target runs. Once the cache is
    open it is flushed however the build ends, except for dry runs which
    never touch it.
    """

    def __init__(
        self,
        config: WorkspaceConfig,
        *,
        runner: CommandRunner | None = None,
        console: Console | None = None,
        provider: DependencyProvider | None = None,
        resolver: ToolchainResolver | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or SubprocessCommandRunner()
        self.console = console or Console(level=config.log_level)
        self.provider = provider or LocalDependencyProvider(config.root, self.runner)
        self._resolver = resolver
        self.token = token or CancellationToken()

    def graph(self, targets: Sequence[str] = ()) -> TargetGraph:
        dependencies = resolve_dependencies(self.config.dependencies, self.provider)
        graph = TargetGraph.build(self.config.targets, dependencies)
        return graph.subgraph(targets) if targets else graph

    @staticmethod
    def required_toolchains(graph: TargetGraph, default: ToolchainKind) -> List[ToolchainKind]:
        kinds: List[ToolchainKind] = []
        for target in graph:
            kind = None
            if isinstance(target, ProjectTarget):
                kind = target.toolchain or default
            elif isinstance(target, CMakeTarget):
                kind = target.toolchain
            if kind is not None and kind not in kinds:
                kinds.append(kind)
        return kinds

    def open_cache(self) -> CacheStore:
        return CacheStore.open(
            local_path=self.config.local_cache_path,
            global_path=self.config.global_cache_path,
            console=self.console,
        )

    def resolve_toolchains(
        self,
        graph: TargetGraph,
        default: ToolchainKind,
        cache: CacheStore | None,
    ) -> Dict[ToolchainKind, ToolchainDescriptor]:
        resolver = self._resolver or ToolchainResolver(self.runner, cache=cache, console=self.console)
        # An explicit compiler path pins the default toolchain only.
        others = replace(self.config.hints, compiler=None)
        return {
            kind: resolver.resolve(kind, self.config.hints if kind is default else others)
            for kind in self.required_toolchains(graph, default)
        }

    def build(self, options: BuildOptions | None = None) -> BuildReport:
        options = options or BuildOptions()
        configuration = (options.configuration or self.config.configuration).lower()
        if configuration not in CONFIGURATIONS:
            allowed = ", ".join(CONFIGURATIONS)
            raise ValueError(f"Unknown configuration '{configuration}' (allowed: {allowed})")
        default = ToolchainKind.parse(options.toolchain) if options.toolchain else self.config.toolchain

        graph = self.graph(options.targets)
        build_runner: CommandRunner = RecordingCommandRunner() if options.dry_run else self.runner
        cache = self.open_cache()
        try:
            toolchains = self.resolve_toolchains(graph, default, cache)
            orchestrator = BuildOrchestrator(
                build_runner,
                root=self.config.root,
                build_dir=self.config.build_dir,
                configuration=configuration,
                default_toolchain=default,
                jobs=options.jobs or self.config.jobs,
                hash_contents=self.config.hash_contents,
                dry_run=options.dry_run,
                console=self.console,
                token=self.token,
            )
            report = orchestrator.run(graph, cache, toolchains)
            if options.export_compile_commands is not None:
                exporter = CompileCommandsExporter(orchestrator.context(graph, toolchains))
                written = exporter.export(graph, report, options.export_compile_commands)
                self.console.info(f"Wrote {written}")
            return report
        finally:
            if not options.dry_run:
                cache.flush()

    def clean(self) -> List[Path]:
        """Remove the build directory, including the local cache it holds."""

        removed: List[Path] = []
        for path in (self.config.build_dir, self.config.local_cache_path):
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(path)
            elif path.exists():
                path.unlink()
                removed.append(path)
        for path in removed:
            self.console.info(f"Removed {path}")
        return removed


__all__ = ["BuildOptions", "BuildSession"]
