"""Ready-set scheduling, rebuild decisions and the build report."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence
import os
import threading
import time

from core.command_runner import CommandResult, CommandRunner
from core.console import Console

from .cache import CacheRecord, CacheScope, CacheStore, Fingerprint, FingerprintBuilder, cache_key, file_stamp
from .errors import Cancelled, TargetExecutionFailed
from .graph import TargetGraph
from .strategies import (
    BuildContext,
    TargetPlan,
    default_toolchain,
    object_is_current,
    parse_show_includes,
    plan_target,
    step_headers,
    target_inputs,
    target_output,
    write_depfile,
)
from .targets import ScriptTarget, Target
from .toolchains import ToolchainDescriptor, ToolchainKind


class TargetStatus(str, Enum):
    BUILT = "built"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


EXIT_CODES: Dict[RunStatus, int] = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 130,
}


@dataclass(slots=True)
class TargetResult:
    name: str
    status: TargetStatus
    elapsed: float = 0.0
    output: Path | None = None
    message: str | None = None
    commands: List[CommandResult] = field(default_factory=list)


@dataclass(slots=True)
class BuildReport:
    """Terminal status of every target, in topological order."""

    results: List[TargetResult]
    status: RunStatus
    elapsed: float = 0.0

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def get(self, name: str) -> TargetResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(f"No result for target '{name}'")

    def with_status(self, status: TargetStatus) -> List[str]:
        return [result.name for result in self.results if result.status is status]

    def summary(self) -> str:
        counts = {status: len(self.with_status(status)) for status in TargetStatus}
        parts = [f"{counts[status]} {status.value}" for status in TargetStatus if counts[status]]
        return f"{self.status.value}: {', '.join(parts) or 'nothing to do'} in {self.elapsed:.2f}s"


class CancellationToken:
    """Thread-safe cancellation flag with one-shot callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("build was cancelled")


@dataclass(slots=True)
class _Outcome:
    status: TargetStatus
    key: str | None = None
    fingerprint: Fingerprint | None = None
    output: Path | None = None
    message: str | None = None
    commands: List[CommandResult] = field(default_factory=list)
    elapsed: float = 0.0
    signature: str | None = None
    headers: Dict[str, List[int]] = field(default_factory=dict)


_UNFINISHED = {TargetStatus.FAILED, TargetStatus.BLOCKED, TargetStatus.CANCELLED}


class BuildOrchestrator:
    """Walk the graph ready set by ready set, rebuilding only stale targets.

    Targets of one ready set run concurrently on a thread pool; everything
    that touches the report or records results happens on the calling thread
    in declaration order. A failure blocks the failing target's transitive
    dependents and leaves unrelated targets running.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        root: Path,
        build_dir: Path,
        configuration: str = "release",
        default_toolchain: ToolchainKind | None = None,
        jobs: int = 1,
        hash_contents: bool = False,
        dry_run: bool = False,
        console: Console | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self._runner = runner
        self._root = root
        self._build_dir = build_dir
        self._configuration = configuration
        self._default_toolchain = default_toolchain
        self._jobs = max(1, jobs)
        self._hash_contents = hash_contents
        self._dry_run = dry_run
        self._console = console or Console(level="info", dry_run=dry_run)
        self._token = token or CancellationToken()

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def workers(self) -> int:
        return max(1, min(self._jobs, os.cpu_count() or 1))

    def context(self, graph: TargetGraph, toolchains: Mapping[ToolchainKind, ToolchainDescriptor]) -> BuildContext:
        return BuildContext(
            root=self._root,
            build_dir=self._build_dir,
            graph=graph,
            toolchains=dict(toolchains),
            configuration=self._configuration,
            default_toolchain=self._default_toolchain or default_toolchain(),
            jobs=self._jobs,
        )

    def run(
        self,
        graph: TargetGraph,
        cache: CacheStore,
        toolchains: Mapping[ToolchainKind, ToolchainDescriptor],
    ) -> BuildReport:
        context = self.context(graph, toolchains)
        self._token.add_callback(self._runner.terminate_all)
        started = time.monotonic()

        self._record_external(graph, cache)

        results: Dict[str, TargetResult] = {}
        fingerprints: Dict[str, Fingerprint] = {}
        keys: Dict[str, str] = {}

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="anvil") as executor:
            for group in graph.independent_groups():
                pending = []
                for target in group:
                    blocked = self._blocked_result(target, results)
                    if blocked is not None:
                        results[target.name] = blocked
                        continue
                    pending.append(
                        (
                            target,
                            executor.submit(
                                self._build_target,
                                target,
                                context,
                                cache,
                                {dep: fingerprints[dep] for dep in target.depends},
                                [keys[dep] for dep in target.depends],
                            ),
                        )
                    )

                for target, future in pending:
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        outcome = _Outcome(status=TargetStatus.FAILED, message=f"unexpected error: {exc}")
                    results[target.name] = self._apply(target, outcome, cache)
                    if outcome.fingerprint is not None:
                        fingerprints[target.name] = outcome.fingerprint
                    if outcome.key is not None:
                        keys[target.name] = outcome.key

        ordered = [results[target.name] for target in graph.topological_order()]
        if self._token.cancelled:
            status = RunStatus.CANCELLED
        elif any(result.status is TargetStatus.FAILED for result in ordered):
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED
        report = BuildReport(results=ordered, status=status, elapsed=time.monotonic() - started)

        if status is RunStatus.SUCCEEDED:
            self._console.info(report.summary())
        else:
            self._console.error(report.summary())
        return report

    def fingerprint(
        self,
        target: Target,
        context: BuildContext,
        dependency_fingerprints: Mapping[str, Fingerprint],
    ) -> Fingerprint:
        inputs = target_inputs(target, context)
        builder = FingerprintBuilder(hash_contents=self._hash_contents)
        builder.add_value("kind", target.kind.value)
        builder.add_value("settings", inputs.settings)
        builder.add_value("depends", list(target.depends))
        descriptor = context.toolchain_for(target)
        if descriptor is not None:
            builder.add_value("toolchain", descriptor.identity)
        builder.add_files(inputs.files)
        for dependency in context.graph.external_of(target.name):
            builder.add_value(f"external:{dependency.name}", dependency.revision)
        for name in target.depends:
            builder.add_fingerprint(name, dependency_fingerprints[name])
        return builder.build()

    def _blocked_result(self, target: Target, results: Mapping[str, TargetResult]) -> TargetResult | None:
        if self._token.cancelled:
            self._console.warning(f"Cancelled: {target.name}")
            return TargetResult(name=target.name, status=TargetStatus.CANCELLED, message="build was cancelled")
        for name in target.depends:
            status = results[name].status
            if status in _UNFINISHED:
                if status is TargetStatus.CANCELLED:
                    return TargetResult(name=target.name, status=TargetStatus.CANCELLED, message="build was cancelled")
                self._console.warning(f"Blocked: {target.name} (dependency '{name}' {status.value})")
                return TargetResult(
                    name=target.name,
                    status=TargetStatus.BLOCKED,
                    message=f"dependency '{name}' {status.value}",
                )
        return None

    def _apply(self, target: Target, outcome: _Outcome, cache: CacheStore) -> TargetResult:
        if outcome.key is not None and outcome.fingerprint is not None and not self._dry_run:
            if outcome.status is TargetStatus.BUILT:
                cache.record(CacheScope.LOCAL, outcome.key, outcome.fingerprint, data=self._record_data(target, outcome))
            elif outcome.commands and outcome.signature is not None:
                previous = cache.get(CacheScope.LOCAL, outcome.key)
                if previous is not None and previous.data.get("signature") != outcome.signature:
                    # Objects compiled with the new flags may now look newer than the recorded ones.
                    cache.discard(CacheScope.LOCAL, outcome.key)

        if outcome.status is TargetStatus.FAILED:
            if outcome.key is not None:
                cache.mark_stale(CacheScope.LOCAL, outcome.key)
            self._console.error(f"Failed: {target.name}: {outcome.message}")
            for result in outcome.commands[-1:]:
                detail = (result.stderr or result.stdout).strip()
                if detail:
                    self._console.error(detail)

        return TargetResult(
            name=target.name,
            status=outcome.status,
            elapsed=outcome.elapsed,
            output=outcome.output,
            message=outcome.message,
            commands=list(outcome.commands),
        )

    @staticmethod
    def _record_data(target: Target, outcome: _Outcome) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": target.kind.value}
        if outcome.output is not None:
            data["output"] = str(outcome.output)
        if outcome.signature is not None:
            data["signature"] = outcome.signature
        if outcome.headers:
            data["headers"] = outcome.headers
        return data

    def _build_target(
        self,
        target: Target,
        context: BuildContext,
        cache: CacheStore,
        dependency_fingerprints: Mapping[str, Fingerprint],
        dependency_keys: Sequence[str],
    ) -> _Outcome:
        started = time.monotonic()
        outcome = self._execute(target, context, cache, dependency_fingerprints, dependency_keys)
        outcome.elapsed = time.monotonic() - started
        return outcome

    def _execute(
        self,
        target: Target,
        context: BuildContext,
        cache: CacheStore,
        dependency_fingerprints: Mapping[str, Fingerprint],
        dependency_keys: Sequence[str],
    ) -> _Outcome:
        try:
            output = target_output(target, context)
            key = cache_key(target.name, output or context.build_dir)
            fingerprint = self.fingerprint(target, context, dependency_fingerprints)
        except (TargetExecutionFailed, ValueError, OSError) as exc:
            return _Outcome(status=TargetStatus.FAILED, message=str(exc))

        previous = cache.get(CacheScope.LOCAL, key)
        stale = cache.is_stale(CacheScope.LOCAL, key, fingerprint, depends_on=dependency_keys)
        if not stale and output is not None and not output.exists():
            self._console.debug(f"{target.name}: output '{output}' is missing")
            stale = True
        if not stale and previous is not None and _headers_changed(previous.data.get("headers")):
            self._console.debug(f"{target.name}: an included header changed")
            stale = True
        if not stale and isinstance(target, ScriptTarget) and target.always_run:
            stale = True
        if not stale:
            self._console.info(f"Up to date: {target.name}")
            return _Outcome(status=TargetStatus.SKIPPED, key=key, fingerprint=fingerprint, output=output)
        cache.mark_stale(CacheScope.LOCAL, key)

        commands: List[CommandResult] = []
        signature: str | None = None
        try:
            self._token.raise_if_cancelled()
            self._console.info(f"Building {target.name}")
            plan = plan_target(target, context)
            signature = plan.signature
            return self._run_plan(target, plan, key, fingerprint, commands, previous)
        except Cancelled as exc:
            status, message = TargetStatus.CANCELLED, str(exc)
        except (TargetExecutionFailed, ValueError, OSError) as exc:
            status, message = TargetStatus.FAILED, str(exc)
        return _Outcome(
            status=status,
            key=key,
            fingerprint=fingerprint,
            message=message,
            commands=commands,
            signature=signature,
        )

    def _run_plan(
        self,
        target: Target,
        plan: TargetPlan,
        key: str,
        fingerprint: Fingerprint,
        commands: List[CommandResult],
        previous: CacheRecord | None,
    ) -> _Outcome:
        if not self._dry_run:
            for directory in plan.directories:
                directory.mkdir(parents=True, exist_ok=True)

        reuse_objects = (
            plan.signature is not None and previous is not None and previous.data.get("signature") == plan.signature
        )
        for step in plan.steps:
            self._token.raise_if_cancelled()
            if reuse_objects and object_is_current(step):
                self._console.debug(f"{target.name}: {step.description}: up to date")
                continue
            self._console.debug(f"{target.name}: {step.description}: {self._runner.format_command(step.command)}")
            self._console.dry(f"{step.description}: {self._runner.format_command(step.command)}")
            try:
                result = self._runner.run(
                    step.command,
                    cwd=step.cwd,
                    env=step.env or None,
                    note=f"{target.name}: {step.description}",
                )
            except OSError as exc:
                return _Outcome(
                    status=TargetStatus.FAILED,
                    key=key,
                    fingerprint=fingerprint,
                    message=f"could not start '{step.command[0]}': {exc}",
                    commands=commands,
                    signature=plan.signature,
                )
            commands.append(result)
            if result.returncode != 0:
                if result.terminated:
                    raise Cancelled(f"{step.description} was terminated")
                self._token.raise_if_cancelled()
                return _Outcome(
                    status=TargetStatus.FAILED,
                    key=key,
                    fingerprint=fingerprint,
                    message=f"{step.description} exited with code {result.returncode}",
                    commands=commands,
                    signature=plan.signature,
                )
            if step.show_includes and step.source is not None and step.product is not None and step.depfile is not None:
                if not self._dry_run:
                    write_depfile(step.depfile, step.product, [step.source, *parse_show_includes(result.stdout)])

        return _Outcome(
            status=TargetStatus.BUILT,
            key=key,
            fingerprint=fingerprint,
            output=plan.output,
            commands=commands,
            signature=plan.signature,
            headers={} if self._dry_run else _header_stamps(plan),
        )

    def _record_external(self, graph: TargetGraph, cache: CacheStore) -> None:
        for name, dependency in graph.external.items():
            key = cache_key(name, dependency.path)
            fingerprint = FingerprintBuilder().add_value("revision", dependency.revision).build()
            if not cache.is_stale(CacheScope.GLOBAL, key, fingerprint):
                continue
            self._console.debug(f"External dependency {name} at {dependency.revision}")
            if not self._dry_run:
                cache.record(CacheScope.GLOBAL, key, fingerprint, data={"revision": dependency.revision})


def _header_stamps(plan: TargetPlan) -> Dict[str, List[int]]:
    stamps: Dict[str, List[int]] = {}
    for step in plan.steps:
        for header in step_headers(step):
            stamp = file_stamp(header)
            if stamp is not None:
                stamps[header.as_posix()] = list(stamp)
    return stamps


def _headers_changed(recorded: Any) -> bool:
    """Compare header stamps stored with the last build against the disk."""
    if not isinstance(recorded, Mapping):
        return False
    for path, stamp in recorded.items():
        current = file_stamp(Path(path))
        if current is None or not isinstance(stamp, list) or list(current) != stamp:
            return True
    return False


__all__ = [
    "BuildOrchestrator",
    "BuildReport",
    "CancellationToken",
    "EXIT_CODES",
    "RunStatus",
    "TargetResult",
    "TargetStatus",
]
