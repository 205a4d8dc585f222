"""Command line interface for the anvil build tool."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable, List
import signal
import sys

from core.console import Console

from .config_loader import WorkspaceConfig, load_workspace
from .errors import BuildError
from .orchestrator import CancellationToken, TargetStatus
from .session import BuildOptions, BuildSession
from .strategies import CONFIGURATIONS


EXIT_INVALID = 2


def _collect_targets(values: List[str]) -> List[str]:
    targets: List[str] = []
    for value in values:
        if not value:
            continue
        targets.extend(part.strip() for part in value.split(",") if part.strip())
    return targets


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="anvil", description="Incremental build orchestrator")
    parser.add_argument("-f", "--file", type=Path, help="Project description (default: anvil.toml/.json/.yaml in cwd)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build stale targets")
    build_parser.add_argument("--target", action="append", default=[], help="Target(s) to build with their dependencies (comma-separated)")
    build_parser.add_argument("-j", "--jobs", type=int, help="Maximum number of targets built concurrently")
    build_parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument("--toolchain", help="Default toolchain kind for project targets")
    build_parser.add_argument("--configuration", choices=list(CONFIGURATIONS), help="Build configuration")
    build_parser.add_argument(
        "--export-compile-commands",
        nargs="?",
        const="",
        metavar="PATH",
        help="Write compile_commands.json (default: build directory)",
    )
    verbosity = build_parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", action="store_true", help="Enable debug output")
    verbosity.add_argument("--quiet", action="store_true", help="Only print errors")

    subparsers.add_parser("list", help="List targets in build order")
    subparsers.add_parser("validate", help="Validate the project description and target graph")
    subparsers.add_parser("clean", help="Remove the build directory and local cache")

    return parser.parse_args(list(argv))


def _console_for(args: Namespace, config: WorkspaceConfig) -> Console:
    level = config.log_level
    if getattr(args, "verbose", False):
        level = "debug"
    elif getattr(args, "quiet", False):
        level = "error"
    return Console(level=level, dry_run=getattr(args, "dry_run", False))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = Path.cwd()

    try:
        config = load_workspace(args.file, cwd=workspace)
    except (OSError, ValueError, TypeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID

    console = _console_for(args, config)
    try:
        if args.command == "build":
            return _handle_build(args, config, console)
        if args.command == "list":
            return _handle_list(config, console)
        if args.command == "validate":
            return _handle_validate(config, console)
        if args.command == "clean":
            return _handle_clean(config, console)
    except (BuildError, ValueError, TypeError, KeyError) as exc:
        message = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
        print(f"Error: {message}", file=sys.stderr)
        return EXIT_INVALID
    raise ValueError(f"Unknown command: {args.command}")


def _handle_build(args: Namespace, config: WorkspaceConfig, console: Console) -> int:
    token = CancellationToken()
    session = BuildSession(config, console=console, token=token)

    export = args.export_compile_commands
    if export is not None:
        export = config.build_dir if export == "" else Path(export).resolve()

    options = BuildOptions(
        targets=_collect_targets(args.target),
        jobs=args.jobs,
        dry_run=args.dry_run,
        toolchain=args.toolchain,
        configuration=args.configuration,
        export_compile_commands=export,
    )

    def _interrupt(signum: int, frame: object) -> None:
        console.warning("Interrupted; stopping running targets")
        token.cancel()

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        report = session.build(options)
    finally:
        signal.signal(signal.SIGINT, previous)

    for result in report.results:
        if result.status in (TargetStatus.FAILED, TargetStatus.BLOCKED):
            console.error(f"{result.name}: {result.status.value} ({result.message})")
    return report.exit_code


def _handle_list(config: WorkspaceConfig, console: Console) -> int:
    session = BuildSession(config, console=console)
    graph = session.graph()
    for index, group in enumerate(graph.independent_groups()):
        for target in group:
            depends = f" <- {', '.join(target.depends)}" if target.depends else ""
            print(f"[{index}] {target.name} ({target.kind.value}){depends}")
    return 0


def _handle_validate(config: WorkspaceConfig, console: Console) -> int:
    session = BuildSession(config, console=console)
    graph = session.graph()
    kinds = session.required_toolchains(graph, config.toolchain)
    console.debug(f"Toolchains required: {', '.join(kind.value for kind in kinds) or '<none>'}")
    print(f"Validation successful: {len(graph)} target(s)")
    return 0


def _handle_clean(config: WorkspaceConfig, console: Console) -> int:
    removed = BuildSession(config, console=console).clean()
    if not removed:
        console.info("Nothing to clean")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
