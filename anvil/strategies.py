"""Per target kind planning: inputs, outputs and the commands that build them."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Sequence
import glob
import hashlib
import json
import os
import platform
import re
import sys

from core.config_loader import resolve_path

from .errors import TargetExecutionFailed
from .graph import TargetGraph
from .targets import ArtifactKind, CMakeTarget, ProjectTarget, ScriptTarget, Target, TargetKind
from .toolchains import ToolchainDescriptor, ToolchainKind


CONFIGURATIONS: Dict[str, tuple[str, bool, str]] = {
    "debug": ("0", True, "Debug"),
    "release": ("2", False, "Release"),
    "minsize": ("s", False, "MinSizeRel"),
    "relwithdebinfo": ("2", True, "RelWithDebInfo"),
}
"""Build configuration -> (optimization level, debug info, CMake build type)."""


def default_toolchain(os_name: str | None = None) -> ToolchainKind:
    name = (os_name or platform.system()).lower()
    if name == "windows":
        return ToolchainKind.VISUAL_STUDIO
    if name == "darwin":
        return ToolchainKind.APPLE_LLVM
    return ToolchainKind.GNU


@dataclass(slots=True)
class BuildStep:
    description: str
    command: Sequence[str]
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)
    # Set on per-source compile steps so an up-to-date object can be reused.
    source: Path | None = None
    product: Path | None = None
    depfile: Path | None = None
    show_includes: bool = False


@dataclass(slots=True)
class TargetPlan:
    steps: List[BuildStep]
    output: Path | None
    directories: List[Path] = field(default_factory=list)
    # Digest of everything the compile steps share; objects are reused only while it matches.
    signature: str | None = None


@dataclass(slots=True)
class TargetInputs:
    """Everything whose change must rebuild a target."""

    files: List[Path]
    settings: Dict[str, Any]


@dataclass(frozen=True)
class BuildContext:
    """Read-only view of the session shared by every worker."""

    root: Path
    build_dir: Path
    graph: TargetGraph
    toolchains: Mapping[ToolchainKind, ToolchainDescriptor]
    configuration: str = "release"
    default_toolchain: ToolchainKind = field(default_factory=default_toolchain)
    jobs: int = 1
    cmake: str = "cmake"

    def toolchain_kind(self, target: Target) -> ToolchainKind | None:
        if isinstance(target, ProjectTarget):
            return target.toolchain or self.default_toolchain
        if isinstance(target, CMakeTarget):
            return target.toolchain
        return None

    def toolchain_for(self, target: Target) -> ToolchainDescriptor | None:
        kind = self.toolchain_kind(target)
        if kind is None:
            return None
        descriptor = self.toolchains.get(kind)
        if descriptor is None:
            raise TargetExecutionFailed(target.name, f"toolchain '{kind.value}' was not resolved for this session")
        return descriptor

    @property
    def configuration_settings(self) -> tuple[str, bool, str]:
        try:
            return CONFIGURATIONS[self.configuration]
        except KeyError:
            allowed = ", ".join(CONFIGURATIONS)
            raise ValueError(f"Unknown configuration '{self.configuration}' (allowed: {allowed})") from None

    def object_dir(self, target: Target) -> Path:
        return self.build_dir / "obj" / target.name


def expand_patterns(root: Path, patterns: Sequence[str]) -> List[Path]:
    """Expand glob patterns below ``root``; literal paths are kept even if missing."""

    found: List[Path] = []
    for pattern in patterns:
        if glob.has_magic(pattern):
            base = Path(pattern).expanduser()
            if base.is_absolute():
                matches = [Path(item) for item in glob.glob(str(base), recursive=True)]
            else:
                matches = list(root.glob(pattern))
            found.extend(sorted((path for path in matches if path.is_file()), key=lambda item: item.as_posix()))
        else:
            found.append(resolve_path(root, pattern))
    return _dedupe(found)


def _object_name(root: Path, source: Path, suffix: str) -> str:
    try:
        relative = source.relative_to(root)
    except ValueError:
        relative = Path(*[part for part in source.parts if part not in (source.anchor,)])
    return "_".join(relative.parts) + suffix


def _dedupe(paths: Iterable[Path]) -> List[Path]:
    unique: List[Path] = []
    seen: set[Path] = set()
    for path in paths:
        if path not in seen:
            seen.add(path)
            unique.append(path)
    return unique


def _walk_files(directory: Path, excluded: Collection[Path] = ()) -> List[Path]:
    """Every file below ``directory`` in a stable order, skipping hidden and excluded directories."""

    files: List[Path] = []
    for current, dirnames, filenames in os.walk(directory):
        current_path = Path(current)
        dirnames[:] = sorted(
            name for name in dirnames if not name.startswith(".") and (current_path / name) not in excluded
        )
        files.extend(current_path / name for name in sorted(filenames))
    return files


# Project ---------------------------------------------------------------------


HEADER_SUFFIXES = frozenset({".h", ".hh", ".hpp", ".hxx", ".h++", ".inl", ".ipp", ".tpp"})

_SHOW_INCLUDES_PREFIX = "Note: including file:"


def read_depfile(path: Path) -> List[Path]:
    """Prerequisites of the first rule in a Makefile-style dependency file.

    Returns an empty list when the file cannot be read.
    """

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    text = text.replace("\\\r\n", " ").replace("\\\n", " ")
    # "C:\dir\a.obj: ..." has no space after the drive colon.
    _, separator, rest = text.partition(": ")
    if not separator:
        return []
    rule = rest.split("\n", 1)[0]
    return [Path(token.replace("\\ ", " ")) for token in re.findall(r"(?:\\ |\S)+", rule)]


def write_depfile(path: Path, product: Path, prerequisites: Iterable[Path]) -> None:
    def escape(item: Path) -> str:
        return str(item).replace(" ", "\\ ")

    lines = [f"{escape(product)}:"]
    lines.extend(f" {escape(item)}" for item in prerequisites)
    path.write_text(" \\\n".join(lines) + "\n", encoding="utf-8")


def parse_show_includes(output: str) -> List[Path]:
    """Header paths reported by ``/showIncludes``."""

    headers: List[Path] = []
    for line in output.splitlines():
        if line.startswith(_SHOW_INCLUDES_PREFIX):
            headers.append(Path(line[len(_SHOW_INCLUDES_PREFIX):].strip()))
    return headers


def step_headers(step: BuildStep) -> List[Path]:
    """Headers a compile step read when it last ran, excluding its own source."""

    if step.depfile is None:
        return []
    headers = [path if path.is_absolute() else step.cwd / path for path in read_depfile(step.depfile)]
    return [path for path in headers if path != step.source]


def object_is_current(step: BuildStep) -> bool:
    """True when a compile step's object is newer than its source and every header it read."""

    if step.source is None or step.product is None or step.depfile is None or not step.depfile.is_file():
        return False
    try:
        built = step.product.stat().st_mtime_ns
        for path in (step.source, *step_headers(step)):
            if path.stat().st_mtime_ns > built:
                return False
    except OSError:
        return False
    return True


def _project_toolchain(target: ProjectTarget, context: BuildContext) -> ToolchainDescriptor:
    descriptor = context.toolchain_for(target)
    if descriptor is None:
        raise TargetExecutionFailed(target.name, "no toolchain is available for this target")
    return descriptor


def _project_output(target: ProjectTarget, context: BuildContext) -> Path:
    profile = _project_toolchain(target, context).profile
    if target.output:
        return resolve_path(context.build_dir, target.output)
    if target.artifact is ArtifactKind.STATIC_LIBRARY:
        filename = f"{profile.static_prefix}{target.name}{profile.static_suffix}"
    elif target.artifact is ArtifactKind.SHARED_LIBRARY:
        filename = f"{profile.shared_prefix}{target.name}{profile.shared_suffix}"
    else:
        filename = f"{target.name}{profile.executable_suffix}"
    return context.build_dir / filename


def _import_library(target: ProjectTarget, context: BuildContext) -> Path | None:
    """Import library written next to a DLL, for toolchains that link against one."""

    profile = _project_toolchain(target, context).profile
    if target.artifact is not ArtifactKind.SHARED_LIBRARY or not profile.import_suffix:
        return None
    return _project_output(target, context).with_suffix(profile.import_suffix)


def _project_sources(target: ProjectTarget, context: BuildContext) -> List[Path]:
    return expand_patterns(context.root, target.sources)


def _object_path(target: ProjectTarget, context: BuildContext, source: Path, suffix: str) -> Path:
    return context.object_dir(target) / _object_name(context.root, source, suffix)


def _depfile_path(obj: Path) -> Path:
    return obj.with_name(f"{obj.name}.d")


def _project_headers(target: ProjectTarget, context: BuildContext, sources: Sequence[Path]) -> List[Path]:
    """Headers that can be found without running the compiler.

    Declared include directories inside the workspace are walked whole, and
    headers sitting next to a source are picked up. Anything else a source
    includes is tracked through depfiles once it has been compiled.
    """

    headers: List[Path] = []
    for include in target.includes:
        directory = resolve_path(context.root, include)
        if directory.is_dir() and directory.is_relative_to(context.root):
            headers.extend(_walk_files(directory, (context.build_dir,)))
    for directory in sorted({source.parent for source in sources}):
        if directory.is_dir():
            headers.extend(
                path for path in sorted(directory.iterdir()) if path.suffix.lower() in HEADER_SUFFIXES and path.is_file()
            )
    return headers


def _project_inputs(target: ProjectTarget, context: BuildContext) -> TargetInputs:
    level, debug, _ = context.configuration_settings
    sources = _project_sources(target, context)
    return TargetInputs(
        files=_dedupe([*sources, *_project_headers(target, context, sources)]),
        settings={
            "artifact": target.artifact.value,
            "includes": list(target.includes),
            "defines": list(target.defines),
            "links": list(target.links),
            "library_dirs": list(target.library_dirs),
            "compile_flags": list(target.compile_flags),
            "link_flags": list(target.link_flags),
            "optimization": target.optimization or level,
            "debug": debug,
            "output": target.output,
        },
    )


def _compile_arguments(target: ProjectTarget, context: BuildContext, descriptor: ToolchainDescriptor) -> List[str]:
    profile = descriptor.profile
    level, debug, _ = context.configuration_settings
    args: List[str] = list(profile.always)
    args.extend(profile.optimize(target.optimization or level))
    if debug:
        args.extend(profile.debug_info)
    if target.artifact is ArtifactKind.SHARED_LIBRARY:
        args.extend(profile.position_independent)
    for include in target.includes:
        args.extend(profile.expand(profile.include, str(resolve_path(context.root, include))))
    for dependency in context.graph.external_of(target.name):
        include_dir = dependency.path / "include"
        args.extend(profile.expand(profile.include, str(include_dir if include_dir.is_dir() else dependency.path)))
    for define in target.defines:
        args.extend(profile.expand(profile.define, define))
    args.extend(target.compile_flags)
    return args


def _link_arguments(target: ProjectTarget, context: BuildContext, descriptor: ToolchainDescriptor) -> List[str]:
    profile = descriptor.profile
    args: List[str] = []
    for dependency in context.graph.dependencies_of(target.name):
        if isinstance(dependency, ProjectTarget) and dependency.is_library:
            library = _import_library(dependency, context) or _project_output(dependency, context)
            args.append(str(library))
    for directory in target.library_dirs:
        args.extend(profile.expand(profile.library_dir, str(resolve_path(context.root, directory))))
    for library in target.links:
        args.extend(profile.expand(profile.link_library, library))
    args.extend(target.link_flags)
    return args


def _compile_step(
    target: ProjectTarget,
    context: BuildContext,
    descriptor: ToolchainDescriptor,
    compiler: str,
    compile_args: Sequence[str],
    source: Path,
) -> BuildStep:
    profile = descriptor.profile
    obj = _object_path(target, context, source, profile.object_suffix)
    depfile = _depfile_path(obj)
    tracking = profile.expand(profile.dependency_file, str(depfile)) if profile.dependency_file else list(profile.show_includes)
    return BuildStep(
        description=f"Compile {source.name}",
        command=[
            compiler,
            *profile.compile_only,
            *compile_args,
            str(source),
            *tracking,
            *profile.expand(profile.output_object, str(obj)),
        ],
        cwd=context.root,
        source=source,
        product=obj,
        depfile=depfile if tracking else None,
        show_includes=bool(profile.show_includes) and not profile.dependency_file,
    )


def _compile_signature(descriptor: ToolchainDescriptor, compiler: str, compile_args: Sequence[str]) -> str:
    payload = json.dumps([descriptor.identity, compiler, list(compile_args)])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _project_steps(target: ProjectTarget, context: BuildContext) -> TargetPlan:
    descriptor = _project_toolchain(target, context)
    profile = descriptor.profile
    sources = _project_sources(target, context)
    if not sources:
        raise TargetExecutionFailed(target.name, "no source files matched")

    output = _project_output(target, context)
    compiler = descriptor.compiler_for(sources)
    compile_args = _compile_arguments(target, context, descriptor)
    link_args = _link_arguments(target, context, descriptor)
    shared = list(profile.shared) if target.artifact is ArtifactKind.SHARED_LIBRARY else []
    cwd = context.root

    if not profile.staged and target.artifact is not ArtifactKind.STATIC_LIBRARY:
        command = [
            compiler,
            *compile_args,
            *[str(source) for source in sources],
            *shared,
            *profile.expand(profile.output_binary, str(output)),
            *link_args,
        ]
        return TargetPlan(
            steps=[BuildStep(description=f"Compile and link {target.name}", command=command, cwd=cwd)],
            output=output,
            directories=[output.parent],
        )

    object_dir = context.object_dir(target)
    steps = [_compile_step(target, context, descriptor, compiler, compile_args, source) for source in sources]
    objects = [str(step.product) for step in steps]

    if target.artifact is ArtifactKind.STATIC_LIBRARY:
        if not descriptor.archiver:
            raise TargetExecutionFailed(target.name, f"toolchain '{descriptor.kind.value}' has no archiver")
        command = [descriptor.archiver, *profile.always, *profile.expand(profile.archive, str(output)), *objects]
        steps.append(BuildStep(description=f"Archive {output.name}", command=command, cwd=cwd))
    else:
        linker = descriptor.linker or compiler
        import_library = _import_library(target, context)
        command = [
            linker,
            *profile.always,
            *shared,
            *profile.expand(profile.output_binary, str(output)),
            *(profile.expand(profile.import_library, str(import_library)) if import_library else []),
            *objects,
            *link_args,
        ]
        steps.append(BuildStep(description=f"Link {output.name}", command=command, cwd=cwd))

    return TargetPlan(
        steps=steps,
        output=output,
        directories=[object_dir, output.parent],
        signature=_compile_signature(descriptor, compiler, compile_args),
    )


def compile_commands(target: ProjectTarget, context: BuildContext) -> List[Dict[str, Any]]:
    """Per-source compile invocations, as consumed by clang tooling."""

    descriptor = _project_toolchain(target, context)
    profile = descriptor.profile
    sources = _project_sources(target, context)
    compiler = descriptor.compiler_for(sources)
    compile_args = _compile_arguments(target, context, descriptor)
    entries: List[Dict[str, Any]] = []
    for source in sources:
        obj = _object_path(target, context, source, profile.object_suffix)
        entries.append(
            {
                "directory": str(context.root),
                "file": str(source),
                "arguments": [
                    compiler,
                    *profile.compile_only,
                    *compile_args,
                    str(source),
                    *profile.expand(profile.output_object, str(obj)),
                ],
                "output": str(obj),
            }
        )
    return entries


# Script ----------------------------------------------------------------------


_SCRIPT_INTERPRETERS: Dict[str, tuple[str, ...]] = {
    ".py": (sys.executable or "python3",),
    ".sh": ("sh",),
    ".bash": ("bash",),
    ".ps1": ("pwsh", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File"),
    ".bat": ("cmd", "/c"),
    ".cmd": ("cmd", "/c"),
    ".rb": ("ruby",),
    ".pl": ("perl",),
    ".lua": ("lua",),
    ".tcl": ("tclsh", "-encoding", "utf-8"),
    ".awk": ("awk", "-f"),
}


def script_command(script: Path, arguments: Sequence[str]) -> List[str]:
    interpreter = _SCRIPT_INTERPRETERS.get(script.suffix.lower(), ())
    return [*interpreter, str(script), *arguments]


def _script_cwd(target: ScriptTarget, context: BuildContext) -> Path:
    return resolve_path(context.root, target.cwd) if target.cwd else context.root


def _script_output(target: ScriptTarget, context: BuildContext) -> Path | None:
    return resolve_path(context.root, target.output) if target.output else None


def _script_inputs(target: ScriptTarget, context: BuildContext) -> TargetInputs:
    files = expand_patterns(context.root, target.inputs)
    if target.script:
        files.insert(0, resolve_path(context.root, target.script))
    return TargetInputs(
        files=files,
        settings={
            "script": target.script,
            "command": list(target.command),
            "arguments": list(target.arguments),
            "cwd": target.cwd,
            "environment": dict(sorted(target.environment.items())),
            "output": target.output,
        },
    )


def _script_steps(target: ScriptTarget, context: BuildContext) -> TargetPlan:
    if target.script:
        command = script_command(resolve_path(context.root, target.script), target.arguments)
    else:
        command = [*target.command, *target.arguments]
    output = _script_output(target, context)
    return TargetPlan(
        steps=[
            BuildStep(
                description=f"Run {target.name}",
                command=command,
                cwd=_script_cwd(target, context),
                env=dict(target.environment),
            )
        ],
        output=output,
        directories=[output.parent] if output else [],
    )


# CMake -----------------------------------------------------------------------


def _cmake_build_dir(target: CMakeTarget, context: BuildContext) -> Path:
    if target.build_dir:
        return resolve_path(context.root, target.build_dir)
    return context.build_dir / "cmake" / target.name


def _cmake_output(target: CMakeTarget, context: BuildContext) -> Path | None:
    return resolve_path(_cmake_build_dir(target, context), target.output) if target.output else None


def _cmake_inputs(target: CMakeTarget, context: BuildContext) -> TargetInputs:
    source_dir = resolve_path(context.root, target.source_dir)
    files = _walk_files(source_dir, {_cmake_build_dir(target, context), context.build_dir})
    return TargetInputs(
        files=files,
        settings={
            "source_dir": target.source_dir,
            "build_dir": target.build_dir,
            "defines": dict(target.defines),
            "generator": target.generator,
            "cmake_target": target.cmake_target,
            "environment": dict(sorted(target.environment.items())),
            "configuration": context.configuration_settings[2],
            "output": target.output,
        },
    )


def _format_cmake_value(value: Any) -> str:
    if isinstance(value, bool):
        return "ON" if value else "OFF"
    return str(value)


def _cmake_steps(target: CMakeTarget, context: BuildContext) -> TargetPlan:
    source_dir = resolve_path(context.root, target.source_dir)
    build_dir = _cmake_build_dir(target, context)
    build_type = context.configuration_settings[2]
    descriptor = context.toolchain_for(target)

    definitions: Dict[str, Any] = {"CMAKE_BUILD_TYPE": build_type}
    if descriptor is not None:
        definitions["CMAKE_C_COMPILER"] = descriptor.cc
        definitions["CMAKE_CXX_COMPILER"] = descriptor.cxx
    definitions.update(target.defines)

    configure: List[str] = [context.cmake, "-S", str(source_dir), "-B", str(build_dir)]
    if target.generator:
        configure.extend(["-G", target.generator])
    for key, value in definitions.items():
        configure.append(f"-D{key}={_format_cmake_value(value)}")

    build: List[str] = [context.cmake, "--build", str(build_dir), "--config", build_type, "-j", str(max(1, context.jobs))]
    if target.cmake_target:
        build.extend(["--target", target.cmake_target])

    env = dict(target.environment)
    return TargetPlan(
        steps=[
            BuildStep(description=f"Configure {target.name}", command=configure, cwd=source_dir, env=env),
            BuildStep(description=f"Build {target.name}", command=build, cwd=source_dir, env=env),
        ],
        output=_cmake_output(target, context),
        directories=[build_dir],
    )


# Dispatch --------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Strategy:
    inputs: Callable[[Any, BuildContext], TargetInputs]
    plan: Callable[[Any, BuildContext], TargetPlan]
    output: Callable[[Any, BuildContext], Path | None]


_STRATEGIES: Dict[TargetKind, _Strategy] = {
    TargetKind.PROJECT: _Strategy(inputs=_project_inputs, plan=_project_steps, output=_project_output),
    TargetKind.SCRIPT: _Strategy(inputs=_script_inputs, plan=_script_steps, output=_script_output),
    TargetKind.CMAKE: _Strategy(inputs=_cmake_inputs, plan=_cmake_steps, output=_cmake_output),
}


def target_inputs(target: Target, context: BuildContext) -> TargetInputs:
    return _STRATEGIES[target.kind].inputs(target, context)


def plan_target(target: Target, context: BuildContext) -> TargetPlan:
    return _STRATEGIES[target.kind].plan(target, context)


def target_output(target: Target, context: BuildContext) -> Path | None:
    return _STRATEGIES[target.kind].output(target, context)


__all__ = [
    "CONFIGURATIONS",
    "BuildContext",
    "BuildStep",
    "TargetInputs",
    "TargetPlan",
    "compile_commands",
    "default_toolchain",
    "HEADER_SUFFIXES",
    "expand_patterns",
    "object_is_current",
    "parse_show_includes",
    "plan_target",
    "read_depfile",
    "script_command",
    "step_headers",
    "target_inputs",
    "target_output",
    "write_depfile",
]
