"""Target declarations: the three kinds of buildable units."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Mapping, Union

from core.config_loader import normalize_string_list, normalize_string_map, reject_unknown_keys

from .toolchains import ToolchainKind


class TargetKind(str, Enum):
    PROJECT = "project"
    SCRIPT = "script"
    CMAKE = "cmake"


class ArtifactKind(str, Enum):
    EXECUTABLE = "executable"
    STATIC_LIBRARY = "static-library"
    SHARED_LIBRARY = "shared-library"


_COMMON_KEYS = {"name", "kind", "depends", "output"}


def _name(data: Mapping[str, Any]) -> str:
    raw = data.get("name")
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("Every target requires a non-empty 'name'")
    return raw.strip()


def _strings(data: Mapping[str, Any], key: str, name: str) -> tuple[str, ...]:
    return tuple(normalize_string_list(data.get(key), field_name=f"targets.{name}.{key}"))


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_kind(data: Mapping[str, Any]) -> ToolchainKind | None:
    value = _optional_str(data, "toolchain")
    return ToolchainKind.parse(value) if value else None


@dataclass(frozen=True, slots=True)
class ProjectTarget:
    """Sources compiled and linked with a native toolchain."""

    kind: ClassVar[TargetKind] = TargetKind.PROJECT

    name: str
    sources: tuple[str, ...]
    artifact: ArtifactKind = ArtifactKind.EXECUTABLE
    depends: tuple[str, ...] = ()
    toolchain: ToolchainKind | None = None
    includes: tuple[str, ...] = ()
    defines: tuple[str, ...] = ()
    links: tuple[str, ...] = ()
    library_dirs: tuple[str, ...] = ()
    compile_flags: tuple[str, ...] = ()
    link_flags: tuple[str, ...] = ()
    optimization: str | None = None
    external: tuple[str, ...] = ()
    output: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProjectTarget":
        name = _name(data)
        reject_unknown_keys(
            data,
            _COMMON_KEYS
            | {
                "sources",
                "artifact",
                "toolchain",
                "includes",
                "defines",
                "links",
                "library_dirs",
                "compile_flags",
                "link_flags",
                "optimization",
                "external",
            },
            context=f"Target '{name}'",
        )
        sources = _strings(data, "sources", name)
        if not sources:
            raise ValueError(f"Target '{name}' must list at least one source pattern")
        artifact_value = _optional_str(data, "artifact") or ArtifactKind.EXECUTABLE.value
        try:
            artifact = ArtifactKind(artifact_value.lower())
        except ValueError:
            allowed = ", ".join(item.value for item in ArtifactKind)
            raise ValueError(f"Target '{name}' has unknown artifact '{artifact_value}' (allowed: {allowed})") from None
        optimization = _optional_str(data, "optimization")
        return cls(
            name=name,
            sources=sources,
            artifact=artifact,
            depends=_strings(data, "depends", name),
            toolchain=_optional_kind(data),
            includes=_strings(data, "includes", name),
            defines=_strings(data, "defines", name),
            links=_strings(data, "links", name),
            library_dirs=_strings(data, "library_dirs", name),
            compile_flags=_strings(data, "compile_flags", name),
            link_flags=_strings(data, "link_flags", name),
            optimization=optimization.lower() if optimization else None,
            external=_strings(data, "external", name),
            output=_optional_str(data, "output"),
        )

    @property
    def is_library(self) -> bool:
        return self.artifact is not ArtifactKind.EXECUTABLE


@dataclass(frozen=True, slots=True)
class ScriptTarget:
    """An external script or command; running it is its build."""

    kind: ClassVar[TargetKind] = TargetKind.SCRIPT

    name: str
    script: str | None = None
    command: tuple[str, ...] = ()
    arguments: tuple[str, ...] = ()
    depends: tuple[str, ...] = ()
    cwd: str | None = None
    inputs: tuple[str, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)
    always_run: bool = False
    external: tuple[str, ...] = ()
    output: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ScriptTarget":
        name = _name(data)
        reject_unknown_keys(
            data,
            _COMMON_KEYS | {"script", "command", "arguments", "cwd", "inputs", "environment", "always_run", "external"},
            context=f"Target '{name}'",
        )
        script = _optional_str(data, "script")
        command = _strings(data, "command", name)
        if bool(script) == bool(command):
            raise ValueError(f"Target '{name}' must define exactly one of 'script' or 'command'")
        return cls(
            name=name,
            script=script,
            command=command,
            arguments=_strings(data, "arguments", name),
            depends=_strings(data, "depends", name),
            cwd=_optional_str(data, "cwd"),
            inputs=_strings(data, "inputs", name),
            environment=normalize_string_map(data.get("environment"), field_name=f"targets.{name}.environment"),
            always_run=bool(data.get("always_run", False)),
            external=_strings(data, "external", name),
            output=_optional_str(data, "output"),
        )


@dataclass(frozen=True, slots=True)
class CMakeTarget:
    """A project delegated to CMake and built out of process."""

    kind: ClassVar[TargetKind] = TargetKind.CMAKE

    name: str
    source_dir: str
    build_dir: str | None = None
    depends: tuple[str, ...] = ()
    defines: Dict[str, str] = field(default_factory=dict)
    generator: str | None = None
    cmake_target: str | None = None
    toolchain: ToolchainKind | None = None
    environment: Dict[str, str] = field(default_factory=dict)
    external: tuple[str, ...] = ()
    output: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CMakeTarget":
        name = _name(data)
        reject_unknown_keys(
            data,
            _COMMON_KEYS
            | {"source_dir", "build_dir", "defines", "generator", "cmake_target", "toolchain", "environment", "external"},
            context=f"Target '{name}'",
        )
        source_dir = _optional_str(data, "source_dir")
        if not source_dir:
            raise ValueError(f"Target '{name}' requires 'source_dir'")
        return cls(
            name=name,
            source_dir=source_dir,
            build_dir=_optional_str(data, "build_dir"),
            depends=_strings(data, "depends", name),
            defines=normalize_string_map(data.get("defines"), field_name=f"targets.{name}.defines"),
            generator=_optional_str(data, "generator"),
            cmake_target=_optional_str(data, "cmake_target"),
            toolchain=_optional_kind(data),
            environment=normalize_string_map(data.get("environment"), field_name=f"targets.{name}.environment"),
            external=_strings(data, "external", name),
            output=_optional_str(data, "output"),
        )


Target = Union[ProjectTarget, ScriptTarget, CMakeTarget]


_PARSERS: Dict[TargetKind, Callable[[Mapping[str, Any]], Target]] = {
    TargetKind.PROJECT: ProjectTarget.from_mapping,
    TargetKind.SCRIPT: ScriptTarget.from_mapping,
    TargetKind.CMAKE: CMakeTarget.from_mapping,
}


def parse_target(data: Mapping[str, Any]) -> Target:
    if not isinstance(data, Mapping):
        raise TypeError("Target declarations must be mappings")
    raw_kind = str(data.get("kind", TargetKind.PROJECT.value)).strip().lower()
    try:
        kind = TargetKind(raw_kind)
    except ValueError:
        allowed = ", ".join(item.value for item in TargetKind)
        raise ValueError(f"Target '{data.get('name')}' has unknown kind '{raw_kind}' (allowed: {allowed})") from None
    return _PARSERS[kind](data)


__all__ = [
    "ArtifactKind",
    "CMakeTarget",
    "ProjectTarget",
    "ScriptTarget",
    "Target",
    "TargetKind",
    "parse_target",
]
