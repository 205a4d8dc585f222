"""Project description loading and validation."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import os

from core.config_loader import find_config_file, load_config_file, reject_unknown_keys, resolve_path
from core.console import Console

from .dependencies import DependencyDeclaration
from .strategies import CONFIGURATIONS, default_toolchain
from .targets import Target, parse_target
from .toolchains import SearchHints, ToolchainKind


DESCRIPTION_STEM = "anvil"
GLOBAL_CACHE_ENV = "ANVIL_GLOBAL_CACHE"
DEFAULT_GLOBAL_CACHE_DIR = "~/.cache/anvil"

LOCAL_CACHE_FILE = "anvil-cache.json"
GLOBAL_CACHE_FILE = "global-cache.json"


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise TypeError(f"[{name}] must be a table")
    return section


def _entries(data: Mapping[str, Any], name: str) -> Sequence[Any]:
    entries = data.get(name, [])
    if entries is None:
        return []
    if isinstance(entries, Mapping) or isinstance(entries, (str, bytes)) or not isinstance(entries, Sequence):
        raise TypeError(f"'{name}' must be a list of tables")
    return entries


def _positive_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise TypeError(f"{field_name} must be an integer") from None
    if number < 1:
        raise ValueError(f"{field_name} must be at least 1")
    return number


@dataclass(slots=True)
class WorkspaceConfig:
    path: Path
    root: Path
    name: str
    build_dir: Path
    global_cache_dir: Path
    configuration: str = "release"
    toolchain: ToolchainKind = field(default_factory=default_toolchain)
    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    log_level: str = "info"
    hash_contents: bool = False
    hints: SearchHints = field(default_factory=SearchHints)
    dependencies: List[DependencyDeclaration] = field(default_factory=list)
    targets: List[Target] = field(default_factory=list)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        path: Path,
        environ: Mapping[str, str] | None = None,
    ) -> "WorkspaceConfig":
        environ = os.environ if environ is None else environ
        reject_unknown_keys(data, {"workspace", "cache", "toolchain_hints", "dependencies", "targets"}, context=str(path))
        root = path.parent.resolve()

        workspace = _section(data, "workspace")
        reject_unknown_keys(
            workspace,
            {"name", "build_dir", "configuration", "toolchain", "jobs", "log_level"},
            context="[workspace]",
        )
        configuration = str(workspace.get("configuration", "release")).strip().lower()
        if configuration not in CONFIGURATIONS:
            allowed = ", ".join(CONFIGURATIONS)
            raise ValueError(f"Unknown configuration '{configuration}' (allowed: {allowed})")
        log_level = str(workspace.get("log_level", "info")).strip().lower()
        if log_level not in Console.LEVELS:
            allowed = ", ".join(Console.LEVELS)
            raise ValueError(f"Unknown log level '{log_level}' (allowed: {allowed})")
        toolchain_value = workspace.get("toolchain")
        toolchain = ToolchainKind.parse(str(toolchain_value)) if toolchain_value else default_toolchain()
        jobs_value = workspace.get("jobs")
        jobs = _positive_int(jobs_value, field_name="[workspace] jobs") if jobs_value is not None else os.cpu_count() or 1

        cache = _section(data, "cache")
        reject_unknown_keys(cache, {"global_dir", "hash_contents"}, context="[cache]")
        global_dir = environ.get(GLOBAL_CACHE_ENV) or cache.get("global_dir") or DEFAULT_GLOBAL_CACHE_DIR

        dependencies = [DependencyDeclaration.from_mapping(entry) for entry in _entries(data, "dependencies")]
        targets = [parse_target(entry) for entry in _entries(data, "targets")]

        return cls(
            path=path,
            root=root,
            name=str(workspace.get("name") or root.name),
            build_dir=resolve_path(root, str(workspace.get("build_dir", "build"))),
            global_cache_dir=resolve_path(root, str(global_dir)),
            configuration=configuration,
            toolchain=toolchain,
            jobs=jobs,
            log_level=log_level,
            hash_contents=bool(cache.get("hash_contents", False)),
            hints=SearchHints.from_mapping(_section(data, "toolchain_hints")),
            dependencies=dependencies,
            targets=targets,
        )

    @property
    def local_cache_path(self) -> Path:
        return self.build_dir / LOCAL_CACHE_FILE

    @property
    def global_cache_path(self) -> Path:
        return self.global_cache_dir / GLOBAL_CACHE_FILE

    def target_names(self) -> List[str]:
        return [target.name for target in self.targets]


def locate_description(directory: Path) -> Path:
    found = find_config_file(directory, DESCRIPTION_STEM)
    if found is None:
        raise FileNotFoundError(f"No {DESCRIPTION_STEM}.toml, .json, .yaml or .yml found in '{directory}'")
    return found


def load_workspace(
    path: Path | None = None,
    *,
    cwd: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkspaceConfig:
    """Load the project description at ``path`` or the one found in ``cwd``."""

    directory = cwd or Path.cwd()
    if path is None:
        path = locate_description(directory)
    elif not path.is_absolute():
        path = directory / path
    if not path.is_file():
        raise FileNotFoundError(f"Project description '{path}' does not exist")
    data: Dict[str, Any] = dict(load_config_file(path))
    return WorkspaceConfig.from_mapping(data, path=path, environ=environ)


__all__ = [
    "DESCRIPTION_STEM",
    "GLOBAL_CACHE_ENV",
    "WorkspaceConfig",
    "load_workspace",
    "locate_description",
]
