"""External dependency declarations and the provider boundary."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Protocol, runtime_checkable

from core.command_runner import CommandRunner
from core.config_loader import reject_unknown_keys, resolve_path

from .errors import DependencyUnavailable


@dataclass(frozen=True, slots=True)
class DependencyDeclaration:
    name: str
    path: str
    revision: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DependencyDeclaration":
        if not isinstance(data, Mapping):
            raise TypeError("Dependency entries must be mappings")
        raw_name = data.get("name")
        if not isinstance(raw_name, str) or not raw_name.strip():
            raise ValueError("Dependency entries must include a non-empty 'name'")
        name = raw_name.strip()
        reject_unknown_keys(data, {"name", "path", "revision"}, context=f"Dependency '{name}'")
        path = data.get("path")
        if not path or not str(path).strip():
            raise ValueError(f"Dependency '{name}' requires 'path'")
        revision = data.get("revision")
        return cls(
            name=name,
            path=str(path).strip(),
            revision=str(revision).strip() if revision and str(revision).strip() else None,
        )


@dataclass(frozen=True, slots=True)
class ResolvedDependency:
    """A dependency that is present on disk at a known revision."""

    name: str
    path: Path
    revision: str


@runtime_checkable
class DependencyProvider(Protocol):
    """Supplies on-disk locations for external dependencies.

    Fetching (clone, checkout, download) happens behind this interface; the
    build engine only consumes the result.
    """

    def resolve(self, declaration: DependencyDeclaration) -> ResolvedDependency:
        ...


class LocalDependencyProvider:
    """Resolve dependencies that already exist below ``root``.

    The revision is the declared one or, for git checkouts, ``HEAD``.
    """

    def __init__(self, root: Path, runner: CommandRunner) -> None:
        self._root = root
        self._runner = runner

    def resolve(self, declaration: DependencyDeclaration) -> ResolvedDependency:
        path = resolve_path(self._root, declaration.path)
        if not path.is_dir():
            raise DependencyUnavailable(declaration.name, f"'{path}' does not exist")

        revision = declaration.revision
        if revision is None and (path / ".git").exists():
            revision = self._current_commit(path)
        if revision is None:
            raise DependencyUnavailable(
                declaration.name,
                f"no revision declared and '{path}' is not a git checkout",
            )
        return ResolvedDependency(name=declaration.name, path=path, revision=revision)

    def _current_commit(self, repo_path: Path) -> str | None:
        try:
            result = self._runner.run(["git", "rev-parse", "HEAD"], cwd=repo_path)
        except OSError:
            return None
        commit = result.stdout.strip()
        return commit if result.returncode == 0 and commit else None


def resolve_dependencies(
    declarations: Iterable[DependencyDeclaration],
    provider: DependencyProvider,
) -> Dict[str, ResolvedDependency]:
    resolved: Dict[str, ResolvedDependency] = {}
    for declaration in declarations:
        if declaration.name in resolved:
            raise ValueError(f"Dependency '{declaration.name}' is declared more than once")
        resolved[declaration.name] = provider.resolve(declaration)
    return resolved


__all__ = [
    "DependencyDeclaration",
    "DependencyProvider",
    "LocalDependencyProvider",
    "ResolvedDependency",
    "resolve_dependencies",
]
