"""Exception hierarchy of the build engine."""
from __future__ import annotations

from typing import Sequence

from core.command_runner import CommandResult


class BuildError(RuntimeError):
    """Base class for every error raised by the build engine."""


class ToolchainNotFound(BuildError):
    def __init__(self, kind: str, searched: Sequence[str] = (), reason: str | None = None) -> None:
        message = f"No toolchain of kind '{kind}' was found"
        if searched:
            message = f"{message} (searched: {', '.join(searched)})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.reason = reason
        self.kind = kind
        self.searched = tuple(searched)


class ToolchainVersionUnsupported(BuildError):
    def __init__(self, kind: str, version: str, minimum: str, path: str) -> None:
        super().__init__(
            f"Toolchain '{kind}' at '{path}' reports version {version}; at least {minimum} is required"
        )
        self.kind = kind
        self.version = version
        self.minimum = minimum
        self.path = path


class DependencyUnavailable(BuildError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"External dependency '{name}' is unavailable: {reason}")
        self.name = name
        self.reason = reason


class DependencyCycle(BuildError):
    """Raised when the declared targets form a cycle.

    ``members`` lists every target on the cycle, starting with the earliest
    declared one.
    """

    def __init__(self, members: Sequence[str]) -> None:
        self.members = tuple(members)
        path = " -> ".join([*self.members, self.members[0]]) if self.members else ""
        super().__init__(f"Circular dependency detected: {path}")


class InvalidTargetGraph(BuildError):
    """Duplicate names or references to targets that were never declared."""


class TargetExecutionFailed(BuildError):
    def __init__(self, target: str, message: str, result: CommandResult | None = None) -> None:
        super().__init__(f"Target '{target}' failed: {message}")
        self.target = target
        self.result = result


class CacheCorrupt(BuildError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cache store '{path}' is unreadable ({reason}); treating it as empty")
        self.path = path
        self.reason = reason


class Cancelled(BuildError):
    """Raised inside a worker once the session has been cancelled."""


__all__ = [
    "BuildError",
    "CacheCorrupt",
    "Cancelled",
    "DependencyCycle",
    "DependencyUnavailable",
    "InvalidTargetGraph",
    "TargetExecutionFailed",
    "ToolchainNotFound",
    "ToolchainVersionUnsupported",
]
