"""Incremental build orchestrator for native, script and CMake targets."""
from __future__ import annotations

from .cache import CacheScope, CacheStore
from .graph import TargetGraph
from .orchestrator import BuildOrchestrator, BuildReport, CancellationToken, TargetStatus
from .session import BuildOptions, BuildSession
from .toolchains import ToolchainDescriptor, ToolchainKind, ToolchainResolver

__all__ = [
    "BuildOptions",
    "BuildOrchestrator",
    "BuildReport",
    "BuildSession",
    "CacheScope",
    "CacheStore",
    "CancellationToken",
    "TargetGraph",
    "TargetStatus",
    "ToolchainDescriptor",
    "ToolchainKind",
    "ToolchainResolver",
]
