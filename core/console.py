"""Leveled console output shared by the command line tools."""
from __future__ import annotations

import sys
import threading


class Console:
    """Simple console output handler with configurable log level.

    Levels: none < error < warning < info < debug
    Warnings and errors are written to stderr.
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "warning": 2,
        "info": 3,
        "debug": 4,
    }

    def __init__(self, level: str = "info", dry_run: bool = False):
        if level not in self.LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Allowed: {', '.join(self.LEVELS)}")
        self.level_name = level
        self.level = self.LEVELS[level]
        self.dry_run = dry_run
        self._lock = threading.Lock()

    def _emit(self, text: str, *, error: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if error else sys.stdout)

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            self._emit(f"[INFO] {message}")

    def warning(self, message: str) -> None:
        if self.level >= self.LEVELS["warning"]:
            self._emit(f"[WARN] {message}", error=True)

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._emit(f"[ERROR] {message}", error=True)

    def dry(self, message: str) -> None:
        if self.dry_run:
            self._emit(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            self._emit(f"[DEBUG] {message}")


__all__ = ["Console"]
