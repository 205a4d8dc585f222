"""Utilities for executing external commands with dry-run and cancellation support."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Sequence
import os
import shlex
import subprocess
import threading


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    terminated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.terminated


class CommandRunner:
    """Abstract command runner interface.

    A non-zero exit status is reported through the returned result; failing
    to start the program raises :class:`OSError`.
    """

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    def terminate_all(self) -> None:
        """Ask every in-flight process to stop. Runners without processes ignore this."""

    def format_command(self, command: Sequence[str]) -> str:
        return " ".join(shlex.quote(part) for part in command)


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`.

    Running processes are tracked so that :meth:`terminate_all` can stop them
    from another thread when a build session is cancelled.
    """

    def __init__(self, *, kill_timeout: float = 5.0) -> None:
        self._kill_timeout = kill_timeout
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen[str]] = set()
        self._terminating = False

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
    ) -> CommandResult:
        process = subprocess.Popen(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=self._merge_environment(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        with self._lock:
            self._processes.add(process)
            terminating = self._terminating
        if terminating:
            process.terminate()
        try:
            stdout, stderr = process.communicate()
        finally:
            with self._lock:
                self._processes.discard(process)
                terminated = self._terminating

        return CommandResult(
            command=command,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            terminated=terminated and process.returncode != 0,
        )

    def terminate_all(self) -> None:
        with self._lock:
            self._terminating = True
            processes = list(self._processes)
        for process in processes:
            if process.poll() is None:
                process.terminate()
        for process in processes:
            try:
                process.wait(timeout=self._kill_timeout)
            except subprocess.TimeoutExpired:
                process.kill()

    def running_count(self) -> int:
        with self._lock:
            return len(self._processes)


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []
        self._lock = threading.Lock()

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        note: str | None = None,
    ) -> CommandResult:
        record = RecordedCommand(
            command=list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            note=note,
        )
        with self._lock:
            self.commands.append(record)
        return CommandResult(command=command, returncode=0, stdout="", stderr="")

    def notes(self) -> List[str]:
        return [record.note for record in self.commands if record.note]


__all__ = [
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
]
