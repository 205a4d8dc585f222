"""Two-tier build cache: record storage, fingerprints and staleness decisions."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping
import hashlib
import json
import os
import tempfile
import threading

from core.console import Console

from .errors import CacheCorrupt


SCHEMA_VERSION = 1


class CacheScope(str, Enum):
    GLOBAL = "global"
    LOCAL = "local"


def cache_key(name: str, path: str | Path) -> str:
    """Stable identity of a cached artifact: owner name plus file path."""

    return f"{name}|{Path(path).as_posix()}"


def file_stamp(path: Path) -> tuple[int, int] | None:
    """Return ``(mtime in whole seconds, size)`` or ``None`` for missing files.

    Whole seconds keep decisions identical on file systems with coarse and
    fine timestamp resolution.
    """

    try:
        stat = path.stat()
    except OSError:
        return None
    return int(stat.st_mtime), stat.st_size


@dataclass(frozen=True, slots=True)
class Fingerprint:
    last_write: int
    digest: str


class FingerprintBuilder:
    """Accumulates inputs into a :class:`Fingerprint`."""

    def __init__(self, *, hash_contents: bool = False) -> None:
        self._hash = hashlib.sha256()
        self._last_write = 0
        self._hash_contents = hash_contents

    def _feed(self, *parts: str) -> None:
        for part in parts:
            self._hash.update(part.encode("utf-8"))
            self._hash.update(b"\0")

    def add_value(self, label: str, value: Any) -> "FingerprintBuilder":
        self._feed("value", label, json.dumps(value, sort_keys=True, default=str))
        return self

    def add_file(self, path: Path) -> "FingerprintBuilder":
        stamp = file_stamp(path)
        if stamp is None:
            self._feed("file", path.as_posix(), "missing")
            return self
        mtime, size = stamp
        self._last_write = max(self._last_write, mtime)
        self._feed("file", path.as_posix(), str(mtime), str(size))
        if self._hash_contents and path.is_file():
            digest = hashlib.sha256()
            with path.open("rb") as handle:
                for chunk in iter(lambda: handle.read(1 << 16), b""):
                    digest.update(chunk)
            self._feed("content", digest.hexdigest())
        return self

    def add_files(self, paths: Iterable[Path]) -> "FingerprintBuilder":
        for path in sorted(paths, key=lambda item: item.as_posix()):
            self.add_file(path)
        return self

    def add_fingerprint(self, label: str, fingerprint: Fingerprint) -> "FingerprintBuilder":
        self._last_write = max(self._last_write, fingerprint.last_write)
        self._feed("fingerprint", label, fingerprint.digest)
        return self

    def build(self) -> Fingerprint:
        return Fingerprint(last_write=self._last_write, digest=self._hash.hexdigest())


@dataclass(slots=True)
class CacheRecord:
    last_write: int
    fingerprint: str
    data: Dict[str, Any] = field(default_factory=dict)
    # Session-only; never persisted.
    needs_update: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CacheRecord":
        last_write = data.get("last_write")
        fingerprint = data.get("fingerprint")
        if not isinstance(last_write, int) or isinstance(last_write, bool):
            raise TypeError("last_write must be an integer")
        if not isinstance(fingerprint, str):
            raise TypeError("fingerprint must be a string")
        extra = data.get("data")
        return cls(
            last_write=last_write,
            fingerprint=fingerprint,
            data=dict(extra) if isinstance(extra, Mapping) else {},
        )

    def to_mapping(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"last_write": self.last_write, "fingerprint": self.fingerprint}
        if self.data:
            payload["data"] = dict(self.data)
        return payload


def _read_store(path: Path) -> Dict[str, CacheRecord]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CacheCorrupt(str(path), str(exc)) from exc
    if not isinstance(raw, Mapping):
        raise CacheCorrupt(str(path), "root is not an object")
    entries = raw.get("records", {})
    if not isinstance(entries, Mapping):
        raise CacheCorrupt(str(path), "'records' is not an object")

    records: Dict[str, CacheRecord] = {}
    for key, value in entries.items():
        if not isinstance(value, Mapping):
            continue
        try:
            records[str(key)] = CacheRecord.from_mapping(value)
        except TypeError:
            continue
    return records


def _write_store(path: Path, records: Mapping[str, CacheRecord]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": SCHEMA_VERSION,
        "records": {key: records[key].to_mapping() for key in sorted(records)},
    }
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(handle.name, path)
    except BaseException:
        Path(handle.name).unlink(missing_ok=True)
        raise


class _ScopeStore:
    def __init__(self, scope: CacheScope, path: Path | None) -> None:
        self.scope = scope
        self.path = path
        self.records: Dict[str, CacheRecord] = {}
        self.written: set[str] = set()
        self.stale: set[str] = set()
        self.dirty = False
        self.lock = threading.RLock()

    def load(self) -> None:
        self.records = _read_store(self.path) if self.path else {}

    def flush(self) -> bool:
        with self.lock:
            if self.path is None or not self.dirty:
                return False
            records = self.records
            if self.scope is CacheScope.GLOBAL:
                # Other sessions may have written since we loaded; keep their
                # keys and let ours win where both exist.
                try:
                    on_disk = _read_store(self.path)
                except CacheCorrupt:
                    on_disk = {}
                for key in self.written:
                    on_disk[key] = self.records[key]
                records = on_disk
            _write_store(self.path, records)
            self.records = records
            self.dirty = False
            return True


class CacheStore:
    """Session handle over the Global and Local record stores.

    Open one per build session with :meth:`open`, pass it explicitly to the
    components that need it and :meth:`flush` it when the session ends.
    """

    def __init__(
        self,
        *,
        local_path: Path | None = None,
        global_path: Path | None = None,
        console: Console | None = None,
    ) -> None:
        self._console = console
        self._scopes: Dict[CacheScope, _ScopeStore] = {
            CacheScope.LOCAL: _ScopeStore(CacheScope.LOCAL, local_path),
            CacheScope.GLOBAL: _ScopeStore(CacheScope.GLOBAL, global_path),
        }
        self.warnings: List[str] = []

    @classmethod
    def open(
        cls,
        *,
        local_path: Path | None = None,
        global_path: Path | None = None,
        console: Console | None = None,
    ) -> "CacheStore":
        store = cls(local_path=local_path, global_path=global_path, console=console)
        store.load()
        return store

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.flush()

    def load(self) -> None:
        for scope_store in self._scopes.values():
            try:
                scope_store.load()
            except CacheCorrupt as exc:
                scope_store.records = {}
                self.warnings.append(str(exc))
                if self._console:
                    self._console.warning(str(exc))

    def path(self, scope: CacheScope) -> Path | None:
        return self._scopes[scope].path

    def get(self, scope: CacheScope, key: str) -> CacheRecord | None:
        store = self._scopes[scope]
        with store.lock:
            return store.records.get(key)

    def keys(self, scope: CacheScope) -> List[str]:
        store = self._scopes[scope]
        with store.lock:
            return sorted(store.records)

    def is_stale(
        self,
        scope: CacheScope,
        key: str,
        fingerprint: Fingerprint,
        depends_on: Iterable[str] = (),
    ) -> bool:
        store = self._scopes[scope]
        with store.lock:
            if key in store.stale:
                return True
            record = store.records.get(key)
            stale = (
                record is None
                or record.fingerprint != fingerprint.digest
                or any(dependency in store.stale for dependency in depends_on)
            )
            if stale:
                store.stale.add(key)
            elif record is not None:
                record.needs_update = False
            return stale

    def mark_stale(self, scope: CacheScope, key: str) -> None:
        store = self._scopes[scope]
        with store.lock:
            store.stale.add(key)

    def is_marked_stale(self, scope: CacheScope, key: str) -> bool:
        store = self._scopes[scope]
        with store.lock:
            return key in store.stale

    def record(
        self,
        scope: CacheScope,
        key: str,
        fingerprint: Fingerprint,
        data: Mapping[str, Any] | None = None,
    ) -> CacheRecord:
        store = self._scopes[scope]
        with store.lock:
            record = CacheRecord(
                last_write=fingerprint.last_write,
                fingerprint=fingerprint.digest,
                data=dict(data) if data else {},
                needs_update=False,
            )
            store.records[key] = record
            store.written.add(key)
            store.dirty = True
            return record

    def discard(self, scope: CacheScope, key: str) -> None:
        store = self._scopes[scope]
        with store.lock:
            if store.records.pop(key, None) is not None:
                store.written.discard(key)
                store.dirty = True

    def flush(self, scope: CacheScope | None = None) -> None:
        scopes = [scope] if scope is not None else [CacheScope.LOCAL, CacheScope.GLOBAL]
        for item in scopes:
            if self._scopes[item].flush() and self._console:
                self._console.debug(f"Flushed {item.value} cache to {self._scopes[item].path}")


__all__ = [
    "CacheRecord",
    "CacheScope",
    "CacheStore",
    "Fingerprint",
    "FingerprintBuilder",
    "SCHEMA_VERSION",
    "cache_key",
    "file_stamp",
]
