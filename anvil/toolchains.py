"""Toolchain kinds, flag dialects and detection of installed compilers."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence
import hashlib
import json
import os
import platform
import re
import shutil
import threading

from core.command_runner import CommandRunner
from core.config_loader import normalize_string_list, reject_unknown_keys
from core.console import Console

from .cache import CacheScope, CacheStore, FingerprintBuilder, cache_key
from .errors import ToolchainNotFound, ToolchainVersionUnsupported


class ToolchainKind(str, Enum):
    GNU = "gnu"
    LLVM = "llvm"
    APPLE_LLVM = "apple-llvm"
    VISUAL_STUDIO = "vs"
    VISUAL_STUDIO_LLVM = "vs-llvm"
    MINGW_GNU = "mingw-gnu"
    MINGW_LLVM = "mingw-llvm"
    INTEL_CLASSIC = "intel-classic"
    INTEL_LLVM = "intel-llvm"
    EMSCRIPTEN = "emscripten"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "str | ToolchainKind") -> "ToolchainKind":
        if isinstance(value, ToolchainKind):
            return value
        text = str(value).strip().lower()
        text = _KIND_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            allowed = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown toolchain kind '{value}'. Allowed: {allowed}") from None


_KIND_ALIASES: Dict[str, str] = {
    "gcc": "gnu",
    "clang": "llvm",
    "apple-clang": "apple-llvm",
    "msvc": "vs",
    "visual-studio": "vs",
    "clang-cl": "vs-llvm",
    "visual-studio-llvm": "vs-llvm",
    "mingw": "mingw-gnu",
    "icc": "intel-classic",
    "icx": "intel-llvm",
    "emcc": "emscripten",
}


@dataclass(frozen=True, slots=True)
class FlagProfile:
    """How one toolchain family spells common compiler and linker options.

    Templates are argument tuples; ``{}`` is replaced by the value.
    """

    name: str
    staged: bool
    compile_only: tuple[str, ...]
    output_object: tuple[str, ...]
    output_binary: tuple[str, ...]
    include: tuple[str, ...]
    define: tuple[str, ...]
    library_dir: tuple[str, ...]
    link_library: tuple[str, ...]
    shared: tuple[str, ...]
    archive: tuple[str, ...]
    optimization: tuple[tuple[str, tuple[str, ...]], ...]
    always: tuple[str, ...] = ()
    debug_info: tuple[str, ...] = ()
    position_independent: tuple[str, ...] = ()
    # Header tracking: either the compiler writes a depfile, or it lists
    # included files on stdout and the orchestrator writes one.
    dependency_file: tuple[str, ...] = ()
    show_includes: tuple[str, ...] = ()
    import_library: tuple[str, ...] = ()
    object_suffix: str = ".o"
    executable_suffix: str = ""
    static_prefix: str = "lib"
    static_suffix: str = ".a"
    shared_prefix: str = "lib"
    shared_suffix: str = ".so"
    import_suffix: str = ""

    @staticmethod
    def expand(template: Sequence[str], value: str) -> List[str]:
        return [part.replace("{}", value) for part in template]

    def optimize(self, level: str) -> List[str]:
        for key, flags in self.optimization:
            if key == level:
                return list(flags)
        allowed = ", ".join(key for key, _ in self.optimization)
        raise ValueError(f"Optimization level '{level}' is not supported by '{self.name}' (allowed: {allowed})")

    def to_mapping(self) -> Dict[str, Any]:
        return asdict(self)


_GNU_OPTIMIZATION = (
    ("0", ("-O0",)),
    ("1", ("-O1",)),
    ("2", ("-O2",)),
    ("3", ("-O3",)),
    ("s", ("-Os",)),
)

_MSVC_OPTIMIZATION = (
    ("0", ("/Od",)),
    ("1", ("/O1",)),
    ("2", ("/O2",)),
    ("3", ("/O2", "/Ob3")),
    ("s", ("/O1", "/Os")),
)


def _gnu_profile(name: str, **overrides: Any) -> FlagProfile:
    values: Dict[str, Any] = dict(
        name=name,
        staged=False,
        compile_only=("-c",),
        output_object=("-o", "{}"),
        output_binary=("-o", "{}"),
        include=("-I{}",),
        define=("-D{}",),
        library_dir=("-L{}",),
        link_library=("-l{}",),
        shared=("-shared",),
        archive=("rcs", "{}"),
        optimization=_GNU_OPTIMIZATION,
        position_independent=("-fPIC",),
        debug_info=("-g",),
        dependency_file=("-MMD", "-MF", "{}"),
    )
    values.update(overrides)
    return FlagProfile(**values)


def _msvc_profile(name: str) -> FlagProfile:
    return FlagProfile(
        name=name,
        staged=True,
        compile_only=("/c",),
        output_object=("/Fo{}",),
        output_binary=("/OUT:{}",),
        include=("/I{}",),
        define=("/D{}",),
        library_dir=("/LIBPATH:{}",),
        link_library=("{}.lib",),
        shared=("/DLL",),
        archive=("/OUT:{}",),
        optimization=_MSVC_OPTIMIZATION,
        always=("/nologo",),
        debug_info=("/Zi",),
        show_includes=("/showIncludes",),
        import_library=("/IMPLIB:{}",),
        object_suffix=".obj",
        executable_suffix=".exe",
        static_prefix="",
        static_suffix=".lib",
        shared_prefix="",
        shared_suffix=".dll",
        import_suffix=".lib",
    )


def _windows_gnu_profile(name: str) -> FlagProfile:
    return _gnu_profile(name, position_independent=(), executable_suffix=".exe", shared_suffix=".dll")


FLAG_PROFILES: Dict[ToolchainKind, FlagProfile] = {
    ToolchainKind.GNU: _gnu_profile("gnu"),
    ToolchainKind.LLVM: _gnu_profile("llvm"),
    ToolchainKind.APPLE_LLVM: _gnu_profile("apple-llvm", position_independent=(), shared=("-dynamiclib",), shared_suffix=".dylib"),
    ToolchainKind.VISUAL_STUDIO: _msvc_profile("vs"),
    ToolchainKind.VISUAL_STUDIO_LLVM: _msvc_profile("vs-llvm"),
    ToolchainKind.MINGW_GNU: _windows_gnu_profile("mingw-gnu"),
    ToolchainKind.MINGW_LLVM: _windows_gnu_profile("mingw-llvm"),
    ToolchainKind.INTEL_CLASSIC: _gnu_profile("intel-classic"),
    ToolchainKind.INTEL_LLVM: _gnu_profile("intel-llvm"),
    ToolchainKind.EMSCRIPTEN: _gnu_profile("emscripten", position_independent=(), executable_suffix=".js", shared_suffix=".wasm"),
}
"""Flag dialect of every concrete toolchain kind."""


@dataclass(frozen=True, slots=True)
class _ToolchainSpec:
    cxx: tuple[str, ...]
    cc: tuple[str, ...]
    minimum: str
    version_style: str = "gnu"
    linker: tuple[str, ...] = ()
    archiver: tuple[str, ...] = ()


_TOOLCHAIN_SPECS: Dict[ToolchainKind, _ToolchainSpec] = {
    ToolchainKind.GNU: _ToolchainSpec(cxx=("g++",), cc=("gcc",), minimum="7.0", archiver=("gcc-ar", "ar")),
    ToolchainKind.LLVM: _ToolchainSpec(cxx=("clang++",), cc=("clang",), minimum="6.0", archiver=("llvm-ar", "ar")),
    ToolchainKind.APPLE_LLVM: _ToolchainSpec(cxx=("clang++",), cc=("clang",), minimum="10.0", archiver=("ar",)),
    ToolchainKind.VISUAL_STUDIO: _ToolchainSpec(
        cxx=("cl",), cc=("cl",), minimum="19.10", version_style="msvc", linker=("link",), archiver=("lib",)
    ),
    ToolchainKind.VISUAL_STUDIO_LLVM: _ToolchainSpec(
        cxx=("clang-cl",), cc=("clang-cl",), minimum="6.0", linker=("lld-link", "link"), archiver=("llvm-lib", "lib")
    ),
    ToolchainKind.MINGW_GNU: _ToolchainSpec(
        cxx=("x86_64-w64-mingw32-g++", "g++"),
        cc=("x86_64-w64-mingw32-gcc", "gcc"),
        minimum="7.0",
        archiver=("x86_64-w64-mingw32-gcc-ar", "x86_64-w64-mingw32-ar", "ar"),
    ),
    ToolchainKind.MINGW_LLVM: _ToolchainSpec(
        cxx=("x86_64-w64-mingw32-clang++", "clang++"),
        cc=("x86_64-w64-mingw32-clang", "clang"),
        minimum="6.0",
        archiver=("llvm-ar", "ar"),
    ),
    ToolchainKind.INTEL_CLASSIC: _ToolchainSpec(cxx=("icpc", "icl"), cc=("icc", "icl"), minimum="19.0", archiver=("xiar", "ar")),
    ToolchainKind.INTEL_LLVM: _ToolchainSpec(cxx=("icpx", "icx"), cc=("icx",), minimum="2021.1", archiver=("llvm-ar", "ar")),
    ToolchainKind.EMSCRIPTEN: _ToolchainSpec(cxx=("em++",), cc=("emcc",), minimum="2.0", archiver=("emar",)),
}


_VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)*)")
_MSVC_BANNER_PATTERN = re.compile(r"Version\s+(\d+(?:\.\d+)+)\s+for\s+(\w+)", re.IGNORECASE)
_TARGET_LINE_PATTERN = re.compile(r"^Target:\s*(\S+)", re.MULTILINE)
_MSVC_ARCH_TRIPLES = {
    "x64": "x86_64-pc-windows-msvc",
    "x86": "i686-pc-windows-msvc",
    "80x86": "i686-pc-windows-msvc",
    "arm64": "aarch64-pc-windows-msvc",
    "arm": "armv7-pc-windows-msvc",
}


def version_tuple(version: str) -> tuple[int, ...]:
    match = _VERSION_PATTERN.search(version)
    if not match:
        return ()
    return tuple(int(part) for part in match.group(1).split("."))


def detect_kind(executable: str, *, system: str | None = None) -> ToolchainKind:
    """Guess the toolchain kind from a compiler path."""

    if not executable:
        return ToolchainKind.UNKNOWN
    host = (system or platform.system()).lower()
    path = executable.replace("\\", "/").lower()
    name = path.rsplit("/", 1)[-1]
    if name.endswith(".exe"):
        name = name[: -len(".exe")]

    if name == "clang-cl" or path.endswith("/vc/tools/llvm/bin/clang.exe") or "/vc/tools/llvm/x64/bin/" in path:
        return ToolchainKind.VISUAL_STUDIO_LLVM
    if name == "cl":
        return ToolchainKind.VISUAL_STUDIO
    if name in {"em++", "emcc"}:
        return ToolchainKind.EMSCRIPTEN
    if name in {"icx", "icpx"} or "oneapi" in path:
        return ToolchainKind.INTEL_LLVM
    if name in {"icc", "icpc", "icl"}:
        return ToolchainKind.INTEL_CLASSIC
    if "clang" in name:
        if "mingw" in path:
            return ToolchainKind.MINGW_LLVM
        if host == "darwin" and ("contents/developer" in path or "commandlinetools" in path or path.startswith("/usr/bin/")):
            return ToolchainKind.APPLE_LLVM
        return ToolchainKind.LLVM
    if "gcc" in name or "g++" in name:
        if "mingw" in path or host == "windows":
            return ToolchainKind.MINGW_GNU
        return ToolchainKind.GNU
    return ToolchainKind.UNKNOWN


@dataclass(frozen=True, slots=True)
class ToolchainDescriptor:
    """Immutable description of one resolved toolchain.

    Shared by reference across every target built with this kind during a
    session. :attr:`identity` takes part in target fingerprints, so a changed
    compiler path, version or triple invalidates previously cached outputs.
    """

    kind: ToolchainKind
    cc: str
    cxx: str
    version: str
    target_triple: str
    profile: FlagProfile
    linker: str | None = None
    archiver: str | None = None

    @property
    def identity(self) -> str:
        payload = {
            "kind": self.kind.value,
            "cc": self.cc,
            "cxx": self.cxx,
            "linker": self.linker,
            "archiver": self.archiver,
            "version": self.version,
            "target_triple": self.target_triple,
            "profile": self.profile.to_mapping(),
        }
        encoded = json.dumps(payload, sort_keys=True, default=list).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def compiler_for(self, sources: Iterable[Path]) -> str:
        """C driver when every source is C, otherwise the C++ driver."""

        suffixes = {source.suffix.lower() for source in sources}
        if suffixes and suffixes <= {".c"}:
            return self.cc
        return self.cxx


@dataclass(frozen=True, slots=True)
class SearchHints:
    compiler: str | None = None
    search_paths: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "SearchHints":
        if not data:
            return cls()
        reject_unknown_keys(data, {"compiler", "search_paths"}, context="toolchain_hints")
        compiler = data.get("compiler")
        return cls(
            compiler=str(compiler).strip() if compiler and str(compiler).strip() else None,
            search_paths=tuple(normalize_string_list(data.get("search_paths"), field_name="toolchain_hints.search_paths")),
        )


Which = Callable[..., "str | None"]


class ToolchainResolver:
    """Probe the host for toolchains and build :class:`ToolchainDescriptor` objects.

    Probing only reads the filesystem and runs version queries. Results are
    memoized for the session and, when a cache is supplied, the version probe
    is remembered in the Global scope keyed by compiler path.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        cache: CacheStore | None = None,
        environ: Mapping[str, str] | None = None,
        which: Which = shutil.which,
        system: str | None = None,
        console: Console | None = None,
    ) -> None:
        self._runner = runner
        self._cache = cache
        self._environ = dict(environ) if environ is not None else dict(os.environ)
        self._which = which
        self._system = system or platform.system()
        self._console = console
        self._resolved: Dict[tuple[ToolchainKind, SearchHints], ToolchainDescriptor] = {}
        self._lock = threading.Lock()

    def resolve(self, kind: "ToolchainKind | str", hints: SearchHints | None = None) -> ToolchainDescriptor:
        requested = ToolchainKind.parse(kind)
        hints = hints or SearchHints()
        with self._lock:
            cached = self._resolved.get((requested, hints))
            if cached is not None:
                return cached
            descriptor = self._resolve(requested, hints)
            self._resolved[(requested, hints)] = descriptor
            return descriptor

    def resolve_all(
        self,
        kinds: Iterable["ToolchainKind | str"],
        hints: SearchHints | None = None,
    ) -> Dict[ToolchainKind, ToolchainDescriptor]:
        resolved: Dict[ToolchainKind, ToolchainDescriptor] = {}
        for kind in kinds:
            parsed = ToolchainKind.parse(kind)
            if parsed not in resolved:
                resolved[parsed] = self.resolve(parsed, hints)
        return resolved

    def _resolve(self, requested: ToolchainKind, hints: SearchHints) -> ToolchainDescriptor:
        kind = requested
        if kind is ToolchainKind.UNKNOWN:
            candidate = hints.compiler or self._environ.get("CXX") or self._environ.get("CC")
            kind = detect_kind(candidate or "", system=self._system)
            if kind is ToolchainKind.UNKNOWN:
                raise ToolchainNotFound(requested.value, [candidate] if candidate else [])
        elif hints.compiler:
            hinted = detect_kind(hints.compiler, system=self._system)
            if hinted not in (kind, ToolchainKind.UNKNOWN):
                raise ToolchainNotFound(
                    kind.value,
                    [hints.compiler],
                    reason=f"the configured compiler looks like a '{hinted.value}' toolchain",
                )

        spec = _TOOLCHAIN_SPECS[kind]
        search_path = self._search_path(hints)
        cxx_candidates = self._compiler_candidates(kind, hints, spec.cxx, env_var="CXX")
        cxx = self._find(cxx_candidates, search_path)
        if cxx is None:
            raise ToolchainNotFound(kind.value, cxx_candidates)

        tool_dirs = os.pathsep.join([str(Path(cxx).parent), search_path or ""]).strip(os.pathsep)
        cc = self._find(self._compiler_candidates(kind, hints, spec.cc, env_var="CC", explicit=False), tool_dirs) or cxx
        linker = self._find(list(spec.linker), tool_dirs) if spec.linker else None
        archiver = self._find(list(spec.archiver), tool_dirs) if spec.archiver else None
        if kind is ToolchainKind.VISUAL_STUDIO and linker is None:
            raise ToolchainNotFound(kind.value, list(spec.linker))

        version, triple = self._probe(kind, spec, cxx)
        if version_tuple(version) < version_tuple(spec.minimum):
            raise ToolchainVersionUnsupported(kind.value, version, spec.minimum, cxx)

        descriptor = ToolchainDescriptor(
            kind=kind,
            cc=cc,
            cxx=cxx,
            version=version,
            target_triple=triple,
            profile=FLAG_PROFILES[kind],
            linker=linker,
            archiver=archiver,
        )
        if self._console:
            self._console.debug(f"Resolved {kind.value} toolchain {version} ({triple}) at {cxx}")
        return descriptor

    def _search_path(self, hints: SearchHints) -> str | None:
        if not hints.search_paths:
            return None
        parts = [str(Path(entry).expanduser()) for entry in hints.search_paths]
        system_path = self._environ.get("PATH")
        if system_path:
            parts.append(system_path)
        return os.pathsep.join(parts)

    def _compiler_candidates(
        self,
        kind: ToolchainKind,
        hints: SearchHints,
        names: Sequence[str],
        *,
        env_var: str,
        explicit: bool = True,
    ) -> List[str]:
        candidates: List[str] = []
        if explicit and hints.compiler:
            candidates.append(hints.compiler)
        from_env = self._environ.get(env_var)
        if from_env and detect_kind(from_env, system=self._system) is kind:
            candidates.append(from_env)
        candidates.extend(names)
        ordered: List[str] = []
        for candidate in candidates:
            if candidate not in ordered:
                ordered.append(candidate)
        return ordered

    def _find(self, candidates: Sequence[str], search_path: str | None) -> str | None:
        for candidate in candidates:
            found = self._which(candidate, path=search_path)
            if found:
                return str(Path(found).absolute())
        return None

    def _probe(self, kind: ToolchainKind, spec: _ToolchainSpec, cxx: str) -> tuple[str, str]:
        key = cache_key("toolchain", cxx)
        fingerprint = FingerprintBuilder().add_value("kind", kind.value).add_file(Path(cxx)).build()
        if self._cache is not None and not self._cache.is_stale(CacheScope.GLOBAL, key, fingerprint):
            record = self._cache.get(CacheScope.GLOBAL, key)
            if record is not None and record.data.get("version") and record.data.get("target_triple"):
                return str(record.data["version"]), str(record.data["target_triple"])

        if spec.version_style == "msvc":
            version, triple = self._probe_msvc(kind, cxx, spec.minimum)
        else:
            version, triple = self._probe_gnu(kind, cxx, spec.minimum)

        if self._cache is not None:
            self._cache.record(
                CacheScope.GLOBAL,
                key,
                fingerprint,
                data={"version": version, "target_triple": triple},
            )
        return version, triple

    def _query(self, command: Sequence[str]) -> tuple[int, str]:
        try:
            result = self._runner.run(command, note="Query toolchain version")
        except OSError:
            return -1, ""
        return result.returncode, f"{result.stdout}\n{result.stderr}"

    def _probe_gnu(self, kind: ToolchainKind, cxx: str, minimum: str) -> tuple[str, str]:
        returncode, output = self._query([cxx, "--version"])
        first_line = next((line for line in output.splitlines() if line.strip()), "")
        match = _VERSION_PATTERN.search(first_line)
        if returncode != 0 or not match:
            raise ToolchainVersionUnsupported(kind.value, "unknown", minimum, cxx)
        version = match.group(1)

        target = _TARGET_LINE_PATTERN.search(output)
        if target:
            return version, target.group(1)
        returncode, output = self._query([cxx, "-dumpmachine"])
        triple = output.strip().splitlines()[0].strip() if returncode == 0 and output.strip() else ""
        return version, triple or self._host_triple()

    def _probe_msvc(self, kind: ToolchainKind, cxx: str, minimum: str) -> tuple[str, str]:
        _, output = self._query([cxx])
        match = _MSVC_BANNER_PATTERN.search(output)
        if not match:
            raise ToolchainVersionUnsupported(kind.value, "unknown", minimum, cxx)
        arch = match.group(2).lower()
        return match.group(1), _MSVC_ARCH_TRIPLES.get(arch, f"{arch}-pc-windows-msvc")

    def _host_triple(self) -> str:
        machine = platform.machine().lower() or "unknown"
        machine = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
        system = self._system.lower()
        if system == "darwin":
            return f"{machine}-apple-darwin"
        if system == "windows":
            return f"{machine}-pc-windows-msvc"
        return f"{machine}-pc-{system}-gnu"


__all__ = [
    "FLAG_PROFILES",
    "FlagProfile",
    "SearchHints",
    "ToolchainDescriptor",
    "ToolchainKind",
    "ToolchainResolver",
    "detect_kind",
    "version_tuple",
]
