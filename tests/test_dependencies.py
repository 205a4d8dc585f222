from __future__ import annotations

from pathlib import Path
from typing import Sequence
import tempfile
import unittest

from anvil.dependencies import (
    DependencyDeclaration,
    DependencyProvider,
    LocalDependencyProvider,
    ResolvedDependency,
    resolve_dependencies,
)
from anvil.errors import DependencyUnavailable
from core.command_runner import CommandResult, CommandRunner, RecordingCommandRunner


class GitHeadRunner(CommandRunner):
    def __init__(self, commit: str, returncode: int = 0) -> None:
        self.commit = commit
        self.returncode = returncode
        self.calls: list[tuple[list[str], Path | None]] = []

    def run(self, command: Sequence[str], *, cwd: Path | None = None, **kwargs) -> CommandResult:
        self.calls.append((list(command), cwd))
        return CommandResult(command=command, returncode=self.returncode, stdout=f"{self.commit}\n", stderr="")


class LocalDependencyProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()
        (self.root / "external" / "fmt").mkdir(parents=True)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_declared_revision_is_used(self) -> None:
        runner = RecordingCommandRunner()
        provider = LocalDependencyProvider(self.root, runner)
        resolved = provider.resolve(DependencyDeclaration(name="fmt", path="external/fmt", revision="10.2.1"))
        self.assertEqual(resolved, ResolvedDependency(name="fmt", path=self.root / "external" / "fmt", revision="10.2.1"))
        self.assertEqual(runner.commands, [])

    def test_git_checkout_reports_head(self) -> None:
        (self.root / "external" / "fmt" / ".git").mkdir()
        runner = GitHeadRunner("0123abcd")
        resolved = LocalDependencyProvider(self.root, runner).resolve(DependencyDeclaration(name="fmt", path="external/fmt"))
        self.assertEqual(resolved.revision, "0123abcd")
        self.assertEqual(runner.calls, [(["git", "rev-parse", "HEAD"], self.root / "external" / "fmt")])

    def test_failed_git_query_is_unavailable(self) -> None:
        (self.root / "external" / "fmt" / ".git").mkdir()
        provider = LocalDependencyProvider(self.root, GitHeadRunner("", returncode=128))
        with self.assertRaises(DependencyUnavailable):
            provider.resolve(DependencyDeclaration(name="fmt", path="external/fmt"))

    def test_missing_directory_is_unavailable(self) -> None:
        provider = LocalDependencyProvider(self.root, RecordingCommandRunner())
        with self.assertRaises(DependencyUnavailable) as ctx:
            provider.resolve(DependencyDeclaration(name="zlib", path="external/zlib", revision="1.3"))
        self.assertEqual(ctx.exception.name, "zlib")

    def test_provider_protocol(self) -> None:
        self.assertIsInstance(LocalDependencyProvider(self.root, RecordingCommandRunner()), DependencyProvider)


class ResolveDependenciesTests(unittest.TestCase):
    def test_duplicates_are_rejected(self) -> None:
        class Provider:
            def resolve(self, declaration: DependencyDeclaration) -> ResolvedDependency:
                return ResolvedDependency(name=declaration.name, path=Path(declaration.path), revision="1")

        declarations = [DependencyDeclaration(name="fmt", path="a"), DependencyDeclaration(name="fmt", path="b")]
        with self.assertRaises(ValueError):
            resolve_dependencies(declarations, Provider())

    def test_declaration_from_mapping(self) -> None:
        declaration = DependencyDeclaration.from_mapping({"name": " fmt ", "path": "external/fmt", "revision": ""})
        self.assertEqual(declaration, DependencyDeclaration(name="fmt", path="external/fmt", revision=None))
        with self.assertRaises(ValueError):
            DependencyDeclaration.from_mapping({"name": "fmt"})
        with self.assertRaises(ValueError):
            DependencyDeclaration.from_mapping({"name": "fmt", "path": "x", "url": "https://example.com"})


if __name__ == "__main__":
    unittest.main()
