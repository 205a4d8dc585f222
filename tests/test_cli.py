from __future__ import annotations

from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
import io
import json
import sys
import tempfile
import textwrap
import unittest

from anvil import cli


def _toml_list(values) -> str:
    return json.dumps(list(values))


class CommandLineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()
        self.description = self.root / "anvil.toml"
        self.global_cache = self.root / "global"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def write_description(self, targets: str) -> None:
        self.description.write_text(
            textwrap.dedent(
                f"""
                [workspace]
                name = "cli-demo"
                jobs = 2

                [cache]
                global_dir = "{self.global_cache.as_posix()}"
                """
            )
            + textwrap.dedent(targets)
        )

    def run_cli(self, *args: str) -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = cli.main(["--file", str(self.description), *args])
        return code, stdout.getvalue(), stderr.getvalue()

    def test_list_prints_ready_sets(self) -> None:
        self.write_description(
            """
            [[targets]]
            name = "gen"
            kind = "script"
            command = ["echo", "gen"]

            [[targets]]
            name = "pkg"
            kind = "script"
            command = ["echo", "pkg"]
            depends = ["gen"]
            """
        )
        code, out, _ = self.run_cli("list")
        self.assertEqual(code, 0)
        self.assertEqual(out.splitlines(), ["[0] gen (script)", "[1] pkg (script) <- gen"])

    def test_validate_reports_cycle(self) -> None:
        self.write_description(
            """
            [[targets]]
            name = "A"
            kind = "script"
            command = ["a"]
            depends = ["B"]

            [[targets]]
            name = "B"
            kind = "script"
            command = ["b"]
            depends = ["A"]
            """
        )
        code, _, err = self.run_cli("validate")
        self.assertEqual(code, 2)
        self.assertIn("Error: Circular dependency detected: A -> B -> A", err)

    def test_invalid_description_exits_with_two(self) -> None:
        self.write_description(
            """
            [[targets]]
            name = "A"
            kind = "script"
            command = ["a"]
            colour = "blue"
            """
        )
        code, _, err = self.run_cli("validate")
        self.assertEqual(code, 2)
        self.assertIn("unknown keys: colour", err)

    def test_dry_run_prints_commands(self) -> None:
        self.write_description(
            """
            [[targets]]
            name = "gen"
            kind = "script"
            command = ["echo", "hello world"]
            """
        )
        code, out, _ = self.run_cli("build", "--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("[DRY] Run gen: echo 'hello world'", out)
        self.assertFalse((self.root / "build").exists())

    def test_build_runs_scripts_and_reports_failures(self) -> None:
        ok = [sys.executable, "-c", "open('ok.txt', 'w').close()"]
        bad = [sys.executable, "-c", "import sys; sys.exit(3)"]
        self.write_description(
            f"""
            [[targets]]
            name = "good"
            kind = "script"
            command = {_toml_list(ok)}
            output = "ok.txt"

            [[targets]]
            name = "bad"
            kind = "script"
            command = {_toml_list(bad)}

            [[targets]]
            name = "after-bad"
            kind = "script"
            command = {_toml_list(ok)}
            depends = ["bad"]
            """
        )
        code, _, err = self.run_cli("build", "--quiet")
        self.assertEqual(code, 1)
        self.assertTrue((self.root / "ok.txt").exists())
        self.assertIn("bad: failed", err)
        self.assertIn("after-bad: blocked", err)

        code, out, _ = self.run_cli("build", "--target", "good")
        self.assertEqual(code, 0)
        self.assertIn("Up to date: good", out)

    def test_clean_removes_build_directory(self) -> None:
        self.write_description(
            """
            [[targets]]
            name = "gen"
            kind = "script"
            command = ["echo"]
            """
        )
        (self.root / "build").mkdir()
        (self.root / "build" / "anvil-cache.json").write_text("{}")
        code, out, _ = self.run_cli("clean")
        self.assertEqual(code, 0)
        self.assertFalse((self.root / "build").exists())
        self.assertIn("Removed", out)

    def test_missing_description(self) -> None:
        code, _, err = self.run_cli("validate")
        self.assertEqual(code, 2)
        self.assertIn("does not exist", err)


if __name__ == "__main__":
    unittest.main()
