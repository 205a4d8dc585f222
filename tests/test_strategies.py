from __future__ import annotations

from pathlib import Path
import os
import sys
import tempfile
import unittest

from anvil.errors import TargetExecutionFailed
from anvil.graph import TargetGraph
from anvil.strategies import (
    BuildContext,
    BuildStep,
    compile_commands,
    default_toolchain,
    object_is_current,
    parse_show_includes,
    plan_target,
    read_depfile,
    script_command,
    step_headers,
    target_inputs,
    target_output,
    write_depfile,
)
from anvil.targets import ArtifactKind, CMakeTarget, ProjectTarget, ScriptTarget
from anvil.toolchains import FLAG_PROFILES, ToolchainDescriptor, ToolchainKind


GNU = ToolchainDescriptor(
    kind=ToolchainKind.GNU,
    cc="/usr/bin/gcc",
    cxx="/usr/bin/g++",
    version="13.2.0",
    target_triple="x86_64-pc-linux-gnu",
    profile=FLAG_PROFILES[ToolchainKind.GNU],
    archiver="/usr/bin/gcc-ar",
)

MSVC = ToolchainDescriptor(
    kind=ToolchainKind.VISUAL_STUDIO,
    cc="C:/VS/bin/cl.exe",
    cxx="C:/VS/bin/cl.exe",
    version="19.38.33130",
    target_triple="x86_64-pc-windows-msvc",
    profile=FLAG_PROFILES[ToolchainKind.VISUAL_STUDIO],
    linker="C:/VS/bin/link.exe",
    archiver="C:/VS/bin/lib.exe",
)


class StrategyTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()
        (self.root / "src").mkdir()
        (self.root / "src" / "main.cpp").write_text("int main() { return 0; }\n")
        (self.root / "src" / "util.cpp").write_text("int util() { return 1; }\n")
        (self.root / "lib").mkdir()
        (self.root / "lib" / "lib.cpp").write_text("int lib() { return 2; }\n")
        self.build_dir = self.root / "build"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def context(self, targets, *, toolchain: ToolchainDescriptor = GNU, configuration: str = "release") -> BuildContext:
        return BuildContext(
            root=self.root,
            build_dir=self.build_dir,
            graph=TargetGraph.build(targets),
            toolchains={toolchain.kind: toolchain},
            configuration=configuration,
            default_toolchain=toolchain.kind,
            jobs=4,
        )


class ProjectStrategyTests(StrategyTestCase):
    def test_single_command_executable(self) -> None:
        target = ProjectTarget(name="app", sources=("src/*.cpp",), includes=("include",), defines=("APP=1",))
        plan = plan_target(target, self.context([target]))
        self.assertEqual(len(plan.steps), 1)
        command = list(plan.steps[0].command)
        self.assertEqual(command[0], "/usr/bin/g++")
        self.assertIn("-O2", command)
        self.assertNotIn("-g", command)
        self.assertIn(f"-I{self.root / 'include'}", command)
        self.assertIn("-DAPP=1", command)
        self.assertLess(command.index(str(self.root / "src" / "main.cpp")), command.index(str(self.root / "src" / "util.cpp")))
        self.assertEqual(command[command.index("-o") + 1], str(self.build_dir / "app"))
        self.assertEqual(plan.output, self.build_dir / "app")

    def test_debug_configuration_adds_debug_info(self) -> None:
        target = ProjectTarget(name="app", sources=("src/main.cpp",))
        command = plan_target(target, self.context([target], configuration="debug")).steps[0].command
        self.assertIn("-O0", command)
        self.assertIn("-g", command)

    def test_static_library_compiles_then_archives(self) -> None:
        target = ProjectTarget(name="core", sources=("lib/*.cpp",), artifact=ArtifactKind.STATIC_LIBRARY)
        plan = plan_target(target, self.context([target]))
        self.assertEqual([step.description for step in plan.steps], ["Compile lib.cpp", "Archive libcore.a"])
        compile_step, archive_step = plan.steps
        self.assertIn("-c", compile_step.command)
        obj = str(self.build_dir / "obj" / "core" / "lib_lib.cpp.o")
        self.assertEqual(list(compile_step.command[-2:]), ["-o", obj])
        self.assertEqual(list(archive_step.command), ["/usr/bin/gcc-ar", "rcs", str(self.build_dir / "libcore.a"), obj])
        self.assertIn(self.build_dir / "obj" / "core", plan.directories)

    def test_library_dependencies_are_linked(self) -> None:
        lib = ProjectTarget(name="core", sources=("lib/*.cpp",), artifact=ArtifactKind.STATIC_LIBRARY)
        app = ProjectTarget(name="app", sources=("src/main.cpp",), depends=("core",), links=("m",))
        command = list(plan_target(app, self.context([lib, app])).steps[0].command)
        self.assertIn(str(self.build_dir / "libcore.a"), command)
        self.assertEqual(command[-1], "-lm")

    def test_shared_library_is_position_independent(self) -> None:
        target = ProjectTarget(name="plugin", sources=("lib/lib.cpp",), artifact=ArtifactKind.SHARED_LIBRARY)
        plan = plan_target(target, self.context([target]))
        command = plan.steps[0].command
        self.assertIn("-fPIC", command)
        self.assertIn("-shared", command)
        self.assertEqual(plan.output, self.build_dir / "libplugin.so")

    def test_staged_toolchain_compiles_each_source_then_links(self) -> None:
        target = ProjectTarget(name="app", sources=("src/*.cpp",))
        plan = plan_target(target, self.context([target], toolchain=MSVC))
        descriptions = [step.description for step in plan.steps]
        self.assertEqual(descriptions, ["Compile main.cpp", "Compile util.cpp", "Link app.exe"])
        compile_main = list(plan.steps[0].command)
        self.assertEqual(compile_main[:3], ["C:/VS/bin/cl.exe", "/c", "/nologo"])
        self.assertIn("/O2", compile_main)
        link = list(plan.steps[-1].command)
        self.assertEqual(link[0], "C:/VS/bin/link.exe")
        self.assertIn(f"/OUT:{self.build_dir / 'app.exe'}", link)
        self.assertIn(str(self.build_dir / "obj" / "app" / "src_util.cpp.obj"), link)

    def test_no_matching_sources_fails(self) -> None:
        target = ProjectTarget(name="empty", sources=("missing/*.cpp",))
        with self.assertRaises(TargetExecutionFailed):
            plan_target(target, self.context([target]))

    def test_missing_toolchain_fails(self) -> None:
        target = ProjectTarget(name="app", sources=("src/main.cpp",), toolchain=ToolchainKind.LLVM)
        with self.assertRaises(TargetExecutionFailed):
            target_output(target, self.context([target]))

    def test_inputs_cover_sources_and_settings(self) -> None:
        target = ProjectTarget(name="app", sources=("src/*.cpp",), defines=("A",))
        inputs = target_inputs(target, self.context([target]))
        self.assertEqual(inputs.files, [self.root / "src" / "main.cpp", self.root / "src" / "util.cpp"])
        self.assertEqual(inputs.settings["defines"], ["A"])
        self.assertEqual(inputs.settings["optimization"], "2")

    def test_compile_commands_entries(self) -> None:
        target = ProjectTarget(name="app", sources=("src/*.cpp",))
        entries = compile_commands(target, self.context([target]))
        self.assertEqual([entry["file"] for entry in entries], [str(self.root / "src" / "main.cpp"), str(self.root / "src" / "util.cpp")])
        self.assertEqual(entries[0]["directory"], str(self.root))
        self.assertIn("-c", entries[0]["arguments"])


    def test_inputs_include_headers_from_include_dirs_and_source_dirs(self) -> None:
        (self.root / "include" / "app").mkdir(parents=True)
        (self.root / "include" / "app" / "api.h").write_text("int api();\n")
        (self.root / "src" / "util.hpp").write_text("int util();\n")
        (self.root / "src" / "notes.txt").write_text("not a header\n")
        target = ProjectTarget(name="app", sources=("src/*.cpp",), includes=("include", "/usr/include"))
        inputs = target_inputs(target, self.context([target]))
        self.assertEqual(
            inputs.files,
            [
                self.root / "src" / "main.cpp",
                self.root / "src" / "util.cpp",
                self.root / "include" / "app" / "api.h",
                self.root / "src" / "util.hpp",
            ],
        )

    def test_compile_steps_write_dependency_files(self) -> None:
        target = ProjectTarget(name="core", sources=("lib/*.cpp",), artifact=ArtifactKind.STATIC_LIBRARY)
        plan = plan_target(target, self.context([target]))
        compile_step = plan.steps[0]
        obj = self.build_dir / "obj" / "core" / "lib_lib.cpp.o"
        depfile = self.build_dir / "obj" / "core" / "lib_lib.cpp.o.d"
        self.assertIn("-MMD", compile_step.command)
        self.assertEqual(compile_step.command[compile_step.command.index("-MF") + 1], str(depfile))
        self.assertEqual((compile_step.source, compile_step.product, compile_step.depfile), (self.root / "lib" / "lib.cpp", obj, depfile))
        self.assertIsNotNone(plan.signature)
        self.assertIsNone(plan.steps[1].depfile)

    def test_msvc_compile_steps_list_includes(self) -> None:
        target = ProjectTarget(name="app", sources=("src/main.cpp",))
        compile_step = plan_target(target, self.context([target], toolchain=MSVC)).steps[0]
        self.assertIn("/showIncludes", compile_step.command)
        self.assertTrue(compile_step.show_includes)
        self.assertEqual(compile_step.depfile, self.build_dir / "obj" / "app" / "src_main.cpp.obj.d")

    def test_msvc_shared_library_dependents_link_the_import_library(self) -> None:
        core = ProjectTarget(name="core", sources=("lib/*.cpp",), artifact=ArtifactKind.SHARED_LIBRARY)
        app = ProjectTarget(name="app", sources=("src/main.cpp",), depends=("core",))
        context = self.context([core, app], toolchain=MSVC)

        core_plan = plan_target(core, context)
        self.assertEqual(core_plan.output, self.build_dir / "core.dll")
        core_link = list(core_plan.steps[-1].command)
        self.assertIn("/DLL", core_link)
        self.assertIn(f"/IMPLIB:{self.build_dir / 'core.lib'}", core_link)

        app_link = list(plan_target(app, context).steps[-1].command)
        self.assertIn(str(self.build_dir / "core.lib"), app_link)
        self.assertNotIn(str(self.build_dir / "core.dll"), app_link)

    def test_gnu_shared_library_dependents_link_the_library_itself(self) -> None:
        core = ProjectTarget(name="core", sources=("lib/*.cpp",), artifact=ArtifactKind.SHARED_LIBRARY)
        app = ProjectTarget(name="app", sources=("src/main.cpp",), depends=("core",))
        command = list(plan_target(app, self.context([core, app])).steps[0].command)
        self.assertIn(str(self.build_dir / "libcore.so"), command)


class DependencyFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name).resolve()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_read_joins_continuations_and_unescapes_spaces(self) -> None:
        depfile = self.root / "main.o.d"
        depfile.write_text(
            "build/main.o: src/main.cpp include/my\\ header.h \\\n"
            "  /usr/include/stdio.h\n"
            "include/my\\ header.h:\n"
        )
        self.assertEqual(
            read_depfile(depfile),
            [Path("src/main.cpp"), Path("include/my header.h"), Path("/usr/include/stdio.h")],
        )

    def test_unreadable_or_empty_files_have_no_prerequisites(self) -> None:
        self.assertEqual(read_depfile(self.root / "missing.d"), [])
        empty = self.root / "empty.d"
        empty.write_text("")
        self.assertEqual(read_depfile(empty), [])

    def test_written_file_reads_back(self) -> None:
        depfile = self.root / "out" / "a.obj.d"
        depfile.parent.mkdir()
        headers = [self.root / "src" / "a.cpp", self.root / "with space" / "a.h"]
        write_depfile(depfile, self.root / "out" / "a.obj", headers)
        self.assertEqual(read_depfile(depfile), headers)

    def test_show_includes_lines_are_extracted(self) -> None:
        output = "main.cpp\nNote: including file: C:\\inc\\a.h\nNote: including file:   C:\\inc\\b.h\nwarning C4996\n"
        self.assertEqual(parse_show_includes(output), [Path("C:\\inc\\a.h"), Path("C:\\inc\\b.h")])

    def test_object_is_current_compares_against_source_and_headers(self) -> None:
        source = self.root / "a.cpp"
        header = self.root / "a.h"
        obj = self.root / "a.o"
        depfile = self.root / "a.o.d"
        for path in (source, header, obj):
            path.write_text("")
        step = BuildStep(description="Compile a.cpp", command=[], cwd=self.root, source=source, product=obj, depfile=depfile)
        self.assertFalse(object_is_current(step))

        write_depfile(depfile, obj, [source, header])
        os.utime(source, (1_000, 1_000))
        os.utime(header, (1_000, 1_000))
        os.utime(obj, (2_000, 2_000))
        self.assertTrue(object_is_current(step))
        self.assertEqual(step_headers(step), [header])

        os.utime(header, (3_000, 3_000))
        self.assertFalse(object_is_current(step))


class ScriptStrategyTests(StrategyTestCase):
    def test_interpreter_follows_extension(self) -> None:
        self.assertEqual(script_command(Path("gen.py"), ["a"]), [sys.executable, "gen.py", "a"])
        self.assertEqual(script_command(Path("gen.tcl"), []), ["tclsh", "-encoding", "utf-8", "gen.tcl"])
        self.assertEqual(script_command(Path("gen.awk"), []), ["awk", "-f", "gen.awk"])
        self.assertEqual(script_command(Path("gen.BAT"), []), ["cmd", "/c", "gen.BAT"])
        self.assertEqual(script_command(Path("tool"), ["x"]), ["tool", "x"])

    def test_script_plan_runs_in_working_directory(self) -> None:
        (self.root / "tools").mkdir()
        (self.root / "tools" / "gen.sh").write_text("echo hi\n")
        target = ScriptTarget(
            name="gen",
            script="tools/gen.sh",
            arguments=("--out", "gen.h"),
            cwd="tools",
            environment={"MODE": "fast"},
            output="build/gen.h",
        )
        plan = plan_target(target, self.context([target]))
        step = plan.steps[0]
        self.assertEqual(list(step.command), ["sh", str(self.root / "tools" / "gen.sh"), "--out", "gen.h"])
        self.assertEqual(step.cwd, self.root / "tools")
        self.assertEqual(step.env, {"MODE": "fast"})
        self.assertEqual(plan.output, self.root / "build" / "gen.h")

    def test_script_inputs_include_script_and_watched_files(self) -> None:
        (self.root / "gen.py").write_text("print('x')\n")
        target = ScriptTarget(name="gen", script="gen.py", inputs=("src/*.cpp",))
        inputs = target_inputs(target, self.context([target]))
        self.assertEqual(inputs.files[0], self.root / "gen.py")
        self.assertEqual(len(inputs.files), 3)

    def test_command_list_is_used_verbatim(self) -> None:
        target = ScriptTarget(name="stamp", command=("touch", "stamp"), arguments=("-c",))
        self.assertEqual(list(plan_target(target, self.context([target])).steps[0].command), ["touch", "stamp", "-c"])


class CMakeStrategyTests(StrategyTestCase):
    def test_configure_then_build(self) -> None:
        (self.root / "ext").mkdir()
        (self.root / "ext" / "CMakeLists.txt").write_text("project(ext)\n")
        target = CMakeTarget(
            name="ext",
            source_dir="ext",
            defines={"EXT_TESTS": "OFF"},
            generator="Ninja",
            cmake_target="extlib",
            toolchain=ToolchainKind.GNU,
        )
        plan = plan_target(target, self.context([target]))
        configure, build = (list(step.command) for step in plan.steps)
        build_dir = self.build_dir / "cmake" / "ext"
        self.assertEqual(configure[:7], ["cmake", "-S", str(self.root / "ext"), "-B", str(build_dir), "-G", "Ninja"])
        self.assertIn("-DCMAKE_BUILD_TYPE=Release", configure)
        self.assertIn("-DCMAKE_CXX_COMPILER=/usr/bin/g++", configure)
        self.assertIn("-DCMAKE_C_COMPILER=/usr/bin/gcc", configure)
        self.assertIn("-DEXT_TESTS=OFF", configure)
        self.assertEqual(build, ["cmake", "--build", str(build_dir), "--config", "Release", "-j", "4", "--target", "extlib"])
        self.assertEqual(plan.directories, [build_dir])

    def test_without_toolchain_compilers_are_left_to_cmake(self) -> None:
        (self.root / "ext").mkdir()
        target = CMakeTarget(name="ext", source_dir="ext")
        configure = list(plan_target(target, self.context([target], configuration="minsize")).steps[0].command)
        self.assertIn("-DCMAKE_BUILD_TYPE=MinSizeRel", configure)
        self.assertFalse(any(arg.startswith("-DCMAKE_CXX_COMPILER") for arg in configure))

    def test_inputs_skip_build_and_hidden_directories(self) -> None:
        ext = self.root / "ext"
        (ext / "src").mkdir(parents=True)
        (ext / ".git").mkdir()
        (ext / "out").mkdir()
        (ext / "CMakeLists.txt").write_text("project(ext)\n")
        (ext / "src" / "a.c").write_text("")
        (ext / ".git" / "HEAD").write_text("")
        (ext / "out" / "cache.txt").write_text("")
        target = CMakeTarget(name="ext", source_dir="ext", build_dir="ext/out")
        inputs = target_inputs(target, self.context([target]))
        self.assertEqual(inputs.files, [ext / "CMakeLists.txt", ext / "src" / "a.c"])


class DefaultToolchainTests(unittest.TestCase):
    def test_default_per_host(self) -> None:
        self.assertIs(default_toolchain("Windows"), ToolchainKind.VISUAL_STUDIO)
        self.assertIs(default_toolchain("Darwin"), ToolchainKind.APPLE_LLVM)
        self.assertIs(default_toolchain("Linux"), ToolchainKind.GNU)


if __name__ == "__main__":
    unittest.main()
