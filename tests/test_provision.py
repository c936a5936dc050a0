import io
import os
import re
import subprocess
import tempfile
import unittest
import unittest.mock
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

import provision
from provision import (
    CommandExecutor,
    EnvironmentMutator,
    ErrorKind,
    Outcome,
    Result,
    RunLog,
    Runner,
    Scope,
    Step,
    precondition,
)
from support import MemoryStore, ProvisionTestCase


class Recorder:
    """Step factory that remembers which checks and applies ran."""

    def __init__(self):
        self.checked = []
        self.applied = []

    def step(self, name, satisfied=False, result=None, fatal=False, enabled=True):
        def check():
            self.checked.append(name)
            return satisfied

        def apply():
            self.applied.append(name)
            return result or Result.success()

        return Step(name, check, apply, fatal_on_failure=fatal, enabled=enabled)


class TestRunner(ProvisionTestCase):
    def setUp(self):
        super().setUp()
        self.rec = Recorder()
        self.runner = Runner(self.log)

    def test_fatal_failure_halts_after_failing_step(self):
        boom = Result.failure(ErrorKind.COMMAND_FAILED, "exit 1")
        steps = [
            self.rec.step("one"),
            self.rec.step("two", result=boom, fatal=True),
            self.rec.step("three"),
        ]
        report = self.runner.run(steps)

        self.assertEqual(len(report.results), 2)
        self.assertEqual([r.name for r in report.results], ["one", "two"])
        self.assertFalse(report.ok)
        self.assertTrue(report.halted)
        self.assertEqual(report.fatal_step, "two")
        self.assertNotIn("three", self.rec.checked)
        self.assertNotIn("three", self.rec.applied)

    def test_non_fatal_failure_continues(self):
        boom = Result.failure(ErrorKind.COMMAND_FAILED, "exit 1")
        steps = [
            self.rec.step("one"),
            self.rec.step("two", result=boom),
            self.rec.step("three", satisfied=True),
        ]
        report = self.runner.run(steps)

        self.assertEqual(len(report.results), 3)
        self.assertEqual(
            [r.outcome for r in report.results],
            [Outcome.INSTALLED, Outcome.FAILED, Outcome.SKIPPED],
        )
        self.assertEqual(report.results[1].error, ErrorKind.COMMAND_FAILED)
        self.assertTrue(report.ok)
        self.assertFalse(report.halted)
        self.assertEqual([r.name for r in report.failures], ["two"])

    def test_fatal_failure_without_halting_still_fails_run(self):
        boom = Result.failure(ErrorKind.COMMAND_FAILED, "exit 1")
        steps = [
            self.rec.step("one", result=boom, fatal=True),
            self.rec.step("two"),
        ]
        report = self.runner.run(steps, halt_on_fatal=False)

        self.assertEqual(len(report.results), 2)
        self.assertFalse(report.ok)
        self.assertFalse(report.halted)
        self.assertIn("two", self.rec.applied)

    def test_satisfied_step_is_not_applied(self):
        report = self.runner.run([self.rec.step("one", satisfied=True)])
        self.assertEqual(report.results[0].outcome, Outcome.SKIPPED)
        self.assertEqual(self.rec.applied, [])

    def test_disabled_step_neither_checked_nor_applied(self):
        report = self.runner.run([self.rec.step("one", enabled=False)])
        self.assertEqual(report.results[0].outcome, Outcome.SKIPPED)
        self.assertEqual(report.results[0].message, "disabled by configuration")
        self.assertEqual(self.rec.checked, [])
        self.assertEqual(self.rec.applied, [])

    def test_updated_outcome_is_recorded(self):
        step = self.rec.step("one", result=Result.success("1.2 -> 1.3", updated=True))
        report = self.runner.run([step])
        self.assertEqual(report.results[0].outcome, Outcome.UPDATED)
        self.assertEqual(report.results[0].message, "1.2 -> 1.3")

    def test_failed_step_is_not_retried(self):
        boom = Result.failure(ErrorKind.COMMAND_FAILED, "exit 1")
        self.runner.run([self.rec.step("one", result=boom)])
        self.assertEqual(self.rec.applied, ["one"])

    def test_precondition_is_fatal(self):
        steps = [
            precondition("admin", lambda: False, "not elevated"),
            self.rec.step("two"),
        ]
        report = self.runner.run(steps)
        self.assertEqual(len(report.results), 1)
        self.assertEqual(report.results[0].error, ErrorKind.PRECONDITION_UNMET)
        self.assertEqual(report.results[0].message, "not elevated")
        self.assertFalse(report.ok)

    def test_summary_lists_counts_and_failures(self):
        boom = Result.failure(ErrorKind.NOT_FOUND, "no jdk")
        report = self.runner.run([
            self.rec.step("one"),
            self.rec.step("two", satisfied=True),
            self.rec.step("three", result=boom),
        ])
        self._suppress.__exit__(None, None, None)
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.runner.summarize(report, title="Test run")
        self._suppress.__enter__()
        output = buf.getvalue()
        self.assertIn("Test run complete", output)
        self.assertIn("1 installed", output)
        self.assertIn("1 skipped", output)
        self.assertIn("1 failed", output)
        self.assertIn("three", output)


class TestCommandExecutor(ProvisionTestCase):
    def test_nonzero_exit_is_returned_not_raised(self):
        ex = CommandExecutor(self.log)
        proc = subprocess.CompletedProcess(["x"], 3, stdout="out", stderr="err")
        self._suppress.__exit__(None, None, None)
        buf = io.StringIO()
        with redirect_stdout(buf):
            with unittest.mock.patch("subprocess.run", return_value=proc):
                r = ex.execute("choco", ["install", "git"])
        self._suppress.__enter__()
        self.assertEqual(r.exit_code, 3)
        self.assertEqual(r.stdout, "out")
        self.assertEqual(r.stderr, "err")
        self.assertFalse(r.ok)
        self.assertIn("exited 3", buf.getvalue())

    def test_missing_executable_maps_to_127(self):
        ex = CommandExecutor(self.log)
        with unittest.mock.patch("subprocess.run", side_effect=FileNotFoundError):
            r = ex.execute("no-such-tool", ["--version"], readonly=True)
        self.assertEqual(r.exit_code, provision.EXIT_NOT_FOUND)
        self.assertIn("not found", r.stderr)

    def test_timeout_maps_to_124(self):
        ex = CommandExecutor(self.log)
        exc = subprocess.TimeoutExpired(["sleep"], 5)
        with unittest.mock.patch("subprocess.run", side_effect=exc):
            r = ex.execute("sleep", ["60"], timeout=5)
        self.assertEqual(r.exit_code, provision.EXIT_TIMEOUT)

    def test_dry_run_skips_mutating_commands(self):
        ex = CommandExecutor(self.log, dry_run=True)
        self._suppress.__exit__(None, None, None)
        buf = io.StringIO()
        with redirect_stdout(buf):
            with unittest.mock.patch("subprocess.run",
                                     side_effect=AssertionError("executed")):
                r = ex.execute("choco", ["install", "git", "-y"])
        self._suppress.__enter__()
        self.assertTrue(r.ok)
        self.assertIn("[DRY RUN]", buf.getvalue())
        self.assertIn("choco install git -y", buf.getvalue())

    def test_dry_run_still_runs_readonly_queries(self):
        ex = CommandExecutor(self.log, dry_run=True)
        proc = subprocess.CompletedProcess(["git"], 0, stdout="main\n", stderr="")
        with unittest.mock.patch("subprocess.run", return_value=proc) as run:
            r = ex.execute("git", ["config", "--get", "init.defaultBranch"],
                           readonly=True)
        run.assert_called_once()
        self.assertEqual(r.stdout, "main\n")

    def test_stdin_is_passed_through(self):
        ex = CommandExecutor(self.log)
        proc = subprocess.CompletedProcess(["clip"], 0, stdout="", stderr="")
        with unittest.mock.patch("subprocess.run", return_value=proc) as run:
            ex.execute("clip", stdin="ssh-ed25519 AAAA")
        self.assertEqual(run.call_args.kwargs["input"], "ssh-ed25519 AAAA")


class TestEnvironmentMutator(ProvisionTestCase):
    def _mutator(self, environ=None, store=None, dry_run=False):
        environ = {} if environ is None else environ
        return EnvironmentMutator(self.log, store=store, environ=environ,
                                  dry_run=dry_run)

    def test_append_to_path_is_noop_when_present(self):
        environ = {"PATH": os.pathsep.join(["/usr/bin", "/opt/Maven/bin"])}
        env = self._mutator(environ)
        before = len(environ["PATH"])

        result = env.append_to_path("/opt/maven/BIN")

        self.assertTrue(result.ok)
        self.assertEqual(result.outcome, Outcome.SKIPPED)
        self.assertEqual(len(environ["PATH"]), before)

    def test_append_to_path_repeated_call_leaves_length_unchanged(self):
        environ = {"PATH": "/usr/bin"}
        env = self._mutator(environ)
        env.append_to_path("/opt/gradle/bin")
        after_first = len(environ["PATH"])
        env.append_to_path("/opt/gradle/bin")
        self.assertEqual(len(environ["PATH"]), after_first)
        self.assertEqual(environ["PATH"], f"/usr/bin{os.pathsep}/opt/gradle/bin")

    def test_append_to_empty_path(self):
        environ = {}
        env = self._mutator(environ)
        env.append_to_path("/opt/tool/bin")
        self.assertEqual(environ["PATH"], "/opt/tool/bin")

    def test_durable_append_uses_semicolons_and_mirrors_process(self):
        store = MemoryStore({(Scope.MACHINE, "Path"): r"C:\Windows;C:\Tools;"})
        environ = {"PATH": "/usr/bin"}
        env = self._mutator(environ, store)

        result = env.append_to_path(r"C:\maven\bin", Scope.MACHINE)

        self.assertTrue(result.ok)
        self.assertEqual(store.get("Path", Scope.MACHINE),
                         r"C:\Windows;C:\Tools;C:\maven\bin")
        self.assertIn(r"C:\maven\bin", environ["PATH"])

    def test_set_variable_reads_before_write(self):
        store = MemoryStore({(Scope.MACHINE, "JAVA_HOME"): r"C:\jdk"})
        env = self._mutator(store=store)
        store.writable = False  # a write attempt would raise
        result = env.set_variable("JAVA_HOME", r"C:\jdk", Scope.MACHINE)
        self.assertTrue(result.ok)
        self.assertEqual(result.outcome, Outcome.SKIPPED)

    def test_set_variable_durable_updates_and_mirrors(self):
        store = MemoryStore({(Scope.MACHINE, "JAVA_HOME"): r"C:\old-jdk"})
        environ = {}
        env = self._mutator(environ, store)
        result = env.set_variable("JAVA_HOME", r"C:\jdk-17", Scope.MACHINE)
        self.assertEqual(result.outcome, Outcome.UPDATED)
        self.assertEqual(store.get("JAVA_HOME", Scope.MACHINE), r"C:\jdk-17")
        self.assertEqual(environ["JAVA_HOME"], r"C:\jdk-17")

    def test_durable_write_without_rights_is_permission_denied(self):
        environ = {}
        env = self._mutator(environ, MemoryStore(writable=False))
        result = env.set_variable("MAVEN_HOME", r"C:\maven", Scope.MACHINE)
        self.assertFalse(result.ok)
        self.assertEqual(result.error, ErrorKind.PERMISSION_DENIED)
        self.assertNotIn("MAVEN_HOME", environ)

    def test_durable_write_without_store_is_precondition_unmet(self):
        env = self._mutator(store=None)
        env.store = None
        result = env.set_variable("GRADLE_HOME", "/opt/gradle", Scope.USER)
        self.assertFalse(result.ok)
        self.assertEqual(result.error, ErrorKind.PRECONDITION_UNMET)

    def test_dry_run_does_not_write(self):
        store = MemoryStore()
        environ = {}
        env = self._mutator(environ, store, dry_run=True)
        result = env.set_variable("CATALINA_HOME", r"C:\tomcat", Scope.MACHINE)
        self.assertTrue(result.ok)
        self.assertIsNone(store.get("CATALINA_HOME", Scope.MACHINE))
        self.assertEqual(environ, {})


class TestRunLog(unittest.TestCase):
    def test_file_lines_are_timestamped_and_appended(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "run.log"
            with redirect_stdout(io.StringIO()):
                with RunLog(path, name="test.runlog.append") as log:
                    log.log("first run", "INFO")
                with RunLog(path, name="test.runlog.append") as log:
                    log.warn("second run")
            lines = path.read_text(encoding="utf-8").splitlines()

        self.assertEqual(len(lines), 2)
        self.assertRegex(lines[0], r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} INFO")
        self.assertIn("first run", lines[0])
        self.assertIn("WARNING", lines[1])
        self.assertIn("second run", lines[1])

    def test_quiet_hides_detail_on_console_but_not_in_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "run.log"
            buf = io.StringIO()
            with redirect_stdout(buf):
                with RunLog(path, quiet=True, name="test.runlog.quiet") as log:
                    log.detail("Running: choco install git")
                    log.info("git: installed")
            text = path.read_text(encoding="utf-8")

        self.assertNotIn("Running: choco", buf.getvalue())
        self.assertIn("git: installed", buf.getvalue())
        self.assertIn("Running: choco install git", text)

    def test_console_lines_are_timestamped(self):
        buf, err = io.StringIO(), io.StringIO()
        with redirect_stdout(buf), redirect_stderr(err):
            with RunLog(name="test.runlog.console") as log:
                log.log("hello", "INFO")
                log.skip("git: already satisfied")
                log.error("not elevated")
        out = re.sub(r"\x1b\[[0-9;]*m", "", buf.getvalue())
        errors = re.sub(r"\x1b\[[0-9;]*m", "", err.getvalue())

        lines = out.splitlines()
        self.assertEqual(len(lines), 2)
        self.assertRegex(lines[0], r"^\d{2}:\d{2}:\d{2} .*hello$")
        self.assertRegex(lines[1], r"^\d{2}:\d{2}:\d{2} .*git: already satisfied$")
        self.assertRegex(errors, r"^\d{2}:\d{2}:\d{2} .*not elevated\n$")

    def test_errors_go_to_stderr(self):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            with RunLog(name="test.runlog.stderr") as log:
                log.error("not elevated")
        self.assertIn("not elevated", err.getvalue())
        self.assertNotIn("not elevated", out.getvalue())

    def test_dry_run_lines_are_tagged_in_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "run.log"
            with redirect_stdout(io.StringIO()):
                with RunLog(path, name="test.runlog.dry") as log:
                    log.dry("choco install maven -y")
            text = path.read_text(encoding="utf-8")
        self.assertIn("| [DRY RUN] choco install maven -y", text)


if __name__ == "__main__":
    unittest.main()
