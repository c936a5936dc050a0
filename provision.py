"""provision — idempotent workstation provisioning primitives.

Shared by git_ssh_setup and java_workstation.  A run is an ordered list of
Step objects; each knows whether it is already satisfied (``check``) and how
to satisfy it (``apply``).  Runner walks the list exactly once, in order.
"""

import enum
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    WRENCH   = "\uf0ad"   # wrench
    FILE     = "\uf15c"   # file-text (log path)


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


# ── Data model ───────────────────────────────────────────────────────────────

class Outcome(enum.Enum):
    SKIPPED   = "skipped"
    INSTALLED = "installed"
    UPDATED   = "updated"
    FAILED    = "failed"


class ErrorKind(enum.Enum):
    PRECONDITION_UNMET = "precondition-unmet"
    COMMAND_FAILED     = "command-failed"
    PERMISSION_DENIED  = "permission-denied"
    NOT_FOUND          = "not-found"


class Scope(enum.Enum):
    PROCESS = "process"
    USER    = "user"
    MACHINE = "machine"


@dataclass(frozen=True)
class Result:
    """Outcome of an apply action or an environment write."""

    ok: bool
    message: str = ""
    outcome: Outcome = Outcome.INSTALLED
    error: Optional[ErrorKind] = None

    @classmethod
    def success(cls, message: str = "", updated: bool = False) -> "Result":
        return cls(True, message, Outcome.UPDATED if updated else Outcome.INSTALLED)

    @classmethod
    def unchanged(cls, message: str = "") -> "Result":
        return cls(True, message, Outcome.SKIPPED)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "Result":
        return cls(False, message, Outcome.FAILED, error)


@dataclass(frozen=True)
class Step:
    name: str
    check: Callable[[], bool]
    apply: Callable[[], Result]
    fatal_on_failure: bool = False
    enabled: bool = True
    disabled_reason: str = "disabled by configuration"


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: Outcome
    message: str = ""
    error: Optional[ErrorKind] = None


@dataclass
class RunReport:
    results: List[StepResult] = field(default_factory=list)
    halted: bool = False
    fatal_step: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.fatal_step is None

    @property
    def failures(self) -> List[StepResult]:
        return [r for r in self.results if r.outcome is Outcome.FAILED]

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)


def precondition(name: str, predicate: Callable[[], bool], message: str) -> Step:
    """Fatal step that is satisfied only when *predicate* holds."""
    return Step(
        name=name,
        check=predicate,
        apply=lambda: Result.failure(ErrorKind.PRECONDITION_UNMET, message),
        fatal_on_failure=True,
    )


def default_log_path(prefix: str) -> Path:
    """Timestamped log file in the temp directory."""
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return Path(tempfile.gettempdir()) / f"{prefix}-{stamp}.log"


def is_elevated() -> bool:
    """True when running with administrator (or root) rights."""
    if os.name == "nt":
        import ctypes
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


# ── Logger ───────────────────────────────────────────────────────────────────

class _ConsoleFormatter(logging.Formatter):
    """Render records in the icon/colour style used on the terminal."""

    _LEVELS = {
        logging.DEBUG:   (_C.DIM, _I.OK),
        logging.INFO:    (_C.GREEN, _I.OK),
        logging.WARNING: (_C.YELLOW, _I.WARN),
        logging.ERROR:   (_C.RED, _I.ERROR),
    }

    def format(self, record):
        msg = record.getMessage()
        kind = getattr(record, "kind", "")
        stamp = f"{_C.DIM}{self.formatTime(record, '%H:%M:%S')}{_C.RESET}"
        if kind == "banner":
            rule = "─" * 60
            return (f"\n{_C.BOLD}{_C.CYAN}{rule}{_C.RESET}\n{stamp} "
                    f"{_C.BOLD}{_C.CYAN}{msg}\n{rule}{_C.RESET}")
        if kind == "step":
            tag = getattr(record, "tag", "")
            return (f"\n{stamp} {_C.BOLD}{_I.WRENCH}  {msg}{_C.RESET}  "
                    f"{_C.DIM}{tag}{_C.RESET}")
        if kind == "skip":
            return f"{stamp}   {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}"
        if kind == "dry":
            return f"{stamp}   {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}"
        colour, icon = self._LEVELS.get(record.levelno, (_C.RED, _I.ERROR))
        return f"{stamp}   {colour}{icon}{_C.RESET}  {msg}"


class _FileFormatter(logging.Formatter):

    _TAGS = {"dry": "[DRY RUN] ", "skip": "[SKIP] ", "step": "== "}

    def format(self, record):
        line = super().format(record)
        tag = self._TAGS.get(getattr(record, "kind", ""), "")
        if tag:
            head, sep, msg = line.partition("| ")
            line = f"{head}{sep}{tag}{msg}"
        return line


class _ConsoleHandler(logging.Handler):
    """Errors go to stderr, everything else to stdout.

    Streams are looked up per record so redirect_stdout() keeps working.
    """

    def emit(self, record):
        try:
            stream = sys.stderr if record.levelno >= logging.ERROR else sys.stdout
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class RunLog:
    """Console plus append-mode log file for the duration of one run."""

    def __init__(self, path=None, quiet: bool = False, name: str = "provision"):
        self.path = Path(path) if path else None
        self.quiet = quiet
        self.logger = logging.getLogger(name)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        console = _ConsoleHandler()
        console.setFormatter(_ConsoleFormatter())
        if quiet:
            console.addFilter(lambda r: getattr(r, "kind", "") != "detail")
        self.logger.addHandler(console)

        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(self.path, mode="a", encoding="utf-8")
            fh.setFormatter(_FileFormatter(
                "%(asctime)s %(levelname)-7s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            self.logger.addHandler(fh)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def log(self, message: str, level=logging.INFO, kind: str = "") -> None:
        if isinstance(level, str):
            level = getattr(logging, level.upper())
        self.logger.log(level, message, extra={"kind": kind})

    def banner(self, title: str) -> None:
        self.log(title, kind="banner")

    def step(self, title: str, index: int, total: int) -> None:
        self.logger.info(title, extra={"kind": "step", "tag": f"[{index}/{total}]"})

    def info(self, msg: str) -> None:
        self.log(msg)

    def detail(self, msg: str) -> None:
        """Per-command chatter; hidden on the console with --quiet."""
        self.log(msg, kind="detail")

    def warn(self, msg: str) -> None:
        self.log(msg, logging.WARNING)

    def error(self, msg: str) -> None:
        self.log(msg, logging.ERROR)

    def skip(self, msg: str) -> None:
        self.log(msg, kind="skip")

    def dry(self, msg: str) -> None:
        self.log(msg, kind="dry")


# ── Command executor ─────────────────────────────────────────────────────────

EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandExecutor:
    """Run external commands and capture their output.

    Never raises for a non-zero exit; callers inspect ``exit_code``.
    With dry_run, mutating commands are printed instead of executed while
    ``readonly`` queries still run.
    """

    def __init__(self, log: RunLog, dry_run: bool = False):
        self.log = log
        self.dry_run = dry_run

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def execute(self, command, args=(), timeout=None, readonly=False,
                stdin=None) -> CommandResult:
        cmd = [str(command)] + [str(a) for a in args]
        pretty = " ".join(cmd)
        if self.dry_run and not readonly:
            self.log.dry(pretty)
            return CommandResult(0)
        if not readonly:
            self.log.detail(f"Running: {pretty}")
        try:
            proc = subprocess.run(
                cmd, input=stdin, capture_output=True, text=True,
                errors="replace", timeout=timeout,
            )
        except FileNotFoundError:
            result = CommandResult(EXIT_NOT_FOUND, "", f"{command}: command not found")
        except subprocess.TimeoutExpired as exc:
            out = exc.stdout if isinstance(exc.stdout, str) else ""
            result = CommandResult(EXIT_TIMEOUT, out, f"timed out after {timeout}s")
        except OSError as exc:
            result = CommandResult(EXIT_NOT_EXECUTABLE, "", str(exc))
        else:
            result = CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
        if not readonly and not result.ok:
            self.log.warn(f"  ↳ exited {result.exit_code}: {pretty}")
        return result


# ── Environment mutator ──────────────────────────────────────────────────────

class RegistryEnvironment:
    """Durable environment variables in the Windows registry."""

    _KEYS = {
        Scope.USER:    ("HKEY_CURRENT_USER", "Environment"),
        Scope.MACHINE: ("HKEY_LOCAL_MACHINE",
                        r"SYSTEM\CurrentControlSet\Control\Session Manager\Environment"),
    }

    def get(self, name: str, scope: Scope) -> Optional[str]:
        import winreg
        root, sub = self._KEYS[scope]
        try:
            with winreg.OpenKey(getattr(winreg, root), sub) as key:
                value, _ = winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return None
        return value

    def set(self, name: str, value: str, scope: Scope) -> None:
        """Write *name*; raises PermissionError without the required rights."""
        import winreg
        root, sub = self._KEYS[scope]
        kind = winreg.REG_EXPAND_SZ if "%" in value or name.lower() == "path" \
            else winreg.REG_SZ
        with winreg.OpenKey(getattr(winreg, root), sub, 0, winreg.KEY_SET_VALUE) as key:
            winreg.SetValueEx(key, name, 0, kind, value)
        self._broadcast()

    @staticmethod
    def _broadcast() -> None:
        """Tell running programs (Explorer, new shells) the environment changed."""
        import ctypes
        from ctypes import wintypes
        HWND_BROADCAST = 0xFFFF
        WM_SETTINGCHANGE = 0x001A
        SMTO_ABORTIFHUNG = 0x0002
        res = wintypes.DWORD()
        ctypes.windll.user32.SendMessageTimeoutW(
            HWND_BROADCAST, WM_SETTINGCHANGE, 0, "Environment",
            SMTO_ABORTIFHUNG, 5000, ctypes.byref(res),
        )


class EnvironmentMutator:
    """Read and write environment variables at process or durable scope.

    Durable scopes (USER, MACHINE) go through *store*, which defaults to the
    registry on Windows.  Successful durable writes are mirrored into the
    process environment so later steps and child processes see them.
    """

    def __init__(self, log: RunLog, store=None, environ=None, dry_run: bool = False):
        self.log = log
        if store is None and os.name == "nt":
            store = RegistryEnvironment()
        self.store = store
        self.environ = os.environ if environ is None else environ
        self.dry_run = dry_run

    @staticmethod
    def _path_name(scope: Scope) -> str:
        return "PATH" if scope is Scope.PROCESS else "Path"

    @staticmethod
    def _separator(scope: Scope) -> str:
        return os.pathsep if scope is Scope.PROCESS else ";"

    def get_variable(self, name: str, scope: Scope = Scope.PROCESS) -> Optional[str]:
        if scope is Scope.PROCESS:
            return self.environ.get(name)
        if self.store is None:
            return None
        return self.store.get(name, scope)

    def set_variable(self, name: str, value: str, scope: Scope = Scope.PROCESS) -> Result:
        current = self.get_variable(name, scope)
        if current == value:
            return Result.unchanged(f"{name} already set to {value}")

        if self.dry_run:
            self.log.dry(f"set {name}={value} ({scope.value})")
            return Result.success(f"{name}={value}", updated=current is not None)

        if scope is Scope.PROCESS:
            self.environ[name] = value
        else:
            if self.store is None:
                return Result.failure(
                    ErrorKind.PRECONDITION_UNMET,
                    f"no durable environment store on this platform for {name}",
                )
            try:
                self.store.set(name, value, scope)
            except PermissionError as exc:
                self.log.warn(f"Permission denied writing {name} ({scope.value}): {exc}")
                return Result.failure(
                    ErrorKind.PERMISSION_DENIED,
                    f"cannot write {name} at {scope.value} scope without elevation",
                )
            if name.lower() != "path":
                self.environ[name] = value

        self.log.info(f"Set {name}={value} ({scope.value})")
        return Result.success(f"{name}={value}", updated=current is not None)

    def path_contains(self, entry: str, scope: Scope = Scope.PROCESS) -> bool:
        current = self.get_variable(self._path_name(scope), scope) or ""
        return entry.lower() in current.lower()

    def append_to_path(self, entry: str, scope: Scope = Scope.PROCESS) -> Result:
        name = self._path_name(scope)
        if self.path_contains(entry, scope):
            return Result.unchanged(f"{entry} already on {name}")

        current = self.get_variable(name, scope) or ""
        sep = self._separator(scope)
        new = f"{current.rstrip(sep)}{sep}{entry}" if current else entry
        result = self.set_variable(name, new, scope)
        if result.ok and scope is not Scope.PROCESS and not self.dry_run:
            self.append_to_path(entry, Scope.PROCESS)
        return result


# ── Runner ───────────────────────────────────────────────────────────────────

class Runner:
    """Execute steps in declared order; halt only on fatal failures."""

    def __init__(self, log: RunLog):
        self.log = log

    def _execute(self, step: Step) -> StepResult:
        if not step.enabled:
            self.log.skip(f"{step.name}: {step.disabled_reason}")
            return StepResult(step.name, Outcome.SKIPPED, step.disabled_reason)

        if step.check():
            self.log.skip(f"{step.name}: already satisfied")
            return StepResult(step.name, Outcome.SKIPPED, "already satisfied")

        applied = step.apply()
        if applied.ok:
            self.log.info(f"{step.name}: {applied.outcome.value}"
                          + (f" ({applied.message})" if applied.message else ""))
            return StepResult(step.name, applied.outcome, applied.message)

        kind = applied.error.value if applied.error else "failed"
        self.log.warn(f"{step.name}: {kind}: {applied.message}")
        return StepResult(step.name, Outcome.FAILED, applied.message, applied.error)

    def run(self, steps, halt_on_fatal: bool = True) -> RunReport:
        report = RunReport()
        total = len(steps)
        for idx, step in enumerate(steps, 1):
            self.log.step(step.name, idx, total)
            result = self._execute(step)
            report.results.append(result)

            if result.outcome is Outcome.FAILED and step.fatal_on_failure:
                if report.fatal_step is None:
                    report.fatal_step = step.name
                if halt_on_fatal:
                    self.log.error(f"{step.name} failed and is fatal — "
                                   f"{total - idx} remaining step(s) not attempted")
                    report.halted = True
                    break
        return report

    def summarize(self, report: RunReport, title: str = "Provisioning") -> None:
        status = "complete" if report.ok else "FAILED"
        icon = _I.CHECK if report.ok else _I.ERROR
        self.log.banner(f"{icon}  {title} {status}")

        parts = []
        for outcome in (Outcome.INSTALLED, Outcome.UPDATED, Outcome.SKIPPED, Outcome.FAILED):
            n = report.count(outcome)
            if n:
                parts.append(f"{n} {outcome.value}")
        self.log.info(f"Steps:  {', '.join(parts) if parts else 'none'}")

        for failed in report.failures:
            self.log.warn(f"Failed: {failed.name} — {failed.message}")
        if report.halted:
            self.log.error(f"Run halted at fatal step: {report.fatal_step}")
        if self.log.path is not None:
            self.log.info(f"{_I.FILE}  Log file: {self.log.path}")
