#!/usr/bin/python3
"""java_workstation — provision a Java developer workstation on Windows.

Installs Chocolatey, a JDK, build tools, an application server, IDEs and
everyday developer tools, then points JAVA_HOME, MAVEN_HOME, GRADLE_HOME and
CATALINA_HOME at the installed trees and puts their ``bin`` directories on
the machine PATH.  Re-running on a provisioned machine changes nothing.
"""

import argparse
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path

from provision import (
    CommandExecutor,
    EnvironmentMutator,
    ErrorKind,
    Result,
    RunLog,
    Runner,
    Scope,
    Step,
    default_log_path,
    is_elevated,
    precondition,
)

# ── Constants ────────────────────────────────────────────────────────────────

CHOCO_INSTALL_URL = "https://community.chocolatey.org/install.ps1"
CHOCO_BOOTSTRAP = (
    "Set-ExecutionPolicy Bypass -Scope Process -Force; "
    "[System.Net.ServicePointManager]::SecurityProtocol = "
    "[System.Net.ServicePointManager]::SecurityProtocol -bor 3072; "
    f"iex ((New-Object System.Net.WebClient).DownloadString('{CHOCO_INSTALL_URL}'))"
)
# 1641 and 3010 mean success with a reboot pending.
CHOCO_SUCCESS_CODES = (0, 1641, 3010)
INSTALL_TIMEOUT = 3600

PROGRAM_FILES = Path(os.environ.get("ProgramFiles", r"C:\Program Files"))
CHOCO_ROOT = Path(os.environ.get("ChocolateyInstall", r"C:\ProgramData\chocolatey"))

CATEGORIES = ("java", "build", "server", "ide", "tool")

SKIP_REASONS = {
    "java": "skipped by --skip-java",
    "ide":  "skipped by --skip-ides",
}


@dataclass(frozen=True)
class Package:
    name: str        # chocolatey package id
    label: str
    category: str


PACKAGES = (
    Package("temurin17",              "Eclipse Temurin JDK 17",  "java"),
    Package("maven",                  "Apache Maven",            "build"),
    Package("gradle",                 "Gradle",                  "build"),
    Package("tomcat",                 "Apache Tomcat",           "server"),
    Package("intellijidea-community", "IntelliJ IDEA Community", "ide"),
    Package("eclipse",                "Eclipse IDE",             "ide"),
    Package("vscode",                 "Visual Studio Code",      "ide"),
    Package("git",                    "Git",                     "tool"),
    Package("nodejs-lts",             "Node.js LTS",             "tool"),
    Package("postman",                "Postman",                 "tool"),
    Package("dbeaver",                "DBeaver",                 "tool"),
    Package("docker-desktop",         "Docker Desktop",          "tool"),
    Package("7zip",                   "7-Zip",                   "tool"),
    Package("notepadplusplus",        "Notepad++",               "tool"),
    Package("curl",                   "curl",                    "tool"),
)


@dataclass(frozen=True)
class HomeVariable:
    """A *_HOME variable pointing at the newest tree matching *pattern*."""

    variable: str
    root: Path
    pattern: str
    category: str


HOME_VARIABLES = (
    HomeVariable("JAVA_HOME",     PROGRAM_FILES / "Eclipse Adoptium",         "jdk-17*",         "java"),
    HomeVariable("MAVEN_HOME",    CHOCO_ROOT / "lib" / "maven",               "apache-maven-*",  "build"),
    HomeVariable("GRADLE_HOME",   CHOCO_ROOT / "lib" / "gradle" / "tools",    "gradle-*",        "build"),
    HomeVariable("CATALINA_HOME", CHOCO_ROOT / "lib" / "tomcat" / "tools",    "apache-tomcat-*", "server"),
)


def _version_key(path: Path) -> list:
    return [int(n) for n in re.findall(r"\d+", path.name)]


def locate_home(hv: HomeVariable):
    """Newest directory under ``hv.root`` matching ``hv.pattern``, or None."""
    if not hv.root.is_dir():
        return None
    found = [p for p in hv.root.glob(hv.pattern) if p.is_dir()]
    if not found:
        return None
    return max(found, key=_version_key)


# ── JavaWorkstation ──────────────────────────────────────────────────────────

class JavaWorkstation:

    def __init__(self, executor: CommandExecutor, env: EnvironmentMutator,
                 log: RunLog, update_existing: bool = False,
                 skip_java: bool = False, skip_ides: bool = False,
                 packages=PACKAGES, homes=HOME_VARIABLES, elevated=is_elevated,
                 package_manager_fatal: bool = True, fail_fast: bool = False,
                 yes: bool = False):
        self.executor = executor
        self.env = env
        self.log = log
        self.dry_run = executor.dry_run
        self.update_existing = update_existing
        self.packages = list(packages)
        self.homes = list(homes)
        self.elevated = elevated
        self.package_manager_fatal = package_manager_fatal
        self.fail_fast = fail_fast
        self.yes = yes
        self.skipped = set()
        if skip_java:
            self.skipped.add("java")
        if skip_ides:
            self.skipped.add("ide")

    # ── chocolatey ────────────────────────────────────────────────────────

    def choco(self) -> str:
        return self.executor.which("choco") or str(CHOCO_ROOT / "bin" / "choco.exe")

    def _choco_present(self) -> bool:
        return (self.executor.which("choco") is not None
                or (CHOCO_ROOT / "bin" / "choco.exe").exists())

    def _install_choco(self) -> Result:
        r = self.executor.execute(
            "powershell.exe",
            ["-NoProfile", "-InputFormat", "None", "-ExecutionPolicy", "Bypass",
             "-Command", CHOCO_BOOTSTRAP],
            timeout=INSTALL_TIMEOUT,
        )
        if not r.ok:
            return Result.failure(
                ErrorKind.COMMAND_FAILED,
                f"Chocolatey bootstrap exited {r.exit_code}: {r.stderr.strip()}",
            )
        # The installer updates the machine PATH; this process needs it too.
        self.env.append_to_path(str(CHOCO_ROOT / "bin"), Scope.PROCESS)
        return Result.success("Chocolatey")

    def is_installed(self, pkg: Package) -> bool:
        r = self.executor.execute(
            self.choco(), ["list", "--exact", pkg.name, "--limit-output"],
            readonly=True,
        )
        if not r.ok:
            return False
        prefix = pkg.name.lower() + "|"
        return any(line.strip().lower().startswith(prefix)
                   for line in r.stdout.splitlines())

    def _package_step(self, pkg: Package) -> Step:
        def check():
            return not self.update_existing and self.is_installed(pkg)

        def apply():
            installed = self.is_installed(pkg)
            verb = "upgrade" if installed else "install"
            r = self.executor.execute(
                self.choco(), [verb, pkg.name, "-y", "--no-progress"],
                timeout=INSTALL_TIMEOUT,
            )
            if r.exit_code not in CHOCO_SUCCESS_CODES:
                return Result.failure(
                    ErrorKind.COMMAND_FAILED,
                    f"choco {verb} {pkg.name} exited {r.exit_code}",
                )
            note = " (reboot required)" if r.exit_code != 0 else ""
            return Result.success(f"{pkg.label}{note}", updated=installed)

        return Step(
            name=f"{pkg.label} ({pkg.name})",
            check=check,
            apply=apply,
            fatal_on_failure=self.fail_fast,
            enabled=pkg.category not in self.skipped,
            disabled_reason=SKIP_REASONS.get(pkg.category, "disabled by configuration"),
        )

    # ── environment ───────────────────────────────────────────────────────

    def _not_found(self, hv: HomeVariable) -> Result:
        return Result.failure(
            ErrorKind.NOT_FOUND,
            f"no {hv.pattern} directory under {hv.root}; {hv.variable} left unset",
        )

    def _home_step(self, hv: HomeVariable) -> Step:
        def check():
            home = locate_home(hv)
            return (home is not None
                    and self.env.get_variable(hv.variable, Scope.MACHINE) == str(home))

        def apply():
            home = locate_home(hv)
            if home is None:
                return self._not_found(hv)
            return self.env.set_variable(hv.variable, str(home), Scope.MACHINE)

        return Step(
            name=f"{hv.variable}",
            check=check,
            apply=apply,
            enabled=hv.category not in self.skipped,
            disabled_reason=SKIP_REASONS.get(hv.category, "disabled by configuration"),
        )

    def _path_step(self, hv: HomeVariable) -> Step:
        def bin_dir():
            home = locate_home(hv)
            return str(home / "bin") if home is not None else None

        def check():
            entry = bin_dir()
            return entry is not None and self.env.path_contains(entry, Scope.MACHINE)

        def apply():
            entry = bin_dir()
            if entry is None:
                return self._not_found(hv)
            return self.env.append_to_path(entry, Scope.MACHINE)

        return Step(
            name=f"PATH += %{hv.variable}%\\bin",
            check=check,
            apply=apply,
            enabled=hv.category not in self.skipped,
            disabled_reason=SKIP_REASONS.get(hv.category, "disabled by configuration"),
        )

    # ── step list ─────────────────────────────────────────────────────────

    def package_steps(self) -> list:
        return [self._package_step(pkg) for pkg in self.packages]

    def steps(self) -> list:
        steps = [
            precondition(
                "administrator rights",
                lambda: self.dry_run or self.elevated(),
                "must run from an elevated prompt (Run as administrator)",
            ),
            Step(
                name="Chocolatey package manager",
                check=self._choco_present,
                apply=self._install_choco,
                fatal_on_failure=self.package_manager_fatal,
            ),
        ]
        steps += self.package_steps()
        steps += [self._home_step(hv) for hv in self.homes]
        steps += [self._path_step(hv) for hv in self.homes]
        return steps

    # ── confirmation ──────────────────────────────────────────────────────

    def _run_description(self) -> list:
        """Bullet-point lines describing what this run will do."""
        active = [p for p in self.packages if p.category not in self.skipped]
        verb = "Install or upgrade" if self.update_existing else "Install"
        lines = [f"{verb} {len(active)} Chocolatey packages "
                 f"({', '.join(p.name for p in active)})"]
        variables = [hv.variable for hv in self.homes if hv.category not in self.skipped]
        if variables:
            lines.append(f"Set machine variables {', '.join(variables)} "
                         f"and add their bin dirs to PATH")
        for category, reason in SKIP_REASONS.items():
            if category in self.skipped:
                lines.append(f"Skip {category} packages ({reason})")
        return lines

    def confirm(self) -> None:
        """Describe the run and ask before changing anything.

        Exits immediately if the user declines.  Skipped with --yes or
        --dry-run.
        """
        if self.yes or self.dry_run:
            return

        print()
        print("  About to provision this machine as a Java workstation:")
        for line in self._run_description():
            print(f"    • {line}")
        print()
        try:
            answer = input("  Proceed? [y/N] ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            print()
            self.log.info("Aborted.")
            sys.exit(0)

        if answer != "y":
            self.log.info("Aborted.")
            sys.exit(0)


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="java-workstation",
        description="Provision a Java developer workstation via Chocolatey.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  java-workstation                      # interactive confirm, then install
  java-workstation -y --skip-ides       # unattended, no IDEs
  java-workstation --update-existing    # upgrade everything already installed
  java-workstation --dry-run            # preview without changes
""",
    )
    p.add_argument("--update-existing", action="store_true",
                   help="upgrade packages that are already installed")
    p.add_argument("--skip-java", action="store_true",
                   help="do not install the JDK or set JAVA_HOME")
    p.add_argument("--skip-ides", action="store_true",
                   help="do not install IDEs")
    p.add_argument("--log-path", type=Path,
                   help="log file (default: timestamped file in the temp dir)")
    p.add_argument("--fail-fast", action="store_true",
                   help="stop at the first package that fails to install")
    p.add_argument("--dry-run", action="store_true",
                   help="print commands without executing them")
    p.add_argument("-y", "--yes", action="store_true",
                   help="skip interactive confirmation prompt")
    p.add_argument("-q", "--quiet", action="store_true",
                   help="suppress per-command output; show only steps, "
                        "warnings, and errors")
    return p


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    log_path = args.log_path or default_log_path("java-workstation")

    with RunLog(log_path, quiet=args.quiet, name="java_workstation") as log:
        if not args.dry_run:
            if os.name != "nt":
                log.error("java-workstation provisions Windows hosts only "
                          "(use --dry-run to preview elsewhere)")
                sys.exit(1)
            if not is_elevated():
                log.error("must run from an elevated prompt (Run as administrator)")
                sys.exit(1)

        executor = CommandExecutor(log, dry_run=args.dry_run)
        env = EnvironmentMutator(log, dry_run=args.dry_run)
        workstation = JavaWorkstation(
            executor, env, log,
            update_existing=args.update_existing,
            skip_java=args.skip_java,
            skip_ides=args.skip_ides,
            fail_fast=args.fail_fast,
            yes=args.yes,
        )

        log.banner("java-workstation — Java developer workstation")
        workstation.confirm()

        runner = Runner(log)
        try:
            report = runner.run(workstation.steps())
        except Exception:
            log.logger.exception("Unexpected failure during provisioning")
            sys.exit(1)
        runner.summarize(report, title="Java workstation")

        if not report.ok:
            sys.exit(1)
        if any(r.message.endswith("(reboot required)") for r in report.results):
            log.warn("Some installers asked for a reboot to finish")


if __name__ == "__main__":
    main()
