#!/usr/bin/python3
"""git_ssh_setup — configure Git and register an SSH key for GitHub.

Sets the global git identity and a few defaults, generates an ed25519 key
pair, adds a ``Host github.com`` entry to the ssh client config and loads
the key into ssh-agent.  On a machine that is already set up every step
reports skipped.
"""

import argparse
import os
import re
import sys
from pathlib import Path

from provision import (
    CommandExecutor,
    ErrorKind,
    Result,
    RunLog,
    Runner,
    Step,
    default_log_path,
    precondition,
)

# ── Constants ────────────────────────────────────────────────────────────────

GITHUB_HOST = "github.com"
GITHUB_KEYS_URL = "https://github.com/settings/ssh/new"

SSH_DIR = Path.home() / ".ssh"
KEY_PATH = SSH_DIR / "id_ed25519"
SSH_CONFIG_PATH = SSH_DIR / "config"

AGENT_SERVICE = "ssh-agent"

GIT_SETTINGS = {
    "init.defaultBranch": "main",
    "core.autocrlf": "true" if os.name == "nt" else "input",
}

_HOST_RE = re.compile(r"^\s*Host\s+(.+)$", re.IGNORECASE | re.MULTILINE)


def has_host_entry(text: str, host: str = GITHUB_HOST) -> bool:
    """True when an ssh config *text* already has a Host line matching *host*."""
    for m in _HOST_RE.finditer(text):
        if host.lower() in (p.lower() for p in m.group(1).split()):
            return True
    return False


def identity_file_value(key_path: Path) -> str:
    try:
        return "~/" + key_path.relative_to(Path.home()).as_posix()
    except ValueError:
        return key_path.as_posix()


def github_stanza(key_path: Path) -> str:
    return "\n".join([
        f"Host {GITHUB_HOST}",
        f"Hostname {GITHUB_HOST}",
        "PreferredAuthentications publickey",
        f"IdentityFile {identity_file_value(key_path)}",
    ])


# ── GitSshSetup ──────────────────────────────────────────────────────────────

class GitSshSetup:

    def __init__(self, name: str, email: str, executor: CommandExecutor,
                 log: RunLog, key_path=None, config_path=None,
                 git_settings=None, manage_agent_service=None):
        self.name = name
        self.email = email
        self.executor = executor
        self.log = log
        self.dry_run = executor.dry_run
        self.key_path = Path(key_path) if key_path else KEY_PATH
        self.pub_path = self.key_path.with_name(self.key_path.name + ".pub")
        self.config_path = Path(config_path) if config_path else SSH_CONFIG_PATH
        self.git_settings = GIT_SETTINGS if git_settings is None else git_settings
        # The agent runs as a Windows service; elsewhere it belongs to the session.
        if manage_agent_service is None:
            manage_agent_service = os.name == "nt"
        self.manage_agent_service = manage_agent_service

    # ── helpers ───────────────────────────────────────────────────────────

    def _ensure_dir(self, path: Path) -> None:
        if path.exists():
            return
        if self.dry_run:
            self.log.dry(f"mkdir {path}")
            return
        path.mkdir(parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(path, 0o700)
        self.log.info(f"Created dir {path}")

    def _failed(self, what: str, r) -> Result:
        detail = (r.stderr or r.stdout).strip()
        msg = f"{what} exited {r.exit_code}"
        return Result.failure(ErrorKind.COMMAND_FAILED, f"{msg}: {detail}" if detail else msg)

    def _append_managed_block(self, path: Path, marker: str, block: str) -> Result:
        """Append a marker-delimited block to *path* unless already present."""
        begin = f"# BEGIN GIT-SSH-SETUP {marker}"
        end = f"# END GIT-SSH-SETUP {marker}"
        wrapped = f"{begin}\n{block.rstrip()}\n{end}\n"

        # ssh config need not be UTF-8; undecodable bytes are written back as-is.
        try:
            current = (path.read_text(encoding="utf-8", errors="surrogateescape")
                       if path.exists() else "")
        except PermissionError as exc:
            return Result.failure(ErrorKind.PERMISSION_DENIED, str(exc))
        except OSError as exc:
            return Result.failure(ErrorKind.COMMAND_FAILED, str(exc))
        if begin in current:
            return Result.unchanged(f"block already present in {path}")

        prefix = current
        if prefix and not prefix.endswith("\n"):
            prefix += "\n"
        if prefix and not prefix.endswith("\n\n"):
            prefix += "\n"

        if self.dry_run:
            self.log.dry(f"{'update' if current else 'create'} file {path}")
            return Result.success(str(path), updated=bool(current))

        try:
            self._ensure_dir(path.parent)
            path.write_text(prefix + wrapped, encoding="utf-8",
                            errors="surrogateescape")
        except PermissionError as exc:
            return Result.failure(ErrorKind.PERMISSION_DENIED, str(exc))
        except OSError as exc:
            return Result.failure(ErrorKind.COMMAND_FAILED, str(exc))
        self.log.info(f"Wrote {path}")
        return Result.success(str(path), updated=bool(current))

    # ── git config ────────────────────────────────────────────────────────

    def git_get(self, key: str):
        r = self.executor.execute("git", ["config", "--global", "--get", key],
                                  readonly=True)
        value = r.stdout.strip()
        return value if r.ok and value else None

    def _git_setting_step(self, key: str, value: str) -> Step:
        def apply():
            current = self.git_get(key)
            r = self.executor.execute("git", ["config", "--global", key, value])
            if not r.ok:
                return self._failed(f"git config {key}", r)
            return Result.success(f"{key}={value}", updated=current is not None)

        return Step(
            name=f"git config {key}",
            check=lambda: self.git_get(key) == value,
            apply=apply,
        )

    # ── SSH key ───────────────────────────────────────────────────────────

    def _key_present(self) -> bool:
        return self.key_path.exists() and self.pub_path.exists()

    def _generate_key(self) -> Result:
        if self.key_path.exists():
            # Private half survived; rebuild the public half from it.
            if self.dry_run:
                self.log.dry(f"ssh-keygen -y -f {self.key_path} > {self.pub_path}")
                return Result.success(str(self.pub_path), updated=True)
            r = self.executor.execute("ssh-keygen", ["-y", "-f", self.key_path])
            if not r.ok:
                return self._failed("ssh-keygen -y", r)
            try:
                self.pub_path.write_text(f"{r.stdout.strip()} {self.email}\n",
                                         encoding="utf-8")
            except PermissionError as exc:
                return Result.failure(ErrorKind.PERMISSION_DENIED, str(exc))
            except OSError as exc:
                return Result.failure(ErrorKind.COMMAND_FAILED, str(exc))
            return Result.success(f"restored {self.pub_path}", updated=True)

        self._ensure_dir(self.key_path.parent)
        r = self.executor.execute("ssh-keygen", [
            "-t", "ed25519", "-C", self.email, "-f", self.key_path, "-N", "", "-q",
        ])
        if not r.ok:
            return self._failed("ssh-keygen", r)
        return Result.success(f"generated {self.key_path}")

    # ── ssh config ────────────────────────────────────────────────────────

    def _config_has_github(self) -> bool:
        if not self.config_path.exists():
            return False
        try:
            text = self.config_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            # Unreadable: let the apply side report why.
            return False
        return has_host_entry(text)

    def _write_config(self) -> Result:
        return self._append_managed_block(
            self.config_path, GITHUB_HOST, github_stanza(self.key_path),
        )

    # ── ssh-agent ─────────────────────────────────────────────────────────

    def _service_query(self, verb: str) -> str:
        r = self.executor.execute("sc.exe", [verb, AGENT_SERVICE], readonly=True)
        return r.stdout if r.ok else ""

    def _agent_autostart(self) -> bool:
        return bool(re.search(r"START_TYPE\s*:\s*2\s+AUTO_START",
                              self._service_query("qc")))

    def _agent_running(self) -> bool:
        return bool(re.search(r"STATE\s*:\s*4\s+RUNNING",
                              self._service_query("query")))

    def _set_autostart(self) -> Result:
        r = self.executor.execute("sc.exe", ["config", AGENT_SERVICE, "start=", "auto"])
        if not r.ok:
            return self._failed("sc.exe config", r)
        return Result.success("startup type automatic", updated=True)

    def _start_agent(self) -> Result:
        r = self.executor.execute("sc.exe", ["start", AGENT_SERVICE])
        if not r.ok:
            return self._failed("sc.exe start", r)
        return Result.success("started", updated=True)

    def _fingerprint(self):
        if not self.pub_path.exists():
            return None
        r = self.executor.execute("ssh-keygen", ["-l", "-f", self.pub_path],
                                  readonly=True)
        parts = r.stdout.split()
        return parts[1] if r.ok and len(parts) > 1 else None

    def _key_loaded(self) -> bool:
        fp = self._fingerprint()
        if fp is None:
            return False
        r = self.executor.execute("ssh-add", ["-l"], readonly=True)
        return r.ok and fp in r.stdout

    def _add_key(self) -> Result:
        r = self.executor.execute("ssh-add", [self.key_path])
        if not r.ok:
            return self._failed("ssh-add", r)
        return Result.success(f"added {self.key_path}")

    # ── step list ─────────────────────────────────────────────────────────

    def steps(self) -> list:
        settings = {"user.name": self.name, "user.email": self.email}
        settings.update(self.git_settings)

        steps = [
            precondition("git available",
                         lambda: self.executor.which("git") is not None,
                         "git is not installed or not on PATH"),
            precondition("ssh-keygen available",
                         lambda: self.executor.which("ssh-keygen") is not None,
                         "OpenSSH client is not installed (ssh-keygen not on PATH)"),
        ]
        steps += [self._git_setting_step(k, v) for k, v in settings.items()]
        steps += [
            Step(f"SSH key {self.key_path.name}", self._key_present, self._generate_key),
            Step(f"ssh config entry for {GITHUB_HOST}",
                 self._config_has_github, self._write_config),
            Step("ssh-agent starts automatically",
                 self._agent_autostart, self._set_autostart,
                 enabled=self.manage_agent_service,
                 disabled_reason="ssh-agent is not a Windows service here"),
            Step("ssh-agent running",
                 self._agent_running, self._start_agent,
                 enabled=self.manage_agent_service,
                 disabled_reason="ssh-agent is not a Windows service here"),
            Step("key loaded in ssh-agent", self._key_loaded, self._add_key),
        ]
        return steps

    # ── after the run ─────────────────────────────────────────────────────

    def public_key(self):
        if not self.pub_path.exists():
            return None
        return self.pub_path.read_text(encoding="utf-8").strip()

    def copy_to_clipboard(self, text: str) -> bool:
        if os.name == "nt":
            cmd = ["clip"]
        elif sys.platform == "darwin":
            cmd = ["pbcopy"]
        else:
            cmd = ["xclip", "-selection", "clipboard"]
        r = self.executor.execute(cmd[0], cmd[1:], stdin=text)
        return r.ok

    def test_connection(self) -> bool:
        """``ssh -T git@github.com``; GitHub exits 1 even when auth succeeds."""
        r = self.executor.execute(
            "ssh",
            ["-T", "-o", "StrictHostKeyChecking=accept-new", f"git@{GITHUB_HOST}"],
            timeout=30, readonly=True,
        )
        greeting = (r.stderr + r.stdout).strip()
        if "successfully authenticated" in greeting:
            self.log.info(greeting.splitlines()[0])
            return True
        self.log.warn(f"GitHub authentication failed (exit {r.exit_code}): "
                      f"{greeting or 'no output'}")
        return False

    def print_next_steps(self, copy: bool = False) -> None:
        key = self.public_key()
        if key is None:
            self.log.warn(f"No public key at {self.pub_path}")
            return
        print()
        print(f"  {key}")
        print()
        if copy and self.copy_to_clipboard(key):
            self.log.info("Public key copied to clipboard")
        self.log.info(f"Add it to your GitHub account: {GITHUB_KEYS_URL}")


# ── CLI ──────────────────────────────────────────────────────────────────────

def _prompt(label: str):
    try:
        answer = input(f"  {label}: ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        return None
    return answer or None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="git-ssh-setup",
        description="Configure Git and register an SSH key for GitHub.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  git-ssh-setup --name "Ada Lovelace" --email ada@example.com
  git-ssh-setup --copy --test-connection    # reuse existing git identity
  git-ssh-setup --dry-run                   # preview without changes
""",
    )
    p.add_argument("--name", help="git user.name (default: current global value)")
    p.add_argument("--email", help="git user.email and SSH key comment")
    p.add_argument("--key-path", type=Path, default=KEY_PATH,
                   help=f"private key location (default: {KEY_PATH})")
    p.add_argument("--ssh-config", type=Path, default=SSH_CONFIG_PATH,
                   help=f"ssh client config (default: {SSH_CONFIG_PATH})")
    p.add_argument("--log-path", type=Path,
                   help="log file (default: timestamped file in the temp dir)")
    p.add_argument("--copy", action="store_true",
                   help="copy the public key to the clipboard")
    p.add_argument("--test-connection", action="store_true",
                   help="run 'ssh -T git@github.com' after setup")
    p.add_argument("--dry-run", action="store_true",
                   help="print commands without executing them")
    p.add_argument("-q", "--quiet", action="store_true",
                   help="suppress per-command output; show only steps, "
                        "warnings, and errors")
    return p


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    log_path = args.log_path or default_log_path("git-ssh-setup")

    with RunLog(log_path, quiet=args.quiet, name="git_ssh_setup") as log:
        executor = CommandExecutor(log, dry_run=args.dry_run)
        setup = GitSshSetup(args.name, args.email, executor, log,
                            key_path=args.key_path, config_path=args.ssh_config)

        if executor.which("git") is None:
            log.error("git is not installed or not on PATH")
            sys.exit(1)

        setup.name = setup.name or setup.git_get("user.name") or _prompt("Git user name")
        setup.email = setup.email or setup.git_get("user.email") or _prompt("Git email")
        if not setup.name or not setup.email:
            log.error("A git user name and email are required (--name/--email)")
            sys.exit(1)

        log.banner(f"git-ssh-setup — {setup.name} <{setup.email}>")
        runner = Runner(log)
        try:
            report = runner.run(setup.steps())
        except Exception:
            log.logger.exception("Unexpected failure during setup")
            sys.exit(1)
        runner.summarize(report, title="Git/SSH setup")

        if not report.ok:
            sys.exit(1)

        setup.print_next_steps(copy=args.copy)
        if args.test_connection:
            setup.test_connection()


if __name__ == "__main__":
    main()
