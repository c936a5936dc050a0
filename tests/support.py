"""Shared test doubles: scripted executor, in-memory durable store."""

import os
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from provision import CommandExecutor, CommandResult, RunLog

_DEVNULL = open(os.devnull, "w")


class FakeExecutor(CommandExecutor):
    """Executor that dispatches to registered handlers instead of processes.

    Handlers are matched on the command's base name (``.exe`` stripped) and
    a prefix of its arguments; later registrations win.  Unmatched commands
    succeed with empty output.
    """

    def __init__(self, log, dry_run=False, tools=()):
        super().__init__(log, dry_run=dry_run)
        self.tools = set(tools)
        self.calls = []
        self._handlers = []

    def on(self, name, *prefix, result=None, handler=None):
        self._handlers.append((name, list(prefix), handler or (lambda args: result)))

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None

    def execute(self, command, args=(), timeout=None, readonly=False, stdin=None):
        name = Path(str(command)).name.lower()
        if name.endswith(".exe"):
            name = name[:-4]
        args = [str(a) for a in args]
        self.calls.append((name, args, readonly))
        for hname, prefix, fn in reversed(self._handlers):
            if hname == name and args[:len(prefix)] == prefix:
                return fn(args)
        return CommandResult(0)

    def mutating(self, name=None):
        return [(n, a) for n, a, ro in self.calls
                if not ro and (name is None or n == name)]


class MemoryStore:
    """Durable environment store backed by a dict."""

    def __init__(self, values=None, writable=True):
        self.values = {}
        for (scope, name), value in (values or {}).items():
            self.values[(scope, name.lower())] = value
        self.writable = writable

    def get(self, name, scope):
        return self.values.get((scope, name.lower()))

    def set(self, name, value, scope):
        if not self.writable:
            raise PermissionError("Access is denied")
        self.values[(scope, name.lower())] = value


class ProvisionTestCase(unittest.TestCase):
    """Base class that provides a console-only RunLog and hides its output."""

    def setUp(self):
        self.log = RunLog(name=f"test.{self.id()}")
        self._suppress = redirect_stdout(_DEVNULL)
        self._suppress.__enter__()

    def tearDown(self):
        self._suppress.__exit__(None, None, None)
        self.log.close()
