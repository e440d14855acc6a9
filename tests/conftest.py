"""
Shared fixtures: a scripted stand-in for a pexpect child, and a helper to
write small Python programs that behave like ssh-add.
"""

from __future__ import annotations

import sys
import textwrap

import pytest

SECRET = "correct horse battery staple"

_EVENT_INDEX = {"prompt": 0, "success": 1, "eof": 2, "timeout": 3}


class FakeChild:
    """
    Replays a list of (event, output) pairs, one per expect() call.

    event is one of prompt / success / eof / timeout / interrupt. When `echo`
    is set, the line sent by sendline() is written back to the transcript on
    the next expect(), like a pty with echo left on.
    """

    def __init__(self, events, echo=False, exitstatus=0):
        self.events = list(events)
        self.echo = echo
        self.logfile_read = None
        self.sent = []
        self.expect_timeouts = []
        self.closed = False
        self.forced = False
        self.exitstatus = None
        self.signalstatus = None
        self._final_status = exitstatus
        self._pending_echo = ""
        self.spawned_with = None

    def expect(self, patterns, timeout=-1):
        self.expect_timeouts.append(timeout)
        if self._pending_echo and self.logfile_read is not None:
            self.logfile_read.write(self._pending_echo)
        self._pending_echo = ""
        event, output = self.events.pop(0)
        if event == "interrupt":
            raise KeyboardInterrupt
        if output and self.logfile_read is not None:
            self.logfile_read.write(output)
        return _EVENT_INDEX[event]

    def sendline(self, s=""):
        self.sent.append(s)
        if self.logfile_read is not None:
            self.logfile_read.write(f"[written while attached: {s}]")
        if self.echo:
            self._pending_echo = s + "\r\n"

    def close(self, force=False):
        self.closed = True
        self.forced = self.forced or force
        self.exitstatus = self._final_status


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def fake_child():
    """Factory: fake_child(events, **kw) → (child, spawn) pair."""

    def _make(events, **kwargs):
        child = FakeChild(events, **kwargs)

        def spawn(command, args=(), **spawn_kwargs):
            child.spawned_with = (command, list(args), spawn_kwargs)
            return child

        return child, spawn

    return _make


@pytest.fixture
def fake_ssh_add(tmp_path):
    """Write a Python program to tmp_path and return the argv that runs it."""

    def _write(source: str) -> list:
        script = tmp_path / "fake_ssh_add.py"
        script.write_text(textwrap.dedent(source))
        return [sys.executable, str(script)]

    return _write
