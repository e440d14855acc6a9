"""
ssh_add_driver.py — Drive an interactive `ssh-add` through a pseudo-terminal.

ssh-add reads the key passphrase from its controlling terminal, so it is
spawned in a pty (pexpect) and answered by a small state machine:

  SPAWNED → AWAITING_PROMPT ─┬─ passphrase prompt → PASSPHRASE_SENT → AWAITING_PROMPT
                             ├─ "Identity added:"  → AWAITING_PROMPT (one more key added)
                             ├─ end of output      → SUCCESS if a key was added and ssh-add
                             │                       exited 0, else FAILED
                             │                       (RegistrationTerminationError)
                             └─ no event in time   → FAILED (RegistrationTimeoutError)

ssh-add is run to completion so every key named on the command line gets
its prompt answered and its trailing output reaches the transcript.

The timeout is measured from the last state transition: every expect() call
gets the full budget. The secret only ever travels over the child's terminal
input; the transcript shown to the operator is detached while it is written
and every transcript write is masked.
"""

from __future__ import annotations

import enum
import logging
import signal
import sys
from typing import Callable, Dict, List, Mapping, Optional, Sequence, TextIO

import pexpect

logger = logging.getLogger(__name__)

# ── Markers & defaults ────────────────────────────────────────────────────────

PROMPT_PATTERN  = r"(?:Enter passphrase|Bad passphrase, try again) for [^\r\n]*?:"
SUCCESS_PATTERN = r"Identity added:"

DEFAULT_TIMEOUT = 60.0
MASK            = "********"

_TRAPPED_SIGNALS = [s for s in ("SIGTERM", "SIGHUP") if hasattr(signal, s)]


# ── Errors ────────────────────────────────────────────────────────────────────

class RegistrationError(Exception):
    """Base class for a failed key registration."""


class RegistrationTimeoutError(RegistrationError):
    pass


class RegistrationTerminationError(RegistrationError):
    def __init__(self, message: str, exit_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_status = exit_status


class RegistrationInterrupted(RegistrationError):
    pass


# ── Transcript ────────────────────────────────────────────────────────────────

class RedactingTranscript:
    """
    File-like wrapper that masks the secret in everything written through it.

    A trailing fragment that could be the start of the secret is held back
    until the next write() shows whether it completes the secret, so a
    secret split across two pty reads is still masked. release() writes out
    whatever is still held.
    """

    def __init__(self, stream: TextIO, secret: str, mask: str = MASK) -> None:
        self._stream  = stream
        self._secret  = secret
        self._mask    = mask
        self._pending = ""

    def _held(self, text: str) -> int:
        for size in range(min(len(self._secret) - 1, len(text)), 0, -1):
            if self._secret.startswith(text[-size:]):
                return size
        return 0

    def write(self, data: str) -> int:
        if not self._secret:
            return self._stream.write(data)
        text = (self._pending + data).replace(self._secret, self._mask)
        held = self._held(text)
        self._pending = text[len(text) - held:] if held else ""
        self._stream.write(text[:len(text) - held])
        return len(data)

    def flush(self) -> None:
        self._stream.flush()

    def release(self) -> None:
        if self._pending:
            self._stream.write(self._pending)
            self._pending = ""
        self._stream.flush()


# ── State machine ─────────────────────────────────────────────────────────────

class DriverState(enum.Enum):
    SPAWNED         = "spawned"
    AWAITING_PROMPT = "awaiting-prompt"
    PASSPHRASE_SENT = "passphrase-sent"
    SUCCESS         = "success"
    FAILED          = "failed"


class RegistrationDriver:
    """
    Answers passphrase prompts of an already spawned child.

    `child` only needs the slice of the pexpect.spawn API used here:
    expect(), sendline(), close(), the logfile_read attribute and
    exitstatus / signalstatus.
    """

    # Index order matters: run() dispatches on the position of the match.
    PATTERNS = [PROMPT_PATTERN, SUCCESS_PATTERN, pexpect.EOF, pexpect.TIMEOUT]

    def __init__(self, child, secret: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.child    = child
        self.timeout  = timeout
        self.state    = DriverState.SPAWNED
        self.prompts  = 0
        self.added    = 0
        self._secret  = secret

    def _transition(self, state: DriverState) -> None:
        logger.debug("ssh-add driver: %s → %s", self.state.value, state.value)
        self.state = state

    def _send_secret(self) -> None:
        self._transition(DriverState.PASSPHRASE_SENT)
        self.prompts += 1
        transcript = self.child.logfile_read
        self.child.logfile_read = None
        try:
            self.child.sendline(self._secret)
        finally:
            self.child.logfile_read = transcript
        self._transition(DriverState.AWAITING_PROMPT)

    def _exit_status(self) -> Optional[int]:
        self.child.close()
        if self.child.exitstatus is not None:
            return self.child.exitstatus
        if self.child.signalstatus is not None:
            return -self.child.signalstatus
        return None

    def run(self) -> DriverState:
        self._transition(DriverState.AWAITING_PROMPT)
        while True:
            index = self.child.expect(self.PATTERNS, timeout=self.timeout)

            if index == 0:
                self._send_secret()
                continue

            if index == 1:
                self.added += 1
                logger.debug("ssh-add driver: identity %d added", self.added)
                continue

            if index == 2:
                status = self._exit_status()
                if self.added and status == 0:
                    self._transition(DriverState.SUCCESS)
                    return self.state
                self._transition(DriverState.FAILED)
                detail = f" (exit status {status})" if status is not None else ""
                if self.added:
                    raise RegistrationTerminationError(
                        f"ssh-add failed after adding {self.added} key(s){detail}.", status
                    )
                raise RegistrationTerminationError(
                    f"ssh-add ended before the key was added{detail}.", status
                )

            self._transition(DriverState.FAILED)
            raise RegistrationTimeoutError(
                f"Timed out after {self.timeout:g}s waiting for ssh-add "
                f"({self.prompts} passphrase prompt(s) answered)."
            )


# ── Signal handling ───────────────────────────────────────────────────────────

def _trap_signals() -> Dict[int, object]:
    def _sig(signum, frame):
        raise RegistrationInterrupted(f"Interrupted by {signal.Signals(signum).name}.")

    previous: Dict[int, object] = {}
    for name in _TRAPPED_SIGNALS:
        signum = getattr(signal, name)
        previous[signum] = signal.signal(signum, _sig)
    return previous


def _restore_signals(previous: Dict[int, object]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _reap(child) -> None:
    try:
        child.close(force=True)
    except pexpect.ExceptionPexpect as exc:
        logger.warning("could not reap ssh-add: %s", exc)


# ── Entry point ───────────────────────────────────────────────────────────────

def drive_registration(
    command: Sequence[str],
    secret: str,
    timeout: float = DEFAULT_TIMEOUT,
    transcript: Optional[TextIO] = None,
    env: Optional[Mapping[str, str]] = None,
    spawn: Optional[Callable] = None,
) -> RegistrationDriver:
    """
    Spawn `command` in a pty and feed `secret` to its passphrase prompts.

    Returns the finished driver on success. Raises RegistrationTimeoutError,
    RegistrationTerminationError or RegistrationInterrupted otherwise; the
    child is closed (killed if still running) in every case.
    """
    spawn = spawn or pexpect.spawn
    args: List[str] = list(command)

    child = spawn(
        args[0],
        args=args[1:],
        env=dict(env) if env is not None else None,
        timeout=timeout,
        encoding="utf-8",
        codec_errors="replace",
    )
    output = RedactingTranscript(
        transcript if transcript is not None else sys.stdout, secret
    )
    child.logfile_read = output
    driver = RegistrationDriver(child, secret, timeout)

    previous = _trap_signals()
    try:
        driver.run()
    except KeyboardInterrupt:
        driver.state = DriverState.FAILED
        raise RegistrationInterrupted("Interrupted by operator.") from None
    except RegistrationInterrupted:
        driver.state = DriverState.FAILED
        raise
    finally:
        _restore_signals(previous)
        _reap(child)
        output.release()
    return driver
