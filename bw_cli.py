"""
bw_cli.py — Thin client for the Bitwarden CLI (`bw`).

Only the four sub-commands vault-ssh-add needs are wrapped:

  bw login --check          → is the operator logged in?
  bw unlock --check         → is the vault unlocked for this session?
  bw unlock --raw           → interactive unlock, prints a session token
  bw get password ITEM      → prints the password of a single item

The session token is passed explicitly to each call through the child's
environment (BW_SESSION); it is never written back into os.environ.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────

BW_BIN      = os.environ.get("BW_BIN", "bw")
SESSION_VAR = "BW_SESSION"


# ── Errors ────────────────────────────────────────────────────────────────────

class VaultError(Exception):
    """Base class for failures talking to the vault CLI."""


class AuthenticationError(VaultError):
    """The operator is not logged in, or unlocking the vault failed."""


class SecretRetrievalError(VaultError):
    """The item lookup failed (missing item, ambiguous match, empty value)."""


# ── Helpers ───────────────────────────────────────────────────────────────────

def session_env(session: Optional[str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment for a `bw` call: `base` with BW_SESSION set to `session` (or removed)."""
    env = dict(os.environ if base is None else base)
    env.pop(SESSION_VAR, None)
    if session:
        env[SESSION_VAR] = session
    return env


def _run(args: list[str], session: Optional[str], bw: str = BW_BIN,
         capture: bool = True) -> subprocess.CompletedProcess:
    logger.debug("running %s %s", bw, args[0] if args else "")
    return subprocess.run(
        [bw, *args],
        env=session_env(session),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE if capture else None,
        text=True,
        check=False,
    )


def _stderr_message(proc: subprocess.CompletedProcess, fallback: str) -> str:
    msg = (proc.stderr or "").strip()
    return msg.splitlines()[-1] if msg else fallback


# ── Vault client ──────────────────────────────────────────────────────────────

def is_logged_in(bw: str = BW_BIN) -> bool:
    proc = _run(["login", "--check"], None, bw)
    logger.debug("bw login --check → %s", proc.returncode)
    return proc.returncode == 0


def is_unlocked(session: Optional[str], bw: str = BW_BIN) -> bool:
    proc = _run(["unlock", "--check"], session, bw)
    logger.debug("bw unlock --check → %s", proc.returncode)
    return proc.returncode == 0


def unlock(bw: str = BW_BIN) -> str:
    """
    Run `bw unlock --raw` interactively and return the session token.

    The master password prompt is written by bw to the operator's terminal;
    only stdout (the token) is captured.
    """
    proc = _run(["unlock", "--raw"], None, bw, capture=False)
    token = (proc.stdout or "").strip()
    if proc.returncode != 0 or not token:
        raise AuthenticationError("Could not unlock the vault.")
    return token


def ensure_session(session: Optional[str] = None, bw: str = BW_BIN) -> Optional[str]:
    """
    Make sure the vault is usable and return the session token to use.

    Raises AuthenticationError when the operator is not logged in; that has
    to be fixed outside this tool with `bw login`.
    """
    if not is_logged_in(bw):
        raise AuthenticationError("Not logged in to the vault. Run: bw login")
    if is_unlocked(session, bw):
        return session
    print("🔒  Vault is locked. Unlocking…")
    return unlock(bw)


def get_password(item: str, session: Optional[str], bw: str = BW_BIN) -> str:
    """Fetch the password field of `item`. The value is never logged."""
    proc = _run(["get", "password", item], session, bw)
    if proc.returncode != 0:
        logger.info("secret retrieval for %r failed", item)
        raise SecretRetrievalError(
            f"Could not retrieve '{item}': {_stderr_message(proc, 'bw get failed')}"
        )
    secret = (proc.stdout or "").rstrip("\r\n")
    if not secret:
        logger.info("secret retrieval for %r returned nothing", item)
        raise SecretRetrievalError(f"Item '{item}' has an empty password.")
    logger.info("retrieved secret for %r", item)
    return secret
