#!/usr/bin/env python3
"""
vault-ssh-add — Unlock an SSH key with a passphrase stored in Bitwarden

Flow:
  • Check that bw, ssh-add and a running ssh-agent are available
  • Validate the end-of-day cutoff (SSH_ADD_EOD)
  • Make sure the vault is logged in and unlocked (prompts for the master
    password if it is locked)
  • Fetch the passphrase with `bw get password ITEM`
  • Run ssh-add in a pseudo-terminal and answer its passphrase prompt; the
    passphrase never appears in argv, the environment or the transcript
  • The key expires from the agent at the cutoff, or 3 hours from now when
    the cutoff has already passed today

Usage:
  vault-ssh-add [-v] [--timeout SECONDS] ITEM [SSH-ADD-ARGS...]

Environment:
  SSH_ADD_EOD        Daily cutoff HH:MM:SS (default 17:00:00, empty = no lifetime)
  SSH_ADD_TIMEOUT    Seconds to wait for each ssh-add prompt (default 60)
  SSH_ADD_BIN        ssh-add executable (default ssh-add)
  BW_BIN             Bitwarden CLI executable (default bw)
  BW_SESSION         Existing vault session, reused while it is still unlocked
"""

from __future__ import annotations

import argparse
import logging
import math
import os
import re
import shutil
import sys
from datetime import datetime, time
from typing import Mapping, Optional

# ── Dependency check ──────────────────────────────────────────────────────────

_MISSING: list[str] = []
try:
    import pexpect  # noqa: F401
except ImportError:
    _MISSING.append("pexpect>=4.8")

if _MISSING:
    print("❌  Missing dependencies. Install them with:", file=sys.stderr)
    print(f"    pip install {' '.join(_MISSING)}", file=sys.stderr)
    sys.exit(1)

import bw_cli
from bw_cli import VaultError
from ssh_add_driver import (
    DEFAULT_TIMEOUT,
    RegistrationError,
    RegistrationInterrupted,
    drive_registration,
)

logger = logging.getLogger(__name__)

# ── Config & constants ────────────────────────────────────────────────────────

EOD_VAR     = "SSH_ADD_EOD"
TIMEOUT_VAR = "SSH_ADD_TIMEOUT"
SSH_ADD_BIN = os.environ.get("SSH_ADD_BIN", "ssh-add")

DEFAULT_CUTOFF   = "17:00:00"
FALLBACK_SECONDS = 3 * 3600
UNLIMITED        = None

_CUTOFF_RE = re.compile(r"([01][0-9]|2[0-3]):([0-5][0-9]):([0-5][0-9])")


class ConfigurationError(Exception):
    pass


class DependencyMissingError(Exception):
    pass


# ── Lifetime ──────────────────────────────────────────────────────────────────

def parse_cutoff(value: str) -> time:
    """Parse a strict HH:MM:SS daily cutoff."""
    match = _CUTOFF_RE.fullmatch(value)
    if match is None:
        raise ConfigurationError(
            f"Invalid {EOD_VAR} value {value!r}: expected HH:MM:SS (00-23:00-59:00-59)."
        )
    hours, minutes, seconds = (int(g) for g in match.groups())
    return time(hours, minutes, seconds)


def compute_lifetime(override: Optional[str], now: datetime) -> Optional[int]:
    """
    Seconds until today's cutoff, or UNLIMITED when `override` is "".

    `override` None means the default cutoff. When the cutoff has already
    passed today (or is exactly now) the fixed 3-hour fallback is used; there
    is no rollover to tomorrow's cutoff.
    """
    if override == "":
        return UNLIMITED
    cutoff = parse_cutoff(DEFAULT_CUTOFF if override is None else override)

    now = now.replace(microsecond=0)
    candidate = datetime.combine(now.date(), cutoff, tzinfo=now.tzinfo)
    remaining = int(candidate.timestamp() - now.timestamp())
    if remaining > 0:
        return remaining
    return FALLBACK_SECONDS


def lifetime_args(policy: Optional[int]) -> list[str]:
    if policy is UNLIMITED:
        return []
    return ["-t", str(policy)]


def describe_lifetime(policy: Optional[int]) -> str:
    if policy is UNLIMITED:
        return "unlimited"
    hours, rest = divmod(policy, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h {minutes}m {seconds}s"


def build_command(ssh_add: str, policy: Optional[int], passthrough: list[str]) -> list[str]:
    return [ssh_add, *lifetime_args(policy), *passthrough]


# ── Validation ────────────────────────────────────────────────────────────────

def read_cutoff_override(environ: Mapping[str, str]) -> Optional[str]:
    """Return the raw SSH_ADD_EOD value (None when unset), validated."""
    if EOD_VAR not in environ:
        return None
    value = environ[EOD_VAR]
    if value != "":
        parse_cutoff(value)
    return value


def read_timeout(environ: Mapping[str, str], cli_value: Optional[float] = None) -> float:
    if cli_value is not None:
        timeout = cli_value
    elif environ.get(TIMEOUT_VAR):
        try:
            timeout = float(environ[TIMEOUT_VAR])
        except ValueError:
            raise ConfigurationError(
                f"Invalid {TIMEOUT_VAR} value {environ[TIMEOUT_VAR]!r}: expected seconds."
            ) from None
    else:
        timeout = DEFAULT_TIMEOUT
    if not math.isfinite(timeout) or timeout <= 0:
        raise ConfigurationError(f"Timeout must be positive, got {timeout:g}.")
    return timeout


def check_dependencies(environ: Mapping[str, str]) -> None:
    missing = [cmd for cmd in (bw_cli.BW_BIN, SSH_ADD_BIN) if shutil.which(cmd) is None]
    if missing:
        raise DependencyMissingError(f"Required command(s) not found: {', '.join(missing)}")
    if not environ.get("SSH_AUTH_SOCK"):
        raise DependencyMissingError(
            "No ssh-agent found (SSH_AUTH_SOCK is not set). "
            'Start one with: eval "$(ssh-agent -s)"'
        )


# ── Orchestration ─────────────────────────────────────────────────────────────

def run(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None) -> int:
    environ = os.environ if environ is None else environ

    check_dependencies(environ)
    override = read_cutoff_override(environ)
    timeout  = read_timeout(environ, args.timeout)

    passthrough: list[str] = list(args.ssh_add_args)
    if passthrough and passthrough[0] == "--":
        passthrough = passthrough[1:]

    bw = bw_cli.BW_BIN
    session = bw_cli.ensure_session(environ.get(bw_cli.SESSION_VAR) or None, bw=bw)
    secret  = bw_cli.get_password(args.item, session, bw=bw)
    print(f"🔑  Retrieved passphrase for '{args.item}'")

    policy  = compute_lifetime(override, now or datetime.now())
    command = build_command(SSH_ADD_BIN, policy, passthrough)
    logger.debug("ssh-add argv: %s", command)
    print(f"⏳  Adding key (lifetime: {describe_lifetime(policy)})…")

    drive_registration(command, secret, timeout=timeout, env=bw_cli.session_env(None, environ))
    print("✅  Key added to agent.")
    return 0


# ── Entry point ───────────────────────────────────────────────────────────────

class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # exit 1 like every other validation failure
        self.print_usage(sys.stderr)
        print(f"❌  {message}", file=sys.stderr)
        sys.exit(1)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="vault-ssh-add",
        description="🔐  vault-ssh-add — add an SSH key using a passphrase stored in Bitwarden",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging (never shows the passphrase)")
    parser.add_argument(
        "--timeout", type=float, default=None,
        help=f"Seconds to wait for each ssh-add prompt (default ${TIMEOUT_VAR} or {DEFAULT_TIMEOUT:g})",
    )
    parser.add_argument("item", help="Bitwarden item holding the key passphrase")
    parser.add_argument(
        "ssh_add_args",
        nargs=argparse.REMAINDER,
        help="Arguments passed to ssh-add after the lifetime flag, e.g. ~/.ssh/id_ed25519",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        return run(args)
    except RegistrationInterrupted as exc:
        print(f"\n❌  {exc}", file=sys.stderr)
        return 130
    except KeyboardInterrupt:
        print("\n❌  Interrupted by operator.", file=sys.stderr)
        return 130
    except (ConfigurationError, DependencyMissingError, VaultError, RegistrationError) as exc:
        print(f"❌  {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
