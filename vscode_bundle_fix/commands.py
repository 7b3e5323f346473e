"""Thin wrappers around the external macOS utilities the tool shells out to."""

from __future__ import annotations

import getpass
import logging
import os
import platform
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .errors import MissingCommandError, UnsupportedPlatformError

logger = logging.getLogger(__name__)

DIAGNOSE_COMMANDS: Tuple[str, ...] = ("xattr", "codesign", "ls")
REPAIR_COMMANDS: Tuple[str, ...] = DIAGNOSE_COMMANDS + ("osascript", "chflags", "chown", "chmod")


@dataclass(frozen=True)
class CommandResult:
    argv: Tuple[str, ...]
    returncode: Optional[int]
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    @property
    def command(self) -> str:
        return shlex.join(self.argv)


Runner = Callable[[Sequence[str]], CommandResult]


def run_command(argv: Sequence[str], *, timeout_s: Optional[float] = None) -> CommandResult:
    """Run ``argv`` without a shell and capture its output.

    A command that cannot be started or that times out yields a result with
    ``returncode=None`` instead of raising, so callers only ever inspect the
    result.
    """
    args = tuple(str(arg) for arg in argv)
    logger.debug("$ %s", shlex.join(args))
    try:
        proc = subprocess.run(args, capture_output=True, text=True, timeout=timeout_s, check=False)
    except FileNotFoundError as exc:
        return CommandResult(args, None, "", f"{exc}\n")
    except subprocess.TimeoutExpired:
        return CommandResult(args, None, "", f"timed out after {timeout_s}s\n")
    if proc.returncode != 0:
        logger.debug("exit %s: %s", proc.returncode, proc.stderr.strip())
    return CommandResult(args, proc.returncode, proc.stdout, proc.stderr)


def is_macos() -> bool:
    return platform.system() == "Darwin"


def ensure_macos() -> None:
    if not is_macos():
        raise UnsupportedPlatformError("This tool is intended for macOS (Darwin) only.")


def is_root(euid: Optional[int] = None) -> bool:
    return (os.geteuid() if euid is None else euid) == 0


def require_commands(names: Iterable[str]) -> None:
    missing = [name for name in names if shutil.which(name) is None]
    if missing:
        raise MissingCommandError(missing)


def required_commands(mode: str, *, euid: Optional[int] = None) -> List[str]:
    if mode != "repair":
        return list(DIAGNOSE_COMMANDS)
    names = list(REPAIR_COMMANDS)
    if not is_root(euid):
        names.append("sudo")
    return names


def elevated(argv: Sequence[str], *, euid: Optional[int] = None) -> List[str]:
    """Prefix ``argv`` with sudo unless we already run as root."""
    args = [str(arg) for arg in argv]
    return args if is_root(euid) else ["sudo", *args]


def invoking_user() -> str:
    # under sudo the bundle should go back to the human, not root
    return os.environ.get("SUDO_USER") or getpass.getuser()
