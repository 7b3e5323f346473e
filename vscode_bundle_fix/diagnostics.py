"""Read-only checks explaining why a VS Code bundle cannot update itself."""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

from .commands import CommandResult, Runner, run_command
from .system_state import (
    find_processes,
    helper_process_pattern,
    main_process_pattern,
    mount_for_path,
    ownership_snapshot,
    which_shim,
)
from .target import RunOptions, Target

logger = logging.getLogger(__name__)

QUARANTINE_ATTR = "com.apple.quarantine"
IMMUTABLE_FLAGS = ("uchg", "schg")
DIAGNOSE_LOG_LINES = 160
VERBOSE_FLAG_LINES = 5


class Status(enum.Enum):
    OK = "ok"
    FAIL = "fail"
    INFO = "info"


@dataclass
class CheckResult:
    title: str
    status: Status
    summary: str
    details: List[str] = field(default_factory=list)


@dataclass
class Report:
    mode: str
    target: Target
    checks: List[CheckResult] = field(default_factory=list)

    def find(self, title: str) -> Optional[CheckResult]:
        return next((check for check in self.checks if check.title == title), None)

    @property
    def writable(self) -> Optional[bool]:
        check = self.find(WRITABILITY_TITLE)
        return None if check is None else check.status is Status.OK

    @property
    def signature_ok(self) -> Optional[bool]:
        check = self.find(SIGNATURE_TITLE)
        return None if check is None else check.status is Status.OK


WRITABILITY_TITLE = "Writability test (inside bundle)"
SIGNATURE_TITLE = "codesign verification"


def codesign_log_path(target: Target, directory: Optional[Path] = None) -> Path:
    base = Path(directory) if directory is not None else Path(tempfile.gettempdir())
    return base / f"vscode-{target.channel.value}-codesign.log"


def diagnose(
    target: Target,
    options: RunOptions,
    *,
    runner: Runner = run_command,
    log_path: Optional[Path] = None,
) -> Report:
    """Run every check against ``target`` and return them in report order.

    The checks are independent: a failing or crashing check is recorded and
    the remaining ones still run.
    """
    log_path = log_path or codesign_log_path(target)
    verbose = options.verbose
    report = Report(mode="diagnose", target=target)
    checks: List[Tuple[str, Callable[[], CheckResult]]] = [
        ("Bundle info", lambda: bundle_info(target)),
        ("Ownership / perms (top-level)", lambda: check_ownership(target)),
        ("Filesystem", lambda: check_mount(target)),
        ("Extended attributes (quarantine?)", lambda: check_quarantine(target, runner=runner, verbose=verbose)),
        ("File flags (immutable?)", lambda: check_file_flags(target, runner=runner, verbose=verbose)),
        (SIGNATURE_TITLE, lambda: verify_signature(target, log_path, runner=runner)),
        (WRITABILITY_TITLE, lambda: check_writability(target)),
        ("Running processes (best-effort)", lambda: check_processes(target, verbose=verbose)),
        ("Shell PATH install sanity (optional)", lambda: check_cli_shim(target)),
    ]
    for title, check in checks:
        report.checks.append(guarded(check, title))
    return report


def guarded(check: Callable[[], CheckResult], title: str) -> CheckResult:
    try:
        return check()
    except (OSError, psutil.Error, subprocess.SubprocessError) as exc:
        logger.warning("check failed: %s", exc)
        return CheckResult(title=title, status=Status.FAIL, summary=f"check failed: {exc}")


def bundle_info(target: Target) -> CheckResult:
    return CheckResult(
        title=f"{target.display_name} ({target.channel.value}): bundle info",
        status=Status.INFO,
        summary=f"Path: {target.path}",
        details=[
            f"Bundle ID: {target.bundle_id}",
            f"Bundle Name: {target.bundle_name}",
            f"Executable: {target.executable}",
        ],
    )


def check_ownership(target: Target) -> CheckResult:
    title = "Ownership / perms (top-level)"
    try:
        snapshot = ownership_snapshot(target.path)
    except OSError as exc:
        return CheckResult(title, Status.FAIL, f"stat failed: {exc}")
    return CheckResult(title, Status.INFO, f"Owner={snapshot.owner} Group={snapshot.group} Mode={snapshot.mode}")


def check_mount(target: Target) -> CheckResult:
    title = "Filesystem"
    mount = mount_for_path(target.path)
    if mount is None:
        return CheckResult(title, Status.INFO, "Mount flags: no mount entry found for this path")
    if mount.read_only:
        return CheckResult(
            title,
            Status.FAIL,
            f"Mount flags: {mount.describe()}",
            ["The volume is mounted read-only; the bundle cannot be updated in place."],
        )
    return CheckResult(title, Status.OK, f"Mount flags: {mount.describe()}")


def check_quarantine(target: Target, *, runner: Runner = run_command, verbose: bool = False) -> CheckResult:
    title = "Extended attributes (quarantine?)"
    listing = runner(["xattr", "-l", str(target.path)])
    present = QUARANTINE_ATTR in listing.stdout
    details: List[str] = []
    if present and verbose:
        payload = runner(["xattr", "-p", QUARANTINE_ATTR, str(target.path)])
        details.extend(_lines(payload.output))
    if verbose:
        details.append("xattr summary (top-level):")
        details.extend(_lines(listing.stdout) or ["(none)"])
    if present:
        return CheckResult(title, Status.FAIL, "QUARANTINE: PRESENT", details)
    return CheckResult(title, Status.OK, "QUARANTINE: not present", details)


def check_file_flags(target: Target, *, runner: Runner = run_command, verbose: bool = False) -> CheckResult:
    title = "File flags (immutable?)"
    if verbose:
        result = runner(["ls", "-lO", str(target.path)])
        lines = _lines(result.output)[:VERBOSE_FLAG_LINES]
    else:
        result = runner(["ls", "-ldO", str(target.path)])
        lines = _lines(result.output)
    if not result.ok:
        return CheckResult(title, Status.INFO, "flags: unavailable", lines)
    if _has_immutable_flag(lines):
        return CheckResult(title, Status.FAIL, "IMMUTABLE: PRESENT", lines)
    return CheckResult(title, Status.OK, "IMMUTABLE: not present", lines)


def verify_signature(
    target: Target,
    log_path: Path,
    *,
    runner: Runner = run_command,
    max_lines: int = DIAGNOSE_LOG_LINES,
    failure_note: Optional[str] = None,
) -> CheckResult:
    """Verify the bundle's signature, keeping codesign's output in ``log_path``."""
    result = runner(["codesign", "--verify", "--deep", "--strict", "--verbose=2", str(target.path)])
    _write_log(log_path, result)
    if result.ok:
        return CheckResult(SIGNATURE_TITLE, Status.OK, "codesign: OK")
    details = _lines(result.output)[:max_lines]
    summary = "codesign: FAIL" if failure_note is None else f"codesign: FAIL ({failure_note})"
    return CheckResult(SIGNATURE_TITLE, Status.FAIL, summary, details)


def check_writability(
    target: Target,
    *,
    as_user: Optional[str] = None,
    runner: Runner = run_command,
) -> CheckResult:
    """Try to create and remove a scratch directory inside ``Contents``.

    With ``as_user`` the write test runs through ``sudo -u`` so that a root-run
    repair tests what the owning user can do.
    """
    if as_user is None:
        try:
            scratch = tempfile.mkdtemp(prefix="_writetest_", dir=target.contents_dir)
        except OSError as exc:
            logger.debug("write test failed: %s", exc)
            return _not_writable()
        try:
            os.rmdir(scratch)
        except OSError as exc:
            logger.warning("could not remove %s: %s", scratch, exc)
        return _writable()

    scratch_path = target.contents_dir / f"_writetest_{os.getpid()}_{os.urandom(4).hex()}"
    created = runner(["sudo", "-u", as_user, "mkdir", str(scratch_path)])
    if not created.ok:
        return _not_writable()
    removed = runner(["sudo", "-u", as_user, "rmdir", str(scratch_path)])
    if not removed.ok:
        logger.warning("could not remove %s: %s", scratch_path, removed.stderr.strip())
    return _writable()


def _writable() -> CheckResult:
    return CheckResult(WRITABILITY_TITLE, Status.OK, "Writable: YES (able to create/remove a dir inside Contents)")


def _not_writable() -> CheckResult:
    return CheckResult(
        WRITABILITY_TITLE,
        Status.FAIL,
        "Writable: NO (cannot create dir inside Contents)",
        ["This is consistent with 'read-only mode' update failures."],
    )


def check_processes(target: Target, *, verbose: bool = False) -> CheckResult:
    title = "Running processes (best-effort)"
    main_pids = [match.pid for match in find_processes(main_process_pattern(target))]
    details: List[str] = []
    if verbose:
        helper_pids = [match.pid for match in find_processes(helper_process_pattern(target))]
        if helper_pids:
            details.append(f"Helper PIDs: {_join_pids(helper_pids)}")
    if main_pids:
        return CheckResult(title, Status.INFO, f"Main PIDs: {_join_pids(main_pids)}", details)
    return CheckResult(title, Status.OK, "Main PIDs: none detected", details)


def check_cli_shim(target: Target) -> CheckResult:
    title = "Shell PATH install sanity (optional)"
    shim = which_shim(target.cli_name)
    if shim is None:
        return CheckResult(title, Status.INFO, f"{target.cli_name} not found in PATH (fine).")
    details = []
    if shim.is_symlink():
        details.append(f"{shim} -> {os.readlink(shim)}")
    return CheckResult(title, Status.OK, f"{target.cli_name} found at: {shim}", details)


def _write_log(log_path: Path, result: CommandResult) -> None:
    try:
        log_path.write_text(result.output)
    except OSError as exc:
        logger.warning("could not write codesign log %s: %s", log_path, exc)


def _has_immutable_flag(lines: List[str]) -> bool:
    for line in lines:
        for column in line.split():
            if any(flag in column.split(",") for flag in IMMUTABLE_FLAGS):
                return True
    return False


def _join_pids(pids: List[int]) -> str:
    return " ".join(str(pid) for pid in pids)


def _lines(text: str) -> List[str]:
    return [line for line in text.splitlines() if line.strip()]
