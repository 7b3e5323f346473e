"""Best-effort repair of a VS Code bundle that has become read-only to its owner."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .commands import CommandResult, Runner, elevated, invoking_user, is_root, run_command
from .diagnostics import (
    QUARANTINE_ATTR,
    CheckResult,
    Report,
    Status,
    codesign_log_path,
    check_writability,
    verify_signature,
)
from .errors import RepairError
from .target import RunOptions, Target
from .terminator import ProcessControl, ProcessTerminator

logger = logging.getLogger(__name__)

OWNER_GROUP = "staff"
PERMISSION_SPEC = "u+rwX,go+rX,go-w"
REPAIR_LOG_LINES = 220
REINSTALL_ADVICE = "If codesign is failing, the safest fix is a fresh reinstall from Microsoft."


def repair(
    target: Target,
    options: RunOptions,
    *,
    runner: Runner = run_command,
    control: Optional[ProcessControl] = None,
    sleep: Callable[[float], None] = time.sleep,
    log_path: Optional[Path] = None,
    user: Optional[str] = None,
    euid: Optional[int] = None,
) -> Report:
    """Stop VS Code, unlock the bundle, then re-check writability and signature.

    Only the ownership and permission resets may abort the run; every other
    step records its outcome and the sequence continues. The order matters:
    the app must be stopped before it can re-quarantine itself, and flags
    are cleared before chown/chmod so an immutable file cannot block them.
    """
    user = user or invoking_user()
    log_path = log_path or codesign_log_path(target)
    report = Report(mode="repair", target=target)
    app = str(target.path)

    report.checks.append(_stop_processes(target, options, control or ProcessControl(runner), sleep))
    report.checks.append(
        _best_effort(
            "Removing quarantine attribute (if present)",
            runner(elevated(["xattr", "-dr", QUARANTINE_ATTR, app], euid=euid)),
        )
    )
    report.checks.append(
        _best_effort(
            "Clearing immutable flags (if any)",
            runner(elevated(["chflags", "-R", "nouchg,noschg", app], euid=euid)),
        )
    )
    report.checks.append(
        _required(
            report,
            f"Ensuring correct ownership ({user}:{OWNER_GROUP})",
            runner(elevated(["chown", "-R", f"{user}:{OWNER_GROUP}", app], euid=euid)),
        )
    )
    report.checks.append(
        _required(
            report,
            "Ensuring sane permissions",
            runner(elevated(["chmod", "-R", PERMISSION_SPEC, app], euid=euid)),
        )
    )

    as_user = user if is_root(euid) and user != "root" else None
    writability = check_writability(target, as_user=as_user, runner=runner)
    if writability.status is Status.FAIL:
        writability.details = [
            "If this persists, the containing volume may be mounted read-only or controlled by another tool."
        ]
    report.checks.append(writability)

    signature = verify_signature(
        target,
        log_path,
        runner=runner,
        max_lines=REPAIR_LOG_LINES,
        failure_note="this can break updates and launches",
    )
    if signature.status is Status.FAIL:
        signature.details.extend(["", REINSTALL_ADVICE])
    report.checks.append(signature)
    return report


def _stop_processes(
    target: Target,
    options: RunOptions,
    control: ProcessControl,
    sleep: Callable[[float], None],
) -> CheckResult:
    title = "Stopping VS Code"
    if options.no_kill:
        return CheckResult(title, Status.INFO, "Skipping process stop (--no-kill)")
    terminator = ProcessTerminator(
        target,
        control,
        verbose=options.verbose,
        abort_on_survivor=options.abort_on_survivor,
        sleep=sleep,
    )
    outcome = terminator.run()
    status = Status.FAIL if outcome.survivors else Status.OK
    summary = outcome.lines[-1] if outcome.lines else outcome.state.value
    return CheckResult(title, status, summary, outcome.lines[:-1])


def _best_effort(title: str, result: CommandResult) -> CheckResult:
    if result.ok:
        return CheckResult(title, Status.OK, "Done.")
    logger.warning("%s failed (ignored): %s", result.command, result.stderr.strip())
    detail = result.stderr.strip() or f"exit status {result.returncode}"
    return CheckResult(title, Status.INFO, "Skipped or not needed.", [detail])


def _required(report: Report, title: str, result: CommandResult) -> CheckResult:
    if result.ok:
        return CheckResult(title, Status.OK, "Done.")
    detail = result.stderr.strip() or f"exit status {result.returncode}"
    report.checks.append(CheckResult(title, Status.FAIL, "FAILED", [detail]))
    raise RepairError(f"{result.command} failed: {detail}", report)
