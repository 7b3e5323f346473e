"""Stop running VS Code instances before the bundle is modified.

The terminator is a small state machine::

    IDLE        nothing matched the main executable, nothing is sent
    DETECTED    a quit request went out, waiting for the PIDs to exit
    ESCALATING  the wait timed out, SIGTERM then SIGKILL on the exact main path
    DONE        terminal, whatever the escalation achieved

Process lookup, signalling and sleeping are injected so the escalation path
can be exercised without real processes or wall-clock waits.
"""

from __future__ import annotations

import enum
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Pattern

import psutil

from .commands import CommandResult, Runner, run_command
from .errors import TerminationError
from .system_state import find_processes, helper_process_pattern, main_process_pattern
from .target import Target

logger = logging.getLogger(__name__)

QUIT_TIMEOUT_S = 2.5
POLL_INTERVAL_S = 0.1
TERM_GRACE_S = 0.4
SETTLE_S = 0.5


class TerminatorState(enum.Enum):
    IDLE = "idle"
    DETECTED = "detected"
    ESCALATING = "escalating"
    DONE = "done"


class ProcessControl:
    """Process operations backed by psutil and osascript."""

    def __init__(self, runner: Runner = run_command) -> None:
        self._runner = runner

    def find(self, pattern: Pattern[str]) -> List[int]:
        return [match.pid for match in find_processes(pattern)]

    def alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def signal(self, pids: Iterable[int], sig: int) -> None:
        for pid in pids:
            try:
                psutil.Process(pid).send_signal(sig)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("not permitted to signal pid %s", pid)

    def quit_app(self, bundle_id: str) -> CommandResult:
        return self._runner(["osascript", "-e", f'tell application id "{bundle_id}" to quit'])


@dataclass
class TerminationOutcome:
    state: TerminatorState = TerminatorState.IDLE
    history: List[TerminatorState] = field(default_factory=list)
    detected: List[int] = field(default_factory=list)
    survivors: List[int] = field(default_factory=list)
    escalated: bool = False
    lines: List[str] = field(default_factory=list)


class ProcessTerminator:
    def __init__(
        self,
        target: Target,
        control: ProcessControl,
        *,
        verbose: bool = False,
        abort_on_survivor: bool = False,
        timeout_s: float = QUIT_TIMEOUT_S,
        poll_interval_s: float = POLL_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.target = target
        self.control = control
        self.verbose = verbose
        self.abort_on_survivor = abort_on_survivor
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self._sleep = sleep
        self._main_pattern = main_process_pattern(target)
        self._helper_pattern = helper_process_pattern(target)
        self.outcome = TerminationOutcome()

    def run(self) -> TerminationOutcome:
        outcome = self.outcome
        pids = self.control.find(self._main_pattern)
        if not pids:
            self._enter(TerminatorState.IDLE)
            outcome.lines.append("No running VS Code processes detected for this bundle")
            return outcome

        outcome.detected = pids
        self._enter(TerminatorState.DETECTED)
        outcome.lines.append(f"Requesting VS Code quit (AppleScript), PIDs: {' '.join(map(str, pids))}")
        quit_result = self.control.quit_app(self.target.bundle_id)
        if not quit_result.ok:
            logger.warning("quit request failed: %s", quit_result.stderr.strip())

        if self._wait_for_exit(pids):
            outcome.lines.append("Quit: OK")
            self._enter(TerminatorState.DONE)
            return outcome

        self._escalate()
        self._enter(TerminatorState.DONE)
        if outcome.survivors and self.abort_on_survivor:
            raise TerminationError(outcome.survivors)
        return outcome

    def _wait_for_exit(self, pids: List[int]) -> bool:
        for _ in range(round(self.timeout_s / self.poll_interval_s)):
            if not any(self.control.alive(pid) for pid in pids):
                return True
            self._sleep(self.poll_interval_s)
        return False

    def _escalate(self) -> None:
        outcome = self.outcome
        outcome.escalated = True
        self._enter(TerminatorState.ESCALATING)
        outcome.lines.append("Forcing termination of main process")

        self.control.signal(self.control.find(self._main_pattern), signal.SIGTERM)
        self._sleep(TERM_GRACE_S)

        remaining = self.control.find(self._main_pattern)
        if remaining:
            outcome.lines.append(f"Still running after SIGTERM, sending SIGKILL: {' '.join(map(str, remaining))}")
            self.control.signal(remaining, signal.SIGKILL)

        # helpers are normally reaped along with the main process
        if self.verbose:
            helpers = self.control.find(self._helper_pattern)
            if helpers:
                outcome.lines.append("Helper processes still present (best-effort cleanup)")
                self.control.signal(helpers, signal.SIGTERM)

        self._sleep(SETTLE_S)
        outcome.survivors = self.control.find(self._main_pattern)
        if outcome.survivors:
            outcome.lines.append(f"Survivors: {' '.join(map(str, outcome.survivors))}")

    def _enter(self, state: TerminatorState) -> None:
        logger.debug("terminator: %s -> %s", self.outcome.state.value, state.value)
        self.outcome.state = state
        self.outcome.history.append(state)
