import plistlib
import re
import signal
from typing import Dict, List, Tuple

import pytest

from vscode_bundle_fix.commands import CommandResult
from vscode_bundle_fix.terminator import ProcessControl

STABLE_ID = "com.microsoft.VSCode"
INSIDERS_ID = "com.microsoft.VSCodeInsiders"


def command_name(argv: Tuple[str, ...]) -> str:
    args = list(argv)
    if args and args[0] == "sudo":
        args = args[1:]
        if args and args[0] == "-u":
            args = args[2:]
    return args[0]


class FakeRunner:
    """Records argv and answers with canned (returncode, stdout, stderr) per command name."""

    def __init__(self, responses=None, default_rc: int = 0):
        self.calls: List[Tuple[str, ...]] = []
        self.responses = dict(responses or {})
        self.default_rc = default_rc

    def __call__(self, argv):
        argv = tuple(str(arg) for arg in argv)
        self.calls.append(argv)
        response = self.responses.get(command_name(argv), (self.default_rc, "", ""))
        if callable(response):
            response = response(argv)
        returncode, stdout, stderr = response
        return CommandResult(argv, returncode, stdout, stderr)

    def names(self) -> List[str]:
        return [command_name(call) for call in self.calls]


class FakeControl(ProcessControl):
    """In-memory process table.

    ``dies_on`` says what makes a process exit: "quit", "term", "kill" or
    "never".
    """

    def __init__(self, processes: Dict[int, str] = None, dies_on: str = "quit", events=None):
        self.processes = dict(processes or {})
        self.dies_on = dies_on
        self.quit_requests: List[str] = []
        self.signals: List[Tuple[Tuple[int, ...], int]] = []
        self.find_calls = 0
        self.events = events if events is not None else []

    def find(self, pattern: "re.Pattern[str]") -> List[int]:
        self.find_calls += 1
        return [pid for pid, cmdline in sorted(self.processes.items()) if pattern.search(cmdline)]

    def alive(self, pid: int) -> bool:
        return pid in self.processes

    def signal(self, pids, sig: int) -> None:
        pids = tuple(pids)
        self.signals.append((pids, sig))
        self.events.append(f"signal:{sig}")
        if (self.dies_on == "term" and sig == signal.SIGTERM) or (
            self.dies_on in ("term", "kill") and sig == signal.SIGKILL
        ):
            for pid in pids:
                self.processes.pop(pid, None)

    def quit_app(self, bundle_id: str) -> CommandResult:
        self.quit_requests.append(bundle_id)
        self.events.append("quit")
        if self.dies_on == "quit":
            self.processes.clear()
        return CommandResult(("osascript",), 0, "", "")


class FakeSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def make_bundle(tmp_path):
    def _make(
        name: str = "Visual Studio Code.app",
        bundle_id: str = STABLE_ID,
        executable: str = "Electron",
        bundle_name: str = "Code",
        with_plist: bool = True,
    ):
        app = tmp_path / name
        (app / "Contents" / "MacOS").mkdir(parents=True)
        if with_plist:
            metadata = {"CFBundleIdentifier": bundle_id, "CFBundleExecutable": executable}
            if bundle_name:
                metadata["CFBundleName"] = bundle_name
            with (app / "Contents" / "Info.plist").open("wb") as handle:
                plistlib.dump(metadata, handle)
        return app

    return _make
