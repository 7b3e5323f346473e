"""Exception hierarchy for fatal conditions. Per-check failures are reported, not raised."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .diagnostics import Report


class BundleFixError(Exception):
    """Base class for errors that end the run with exit status 1."""


class ResolutionError(BundleFixError):
    pass


class BundleNotFoundError(ResolutionError):
    pass


class MalformedBundleError(ResolutionError):
    pass


class UnsupportedBundleError(ResolutionError):
    def __init__(self, bundle_id: str, allowed: Sequence[str]) -> None:
        self.bundle_id = bundle_id
        self.allowed = tuple(allowed)
        super().__init__(
            f"Unsupported bundle identifier: {bundle_id}\n"
            f"This tool is intended only for {' and '.join(self.allowed)}."
        )


class EnvironmentCheckError(BundleFixError):
    pass


class UnsupportedPlatformError(EnvironmentCheckError):
    pass


class MissingCommandError(EnvironmentCheckError):
    def __init__(self, names: Sequence[str]) -> None:
        self.names = tuple(names)
        super().__init__(f"Missing required command: {', '.join(self.names)}")


class TerminationError(BundleFixError):
    def __init__(self, survivors: Sequence[int]) -> None:
        self.survivors = tuple(survivors)
        pids = " ".join(str(pid) for pid in self.survivors)
        super().__init__(f"VS Code is still running after forced termination (PIDs: {pids})")


class RepairError(BundleFixError):
    def __init__(self, message: str, report: Optional["Report"] = None) -> None:
        super().__init__(message)
        self.report = report
