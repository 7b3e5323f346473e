"""Resolve which VS Code bundle to operate on and refuse anything else."""

from __future__ import annotations

import enum
import logging
import plistlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from xml.parsers.expat import ExpatError

from .errors import BundleNotFoundError, MalformedBundleError, UnsupportedBundleError

logger = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".app"


class Channel(enum.Enum):
    STABLE = "stable"
    INSIDERS = "insiders"


@dataclass(frozen=True)
class ChannelInfo:
    bundle_id: str
    default_path: Path
    cli_name: str
    display_name: str


CHANNELS: Dict[Channel, ChannelInfo] = {
    Channel.STABLE: ChannelInfo(
        bundle_id="com.microsoft.VSCode",
        default_path=Path("/Applications/Visual Studio Code.app"),
        cli_name="code",
        display_name="VS Code",
    ),
    Channel.INSIDERS: ChannelInfo(
        bundle_id="com.microsoft.VSCodeInsiders",
        default_path=Path("/Applications/Visual Studio Code - Insiders.app"),
        cli_name="code-insiders",
        display_name="VS Code Insiders",
    ),
}

SUPPORTED_BUNDLE_IDS = tuple(info.bundle_id for info in CHANNELS.values())


@dataclass(frozen=True)
class Target:
    path: Path
    channel: Channel
    bundle_id: str
    bundle_name: str
    executable: str
    cli_name: str

    @property
    def contents_dir(self) -> Path:
        return self.path / "Contents"

    @property
    def main_executable(self) -> Path:
        return self.contents_dir / "MacOS" / self.executable

    @property
    def frameworks_dir(self) -> Path:
        return self.contents_dir / "Frameworks"

    @property
    def display_name(self) -> str:
        return CHANNELS[self.channel].display_name

    def as_dict(self) -> Dict[str, str]:
        return {
            "path": str(self.path),
            "channel": self.channel.value,
            "bundle_id": self.bundle_id,
            "bundle_name": self.bundle_name,
            "executable": self.executable,
            "cli_name": self.cli_name,
        }


@dataclass(frozen=True)
class RunOptions:
    channel: Channel = Channel.STABLE
    app_path: Optional[Path] = None
    no_kill: bool = False
    verbose: bool = False
    abort_on_survivor: bool = False
    output: str = "text"


def channel_for_bundle_id(bundle_id: str) -> Channel:
    for channel, info in CHANNELS.items():
        if info.bundle_id == bundle_id:
            return channel
    raise UnsupportedBundleError(bundle_id, SUPPORTED_BUNDLE_IDS)


def read_bundle_metadata(app: Path) -> Dict[str, Any]:
    plist = app / "Contents" / "Info.plist"
    if not plist.is_file():
        raise MalformedBundleError(f"Missing Info.plist in: {app}")
    try:
        with plist.open("rb") as handle:
            data = plistlib.load(handle)
    except (OSError, ValueError, ExpatError) as exc:
        raise MalformedBundleError(f"Unable to read Info.plist in {app}: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedBundleError(f"Info.plist is not a dictionary: {plist}")
    return data


def _required_key(metadata: Dict[str, Any], key: str, app: Path) -> str:
    value = metadata.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedBundleError(f"Unable to read {key} from Info.plist: {app}")
    return value


def resolve_target(channel: Channel = Channel.STABLE, app_path: Optional[Path] = None) -> Target:
    """Build the target descriptor for ``channel`` or an explicit bundle path.

    An explicit path wins over the channel: the channel is then derived from
    the bundle identifier found inside the bundle.
    """
    app = Path(app_path) if app_path is not None else CHANNELS[channel].default_path
    if not app.name.endswith(BUNDLE_SUFFIX):
        raise MalformedBundleError(f"App path must end in {BUNDLE_SUFFIX}: {app}")
    if not app.is_dir():
        raise BundleNotFoundError(f"Not found: {app}")
    app = app.absolute()

    metadata = read_bundle_metadata(app)
    bundle_id = _required_key(metadata, "CFBundleIdentifier", app)
    executable = _required_key(metadata, "CFBundleExecutable", app)
    name = metadata.get("CFBundleName")
    bundle_name = name if isinstance(name, str) and name else app.name[: -len(BUNDLE_SUFFIX)]

    detected = channel_for_bundle_id(bundle_id)
    if app_path is not None:
        if detected is not channel:
            logger.debug("channel %s overridden by bundle id %s", channel.value, bundle_id)
        channel = detected

    return Target(
        path=app,
        channel=channel,
        bundle_id=bundle_id,
        bundle_name=bundle_name,
        executable=executable,
        cli_name=CHANNELS[channel].cli_name,
    )
