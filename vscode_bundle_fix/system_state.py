"""Collect read-only facts about the bundle and the processes running from it."""

from __future__ import annotations

import grp
import os
import pwd
import re
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Pattern

import psutil

from .target import Target


@dataclass
class Ownership:
    owner: str
    group: str
    mode: str


@dataclass
class MountInfo:
    device: str
    mount_point: str
    fstype: str
    opts: str

    @property
    def read_only(self) -> bool:
        return "ro" in self.opts.split(",") or "read-only" in self.opts

    def describe(self) -> str:
        return f"{self.device} on {self.mount_point} ({self.fstype}, {self.opts})"


@dataclass
class ProcessMatch:
    pid: int
    cmdline: str


def ownership_snapshot(path: Path) -> Ownership:
    st = os.stat(path)
    try:
        owner = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        owner = str(st.st_uid)
    try:
        group = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        group = str(st.st_gid)
    return Ownership(owner=owner, group=group, mode=stat.filemode(st.st_mode))


def mount_for_path(path: Path) -> Optional[MountInfo]:
    """Return the mount backing ``path``, matched by device id like ``df`` does.

    On APFS ``/Applications`` is a firmlink into the Data volume, so a
    mount-point prefix match would wrongly pick the sealed, read-only ``/``.
    When several mounts share the device the deepest mount point wins.
    """
    device = _device_id(path)
    best = None
    for partition in psutil.disk_partitions(all=True):
        try:
            if _device_id(partition.mountpoint) != device:
                continue
        except OSError:
            continue
        if best is None or len(partition.mountpoint) > len(best.mountpoint):
            best = partition
    if best is None:
        return None
    return MountInfo(device=best.device, mount_point=best.mountpoint, fstype=best.fstype, opts=best.opts)


def _device_id(path: str | Path) -> int:
    return os.stat(path).st_dev


def main_process_pattern(target: Target) -> Pattern[str]:
    return re.compile(re.escape(str(target.main_executable)))


def helper_process_pattern(target: Target) -> Pattern[str]:
    return re.compile(re.escape(f"{target.frameworks_dir}/") + r".*Helper")


def find_processes(pattern: Pattern[str]) -> List[ProcessMatch]:
    """Match ``pattern`` against each process's full command line, like ``pgrep -f``."""
    matches: List[ProcessMatch] = []
    own_pid = os.getpid()
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info["cmdline"]
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if not cmdline or proc.info["pid"] == own_pid:
            continue
        joined = " ".join(cmdline)
        if pattern.search(joined):
            matches.append(ProcessMatch(pid=proc.info["pid"], cmdline=joined))
    return matches


def which_shim(name: str) -> Optional[Path]:
    found = shutil.which(name)
    return Path(found) if found else None
