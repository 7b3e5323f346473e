import dataclasses
import os
from collections import namedtuple
from pathlib import Path

from vscode_bundle_fix import system_state
from vscode_bundle_fix.system_state import (
    Ownership,
    find_processes,
    helper_process_pattern,
    main_process_pattern,
    mount_for_path,
    ownership_snapshot,
)
from vscode_bundle_fix.target import Channel, Target

Partition = namedtuple("Partition", "device mountpoint fstype opts")

STABLE_APP = "/Applications/Visual Studio Code.app"
INSIDERS_APP = "/Applications/Visual Studio Code - Insiders.app"

MACOS_PARTITIONS = [
    Partition("/dev/disk3s1s1", "/", "apfs", "ro,local,rootfs,dovolfs,journaled,multilabel"),
    Partition("devfs", "/dev", "devfs", "rw,local,dontbrowse,multilabel"),
    Partition("/dev/disk3s6", "/System/Volumes/VM", "apfs", "rw,local,noexec,journaled,noatime,nobrowse"),
    Partition("/dev/disk3s5", "/System/Volumes/Data", "apfs", "rw,local,dovolfs,dontbrowse,journaled,multilabel"),
    Partition("map auto_home", "/System/Volumes/Data/home", "autofs", "rw,dontbrowse,automounted,multilabel"),
]


def make_target(app: str = STABLE_APP, channel: Channel = Channel.STABLE) -> Target:
    return Target(
        path=Path(app),
        channel=channel,
        bundle_id="com.microsoft.VSCode",
        bundle_name="Code",
        executable="Electron",
        cli_name="code",
    )


def fake_filesystem(monkeypatch, partitions, devices):
    def device_id(path):
        path = str(path)
        if path not in devices:
            raise FileNotFoundError(path)
        return devices[path]

    monkeypatch.setattr(system_state.psutil, "disk_partitions", lambda all=False: list(partitions))
    monkeypatch.setattr(system_state, "_device_id", device_id)


class FakeProcess:
    def __init__(self, pid, cmdline):
        self.info = {"pid": pid, "cmdline": cmdline}


def fake_processes(monkeypatch, processes):
    monkeypatch.setattr(
        system_state.psutil,
        "process_iter",
        lambda attrs=None: [FakeProcess(pid, cmdline) for pid, cmdline in processes],
    )


def test_firmlinked_applications_resolves_to_data_volume(monkeypatch):
    fake_filesystem(
        monkeypatch,
        MACOS_PARTITIONS,
        {
            "/": 1,
            "/dev": 2,
            "/System/Volumes/VM": 6,
            "/System/Volumes/Data": 5,
            STABLE_APP: 5,
        },
    )
    mount = mount_for_path(Path(STABLE_APP))
    assert mount.device == "/dev/disk3s5"
    assert mount.mount_point == "/System/Volumes/Data"
    assert mount.read_only is False


def test_bundle_on_sealed_system_volume_is_read_only(monkeypatch):
    fake_filesystem(monkeypatch, MACOS_PARTITIONS, {"/": 1, "/System/Volumes/Data": 5, STABLE_APP: 1})
    mount = mount_for_path(Path(STABLE_APP))
    assert mount.device == "/dev/disk3s1s1"
    assert mount.read_only is True


def test_deepest_mount_point_wins_on_shared_device(monkeypatch):
    partitions = [
        Partition("/dev/disk4s1", "/Volumes/Tools", "apfs", "rw,local"),
        Partition("/dev/disk4s1", "/Volumes/Tools/nested", "apfs", "ro,local"),
    ]
    app = "/Volumes/Tools/nested/Visual Studio Code.app"
    fake_filesystem(monkeypatch, partitions, {"/Volumes/Tools": 4, "/Volumes/Tools/nested": 4, app: 4})
    assert mount_for_path(Path(app)).mount_point == "/Volumes/Tools/nested"


def test_unreadable_mount_points_are_skipped(monkeypatch):
    fake_filesystem(monkeypatch, MACOS_PARTITIONS, {"/System/Volumes/Data": 5, STABLE_APP: 5})
    assert mount_for_path(Path(STABLE_APP)).device == "/dev/disk3s5"


def test_no_matching_mount(monkeypatch):
    fake_filesystem(monkeypatch, MACOS_PARTITIONS, {"/": 1, STABLE_APP: 9})
    assert mount_for_path(Path(STABLE_APP)) is None


def test_find_processes_matches_joined_command_line(monkeypatch):
    target = make_target()
    main = str(target.main_executable)
    fake_processes(
        monkeypatch,
        [
            (101, [main, "--type=browser", "--no-sandbox"]),
            (102, [INSIDERS_APP + "/Contents/MacOS/Electron"]),
            (103, ["/bin/zsh", "-l"]),
        ],
    )
    matches = find_processes(main_process_pattern(target))
    assert [match.pid for match in matches] == [101]
    assert matches[0].cmdline == f"{main} --type=browser --no-sandbox"


def test_find_processes_skips_own_pid_and_empty_command_lines(monkeypatch):
    target = make_target()
    main = str(target.main_executable)
    fake_processes(
        monkeypatch,
        [
            (os.getpid(), ["python", "-m", "pytest", main]),
            (201, None),
            (202, []),
            (203, [main]),
        ],
    )
    assert [match.pid for match in find_processes(main_process_pattern(target))] == [203]


def test_find_processes_matches_helpers(monkeypatch):
    target = make_target()
    helper = f"{target.frameworks_dir}/Code Helper (Renderer).app/Contents/MacOS/Code Helper (Renderer)"
    fake_processes(
        monkeypatch,
        [
            (301, [helper, "--type=renderer"]),
            (302, [str(target.main_executable)]),
            (303, [f"{target.frameworks_dir}/Electron Framework.framework/Resources/crashpad_handler"]),
        ],
    )
    assert [match.pid for match in find_processes(helper_process_pattern(target))] == [301]


def test_ownership_snapshot_fields(tmp_path):
    assert [field.name for field in dataclasses.fields(Ownership)] == ["owner", "group", "mode"]
    snapshot = ownership_snapshot(tmp_path)
    assert snapshot.mode.startswith("d")
    assert snapshot.owner


def test_target_exposes_only_used_paths():
    target = make_target()
    assert not hasattr(target, "info_plist")
    assert target.main_executable == Path(STABLE_APP) / "Contents" / "MacOS" / "Electron"
    assert target.frameworks_dir == Path(STABLE_APP) / "Contents" / "Frameworks"
