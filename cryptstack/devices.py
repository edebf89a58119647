"""Device path derivation and existence validation (no destructive calls)."""
from __future__ import annotations

import os
from typing import Callable, Iterable, Optional

from .errors import DeviceAmbiguous, DeviceNotFound, LayoutError, OperationFailed
from .executil import run, trace
from .model import (
    REMAINING,
    Config,
    Disk,
    EncryptedContainer,
    Filesystem,
    LogicalVolume,
    Mountpoint,
    Partition,
    StorageTopology,
    Subvolume,
    VolumeGroup,
)

Exists = Callable[[str], bool]


def partition_separator(disk: str) -> str:
    """Conventional separator: NVMe and MMC names end in a digit and need ``p``."""

    base = disk.rstrip("/") or disk
    return "p" if base[-1:].isdigit() else ""


def partition_path(disk: str, number: int, separator: Optional[str] = None) -> str:
    sep = partition_separator(disk) if separator is None else separator
    return f"{disk}{sep}{number}"


def probe_partition_scheme(disk: str, number: int = 1, exists: Exists = os.path.exists) -> str:
    """Return the separator that actually exists on the live system.

    The right convention depends on the controller behind the disk, not on
    its name, so both candidates are probed.
    """

    candidates = {sep: f"{disk}{sep}{number}" for sep in ("p", "")}
    present = [sep for sep, path in candidates.items() if exists(path)]
    trace("devices.probe_scheme", disk=disk, number=number, present=present)
    if len(present) == 1:
        return present[0]
    if not present:
        raise DeviceNotFound(
            f"could not detect partitions on {disk}",
            missing=list(candidates.values()),
        )
    raise DeviceAmbiguous(
        f"both {candidates['p']} and {candidates['']} exist; choose the partition naming scheme",
        candidates=list(candidates.values()),
    )


def resolve(config: Config, separators: Optional[dict] = None) -> StorageTopology:
    """Build the expected topology from naming conventions alone."""

    seps = separators or {}
    disk0, disk1 = config.disk0, config.disk1

    def part(disk: str, number: int, role: str, size: str, type_code: str, label: str) -> Partition:
        return Partition(disk, number, partition_path(disk, number, seps.get(disk)), role, size, type_code, label)

    partitions = [
        part(disk0, 1, "efi", config.efi_size, "EF00", "EFI System Partition"),
        part(disk0, 2, "boot", config.boot_size, "8300", "Boot Partition"),
        part(disk0, 3, "root", config.root_size, "8300", "LUKS Root"),
        part(disk0, 4, "tensor_a", REMAINING, "8300", "LUKS Tensor A"),
        part(disk1, 1, "tensor_b", REMAINING, "8300", "LUKS Tensor B"),
    ]
    by_role = {p.role: p for p in partitions}
    containers = [
        EncryptedContainer(config.luks_root, by_role["root"].path, "root"),
        EncryptedContainer(config.luks_tensor_a, by_role["tensor_a"].path, "tensor_a"),
        EncryptedContainer(config.luks_tensor_b, by_role["tensor_b"].path, "tensor_b"),
    ]
    os_vg = VolumeGroup(
        config.vg_os,
        [containers[0].path],
        [
            LogicalVolume(config.vg_os, config.lv_swap, config.swap_size, "swap"),
            LogicalVolume(config.vg_os, config.lv_root, REMAINING, "root"),
        ],
    )
    tensor_vg = VolumeGroup(
        config.vg_tensor,
        [containers[1].path, containers[2].path],
        [LogicalVolume(config.vg_tensor, config.lv_tensor, REMAINING, "tensor", mirrors=1)],
    )
    root_lv = os_vg.logical_volumes[1]
    swap_lv = os_vg.logical_volumes[0]
    tensor_lv = tensor_vg.logical_volumes[0]

    filesystems = [
        Filesystem(by_role["efi"].path, "vfat", "EFI", "efi"),
        Filesystem(by_role["boot"].path, "ext4", "BOOT", "boot"),
        Filesystem(root_lv.path, "btrfs", "ROOT", "root"),
        Filesystem(swap_lv.path, "swap", "SWAP", "swap"),
        Filesystem(tensor_lv.path, "btrfs", "TENSOR_LAB", "tensor"),
    ]
    subvolumes = [
        Subvolume("@", "/"),
        Subvolume("@home", "/home"),
        Subvolume("@snapshots", "/.snapshots"),
    ]
    mounts = [
        Mountpoint(root_lv.path, "/", "btrfs", ["subvol=@"]),
        Mountpoint(by_role["boot"].path, "/boot", "ext4"),
        Mountpoint(by_role["efi"].path, "/boot/efi", "vfat"),
        Mountpoint(root_lv.path, "/home", "btrfs", ["subvol=@home"], optional=True),
        Mountpoint(root_lv.path, "/.snapshots", "btrfs", ["subvol=@snapshots"], optional=True),
        Mountpoint(tensor_lv.path, "/tensor_lab", "btrfs"),
    ]
    topology = StorageTopology(
        disks=[Disk(disk0, "primary"), Disk(disk1, "auxiliary")],
        partitions=partitions,
        containers=containers,
        volume_groups=[os_vg, tensor_vg],
        filesystems=filesystems,
        subvolumes=subvolumes,
        mounts=mounts,
        swap=swap_lv.path,
    )
    dupes = topology.duplicate_paths()
    if dupes:
        raise LayoutError(f"topology assigns the same device path twice: {', '.join(dupes)}")
    return topology


def validate(paths: Iterable[str], exists: Exists = os.path.exists) -> None:
    missing = [p for p in paths if not p or not exists(p)]
    trace("devices.validate", missing=missing)
    if missing:
        raise DeviceNotFound(f"device not found: {', '.join(missing) or '<unset>'}", missing=missing)


def uuid_of(path: str, dry_run: bool = False) -> str:
    """UUID of ``path``; boot artifacts are rendered from it, so failure is fatal."""

    cmd = ["blkid", "-s", "UUID", "-o", "value", path]
    r = run(cmd, check=False, dry_run=dry_run)
    if dry_run:
        return f"DRY-RUN-UUID-{os.path.basename(path)}"
    uuid = (r.out or "").strip()
    if r.rc != 0 or not uuid:
        raise OperationFailed(f"uuid {path}", cmd, r.rc, r.out, r.err, action=f"UUID lookup of {path}")
    return uuid


def fstype_of(path: str) -> str:
    r = run(["blkid", "-o", "value", "-s", "TYPE", path], check=False)
    return (r.out or "").strip()


def is_luks(path: str) -> bool:
    return run(["cryptsetup", "isLuks", path], check=False).rc == 0


def size_bytes(path: str, dry_run: bool = False) -> int:
    r = run(["blockdev", "--getsize64", path], check=False, dry_run=dry_run)
    try:
        return int((r.out or "").strip())
    except ValueError:
        return 0
