"""Filesystem creation and btrfs subvolume layout (Filesystem phase)."""
from __future__ import annotations

import os

from .executil import trace
from .model import Filesystem


def mkfs_cmd(fs: Filesystem) -> list[str]:
    if fs.fstype == "vfat":
        return ["mkfs.vfat", "-F", "32", "-n", fs.label, fs.device]
    if fs.fstype == "ext4":
        return ["mkfs.ext4", "-F", "-L", fs.label, fs.device]
    if fs.fstype == "btrfs":
        return ["mkfs.btrfs", "-f", "-L", fs.label, fs.device]
    if fs.fstype == "swap":
        return ["mkswap", "-L", fs.label, fs.device]
    raise ValueError(f"no formatter for filesystem type {fs.fstype!r}")


def scratch_mountpoint(mount_root: str) -> str:
    return os.path.join(os.path.dirname(mount_root.rstrip("/")) or "/", ".cryptstack-btrfs")


def create_subvolumes(ctx, device: str) -> None:
    """Mount the fresh root filesystem briefly and carve the subvolumes.

    ``@`` becomes the default subvolume so a bare mount of the device lands
    on the system root.
    """

    scratch = scratch_mountpoint(ctx.mount_root)
    ctx.step("scratch mountpoint", ["mkdir", "-p", scratch])
    ctx.step(f"mount {device} (scratch)", ["mount", "-t", "btrfs", device, scratch])
    try:
        for sub in ctx.topology.subvolumes:
            ctx.step(
                f"subvolume {sub.name}",
                ["btrfs", "subvolume", "create", f"{scratch}/{sub.name}"],
                action=f"creation of subvolume {sub.name}",
            )
        ctx.step("default subvolume", ["btrfs", "subvolume", "set-default", f"{scratch}/@"])
    finally:
        ctx.step(f"umount {scratch}", ["umount", scratch], optional=True)
    trace("filesystems.subvolumes", device=device, subvolumes=[s.name for s in ctx.topology.subvolumes])


def create_filesystems(ctx) -> None:
    for fs in ctx.topology.filesystems:
        ctx.step(f"format {fs.role}", mkfs_cmd(fs), action=f"formatting of {fs.device}", timeout=None)
        if fs.role == "root":
            create_subvolumes(ctx, fs.device)
