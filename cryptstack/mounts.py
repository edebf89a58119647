"""Mount tree assembly under the target root (Mount phase)."""
from __future__ import annotations

from .executil import run, trace
from .model import Mountpoint
from .paths import in_target


def mount_cmd(mp: Mountpoint, mount_root: str) -> list[str]:
    cmd = ["mount"]
    if mp.fstype:
        cmd += ["-t", mp.fstype]
    if mp.options:
        cmd += ["-o", ",".join(mp.options)]
    return cmd + [mp.source, in_target(mount_root, mp.target)]


def pseudo_mount_steps(mount_root: str) -> list[tuple[str, list[str], bool]]:
    """(step, argv, optional) for the kernel filesystems a chroot needs."""

    proc, sys_, dev, run_ = (in_target(mount_root, p) for p in ("/proc", "/sys", "/dev", "/run"))
    return [
        ("mkdir pseudo", ["mkdir", "-p", proc, sys_, dev, run_], False),
        ("mount proc", ["mount", "--types", "proc", "/proc", proc], False),
        ("mount sys", ["mount", "--rbind", "/sys", sys_], False),
        ("rslave sys", ["mount", "--make-rslave", sys_], False),
        ("mount dev", ["mount", "--rbind", "/dev", dev], False),
        ("rslave dev", ["mount", "--make-rslave", dev], False),
        ("mount run", ["mount", "--bind", "/run", run_], True),
        ("slave run", ["mount", "--make-slave", run_], True),
    ]


def mount_pseudo_filesystems(stepper, mount_root: str) -> None:
    for name, cmd, optional in pseudo_mount_steps(mount_root):
        stepper.step(name, cmd, optional=optional)


def mount_tree(ctx) -> None:
    """Root first, then boot and EFI, subvolumes, the tensor volume, swap, pseudo-fs."""

    root = ctx.mount_root
    for mp in ctx.topology.mounts:
        target = in_target(root, mp.target)
        ctx.step(f"mkdir {target}", ["mkdir", "-p", target], optional=mp.optional)
        ctx.step(f"mount {mp.target}", mount_cmd(mp, root), optional=mp.optional)
    if ctx.topology.swap:
        ctx.step("swapon", ["swapon", ctx.topology.swap], optional=True)
    mount_pseudo_filesystems(ctx, root)
    trace("mounts.tree", root=root, targets=[mp.target for mp in ctx.topology.mounts])


def is_mountpoint(path: str) -> bool:
    return run(["mountpoint", "-q", path], check=False).rc == 0


def findmnt_source(path: str) -> str:
    r = run(["findmnt", "-no", "SOURCE", path], check=False)
    return (r.out or "").strip()
