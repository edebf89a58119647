"""LUKS containers and LVM groups (Encrypt and VolumeManage phases)."""

from __future__ import annotations

from typing import List, Optional, Sequence

from .devices import size_bytes
from .errors import LayoutError, ProvisionError
from .executil import log, run, trace, udev_settle
from .model import REMAINING, EncryptedContainer, VolumeGroup

LUKS_FORMAT_ARGS = [
    "--type", "luks2",
    "--cipher", "aes-xts-plain64",
    "--key-size", "512",
    "--hash", "sha512",
    "--pbkdf", "argon2id",
    "--use-random",
]

# members of a mirrored group may differ by this fraction before the
# operator has to accept the wasted space explicitly
MIRROR_SIZE_TOLERANCE = 0.01


def format_cmd(partition: str, key_file: Optional[str] = None) -> List[str]:
    cmd = ["cryptsetup", "-q", "luksFormat", *LUKS_FORMAT_ARGS]
    if key_file:
        cmd += ["--key-file", key_file]
    return cmd + [partition]


def open_cmd(container: EncryptedContainer, key_file: Optional[str] = None) -> List[str]:
    cmd = ["cryptsetup", "open", container.partition, container.name]
    if key_file:
        cmd += ["--key-file", key_file]
    return cmd


def close_containers(containers: Sequence[EncryptedContainer], dry_run: bool = False) -> List[str]:
    """Close ``containers`` in reverse order; returns the names that failed to close."""

    failed = []
    for container in reversed(list(containers)):
        res = run(["cryptsetup", "close", container.name], check=False, dry_run=dry_run)
        if res.rc != 0:
            failed.append(container.name)
            log("WARN", "luks.close_failed", name=container.name, rc=res.rc, stderr=(res.err or "").strip())
        else:
            trace("luks.closed", name=container.name)
    return failed


def encrypt_containers(ctx) -> None:
    containers = ctx.topology.containers
    key_file = ctx.passphrase_file
    ctx.prompt.require(
        "Format " + ", ".join(c.partition for c in containers) + " as LUKS2 containers?",
        default=False,
    )
    opened: List[EncryptedContainer] = []
    try:
        for container in containers:
            ctx.step(
                f"luksFormat {container.partition}",
                format_cmd(container.partition, key_file),
                action=f"encryption of {container.partition}",
                timeout=None,
                interactive=key_file is None,
            )
            ctx.step(
                f"open {container.name}",
                open_cmd(container, key_file),
                action=f"opening {container.partition} as {container.name}",
                timeout=None,
                interactive=key_file is None,
            )
            opened.append(container)
    except ProvisionError:
        still_open = close_containers(opened, dry_run=ctx.dry_run)
        trace("luks.rollback", closed=[c.name for c in opened], still_open=still_open)
        raise
    udev_settle(dry_run=ctx.dry_run)


def lvcreate_cmd(vg: str, lv) -> List[str]:
    cmd = ["lvcreate"]
    if lv.mirrors:
        cmd += ["-m", str(lv.mirrors)]
    if lv.consumes_remaining:
        cmd += ["-l", REMAINING]
    else:
        cmd += ["-L", lv.size]
    return cmd + ["-n", lv.name, vg]


def plan_logical_volumes(group: VolumeGroup) -> List[List[str]]:
    """Return the ``lvcreate`` invocations for ``group`` in carving order.

    "Remaining space" only has a meaning for the last volume carved from a
    group; asking for it anywhere else is rejected before anything runs.
    """

    lvs = group.logical_volumes
    for idx, lv in enumerate(lvs):
        if lv.consumes_remaining and idx != len(lvs) - 1:
            raise LayoutError(
                f"{group.name}/{lv.name} requests all remaining space but is not the last "
                f"logical volume of {group.name}"
            )
        if lv.mirrors and lv.mirrors >= len(group.members):
            raise LayoutError(
                f"{group.name}/{lv.name} needs {lv.mirrors + 1} physical volumes, "
                f"{group.name} has {len(group.members)}"
            )
    return [lvcreate_cmd(group.name, lv) for lv in lvs]


def check_mirror_members(ctx, group: VolumeGroup) -> None:
    """Compare member sizes of a mirrored group before it is created."""

    if not any(lv.mirrors for lv in group.logical_volumes):
        return
    sizes = {member: size_bytes(member, dry_run=ctx.dry_run) for member in group.members}
    trace("lvm.mirror_sizes", vg=group.name, sizes=sizes)
    if not all(sizes.values()):
        ctx.warn(f"size check {group.name}", f"could not read sizes of {', '.join(sizes)}")
        return
    largest, smallest = max(sizes.values()), min(sizes.values())
    if largest - smallest <= largest * MIRROR_SIZE_TOLERANCE:
        return
    waste_gib = (largest - smallest) / 1024 ** 3
    question = (
        f"Members of mirrored group {group.name} differ in size by {waste_gib:.1f} GiB; "
        f"the mirror is limited to the smallest member. Continue?"
    )
    if not ctx.prompt.confirm(question, default=False):
        raise LayoutError(f"mirrored group {group.name} has mismatched members: {sizes}")


def build_volume_groups(ctx) -> None:
    groups = ctx.topology.volume_groups
    plans = [(group, plan_logical_volumes(group)) for group in groups]
    for group in groups:
        check_mirror_members(ctx, group)
    for group, lv_cmds in plans:
        for member in group.members:
            ctx.step(f"pvcreate {member}", ["pvcreate", "-ff", "-y", member], action=f"LVM label on {member}")
        ctx.step(f"vgcreate {group.name}", ["vgcreate", group.name, *group.members], action=f"creation of {group.name}")
        for cmd in lv_cmds:
            ctx.step(f"lvcreate {cmd[-2]}", cmd, action=f"creation of {group.name}/{cmd[-2]}", timeout=None)
    udev_settle(dry_run=ctx.dry_run)


def activate_vg(vg: str, dry_run: bool = False):
    """Activate logical volumes for ``vg`` if present."""

    res = run(["vgchange", "-ay", vg], check=False, dry_run=dry_run, timeout=60.0)
    udev_settle(dry_run=dry_run)
    return res
