"""GPT layout for the primary and auxiliary disks (Partition phase)."""
import re

from .executil import run, trace, udev_settle
from .model import REMAINING, Partition


def _base_device(dev: str) -> str:
    # strip trailing partition number for nvme/mmc style and sdX style names
    if re.search(r'(nvme|mmcblk|loop)\d', dev):
        return re.sub(r'p\d+$', '', dev)
    return re.sub(r'\d+$', '', dev)


def live_root_source() -> str:
    return (run(["findmnt", "-no", "SOURCE", "/"], check=False).out or "").strip()


def check_not_live_disk(ctx):
    """Refuse to touch a disk that backs the running live system."""

    root_src = live_root_source()
    if not root_src:
        return None
    for disk in ctx.topology.disks:
        if _base_device(root_src) == _base_device(disk.path):
            return f"target {disk.path} shares base device with live root {root_src}"
    return None


def sgdisk_new(part: Partition) -> list[str]:
    end = "0" if part.size == REMAINING else f"+{part.size}"
    return [
        "sgdisk",
        "-n", f"{part.number}:0:{end}",
        "-t", f"{part.number}:{part.type_code}",
        "-c", f"{part.number}:{part.label}",
        part.disk,
    ]


def plan_commands(topology) -> list[tuple[str, list[str]]]:
    """Ordered (step, argv) pairs: wipe and relabel each disk, then carve.

    Partitions are created in topology order so that "rest of the disk"
    partitions come after every fixed-size one on the same disk.
    """

    steps: list[tuple[str, list[str]]] = []
    for disk in topology.disks:
        steps.append((f"wipe {disk.path}", ["wipefs", "-a", disk.path]))
        steps.append((f"zap {disk.path}", ["sgdisk", "--zap-all", disk.path]))
        steps.append((f"label {disk.path}", ["sgdisk", "-o", disk.path]))
    for part in topology.partitions:
        steps.append((f"create {part.path}", sgdisk_new(part)))
    return steps


def partition_disks(ctx) -> None:
    topology = ctx.topology
    disks = ", ".join(d.path for d in topology.disks)
    ctx.prompt.require(f"ALL DATA on {disks} will be destroyed. Continue?", default=False)
    for name, cmd in plan_commands(topology):
        ctx.step(name, cmd, action="partition table write")
    for disk in topology.disks:
        ctx.step(f"reread {disk.path}", ["partprobe", disk.path], optional=True)
    udev_settle(dry_run=ctx.dry_run)
    trace("partitioning.done", partitions=[p.path for p in topology.partitions])
