"""Rebuild a consistent boot path for an installed system that no longer boots.

The reconstructor assumes nothing survived from the installation run: it
re-derives the storage topology from the disks, reconciles the root
container name with what the boot artifacts reference and rewrites the
artifacts as one set.
"""

from __future__ import annotations

import enum
import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from . import boot_plumbing, devices, executil
from .errors import DeviceAmbiguous, DeviceNotFound, NamingMismatch, PreconditionUnmet
from .executil import log, run, trace
from .model import NAMING_CONVENTIONS, BootBinding, Config, InitramfsGenerator, lv_mapper_path
from .mounts import mount_pseudo_filesystems
from .paths import in_target
from .prompt import Prompt, TerminalPrompt, info, warn

REQUIRED_TOOLS = ("cryptsetup", "lvm", "blkid", "mount")


class RecoveryState(enum.Enum):
    DETECT_DISKS = "detect-disks"
    DETECT_PARTITIONS = "detect-partitions"
    DISAMBIGUATE_NAMING = "disambiguate-naming"
    OPEN_CONTAINER = "open-container"
    ACTIVATE_VG = "activate-vg"
    MOUNT_TOPOLOGY = "mount-topology"
    SELECT_GENERATOR = "select-generator"
    REGENERATE_ARTIFACTS = "regenerate-artifacts"
    FINISH = "finish"


@dataclass
class RecoveryReport:
    disk0: str = ""
    disk1: str = ""
    partitions: Dict[str, str] = field(default_factory=dict)
    opened_name: Optional[str] = None
    luks_name: str = ""
    luks_uuid: str = ""
    vg: str = ""
    lv: str = ""
    generator: Optional[str] = None
    referenced: Dict[str, List[str]] = field(default_factory=dict)
    mismatches: List[dict] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    rebuilt: bool = False
    states: List[str] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "disk0": self.disk0,
            "disk1": self.disk1,
            "partitions": dict(self.partitions),
            "opened_name": self.opened_name,
            "luks_name": self.luks_name,
            "luks_uuid": self.luks_uuid,
            "vg": self.vg,
            "lv": self.lv,
            "generator": self.generator,
            "referenced": dict(self.referenced),
            "mismatches": list(self.mismatches),
            "artifacts": list(self.artifacts),
            "rebuilt": self.rebuilt,
            "states": list(self.states),
            "warnings": list(self.warnings),
        }


def _device(name: str) -> str:
    name = name.strip()
    return name if name.startswith("/dev/") else f"/dev/{name}"


def read_boot_config(root: str) -> Dict[str, str]:
    path = in_target(root, boot_plumbing.BOOT_CONFIG)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            lines = fh.read().splitlines()
    except FileNotFoundError:
        return {}
    values = {}
    for line in lines:
        if "=" in line and not line.startswith("#"):
            key, value = line.split("=", 1)
            values[key.strip()] = value.strip().strip('"')
    return values


def existing_tensor_entries(root: str, luks_uuid: str) -> List[tuple]:
    """(name, uuid) of every non-root line of the current crypttab."""

    path = in_target(root, boot_plumbing.CRYPTTAB)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except FileNotFoundError:
        return []
    entries = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0].startswith("#") or not parts[1].startswith("UUID="):
            continue
        uuid = parts[1][len("UUID="):]
        if uuid != luks_uuid:
            entries.append((parts[0], uuid))
    return entries


def _release_key(release: str) -> list:
    # numeric fields compare as numbers so 6.12 sorts after 6.6
    return [(0, int(part), "") if part.isdigit() else (1, 0, part) for part in re.split(r"[.\-_+]", release)]


def latest_kernel(root: str) -> str:
    try:
        versions = sorted(os.listdir(in_target(root, "/lib/modules")), key=_release_key)
    except FileNotFoundError:
        return ""
    return versions[-1] if versions else ""


class BootRecoveryReconstructor:
    """DetectDisks -> ... -> RegenerateArtifacts -> Finish, one state at a time."""

    def __init__(
            self,
            config: Optional[Config] = None,
            *,
            prompt: Optional[Prompt] = None,
            dry_run: bool = False,
            exists: Callable[[str], bool] = os.path.exists,
            which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.config = config or Config()
        self.prompt = prompt or TerminalPrompt()
        self.dry_run = dry_run
        self.exists = exists
        self.which = which
        self.root = self.config.mount_root
        self.report = RecoveryReport()
        self.state = RecoveryState.DETECT_DISKS
        self.generator = InitramfsGenerator.DRACUT

    def step(self, name, cmd, *, optional=False, action=None, timeout=60.0, interactive=False):
        return executil.step(
            name,
            cmd,
            optional=optional,
            warnings=self.report.warnings,
            action=action,
            dry_run=self.dry_run,
            timeout=timeout,
            interactive=interactive,
        )

    def _enter(self, state: RecoveryState) -> None:
        self.state = state
        self.report.states.append(state.value)
        trace("recovery.state", state=state.value)

    def _sanity(self, message: str) -> None:
        warn(message)
        self.report.warnings.append({"step": self.state.value, "message": message})
        self.prompt.require("Continue anyway?", default=False)

    def _probe(self, disk: str) -> str:
        try:
            return devices.probe_partition_scheme(disk, exists=self.exists)
        except DeviceAmbiguous as exc:
            idx = self.prompt.choose(
                f"Both partition naming schemes exist on {disk}; which one holds the system?",
                exc.candidates,
                default=1,
            )
            # candidates are ordered p-suffixed first
            return "p" if idx == 1 else ""

    # -- states ------------------------------------------------------------

    def detect_disks(self) -> None:
        self._enter(RecoveryState.DETECT_DISKS)
        missing = [tool for tool in REQUIRED_TOOLS if self.which(tool) is None]
        if missing:
            raise PreconditionUnmet(f"required commands not available: {', '.join(missing)}", missing=missing)
        run(["lsblk", "-o", "NAME,SIZE,TYPE,FSTYPE"], check=False, dry_run=self.dry_run, interactive=True)
        default = self.config.disk0.replace("/dev/", "")
        answer = self.prompt.ask("Primary disk device (e.g. nvme0n1)", default=default)
        if not answer:
            raise DeviceNotFound("no primary disk given", missing=["<primary disk>"])
        self.report.disk0 = _device(answer)

    def detect_partitions(self) -> None:
        self._enter(RecoveryState.DETECT_PARTITIONS)
        disk0 = self.report.disk0
        sep = self._probe(disk0)
        parts = {
            role: devices.partition_path(disk0, n, sep)
            for role, n in (("efi", 1), ("boot", 2), ("root", 3), ("tensor_a", 4))
        }
        if devices.fstype_of(parts["efi"]) != "vfat":
            self._sanity(f"{parts['efi']} is not a vfat partition; is {disk0} the right disk?")
        if not devices.is_luks(parts["root"]):
            self._sanity(f"{parts['root']} is not a LUKS container")

        default = self.config.disk1.replace("/dev/", "")
        secondary = self.prompt.ask("Secondary disk device (empty to skip)", default=default)
        if secondary:
            disk1 = _device(secondary)
            try:
                parts["tensor_b"] = devices.partition_path(disk1, 1, self._probe(disk1))
                self.report.disk1 = disk1
            except DeviceNotFound:
                warn(f"could not detect partitions on {disk1}")
                self.prompt.require("Continue without the secondary disk?", default=False)
        self.report.partitions = parts
        trace("recovery.partitions", partitions=parts)

    def open_names(self) -> List[str]:
        return [
            name for name in NAMING_CONVENTIONS
            if run(["cryptsetup", "status", name], check=False).rc == 0
        ]

    def disambiguate_naming(self) -> None:
        self._enter(RecoveryState.DISAMBIGUATE_NAMING)
        opened = self.open_names()
        self.report.opened_name = opened[0] if opened else None
        default = NAMING_CONVENTIONS.index(opened[0]) + 1 if opened else 1
        options = [
            "cryptroot (without underscore)",
            "crypt_root (with underscore)",
        ]
        idx = self.prompt.choose("LUKS device naming convention", options, default=default)
        self.report.luks_name = NAMING_CONVENTIONS[idx - 1]
        trace("recovery.naming", opened=opened, chosen=self.report.luks_name)

    def open_container(self) -> None:
        self._enter(RecoveryState.OPEN_CONTAINER)
        if self.report.opened_name:
            info(f"LUKS container already open: {self.report.opened_name}")
            return
        name = self.report.luks_name
        root = self.report.partitions["root"]
        self.step(
            f"open {name}",
            ["cryptsetup", "open", root, name],
            action=f"opening {root} as {name}",
            interactive=True,
            timeout=None,
        )
        self.report.opened_name = name

    def activate_vg(self) -> None:
        self._enter(RecoveryState.ACTIVATE_VG)
        self.step("vgscan", ["vgscan", "--mknodes"], action="volume group scan")
        self.step("vgchange", ["vgchange", "-ay"], action="volume group activation")
        run(["vgs"], check=False, dry_run=self.dry_run, interactive=True)
        self.report.vg = self.prompt.ask("Volume group name", default=self.config.vg_os)
        self.report.lv = self.prompt.ask("Root logical volume name", default=self.config.lv_root)
        root_dev = lv_mapper_path(self.report.vg, self.report.lv)
        if not self.dry_run and not self.exists(root_dev):
            raise DeviceNotFound(f"root device {root_dev} does not exist", missing=[root_dev])

    def mount_topology(self) -> None:
        self._enter(RecoveryState.MOUNT_TOPOLOGY)
        root = self.root
        root_dev = lv_mapper_path(self.report.vg, self.report.lv)
        parts = self.report.partitions
        self.step("mkdir root", ["mkdir", "-p", root])
        res = self.step("mount root @", ["mount", "-o", "subvol=@", root_dev, root], optional=True)
        if res.rc != 0:
            warn("mounting with subvol=@ failed, trying the plain filesystem")
            self.step("mount root", ["mount", root_dev, root], action=f"mounting {root_dev}")
            listing = run(["btrfs", "subvolume", "list", root], check=False, dry_run=self.dry_run)
            if "@" in (listing.out or "") and self.prompt.confirm(
                    "Btrfs subvolume @ exists but is not mounted. Remount it?", default=True):
                self.step("umount root", ["umount", root])
                self.step("mount root @", ["mount", "-o", "subvol=@", root_dev, root], action="remount with subvol=@")
        targets = [in_target(root, p) for p in ("/boot", "/boot/efi", "/home", "/.snapshots", "/tensor_lab")]
        self.step("mountpoints", ["mkdir", "-p", *targets], optional=True)
        self.step("mount boot", ["mount", parts["boot"], in_target(root, "/boot")], optional=True)
        self.step("mount efi", ["mount", parts["efi"], in_target(root, "/boot/efi")], optional=True)
        self.step("mount home", ["mount", "-o", "subvol=@home", root_dev, in_target(root, "/home")], optional=True)
        self.step(
            "mount snapshots",
            ["mount", "-o", "subvol=@snapshots", root_dev, in_target(root, "/.snapshots")],
            optional=True,
        )
        mount_pseudo_filesystems(self, root)
        run(["findmnt", "-R", root], check=False, dry_run=self.dry_run, interactive=True)

    def select_generator(self) -> None:
        self._enter(RecoveryState.SELECT_GENERATOR)
        previous = read_boot_config(self.root).get("INITRAMFS_GENERATOR", "1")
        try:
            default = 1 if InitramfsGenerator.parse(previous) is InitramfsGenerator.DRACUT else 2
        except ValueError:
            default = 1
        idx = self.prompt.choose(
            "Initramfs generator",
            ["Dracut (modular)", "Genkernel (traditional Gentoo)"],
            default=default,
        )
        self.generator = InitramfsGenerator.parse(str(idx))
        self.report.generator = self.generator.value

    def detect_mismatches(self) -> List[dict]:
        chosen = self.report.luks_name
        referenced = boot_plumbing.referenced_root_names(self.root, self.report.luks_uuid or None)
        self.report.referenced = referenced
        mismatches = []
        for artifact, names in sorted(referenced.items()):
            wrong = [n for n in names if n != chosen]
            if wrong:
                mismatches.append({"artifact": artifact, "expected": chosen, "found": wrong})
        opened = self.report.opened_name
        if opened and opened != chosen:
            mismatches.append({"artifact": "live mapping", "expected": chosen, "found": [opened]})
        for item in mismatches:
            err = NamingMismatch(
                f"{item['artifact']} references {', '.join(item['found'])}, expected {chosen}",
                expected=chosen,
                found=item["found"],
            )
            log("WARN", "recovery.naming_mismatch", error=str(err), **item)
        self.report.mismatches = mismatches
        return mismatches

    def regenerate_artifacts(self) -> None:
        self._enter(RecoveryState.REGENERATE_ARTIFACTS)
        root_part = self.report.partitions["root"]
        self.report.luks_uuid = devices.uuid_of(root_part, dry_run=self.dry_run)
        mismatches = self.detect_mismatches()
        if mismatches:
            found = sorted({n for m in mismatches for n in m["found"]})
            warn(f"boot artifacts reference {', '.join(found)} but the chosen name is {self.report.luks_name}")
            self.prompt.require(
                f"Regenerate crypttab, initramfs and GRUB configuration for {self.report.luks_name}?",
                default=True,
            )
        binding = BootBinding(
            luks_name=self.report.luks_name,
            luks_uuid=self.report.luks_uuid,
            generator=self.generator,
            vg=self.report.vg,
            lv=self.report.lv,
        )
        tensors = existing_tensor_entries(self.root, binding.luks_uuid)
        artifacts = boot_plumbing.render_boot_artifacts(self.config, binding, tensors)
        if self.dry_run:
            trace("recovery.artifacts.dry_run", files=sorted(artifacts))
            self.report.artifacts = list(artifacts)
        else:
            self.report.artifacts = boot_plumbing.write_boot_artifacts(self.root, artifacts)
        other = boot_plumbing.initramfs_conf_path(
            InitramfsGenerator.GENKERNEL if self.generator is InitramfsGenerator.DRACUT else InitramfsGenerator.DRACUT
        )
        if other in self.report.referenced and any(n != binding.luks_name for n in self.report.referenced[other]):
            message = f"{other} belongs to the unused generator and still names the old container"
            warn(message)
            self.report.warnings.append({"step": "regenerate", "message": message})

        self.step(
            "resolv.conf",
            ["cp", "--dereference", "/etc/resolv.conf", in_target(self.root, "/etc/resolv.conf")],
            optional=True,
        )
        if self.prompt.confirm("Rebuild the initramfs and reinstall GRUB now?", default=True):
            self.rebuild(binding)

    def rebuild(self, binding: BootBinding) -> None:
        chroot = ["chroot", self.root]
        kver = latest_kernel(self.root)
        cmd = boot_plumbing.initramfs_command(binding.generator, kver)
        if binding.generator is InitramfsGenerator.GENKERNEL:
            cmd = cmd[:-1] + ["initramfs"]
        self.step("initramfs", chroot + cmd, action="initramfs generation", timeout=None)
        if not self.dry_run:
            boot_plumbing.write_file(self.root, boot_plumbing.INITRAMFS_COMMAND, " ".join(cmd) + "\n")
        self.step(
            "grub-install",
            chroot + ["grub-install", "--target=x86_64-efi", "--efi-directory=/boot/efi",
                      "--bootloader-id=Gentoo", "--recheck"],
            action="bootloader installation",
            timeout=None,
        )
        self.step("grub-mkconfig", chroot + ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"], timeout=None)
        self.report.rebuilt = True

    def finish(self) -> RecoveryReport:
        self._enter(RecoveryState.FINISH)
        info("Recovery complete. Next steps:")
        info(f"  umount -R {self.root}")
        info(f"  cryptsetup close {self.report.opened_name or self.report.luks_name}")
        info("  reboot")
        trace("recovery.finish", report=self.report.as_dict())
        return self.report

    def run(self) -> RecoveryReport:
        self.detect_disks()
        self.detect_partitions()
        self.disambiguate_naming()
        self.open_container()
        self.activate_vg()
        self.mount_topology()
        self.select_generator()
        self.regenerate_artifacts()
        return self.finish()
