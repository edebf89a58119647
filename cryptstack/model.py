from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields, replace
from typing import Dict, List, Optional

REMAINING = "100%FREE"
NAMING_CONVENTIONS = ("cryptroot", "crypt_root")


class Phase(enum.Enum):
    PARTITION = "partition"
    ENCRYPT = "encrypt"
    VOLUME_MANAGE = "volume-manage"
    FILESYSTEM = "filesystem"
    MOUNT = "mount"
    BASE_INSTALL = "base-install"
    IN_TARGET_CONFIGURE = "in-target-configure"
    POST_REBOOT = "post-reboot"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self) + 1

    @property
    def marker_name(self) -> str:
        return f"{self.index:02d}-{self.value}.done"

    @classmethod
    def parse(cls, text: str) -> "Phase":
        key = text.strip().lower().replace("_", "-")
        for member in cls:
            if member.value == key or str(member.index) == key:
                return member
        raise ValueError(f"unknown phase {text!r}")


PHASE_ORDER: List[Phase] = list(Phase)


class PhaseStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already-completed"
    FAILED = "failed"


class InitramfsGenerator(enum.Enum):
    DRACUT = "dracut"
    GENKERNEL = "genkernel"

    @property
    def preferred_luks_name(self) -> str:
        # dracut maps rd.luks.name verbatim; genkernel keys off crypt_root=
        return "cryptroot" if self is InitramfsGenerator.DRACUT else "crypt_root"

    @classmethod
    def parse(cls, text: str) -> "InitramfsGenerator":
        key = (text or "").strip().lower()
        if key in {"1", "dracut"}:
            return cls.DRACUT
        if key in {"2", "genkernel"}:
            return cls.GENKERNEL
        raise ValueError(f"unknown initramfs generator {text!r}")


@dataclass
class Config:
    disk0: str = ""
    disk1: str = ""
    hostname: str = "io"
    username: str = "eliox"
    timezone: str = "America/Denver"
    locale: str = "en_US.UTF-8"
    efi_size: str = "1G"
    boot_size: str = "1G"
    root_size: str = "100G"
    swap_size: str = "32G"
    luks_root: str = "crypt_root"
    luks_tensor_a: str = "crypt_tensor_a"
    luks_tensor_b: str = "crypt_tensor_b"
    vg_os: str = "vg_io"
    lv_root: str = "lv_io_root"
    lv_swap: str = "lv_io_swap"
    vg_tensor: str = "vg_tensor_lab"
    lv_tensor: str = "lv_tensor_lab"
    mount_root: str = "/mnt/gentoo"
    stage3_file: str = ""
    stage3_url: str = ""
    stage3_variant: str = "openrc"
    initramfs_generator: str = "dracut"

    @classmethod
    def keys(cls) -> List[str]:
        return [f.name.upper() for f in fields(cls)]

    def as_mapping(self) -> Dict[str, str]:
        return {f.name.upper(): str(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "Config":
        known = {f.name for f in fields(cls)}
        values = {}
        unknown = []
        for key, value in data.items():
            name = key.strip().lower()
            if name not in known:
                unknown.append(key)
                continue
            values[name] = value
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**values)

    def with_changes(self, changes: Dict[str, str]) -> "Config":
        merged = self.as_mapping()
        merged.update({k.upper(): v for k, v in changes.items()})
        return Config.from_mapping(merged)

    def bound_names(self) -> Dict[str, str]:
        """Names that become part of on-disk identity once created."""

        return {
            "DISK0": self.disk0,
            "DISK1": self.disk1,
            "LUKS_ROOT": self.luks_root,
            "LUKS_TENSOR_A": self.luks_tensor_a,
            "LUKS_TENSOR_B": self.luks_tensor_b,
            "VG_OS": self.vg_os,
            "LV_ROOT": self.lv_root,
            "LV_SWAP": self.lv_swap,
            "VG_TENSOR": self.vg_tensor,
            "LV_TENSOR": self.lv_tensor,
        }


def mapper_path(name: str) -> str:
    return f"/dev/mapper/{name}"


def lv_mapper_path(vg: str, lv: str) -> str:
    # device-mapper doubles literal dashes inside VG/LV names
    return f"/dev/mapper/{vg.replace('-', '--')}-{lv.replace('-', '--')}"


@dataclass
class Disk:
    path: str
    role: str


@dataclass
class Partition:
    disk: str
    number: int
    path: str
    role: str
    size: str
    type_code: str
    label: str


@dataclass
class EncryptedContainer:
    name: str
    partition: str
    role: str

    @property
    def path(self) -> str:
        return mapper_path(self.name)


@dataclass
class LogicalVolume:
    vg: str
    name: str
    size: str
    role: str
    mirrors: int = 0

    @property
    def path(self) -> str:
        return lv_mapper_path(self.vg, self.name)

    @property
    def consumes_remaining(self) -> bool:
        return self.size == REMAINING


@dataclass
class VolumeGroup:
    name: str
    members: List[str]
    logical_volumes: List[LogicalVolume] = field(default_factory=list)


@dataclass
class Filesystem:
    device: str
    fstype: str
    label: str
    role: str


@dataclass
class Subvolume:
    name: str
    mountpoint: str


@dataclass
class Mountpoint:
    source: str
    target: str
    fstype: Optional[str] = None
    options: List[str] = field(default_factory=list)
    optional: bool = False


@dataclass
class StorageTopology:
    disks: List[Disk] = field(default_factory=list)
    partitions: List[Partition] = field(default_factory=list)
    containers: List[EncryptedContainer] = field(default_factory=list)
    volume_groups: List[VolumeGroup] = field(default_factory=list)
    filesystems: List[Filesystem] = field(default_factory=list)
    subvolumes: List[Subvolume] = field(default_factory=list)
    mounts: List[Mountpoint] = field(default_factory=list)
    swap: Optional[str] = None

    def partition(self, role: str) -> Partition:
        for part in self.partitions:
            if part.role == role:
                return part
        raise KeyError(role)

    def container(self, role: str) -> EncryptedContainer:
        for container in self.containers:
            if container.role == role:
                return container
        raise KeyError(role)

    def logical_volume(self, role: str) -> LogicalVolume:
        for lv in self.logical_volumes:
            if lv.role == role:
                return lv
        raise KeyError(role)

    @property
    def logical_volumes(self) -> List[LogicalVolume]:
        return [lv for vg in self.volume_groups for lv in vg.logical_volumes]

    def layers(self) -> Dict[str, List[str]]:
        return {
            "disk": [d.path for d in self.disks],
            "partition": [p.path for p in self.partitions],
            "container": [c.path for c in self.containers],
            "logical_volume": [lv.path for lv in self.logical_volumes],
        }

    def duplicate_paths(self) -> List[str]:
        dupes: List[str] = []
        for paths in self.layers().values():
            seen = set()
            for path in paths:
                if path in seen and path not in dupes:
                    dupes.append(path)
                seen.add(path)
        return dupes


@dataclass(frozen=True)
class BootBinding:
    luks_name: str
    luks_uuid: str
    generator: InitramfsGenerator
    vg: str
    lv: str
    root_fstype: str = "btrfs"
    root_subvol: str = "@"

    @property
    def root_device(self) -> str:
        return lv_mapper_path(self.vg, self.lv)

    @property
    def cmdline(self) -> str:
        root = f"root={self.root_device} rootfstype={self.root_fstype} rootflags=subvol={self.root_subvol}"
        if self.generator is InitramfsGenerator.DRACUT:
            return (
                f"rd.luks.uuid={self.luks_uuid} rd.luks.name={self.luks_uuid}={self.luks_name} "
                f"{root} dolvm"
            )
        return f"dolvm {self.luks_name}=UUID={self.luks_uuid} {root}"

    def renamed(self, luks_name: str) -> "BootBinding":
        return replace(self, luks_name=luks_name)
