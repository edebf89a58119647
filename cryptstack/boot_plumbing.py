"""Render and write fstab, crypttab, initramfs and GRUB configuration.

Every ``render_*`` function is pure: identical inputs give byte-identical
text.  The container-unlock table, the initramfs configuration and the GRUB
defaults all derive from one :class:`~cryptstack.model.BootBinding` and are
written together by :func:`write_boot_artifacts`.
"""
from __future__ import annotations

import os
import re
from typing import Dict, Iterable, List, Optional

from .errors import BootArtifactError
from .executil import log, trace
from .model import NAMING_CONVENTIONS, BootBinding, Config, InitramfsGenerator
from .paths import in_target

FSTAB = "/etc/fstab"
CRYPTTAB = "/etc/crypttab"
DRACUT_CONF = "/etc/dracut.conf.d/encryption.conf"
GENKERNEL_CONF = "/etc/genkernel.conf"
GRUB_DEFAULT = "/etc/default/grub"
BOOT_CONFIG = "/root/boot_config.txt"
INITRAMFS_COMMAND = "/root/last_initramfs_command.txt"


def initramfs_conf_path(generator: InitramfsGenerator) -> str:
    return DRACUT_CONF if generator is InitramfsGenerator.DRACUT else GENKERNEL_CONF


def render_fstab(uuids: Dict[str, str]) -> str:
    """``uuids`` maps role (efi, boot, root, swap, tensor) to filesystem UUID."""

    rows = [
        (f"UUID={uuids['efi']}", "/boot/efi", "vfat", "defaults", "0", "2"),
        (f"UUID={uuids['boot']}", "/boot", "ext4", "defaults", "0", "2"),
        (f"UUID={uuids['root']}", "/", "btrfs", "defaults,subvol=@", "0", "1"),
        (f"UUID={uuids['root']}", "/home", "btrfs", "defaults,subvol=@home", "0", "2"),
        (f"UUID={uuids['root']}", "/.snapshots", "btrfs", "defaults,subvol=@snapshots", "0", "2"),
        (f"UUID={uuids['swap']}", "none", "swap", "sw", "0", "0"),
        (f"UUID={uuids['tensor']}", "/tensor_lab", "btrfs", "defaults", "0", "2"),
    ]
    lines = ["# <filesystem> <mountpoint> <type> <options> <dump> <pass>"]
    lines += ["  ".join(row) for row in rows]
    lines += ["", "# Temporary filesystems", "tmpfs  /tmp  tmpfs  defaults,nosuid,nodev,size=8G  0  0"]
    return "\n".join(lines) + "\n"


def render_crypttab(binding: BootBinding, tensors: Iterable[tuple]) -> str:
    """``tensors`` is a sequence of ``(name, uuid)`` for the auxiliary containers."""

    lines = [f"{binding.luks_name} UUID={binding.luks_uuid} none luks,discard,tries=3"]
    for name, uuid in tensors:
        lines.append(f"{name} UUID={uuid} none luks,discard,tries=1,nofail")
    return "\n".join(lines) + "\n"


def render_dracut_conf(binding: BootBinding) -> str:
    return "\n".join([
        f"# root container {binding.luks_name} (UUID={binding.luks_uuid})",
        'add_dracutmodules+=" crypt dm rootfs-block lvm btrfs "',
        'omit_dracutmodules+=" plymouth "',
        "",
        'add_drivers+=" nvme btrfs dm_crypt dm_mod "',
        "",
        'filesystems+=" btrfs ext4 vfat "',
        "",
        'rd_luks="yes"',
        'rd_luks_allow_discards="yes"',
        f'kernel_cmdline=" rd.luks.uuid={binding.luks_uuid} rd.luks.name={binding.luks_uuid}={binding.luks_name} "',
        "",
        'compress="zstd"',
        'hostonly="yes"',
        'hostonly_cmdline="yes"',
        "",
        'show_modules="yes"',
        'early_microcode="yes"',
    ]) + "\n"


def render_genkernel_conf(binding: BootBinding) -> str:
    return "\n".join([
        f"# root container {binding.luks_name} (UUID={binding.luks_uuid})",
        f"# crypt_root=UUID={binding.luks_uuid} opens as /dev/mapper/{binding.luks_name}",
        'LUKS="yes"',
        'LVM="yes"',
        'BTRFS="yes"',
        'INSTALL="yes"',
    ]) + "\n"


def render_initramfs_conf(binding: BootBinding) -> str:
    if binding.generator is InitramfsGenerator.DRACUT:
        return render_dracut_conf(binding)
    return render_genkernel_conf(binding)


def render_grub_default(binding: BootBinding) -> str:
    return "\n".join([
        'GRUB_DISTRIBUTOR="Gentoo"',
        "GRUB_TIMEOUT=5",
        f'GRUB_CMDLINE_LINUX="{binding.cmdline}"',
        "GRUB_ENABLE_CRYPTODISK=y",
        "GRUB_DISABLE_OS_PROBER=false",
    ]) + "\n"


def render_boot_config(binding: BootBinding) -> str:
    number = 1 if binding.generator is InitramfsGenerator.DRACUT else 2
    return f"INITRAMFS_GENERATOR={number}\nLUKS_NAME={binding.luks_name}\n"


def initramfs_command(generator: InitramfsGenerator, kver: str = "", kernel_config: Optional[str] = None) -> List[str]:
    if generator is InitramfsGenerator.DRACUT:
        return ["dracut", "--force", "--kver", kver] if kver else ["dracut", "--force"]
    cmd = ["genkernel", "--install", "--luks", "--lvm", "--btrfs"]
    if kernel_config:
        return cmd + ["--no-menuconfig", f"--kernel-config={kernel_config}", "initramfs"]
    return cmd + ["all"]


def render_boot_artifacts(config: Config, binding: BootBinding, tensors: Iterable[tuple]) -> Dict[str, str]:
    """Target-absolute path -> content for the set written together."""

    return {
        CRYPTTAB: render_crypttab(binding, tensors),
        initramfs_conf_path(binding.generator): render_initramfs_conf(binding),
        GRUB_DEFAULT: render_grub_default(binding),
        BOOT_CONFIG: render_boot_config(binding),
    }


def _write_file(path: str, data: str, mode: int = 0o644) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(path, mode)


def write_file(root: str, path: str, data: str, mode: int = 0o644) -> str:
    host_path = in_target(root, path)
    _write_file(host_path, data, mode)
    trace("boot.write", path=host_path)
    return host_path


def write_boot_artifacts(root: str, artifacts: Dict[str, str]) -> List[str]:
    """Write ``artifacts`` under ``root`` as one unit.

    Every file is first written next to its destination; only when all of
    them exist are they renamed into place.  A failure while staging leaves
    the old set untouched.  A failure while renaming raises
    :class:`BootArtifactError` naming the files already replaced and the
    ones still holding the previous binding.
    """

    staged: List[tuple] = []
    try:
        for path, content in artifacts.items():
            host_path = in_target(root, path)
            tmp_path = host_path + ".cryptstack-new"
            _write_file(tmp_path, content, 0o600 if path == CRYPTTAB else 0o644)
            staged.append((path, tmp_path, host_path))
    except OSError as exc:
        for _, tmp_path, _ in staged:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                continue
        log("ERROR", "boot.stage_failed", error=str(exc))
        raise BootArtifactError(
            f"could not stage boot artifacts ({exc}); existing files were left unchanged",
            updated=[],
            stale=[],
        ) from exc

    updated: List[str] = []
    for index, (path, tmp_path, host_path) in enumerate(staged):
        try:
            os.replace(tmp_path, host_path)
        except OSError as exc:
            stale = [p for p, _, _ in staged[index:]]
            log("ERROR", "boot.replace_failed", updated=updated, stale=stale, error=str(exc))
            raise BootArtifactError(
                f"boot artifacts are inconsistent: {', '.join(updated) or 'nothing'} updated, "
                f"{', '.join(stale)} still reference the previous binding ({exc})",
                updated=updated,
                stale=stale,
            ) from exc
        updated.append(path)
    trace("boot.artifacts", root=root, files=updated)
    return updated


_DRACUT_NAME_RE = re.compile(r"rd\.luks\.name=[^=\s]+=(\S+)")
_GENKERNEL_NAME_RE = re.compile(r"(?:^|\s)([A-Za-z0-9_.-]+)=UUID=\S+")
_CRYPT_ROOT_RE = re.compile(r"crypt_root=UUID=\S+ opens as /dev/mapper/(\S+)")


def _read(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()
    except FileNotFoundError:
        return None


def referenced_root_names(root: str, luks_uuid: Optional[str] = None) -> Dict[str, List[str]]:
    """Root-container names each existing boot artifact refers to.

    Crypttab lines are matched on ``luks_uuid`` when it is known, otherwise on
    the two naming conventions.
    """

    found: Dict[str, List[str]] = {}

    text = _read(in_target(root, CRYPTTAB))
    if text is not None:
        names = []
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 2 or parts[0].startswith("#"):
                continue
            if luks_uuid and parts[1] == f"UUID={luks_uuid}":
                names.append(parts[0])
            elif not luks_uuid and parts[0] in NAMING_CONVENTIONS:
                names.append(parts[0])
        found[CRYPTTAB] = names

    for path in (DRACUT_CONF, GRUB_DEFAULT):
        text = _read(in_target(root, path))
        if text is None:
            continue
        names = _DRACUT_NAME_RE.findall(text)
        for line in text.splitlines():
            if line.startswith("GRUB_CMDLINE_LINUX") and "rd.luks" not in line:
                names += [n for n in _GENKERNEL_NAME_RE.findall(line.split("=", 1)[1].strip('"'))]
        found[path] = sorted(set(names))

    text = _read(in_target(root, GENKERNEL_CONF))
    if text is not None:
        found[GENKERNEL_CONF] = _CRYPT_ROOT_RE.findall(text)

    text = _read(in_target(root, BOOT_CONFIG))
    if text is not None:
        found[BOOT_CONFIG] = [
            line.split("=", 1)[1].strip().strip('"')
            for line in text.splitlines()
            if line.startswith("LUKS_NAME=")
        ]
    trace("boot.referenced_names", root=root, found=found)
    return found
