"""System configuration from inside the target root (InTargetConfigure phase)."""

from __future__ import annotations

import os
from typing import List

from . import boot_plumbing
from .devices import uuid_of
from .executil import run, trace
from .model import BootBinding, InitramfsGenerator
from .paths import in_target
from .prompt import info

# the phase runs after ``chroot``, so the installed system is at /
TARGET_ROOT = "/"
KERNEL_SRC = "/usr/src/linux"
DEFAULT_PROFILE = "default/linux/amd64/23.0/desktop"
USER_GROUPS = "users,wheel,audio,video,usb,portage,plugdev"

KERNEL_CONFIG_OPTIONS = [
    "Configure manually with menuconfig",
    "Let genkernel configure and build everything",
    "Reuse the running kernel's configuration",
    "Start from the default configuration",
]


def _put(ctx, path: str, content: str, mode: int = 0o644) -> None:
    if ctx.dry_run:
        trace("chroot.write.dry_run", path=path)
        return
    boot_plumbing.write_file(TARGET_ROOT, path, content, mode)


def emerge(ctx, *atoms: str, optional: bool = False):
    return ctx.step(
        f"emerge {' '.join(atoms)}",
        ["emerge", "--noreplace", "--quiet-build", *atoms],
        optional=optional,
        timeout=None,
    )


def configure_identity(ctx) -> None:
    config = ctx.config
    _put(ctx, "/etc/hostname", config.hostname + "\n")
    _put(ctx, "/etc/timezone", config.timezone + "\n")
    ctx.step("timezone", ["emerge", "--config", "sys-libs/timezone-data"], timeout=None)
    _put(ctx, "/etc/locale.gen", f"{config.locale} UTF-8\n")
    ctx.step("locale-gen", ["locale-gen"], timeout=None)
    lang = config.locale.rsplit(".", 1)[0] + ".utf8"
    ctx.step("eselect locale", ["eselect", "locale", "set", lang])
    ctx.step("env-update", ["env-update"], optional=True)


def sync_portage(ctx) -> None:
    ctx.step("emerge-webrsync", ["emerge-webrsync"], action="portage tree sync", timeout=None)
    profile = ctx.prompt.ask("Gentoo profile to select", default=DEFAULT_PROFILE)
    ctx.step("eselect profile", ["eselect", "profile", "set", profile])
    emerge(ctx, "app-portage/cpuid2cpuflags", optional=True)
    flags = run(["cpuid2cpuflags"], check=False, dry_run=ctx.dry_run)
    if flags.rc == 0 and flags.out and not ctx.dry_run:
        detected = flags.out.strip().replace("CPU_FLAGS_X86: ", "")
        with open(in_target(TARGET_ROOT, "/etc/portage/make.conf"), "a", encoding="utf-8") as fh:
            fh.write(f'# CPU flags detected by cpuid2cpuflags\nCPU_FLAGS_X86="{detected}"\n')
    ctx.step(
        "world update",
        ["emerge", "--verbose", "--update", "--deep", "--newuse", "@world"],
        optional=True,
        timeout=None,
    )
    emerge(ctx, "app-portage/gentoolkit", "app-portage/eix", "sys-apps/mlocate", optional=True)


def filesystem_uuids(ctx) -> dict:
    t = ctx.topology
    devices = {
        "efi": t.partition("efi").path,
        "boot": t.partition("boot").path,
        "root": t.logical_volume("root").path,
        "swap": t.logical_volume("swap").path,
        "tensor": t.logical_volume("tensor").path,
    }
    return {role: uuid_of(path, dry_run=ctx.dry_run) for role, path in devices.items()}


def choose_generator(ctx) -> InitramfsGenerator:
    configured = InitramfsGenerator.parse(ctx.config.initramfs_generator)
    options = ["Dracut (modular)", "Genkernel (traditional Gentoo)"]
    default = 1 if configured is InitramfsGenerator.DRACUT else 2
    return InitramfsGenerator.parse(str(ctx.prompt.choose("Initramfs generator", options, default=default)))


def choose_luks_name(ctx, generator: InitramfsGenerator) -> str:
    """Boot-time name of the root container; the generator's convention is offered first."""

    preferred = generator.preferred_luks_name
    other = "crypt_root" if preferred == "cryptroot" else "cryptroot"
    idx = ctx.prompt.choose(
        f"LUKS naming convention for {generator.value}",
        [f"{preferred} (recommended for {generator.value})", other],
        default=1,
    )
    return preferred if idx == 1 else other


def build_kernel(ctx, generator: InitramfsGenerator) -> tuple:
    """Install sources, configure and build; returns (kernel release, genkernel built it)."""

    emerge(ctx, "sys-kernel/gentoo-sources", "sys-kernel/linux-firmware")
    ctx.step("eselect kernel", ["eselect", "kernel", "set", "1"])
    choice = ctx.prompt.choose("Kernel configuration", KERNEL_CONFIG_OPTIONS, default=3)
    genkernel_all = choice == 2
    if choice == 1:
        ctx.step("menuconfig", ["make", "-C", KERNEL_SRC, "menuconfig"], interactive=True, timeout=None)
    elif genkernel_all:
        emerge(ctx, "sys-kernel/genkernel")
        ctx.step("genkernel all", ["genkernel", "--menuconfig", "all"], interactive=True, timeout=None)
    elif choice == 3 and os.path.exists("/proc/config.gz"):
        ctx.step("running config", ["sh", "-c", f"zcat /proc/config.gz > {KERNEL_SRC}/.config"])
        ctx.step("olddefconfig", ["make", "-C", KERNEL_SRC, "olddefconfig"])
    else:
        ctx.step("defconfig", ["make", "-C", KERNEL_SRC, "defconfig"])

    if not genkernel_all or generator is InitramfsGenerator.DRACUT:
        jobs = f"-j{os.cpu_count() or 1}"
        ctx.step("kernel build", ["make", "-C", KERNEL_SRC, jobs], action="kernel build", timeout=None)
        ctx.step("modules_install", ["make", "-C", KERNEL_SRC, "modules_install"], timeout=None)
        ctx.step("kernel install", ["make", "-C", KERNEL_SRC, "install"], timeout=None)
    release = run(["make", "-s", "-C", KERNEL_SRC, "kernelrelease"], check=False, dry_run=ctx.dry_run)
    kver = "" if ctx.dry_run else (release.out or "").strip()
    return kver, genkernel_all


def boot_binding(ctx, generator: InitramfsGenerator, luks_name: str) -> BootBinding:
    t = ctx.topology
    return BootBinding(
        luks_name=luks_name,
        luks_uuid=uuid_of(t.container("root").partition, dry_run=ctx.dry_run),
        generator=generator,
        vg=ctx.config.vg_os,
        lv=ctx.config.lv_root,
    )


def tensor_entries(ctx) -> List[tuple]:
    t = ctx.topology
    return [
        (c.name, uuid_of(c.partition, dry_run=ctx.dry_run))
        for c in t.containers
        if c.role != "root"
    ]


def configure_boot(ctx) -> BootBinding:
    generator = choose_generator(ctx)
    luks_name = choose_luks_name(ctx, generator)
    # every UUID resolves before anything is built or written
    binding = boot_binding(ctx, generator, luks_name)
    tensors = tensor_entries(ctx)
    kver, genkernel_all = build_kernel(ctx, generator)
    emerge(ctx, "sys-kernel/dracut" if generator is InitramfsGenerator.DRACUT else "sys-kernel/genkernel")
    emerge(ctx, "sys-boot/grub:2", "sys-boot/efibootmgr")

    artifacts = boot_plumbing.render_boot_artifacts(ctx.config, binding, tensors)
    if ctx.dry_run:
        trace("chroot.boot.dry_run", files=sorted(artifacts))
    else:
        boot_plumbing.write_boot_artifacts(TARGET_ROOT, artifacts)

    kernel_config = None if genkernel_all else f"{KERNEL_SRC}/.config"
    cmd = boot_plumbing.initramfs_command(generator, kver, kernel_config)
    ctx.step("initramfs", cmd, action="initramfs generation", timeout=None)
    _put(ctx, boot_plumbing.INITRAMFS_COMMAND, " ".join(cmd) + "\n")

    ctx.step(
        "grub-install",
        ["grub-install", "--target=x86_64-efi", "--efi-directory=/boot/efi", "--bootloader-id=Gentoo", "--recheck"],
        action="bootloader installation",
        timeout=None,
    )
    ctx.step("grub-mkconfig", ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"], timeout=None)
    trace("chroot.boot", luks_name=luks_name, generator=generator.value, cmdline=binding.cmdline)
    return binding


def configure_network(ctx) -> None:
    hostname = ctx.config.hostname
    emerge(ctx, "net-misc/networkmanager")
    _put(
        ctx,
        "/etc/hosts",
        "127.0.0.1   localhost\n"
        "::1         localhost\n"
        f"127.0.1.1   {hostname}.localdomain {hostname}\n",
    )
    if ctx.config.stage3_variant == "systemd":
        ctx.step("enable NetworkManager", ["systemctl", "enable", "NetworkManager"], optional=True)
    else:
        ctx.step("enable NetworkManager", ["rc-update", "add", "NetworkManager", "default"], optional=True)


def create_user(ctx) -> None:
    user = ctx.config.username
    emerge(ctx, "app-admin/sudo")
    _put(ctx, "/etc/sudoers.d/wheel", "%wheel ALL=(ALL) ALL\n", mode=0o440)
    exists = run(["id", "-u", user], check=False, dry_run=ctx.dry_run)
    if ctx.dry_run or exists.rc != 0:
        ctx.step(f"useradd {user}", ["useradd", "-m", "-G", USER_GROUPS, "-s", "/bin/bash", user])
    info(f"Set a password for {user}")
    ctx.step(f"passwd {user}", ["passwd", user], interactive=True, timeout=None)
    home = f"/home/{user}"
    ctx.step(
        "home dirs",
        ["mkdir", "-p"] + [f"{home}/{d}" for d in ("Documents", "Downloads", "Pictures", "Videos")],
        optional=True,
    )
    ctx.step("home owner", ["chown", "-R", f"{user}:{user}", home], optional=True)


def configure_target(ctx) -> None:
    configure_identity(ctx)
    sync_portage(ctx)
    fstab = boot_plumbing.render_fstab(filesystem_uuids(ctx))
    _put(ctx, boot_plumbing.FSTAB, fstab)
    configure_boot(ctx)
    configure_network(ctx)
    create_user(ctx)
    info("Set a password for root")
    ctx.step("passwd root", ["passwd"], interactive=True, timeout=None)
    ctx.step("eix-update", ["eix-update"], optional=True, timeout=None)
    info("In-target configuration complete. Exit the chroot, unmount and reboot.")
