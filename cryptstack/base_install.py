"""Stage3 bootstrap and Portage seed configuration (BaseInstall phase)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from . import handoff
from .executil import trace
from .mounts import is_mountpoint
from .paths import base_path, in_target

AUTOBUILDS = "https://distfiles.gentoo.org/releases/amd64/autobuilds"
PORTAGE_DIRS = ("package.use", "package.accept_keywords", "package.mask", "package.unmask", "repos.conf")
PORTAGE_TMPDIR = "/tensor_lab/var/tmp"

MAKE_CONF = """\
# Compiler flags optimized for AMD Zen 5
COMMON_FLAGS="-march=znver4 -O2 -pipe"
CFLAGS="${COMMON_FLAGS}"
CXXFLAGS="${COMMON_FLAGS}"
FCFLAGS="${COMMON_FLAGS}"
FFLAGS="${COMMON_FLAGS}"

MAKEOPTS="-j32"
EMERGE_DEFAULT_OPTS="--jobs=16 --load-average=32"

ACCEPT_KEYWORDS="amd64"
USE="X wayland gtk qt5 pulseaudio networkmanager dbus policykit \\
     btrfs lvm device-mapper crypt luks \\
     nvidia cuda opencl vulkan vaapi vdpau \\
     python lua \\
     zstd lz4"

VIDEO_CARDS="nvidia"
INPUT_DEVICES="libinput"

L10N="en-US"
LINGUAS="en_US"

FEATURES="parallel-fetch parallel-install candy"
GENTOO_MIRRORS="https://mirrors.kernel.org/gentoo"

PORTAGE_TMPDIR="{tmpdir}"
"""

PACKAGE_USE_DESKTOP = """\
# Desktop environment
sys-apps/dbus X
media-video/pipewire sound-server jack-sdk
gui-libs/gtk+ wayland
dev-qt/qtgui egl
media-libs/mesa wayland vulkan
x11-libs/libxcb X
"""

ENTER_CHROOT = """\
#!/bin/bash
# Enter the installed system and continue with the in-target configuration.
echo "Entering chroot environment..."
echo "Inside, run: cd {toolkit} && python3 -m cryptstack configure"
exec chroot {root} /bin/bash -l
"""

# pseudo filesystems are already mounted over these by the Mount phase
TAR_EXCLUDES = ("./dev", "./proc", "./sys", "./run")


def check_target_mounted(ctx) -> Optional[str]:
    if not is_mountpoint(ctx.mount_root):
        return f"target directory {ctx.mount_root} is not a mountpoint"
    return None


def stage3_dir() -> str:
    return os.path.join(base_path(), "stage3")


def latest_index_url(variant: str) -> str:
    return f"{AUTOBUILDS}/latest-stage3-amd64-desktop-{variant}.txt"


def parse_latest_index(text: str) -> str:
    """Return the tarball path listed in an autobuilds ``latest-*.txt`` file."""

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or stripped.startswith("-----"):
            continue
        return stripped.split()[0]
    raise ValueError("no stage3 entry found in autobuilds index")


def select_stage3(ctx) -> str:
    """Local file, then explicit URL, then latest autobuild of the chosen variant."""

    config = ctx.config
    if config.stage3_file and os.path.isfile(config.stage3_file):
        trace("base.stage3.local", path=config.stage3_file)
        return config.stage3_file
    url = config.stage3_url
    if not url:
        index = ctx.step(
            "stage3 index",
            ["wget", "-qO-", latest_index_url(config.stage3_variant)],
            action="stage3 selection",
        )
        if ctx.dry_run:
            url = f"{AUTOBUILDS}/stage3-amd64-desktop-{config.stage3_variant}.tar.xz"
        else:
            url = f"{AUTOBUILDS}/{parse_latest_index(index.out)}"
    dest = config.stage3_file or os.path.join(stage3_dir(), os.path.basename(url))
    ctx.step("stage3 dir", ["mkdir", "-p", os.path.dirname(dest)])
    ctx.step("stage3 download", ["wget", "-O", dest, url], action="stage3 download", timeout=None)
    trace("base.stage3.downloaded", url=url, path=dest)
    return dest


def extract_stage3(ctx, tarball: str) -> None:
    cmd = ["tar", "xpf", tarball, "--xattrs-include=*.*", "--numeric-owner", "-C", ctx.mount_root]
    for pattern in TAR_EXCLUDES:
        cmd.append(f"--exclude={pattern}")
    ctx.step("stage3 extract", cmd, action=f"extraction of {os.path.basename(tarball)}", timeout=None)


def _write(path: str, content: str, mode: int = 0o644) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(content)
    os.chmod(path, mode)


def setup_portage(ctx) -> None:
    root = ctx.mount_root
    portage = in_target(root, "/etc/portage")
    if ctx.dry_run:
        trace("base.portage.dry_run", path=portage)
        return
    for name in PORTAGE_DIRS:
        os.makedirs(os.path.join(portage, name), exist_ok=True)
    ctx.step(
        "repos.conf",
        ["cp", in_target(root, "/usr/share/portage/config/repos.conf"), os.path.join(portage, "repos.conf", "gentoo.conf")],
    )
    _write(os.path.join(portage, "make.conf"), MAKE_CONF.replace("{tmpdir}", PORTAGE_TMPDIR))
    _write(os.path.join(portage, "package.use", "desktop"), PACKAGE_USE_DESKTOP)
    os.makedirs(in_target(root, PORTAGE_TMPDIR), exist_ok=True)
    trace("base.portage", path=portage, tmpdir=PORTAGE_TMPDIR)


def write_enter_script(ctx) -> str:
    path = in_target(ctx.mount_root, "/enter-chroot.sh")
    if not ctx.dry_run:
        _write(path, ENTER_CHROOT.format(root=ctx.mount_root, toolkit=handoff.TARGET_TOOLKIT_DIR), mode=0o755)
    return path


def install_base(ctx) -> None:
    root = ctx.mount_root
    tarball = select_stage3(ctx)
    extract_stage3(ctx, tarball)
    ctx.step(
        "resolv.conf",
        ["cp", "--dereference", "/etc/resolv.conf", in_target(root, "/etc/resolv.conf")],
        optional=True,
    )
    setup_portage(ctx)
    if not ctx.dry_run:
        handoff.stage_toolkit(ctx.config, ctx.store)
    script = write_enter_script(ctx)
    trace("base.done", root=root, enter=script)
