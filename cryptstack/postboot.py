"""First-boot verification and optional extras (PostReboot phase)."""
from __future__ import annotations

import os
from typing import Optional

from .executil import run, trace
from .mounts import findmnt_source
from .prompt import info

NVIDIA_MODPROBE = "options nvidia_drm modeset=1\noptions nvidia NVreg_PreserveVideoMemoryAllocations=1\n"
NVIDIA_MODULES = "nvidia\nnvidia_modeset\nnvidia_uvm\nnvidia_drm\n"
WORKSPACE_DIRS = ("models", "datasets", "notebooks", "projects", "src", "cache", "venv")
AUTOUPDATE_PATH = "/usr/local/bin/autoupdate.sh"
AUTOUPDATE_SCRIPT = """\
#!/bin/bash
emerge --sync
emerge --update --deep --newuse --verbose @security
eclean-dist -d
"""
AUTOUPDATE_CRON = f"0 3 * * 0 root {AUTOUPDATE_PATH} > /var/log/autoupdate.log 2>&1\n"

# /etc paths are written relative to this root; tests point it at tmp_path
SYSTEM_ROOT = "/"


def _path(path: str) -> str:
    return os.path.join(SYSTEM_ROOT, path.lstrip("/"))


def _write(ctx, path: str, content: str, mode: int = 0o644) -> None:
    if ctx.dry_run:
        trace("postboot.write.dry_run", path=path)
        return
    host = _path(path)
    os.makedirs(os.path.dirname(host), exist_ok=True)
    with open(host, "w", encoding="utf-8") as fh:
        fh.write(content)
    os.chmod(host, mode)


def fstype_at(path: str) -> str:
    return (run(["findmnt", "-no", "FSTYPE", path], check=False).out or "").strip()


def check_root_btrfs(ctx) -> Optional[str]:
    fstype = fstype_at("/")
    if fstype != "btrfs":
        return f"root filesystem is {fstype or 'not mounted'}, expected btrfs"
    return None


def swap_active(device: str) -> bool:
    out = run(["swapon", "--show=NAME", "--noheadings"], check=False).out or ""
    wanted = {device, os.path.realpath(device)}
    return any(line.strip() in wanted for line in out.splitlines())


def verify_storage(ctx) -> None:
    tensor = ctx.topology.logical_volume("tensor")
    if fstype_at("/tensor_lab") != "btrfs":
        ctx.warn("tensor mount", "/tensor_lab is not mounted")
        if ctx.prompt.confirm("Try to mount /tensor_lab?", default=True):
            ctx.step("mount /tensor_lab", ["mount", "/tensor_lab"], optional=True)
    swap = ctx.topology.swap
    if swap and not swap_active(swap):
        ctx.warn("swap", f"{swap} is not active")
        if ctx.prompt.confirm("Activate swap?", default=True):
            ctx.step("swapon", ["swapon", swap], optional=True)
    trace("postboot.verified", root=findmnt_source("/"), tensor=tensor.path, swap=swap)


def install_nvidia(ctx) -> None:
    if not ctx.prompt.confirm("Install NVIDIA drivers?", default=False):
        return
    ctx.step(
        "nvidia drivers",
        ["emerge", "--noreplace", "x11-drivers/nvidia-drivers", "media-libs/libglvnd", "virtual/opengl"],
        optional=True,
        timeout=None,
    )
    if ctx.prompt.confirm("Install CUDA toolkit? (may take a long time)", default=False):
        ctx.step("cuda", ["emerge", "--noreplace", "dev-util/nvidia-cuda-toolkit"], optional=True, timeout=None)
    _write(ctx, "/etc/modprobe.d/nvidia.conf", NVIDIA_MODPROBE)
    _write(ctx, "/etc/modules-load.d/nvidia.conf", NVIDIA_MODULES)
    ctx.step("nvidia-persistenced", ["rc-update", "add", "nvidia-persistenced", "default"], optional=True)
    ctx.step("video groups", ["usermod", "-aG", "video,render", ctx.config.username], optional=True)


def setup_workspace(ctx) -> None:
    if not ctx.prompt.confirm("Create the /tensor_lab workspace layout?", default=True):
        return
    dirs = [f"/tensor_lab/{name}" for name in WORKSPACE_DIRS]
    ctx.step("workspace dirs", ["mkdir", "-p", *dirs], optional=True)
    ctx.step(
        "workspace python",
        ["emerge", "--noreplace", "dev-lang/python", "dev-python/pip", "dev-python/virtualenv"],
        optional=True,
        timeout=None,
    )
    user = ctx.config.username
    ctx.step("workspace owner", ["chown", "-R", f"{user}:{user}", "/tensor_lab"], optional=True)
    ctx.step("workspace venv", ["su", "-", user, "-c", "python -m venv /tensor_lab/venv"], optional=True)


def install_monitoring(ctx) -> None:
    if not ctx.prompt.confirm("Install system monitoring tools?", default=False):
        return
    ctx.step(
        "monitoring",
        ["emerge", "--noreplace", "sys-process/htop", "sys-process/btop", "app-admin/glances", "sys-apps/nvme-cli"],
        optional=True,
        timeout=None,
    )
    ctx.step("nvtop", ["emerge", "--noreplace", "media-video/nvtop"], optional=True, timeout=None)


def setup_autoupdate(ctx) -> None:
    if not ctx.prompt.confirm("Set up automatic security updates?", default=False):
        return
    ctx.step("cronie", ["emerge", "--noreplace", "sys-process/cronie"], optional=True, timeout=None)
    ctx.step("cronie service", ["rc-update", "add", "cronie", "default"], optional=True)
    _write(ctx, AUTOUPDATE_PATH, AUTOUPDATE_SCRIPT, mode=0o755)
    _write(ctx, "/etc/cron.d/autoupdate", "SHELL=/bin/bash\n" + AUTOUPDATE_CRON)


def finalize(ctx) -> None:
    verify_storage(ctx)
    install_nvidia(ctx)
    setup_workspace(ctx)
    install_monitoring(ctx)
    setup_autoupdate(ctx)
    info("Post-reboot configuration complete")
