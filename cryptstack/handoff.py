"""Carry configuration and progress across the chroot and reboot boundaries.

The live medium's state directory does not exist inside the target root and
is gone after the first boot, so everything the later phases read is copied
to ``/var/lib/cryptstack`` on the target and the toolkit itself to
``/root/cryptstack``.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from .config_store import ConfigurationStore
from .executil import trace
from .markers import FileMarkerStore, MarkerStore
from .paths import TARGET_STATE_DIR, TARGET_TOOLKIT_DIR, in_target

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


def target_state_dir(mount_root: str) -> str:
    return in_target(mount_root, os.path.join(TARGET_STATE_DIR, "state"))


def target_store(mount_root: str) -> ConfigurationStore:
    state = target_state_dir(mount_root)
    return ConfigurationStore(path=os.path.join(state, "cryptstack.conf"), bindings_dir=state)


def target_markers(mount_root: str) -> FileMarkerStore:
    return FileMarkerStore(os.path.join(target_state_dir(mount_root), "markers"))


def stage_toolkit(config, store=None, *, package_dir: str = PACKAGE_DIR) -> str:
    """Copy the package and the saved configuration into the target root."""

    root = config.mount_root
    dest = in_target(root, os.path.join(TARGET_TOOLKIT_DIR, "cryptstack"))
    shutil.copytree(package_dir, dest, dirs_exist_ok=True, ignore=shutil.ignore_patterns("__pycache__", "*.pyc"))
    staged = target_store(root)
    staged.save(config)
    if store is not None and store.bindings():
        shutil.copyfile(store.bindings_path, staged.bindings_path)
    trace("handoff.staged", toolkit=dest, config=str(staged.path))
    return dest


def persist_markers(ctx, markers: MarkerStore) -> list:
    """Mirror completed phases into the target root's marker directory."""

    durable = target_markers(ctx.mount_root)
    copied = []
    for phase in markers.completed():
        if not durable.is_set(phase):
            durable.set(phase)
        copied.append(phase.value)
    trace("handoff.markers", directory=str(durable.directory), phases=copied)
    return copied


def inside_chroot(proc_root: str = "/proc/1/root") -> bool:
    """True when ``/`` differs from init's root, i.e. we run inside a chroot."""

    try:
        ours = os.stat("/")
        init = os.stat(os.path.join(proc_root, "."))
    except OSError:
        return False
    return (ours.st_dev, ours.st_ino) != (init.st_dev, init.st_ino)


def check_inside_target(ctx):
    if not inside_chroot():
        return "in-target configuration must run inside the target root (enter it with the chroot helper first)"
    staged = Path(TARGET_STATE_DIR) / "state" / "cryptstack.conf"
    if not staged.is_file():
        return f"no staged configuration at {staged}"
    return None
