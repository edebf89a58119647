from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/tmp/cryptstack"
TARGET_STATE_DIR = "/var/lib/cryptstack"
TARGET_TOOLKIT_DIR = "/root/cryptstack"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for installer state and logs.

    The location can be overridden via the ``CRYPTSTACK_BASE_PATH``
    environment variable.  The default lives under ``/tmp`` on the live
    medium; once the toolkit has been handed off, a process running inside
    the target root (chroot or after reboot) finds the durable copy under
    ``/var/lib/cryptstack`` and uses that instead.
    """

    override = os.environ.get("CRYPTSTACK_BASE_PATH")
    if override:
        return _expand(override)
    if os.path.isfile(os.path.join(TARGET_STATE_DIR, "state", "cryptstack.conf")):
        return TARGET_STATE_DIR
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def state_dir() -> str:
    override = os.environ.get("CRYPTSTACK_STATE_DIR")
    if override:
        return _expand(override)
    return str(Path(base_path()) / "state")


def markers_dir() -> str:
    return str(Path(state_dir()) / "markers")


def config_path() -> str:
    override = os.environ.get("CRYPTSTACK_CONFIG")
    if override:
        return _expand(override)
    return str(Path(state_dir()) / "cryptstack.conf")


def in_target(mount_root: str, path: str) -> str:
    """Map an absolute path of the installed system onto ``mount_root``."""

    return os.path.normpath(os.path.join(mount_root, path.lstrip("/")))
