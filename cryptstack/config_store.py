"""Flat key/value configuration persisted across process and reboot boundaries."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Dict, Optional

from .errors import ConfigurationLocked, ConfigurationMissing, NamingMismatch
from .executil import trace
from .model import Config
from .paths import config_path, state_dir

_HEADER = "# cryptstack installation settings\n"


def parse_config_text(text: str) -> Dict[str, str]:
    """Parse ``KEY="value"`` lines; comments and blank lines are ignored."""

    data: Dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            raise ValueError(f"line {lineno}: expected KEY=value, got {stripped!r}")
        key, value = stripped.split("=", 1)
        parts = shlex.split(value, comments=True) if value.strip() else []
        data[key.strip()] = parts[0] if parts else ""
    return data


def render_config_text(values: Dict[str, str]) -> str:
    lines = [_HEADER.rstrip("\n")]
    for key, value in values.items():
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'{key}="{escaped}"')
    return "\n".join(lines) + "\n"


def _write_atomic(path: Path, content: str, mode: int = 0o600) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)


class ConfigurationStore:
    """Single-attempt configuration storage.

    ``save`` overwrites whatever an earlier save left behind; there is no
    history.  ``amend`` is the one permitted edit after the initial save
    (the confirmation step of the guided run).
    """

    def __init__(self, path: Optional[str] = None, bindings_dir: Optional[str] = None) -> None:
        self.path = Path(path or config_path())
        self.bindings_path = Path(bindings_dir or state_dir()) / "bindings.conf"
        self.lock_path = self.path.with_name(self.path.name + ".amended")

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, config: Config) -> Path:
        _write_atomic(self.path, render_config_text(config.as_mapping()))
        trace("config.save", path=str(self.path))
        return self.path

    def load(self) -> Config:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigurationMissing(
                f"no saved configuration at {self.path}; run 'cryptstack init-config' first"
            ) from None
        config = Config.from_mapping(parse_config_text(text))
        trace("config.load", path=str(self.path))
        return config

    def amend(self, config: Config, changes: Dict[str, str]) -> Config:
        if self.lock_path.exists():
            raise ConfigurationLocked("configuration was already amended for this installation attempt")
        updated = config.with_changes(changes)
        self.save(updated)
        _write_atomic(self.lock_path, "", mode=0o600)
        trace("config.amend", keys=sorted(changes))
        return updated

    def reset(self) -> None:
        """Forget the current attempt: config, amendment lock and bindings."""

        for path in (self.path, self.lock_path, self.bindings_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue

    def bindings(self) -> Dict[str, str]:
        try:
            return parse_config_text(self.bindings_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}

    def bind(self, config: Config, keys) -> Dict[str, str]:
        """Record the names in ``keys`` as durably bound to on-disk artifacts."""

        current = self.bindings()
        names = config.bound_names()
        for key in keys:
            current[key] = names[key]
        _write_atomic(self.bindings_path, render_config_text(current), mode=0o644)
        trace("config.bind", bindings=current)
        return current

    def check_bindings(self, config: Config) -> None:
        names = config.bound_names()
        for key, bound in self.bindings().items():
            if key in names and names[key] != bound:
                raise NamingMismatch(
                    f"{key} is bound to {bound!r} on disk but the configuration now says {names[key]!r}",
                    expected=bound,
                    found=[names[key]],
                )
