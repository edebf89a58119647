from __future__ import annotations

"""Subprocess wrapper, dry-run hook and structured JSONL trace logging."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .errors import OperationFailed
from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "cryptstack.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/cryptstack",
        "/tmp/cryptstack-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def _log_event(kind: str, cmd: list[str], rc: int = None, out: str = None, err: str = None, dur: float = None):
    _write_jsonl({"ts": _now(), "kind": kind, "cmd": cmd, "rc": rc, "dur": dur, "out": out, "err": err})


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("CRYPTSTACK_LOG_LEVEL", "TRACE").upper()


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = 60.0,
    env: dict | None = None,
    interactive: bool = False,
) -> Result:
    """Run ``cmd`` and return a :class:`Result`.

    ``interactive`` commands inherit the terminal (``passwd``, kernel
    ``menuconfig``) so their output is not captured.  A timeout is reported
    as rc 124 rather than retried; the caller decides whether that is fatal.
    """

    trace("exec.start", cmd=list(cmd), dry_run=dry_run)
    _log_event("exec", list(cmd))
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    env2 = (env or os.environ).copy()
    env2.setdefault("CRYPTSTACK_LOG_LEVEL", LOG_LEVEL)
    try:
        if interactive:
            proc = subprocess.run(list(cmd), timeout=timeout, env=env2)
            out, err = "", ""
        else:
            proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, env=env2)
            out, err = proc.stdout or "", proc.stderr or ""
        rc = proc.returncode
    except subprocess.TimeoutExpired as exc:
        rc = 124
        out = exc.stdout if isinstance(exc.stdout, str) else ""
        err = f"timed out after {timeout}s"
    except FileNotFoundError as exc:
        rc = 127
        out, err = "", str(exc)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=rc, dur=dur)
    _log_event("done", list(cmd), rc=rc, out=out, err=err, dur=dur)
    if check and rc != 0:
        raise subprocess.CalledProcessError(rc, list(cmd), out, err)
    return Result(rc, out, err, dur)


def step(
    name: str,
    cmd: Sequence[str],
    *,
    optional: bool = False,
    warnings: list | None = None,
    action: str | None = None,
    dry_run: bool = False,
    timeout: float | None = 60.0,
    interactive: bool = False,
) -> Result:
    """Run one named sub-operation of a phase body.

    Load-bearing steps raise :class:`OperationFailed` carrying the tool's
    output verbatim.  Optional steps log a warning, append it to
    ``warnings`` and return the failed result so the body can continue.
    """

    res = run(cmd, check=False, dry_run=dry_run, timeout=timeout, interactive=interactive)
    if res.rc == 0:
        trace("step.ok", step=name)
        return res
    if optional:
        warning = {"step": name, "cmd": list(cmd), "rc": res.rc, "stderr": (res.err or "").strip()}
        log("WARN", "step.optional_failed", **warning)
        if warnings is not None:
            warnings.append(warning)
        return res
    log("ERROR", "step.failed", step=name, cmd=list(cmd), rc=res.rc, stderr=res.err, stdout=res.out)
    raise OperationFailed(name, cmd, res.rc, res.out, res.err, action=action)


def udev_settle(dry_run: bool = False):
    if dry_run:
        return
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
