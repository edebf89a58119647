import ast
import sys
from collections import defaultdict
from pathlib import Path
from typing import Dict, Set

_PACKAGE_DIR = Path(__file__).absolute().parent.parent / "cryptstack"

# line coverage for the package, reported once the session ends
_STATEMENTS: Dict[str, Set[int]] = {}
_HIT: Dict[str, Set[int]] = defaultdict(set)
_previous_trace = None


def _statement_lines(path: Path) -> Set[int]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    return {node.lineno for node in ast.walk(tree) if isinstance(node, ast.stmt)}


def _tracer(frame, event, arg):
    filename = frame.f_code.co_filename
    if filename not in _STATEMENTS:
        return None
    if event == "line":
        _HIT[filename].add(frame.f_lineno)
    return _tracer


def pytest_sessionstart(session):
    global _previous_trace
    _previous_trace = sys.gettrace()
    for path in sorted(_PACKAGE_DIR.glob("*.py")):
        _STATEMENTS[str(path)] = _statement_lines(path)
    sys.settrace(_tracer)


def pytest_sessionfinish(session, exitstatus):
    sys.settrace(_previous_trace)
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write = terminal.write_line if terminal else print
    write("")
    write(f"{'module':<32} {'stmts':>6} {'miss':>6} {'cover':>7}")
    total = covered = 0
    for filename, statements in _STATEMENTS.items():
        hit = len(statements & _HIT[filename])
        total += len(statements)
        covered += hit
        pct = 100.0 * hit / len(statements) if statements else 100.0
        write(f"{Path(filename).name:<32} {len(statements):>6} {len(statements) - hit:>6} {pct:>6.1f}%")
    if total:
        write(f"{'total':<32} {total:>6} {total - covered:>6} {100.0 * covered / total:>6.1f}%")


# -- fixtures ----------------------------------------------------------------

from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402

from cryptstack import (  # noqa: E402
    chroot_config,
    devices,
    executil,
    luks_lvm,
    mounts,
    partitioning,
    postboot,
    recovery,
)
from cryptstack.model import Config  # noqa: E402
from cryptstack.phases import PhaseContext  # noqa: E402
from cryptstack.prompt import ScriptedPrompt  # noqa: E402

_RUN_MODULES = (executil, devices, partitioning, luks_lvm, mounts, postboot, recovery, chroot_config)


class FakeRunner:
    """Stand-in for ``executil.run`` that records argv and replays canned results.

    Rules match on an argv prefix; the most recently added matching rule wins
    and anything unmatched succeeds with empty output.
    """

    def __init__(self):
        self.calls = []
        self.dry_runs = []
        self.rules = []

    def on(self, prefix, rc=0, out="", err=""):
        self.rules.append((list(prefix), SimpleNamespace(rc=rc, out=out, err=err, duration=0.0)))

    def __call__(self, cmd, check=False, dry_run=False, timeout=None, env=None, interactive=False):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.dry_runs.append(dry_run)
        for prefix, result in reversed(self.rules):
            if cmd[:len(prefix)] == prefix:
                return result
        return SimpleNamespace(rc=0, out="", err="", duration=0.0)

    def commands(self, name):
        return [cmd for cmd in self.calls if cmd[0] == name]


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    base = tmp_path / "cryptstack-base"
    monkeypatch.setenv("CRYPTSTACK_BASE_PATH", str(base))
    monkeypatch.delenv("CRYPTSTACK_STATE_DIR", raising=False)
    monkeypatch.delenv("CRYPTSTACK_CONFIG", raising=False)
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return base


@pytest.fixture
def fake_run(monkeypatch):
    runner = FakeRunner()
    for module in _RUN_MODULES:
        monkeypatch.setattr(module, "run", runner)
    monkeypatch.setattr(partitioning, "udev_settle", lambda dry_run=False: None)
    monkeypatch.setattr(luks_lvm, "udev_settle", lambda dry_run=False: None)
    return runner


@pytest.fixture
def config(tmp_path):
    return Config(disk0="/dev/nvme0n1", disk1="/dev/nvme1n1", mount_root=str(tmp_path / "mnt"))


@pytest.fixture
def make_ctx(config):
    def factory(prompt=None, dry_run=False, **changes):
        cfg = config.with_changes(changes) if changes else config
        return PhaseContext(
            config=cfg,
            topology=devices.resolve(cfg),
            prompt=prompt or ScriptedPrompt(),
            dry_run=dry_run,
        )

    return factory
