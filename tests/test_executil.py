import json
from types import SimpleNamespace

import pytest

from cryptstack import executil
from cryptstack.errors import OperationFailed


@pytest.fixture
def quiet(monkeypatch):
    monkeypatch.setattr(executil, "_log_event", lambda *args, **kwargs: None)
    monkeypatch.setattr(executil, "trace", lambda *args, **kwargs: None)


def test_log_event_creates_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    executil._log_event("exec", ["echo", "hi"], rc=0, out="ok", err=None, dur=0.1)
    log_file = tmp_path / "cryptstack.jsonl"
    data = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines() if line]
    assert data and data[0]["kind"] == "exec"


def test_log_level_threshold(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_LEVEL", "WARN")
    executil.trace("noise", x=1)
    executil.log("ERROR", "phase.failed", phase="encrypt")
    lines = (tmp_path / "cryptstack.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event"] for line in lines] == ["phase.failed"]


def test_run_dry_run_executes_nothing(quiet, monkeypatch):
    monkeypatch.setattr(executil.subprocess, "run", lambda *a, **k: pytest.fail("executed"))
    dry = executil.run(["cryptsetup", "luksFormat", "/dev/x y"], dry_run=True)
    assert dry.out == "DRY-RUN: cryptsetup luksFormat '/dev/x y'"
    assert dry.ok


def test_timeout_is_not_retried(quiet, monkeypatch):
    calls = []

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        calls.append(cmd)
        raise executil.subprocess.TimeoutExpired(cmd, timeout)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["emerge-webrsync"], check=False, timeout=5)
    assert result.rc == 124
    assert "timed out" in result.err
    assert len(calls) == 1


def test_missing_tool_is_rc_127(quiet, monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    assert executil.run(["sgdisk"], check=False).rc == 127


def test_run_raises_on_failure(quiet, monkeypatch):
    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None):
        return SimpleNamespace(returncode=1, stdout="bad", stderr="oops")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(executil.subprocess.CalledProcessError):
        executil.run(["false"], check=True)


def test_interactive_inherits_terminal(quiet, monkeypatch):
    seen = {}

    def fake_run(cmd, timeout=None, env=None, **kwargs):
        seen.update(kwargs)
        return SimpleNamespace(returncode=0)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["passwd"], interactive=True, timeout=None)
    assert result.rc == 0 and result.out == ""
    assert "capture_output" not in seen


def test_step_optional_and_load_bearing(fake_run):
    fake_run.on(["swapon"], rc=255, err="swapon: /dev/x: read swap header failed\n")
    warnings = []

    res = executil.step("swapon", ["swapon", "/dev/x"], optional=True, warnings=warnings)
    assert res.rc == 255
    assert warnings == [{"step": "swapon", "cmd": ["swapon", "/dev/x"], "rc": 255,
                         "stderr": "swapon: /dev/x: read swap header failed"}]

    with pytest.raises(OperationFailed) as exc:
        executil.step("swap", ["swapon", "/dev/x"], action="swap activation")
    assert exc.value.cmd == ["swapon", "/dev/x"]
    assert exc.value.action == "swap activation"


def test_append_jsonl(tmp_path):
    path = tmp_path / "data" / "log.jsonl"
    executil.append_jsonl(str(path), {"foo": "bar"})
    assert json.loads(path.read_text(encoding="utf-8").strip()) == {"foo": "bar"}


def test_udev_settle(monkeypatch):
    calls = []
    monkeypatch.setattr(executil.subprocess, "run", lambda cmd, check=False: calls.append(cmd))
    executil.udev_settle(dry_run=True)
    assert calls == []
    executil.udev_settle()
    assert calls[0][0] == "udevadm"
