import pytest

from cryptstack import partitioning
from cryptstack.errors import OperatorAbort
from cryptstack.prompt import ScriptedPrompt


def test_base_device_strips_partition_suffix():
    assert partitioning._base_device("/dev/nvme0n1p3") == "/dev/nvme0n1"
    assert partitioning._base_device("/dev/nvme0n1") == "/dev/nvme0n1"
    assert partitioning._base_device("/dev/mmcblk0p2") == "/dev/mmcblk0"
    assert partitioning._base_device("/dev/sda2") == "/dev/sda"


def test_plan_commands_wipes_then_carves(make_ctx):
    steps = partitioning.plan_commands(make_ctx().topology)
    cmds = [cmd for _, cmd in steps]

    assert cmds[:3] == [
        ["wipefs", "-a", "/dev/nvme0n1"],
        ["sgdisk", "--zap-all", "/dev/nvme0n1"],
        ["sgdisk", "-o", "/dev/nvme0n1"],
    ]
    creates = [cmd for cmd in cmds if "-n" in cmd]
    assert creates[0] == ["sgdisk", "-n", "1:0:+1G", "-t", "1:EF00", "-c", "1:EFI System Partition", "/dev/nvme0n1"]
    assert creates[2][2] == "3:0:+100G"
    assert creates[3][2] == "4:0:0"
    assert creates[4][-1] == "/dev/nvme1n1"
    assert cmds.index(["wipefs", "-a", "/dev/nvme1n1"]) < cmds.index(creates[0])


def test_refuses_live_disk(make_ctx, fake_run):
    fake_run.on(["findmnt", "-no", "SOURCE", "/"], out="/dev/nvme1n1p2\n")
    assert "nvme1n1" in partitioning.check_not_live_disk(make_ctx())

    fake_run.on(["findmnt", "-no", "SOURCE", "/"], out="/dev/sdc1\n")
    assert partitioning.check_not_live_disk(make_ctx()) is None


def test_declined_confirmation_touches_nothing(make_ctx, fake_run):
    with pytest.raises(OperatorAbort):
        partitioning.partition_disks(make_ctx(prompt=ScriptedPrompt(confirms=[False])))
    assert fake_run.calls == []


def test_partition_disks_runs_plan(make_ctx, fake_run):
    fake_run.on(["partprobe"], rc=1)
    ctx = make_ctx()

    partitioning.partition_disks(ctx)

    assert len(fake_run.commands("wipefs")) == 2
    assert len(fake_run.commands("sgdisk")) == 4 + 5
    assert [w["step"] for w in ctx.warnings] == ["reread /dev/nvme0n1", "reread /dev/nvme1n1"]
