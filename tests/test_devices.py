import pytest

from cryptstack import devices
from cryptstack.errors import DeviceAmbiguous, DeviceNotFound, LayoutError, OperationFailed
from cryptstack.model import Config, lv_mapper_path


def test_partition_path_follows_naming_convention():
    assert devices.partition_path("/dev/nvme0n1", 3) == "/dev/nvme0n1p3"
    assert devices.partition_path("/dev/mmcblk0", 1) == "/dev/mmcblk0p1"
    assert devices.partition_path("/dev/sda", 2) == "/dev/sda2"
    assert devices.partition_path("/dev/sda", 2, separator="p") == "/dev/sdap2"


def test_probe_partition_scheme():
    assert devices.probe_partition_scheme("/dev/nvme0n1", exists={"/dev/nvme0n1p1"}.__contains__) == "p"
    assert devices.probe_partition_scheme("/dev/sda", exists={"/dev/sda1"}.__contains__) == ""

    with pytest.raises(DeviceAmbiguous) as exc:
        devices.probe_partition_scheme("/dev/nvme0n1", exists=lambda p: True)
    assert exc.value.candidates == ["/dev/nvme0n1p1", "/dev/nvme0n11"]

    with pytest.raises(DeviceNotFound) as missing:
        devices.probe_partition_scheme("/dev/nvme0n1", exists=lambda p: False)
    assert "/dev/nvme0n1p1" in missing.value.missing


def test_resolve_builds_full_topology():
    topology = devices.resolve(Config(disk0="/dev/nvme0n1", disk1="/dev/sdb"))

    assert topology.partition("root").path == "/dev/nvme0n1p3"
    assert topology.partition("tensor_b").path == "/dev/sdb1"
    assert topology.container("root").path == "/dev/mapper/crypt_root"
    assert topology.container("tensor_b").partition == "/dev/sdb1"
    assert topology.logical_volume("root").path == "/dev/mapper/vg_io-lv_io_root"
    assert topology.logical_volume("tensor").mirrors == 1
    assert topology.swap == "/dev/mapper/vg_io-lv_io_swap"
    assert [s.name for s in topology.subvolumes] == ["@", "@home", "@snapshots"]
    assert topology.mounts[0].target == "/"


def test_resolve_honours_probed_separators():
    topology = devices.resolve(Config(disk0="/dev/nvme0n1", disk1="/dev/nvme1n1"), {"/dev/nvme1n1": ""})
    assert topology.partition("tensor_b").path == "/dev/nvme1n11"
    assert topology.partition("efi").path == "/dev/nvme0n1p1"


def test_resolve_rejects_shared_device_paths():
    with pytest.raises(LayoutError, match="/dev/sda1"):
        devices.resolve(Config(disk0="/dev/sda", disk1="/dev/sda"))


def test_lv_mapper_path_escapes_dashes():
    assert lv_mapper_path("vg-os", "lv-root") == "/dev/mapper/vg--os-lv--root"


def test_validate_lists_missing_devices():
    devices.validate(["/dev/a"], exists=lambda p: True)
    with pytest.raises(DeviceNotFound) as exc:
        devices.validate(["/dev/a", "/dev/b"], exists={"/dev/a"}.__contains__)
    assert exc.value.missing == ["/dev/b"]


def test_probing_helpers_read_tool_output(fake_run):
    fake_run.on(["blkid", "-s", "UUID"], out="1234-ABCD\n")
    fake_run.on(["blkid", "-o", "value", "-s", "TYPE"], out="vfat\n")
    fake_run.on(["cryptsetup", "isLuks"], rc=1)
    fake_run.on(["blockdev", "--getsize64"], out="512110190592\n")

    assert devices.uuid_of("/dev/nvme0n1p3") == "1234-ABCD"
    assert devices.uuid_of("/dev/nvme0n1p3", dry_run=True) == "DRY-RUN-UUID-nvme0n1p3"
    assert devices.fstype_of("/dev/nvme0n1p1") == "vfat"
    assert devices.is_luks("/dev/nvme0n1p3") is False
    assert devices.size_bytes("/dev/mapper/crypt_tensor_a") == 512110190592


def test_size_bytes_unreadable_is_zero(fake_run):
    fake_run.on(["blockdev"], rc=1, err="No such device")
    assert devices.size_bytes("/dev/missing") == 0


@pytest.mark.parametrize("rc, out", [(2, ""), (0, "\n")])
def test_uuid_of_unreadable_is_fatal(fake_run, rc, out):
    fake_run.on(["blkid", "-s", "UUID"], rc=rc, out=out, err="")
    with pytest.raises(OperationFailed) as exc:
        devices.uuid_of("/dev/nvme0n1p3")
    assert exc.value.cmd == ["blkid", "-s", "UUID", "-o", "value", "/dev/nvme0n1p3"]
    assert exc.value.rc == rc
