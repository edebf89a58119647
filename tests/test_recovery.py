import pytest

from cryptstack import boot_plumbing, recovery
from cryptstack.errors import DeviceNotFound, OperationFailed, OperatorAbort, PreconditionUnmet
from cryptstack.model import BootBinding, Config, InitramfsGenerator
from cryptstack.prompt import ScriptedPrompt

UUID = "5b1d6c2e-0a9f-4e3b-8c7d-1f2e3d4c5b6a"
ROOT_DEV = "/dev/mapper/vg_io-lv_io_root"


@pytest.fixture
def installed(tmp_path):
    """A target root whose artifacts were generated for genkernel and crypt_root."""

    root = tmp_path / "mnt"
    old = BootBinding("crypt_root", UUID, InitramfsGenerator.GENKERNEL, "vg_io", "lv_io_root")
    artifacts = boot_plumbing.render_boot_artifacts(Config(), old, [("crypt_tensor_a", "aaaa-1111")])
    boot_plumbing.write_boot_artifacts(str(root), artifacts)
    (root / "lib/modules/6.12.1-gentoo").mkdir(parents=True)
    (root / "lib/modules/6.6.58-gentoo").mkdir(parents=True)
    return root


@pytest.fixture
def disks(fake_run):
    fake_run.on(["blkid", "-o", "value", "-s", "TYPE"], out="vfat\n")
    fake_run.on(["blkid", "-s", "UUID"], out=f"{UUID}\n")
    fake_run.on(["cryptsetup", "status"], rc=4)
    fake_run.on(["cryptsetup", "status", "cryptroot"], rc=0)
    return fake_run


def _reconstructor(root, prompt, present=("/dev/nvme0n1p1", ROOT_DEV), **kwargs):
    return recovery.BootRecoveryReconstructor(
        Config(mount_root=str(root)),
        prompt=prompt,
        exists=set(present).__contains__,
        which=lambda tool: f"/sbin/{tool}",
        **kwargs,
    )


def test_recovery_reconciles_root_name(installed, disks):
    prompt = ScriptedPrompt(answers=["nvme0n1", "", "", ""], choices=[1, 1])

    report = _reconstructor(installed, prompt).run()

    assert report.states == [state.value for state in recovery.RecoveryState]
    assert report.opened_name == "cryptroot"
    assert report.luks_name == "cryptroot"
    assert report.partitions["root"] == "/dev/nvme0n1p3"
    assert {m["artifact"] for m in report.mismatches} == {
        boot_plumbing.CRYPTTAB, boot_plumbing.GENKERNEL_CONF, boot_plumbing.GRUB_DEFAULT, boot_plumbing.BOOT_CONFIG,
    }
    assert all(m["found"] == ["crypt_root"] for m in report.mismatches)

    referenced = boot_plumbing.referenced_root_names(str(installed), UUID)
    for artifact in (boot_plumbing.CRYPTTAB, boot_plumbing.DRACUT_CONF, boot_plumbing.GRUB_DEFAULT,
                     boot_plumbing.BOOT_CONFIG):
        assert referenced[artifact] == ["cryptroot"]
    assert "crypt_tensor_a UUID=aaaa-1111" in (installed / "etc/crypttab").read_text()
    assert any(boot_plumbing.GENKERNEL_CONF in w.get("message", "") for w in report.warnings)

    assert report.rebuilt
    assert ["chroot", str(installed), "dracut", "--force", "--kver", "6.12.1-gentoo"] in disks.calls
    assert (installed / "root/last_initramfs_command.txt").read_text() == "dracut --force --kver 6.12.1-gentoo\n"


def test_declining_regeneration_keeps_artifacts(installed, disks):
    before = (installed / "etc/crypttab").read_text()
    prompt = ScriptedPrompt(answers=["nvme0n1"], choices=[1, 1], confirms=[False])

    with pytest.raises(OperatorAbort):
        _reconstructor(installed, prompt).run()

    assert (installed / "etc/crypttab").read_text() == before


def test_dry_run_changes_no_files(installed, disks):
    before = {p: p.read_text() for p in installed.rglob("*") if p.is_file()}
    prompt = ScriptedPrompt(answers=["nvme0n1"], choices=[1, 1])

    report = _reconstructor(installed, prompt, dry_run=True).run()

    assert {p: p.read_text() for p in installed.rglob("*") if p.is_file()} == before
    assert report.artifacts == list(boot_plumbing.render_boot_artifacts(
        Config(), BootBinding("cryptroot", "x", InitramfsGenerator.DRACUT, "vg_io", "lv_io_root"), []))


def test_missing_tools_stop_before_any_command(tmp_path, fake_run):
    reconstructor = recovery.BootRecoveryReconstructor(
        Config(mount_root=str(tmp_path)), prompt=ScriptedPrompt(), which=lambda tool: None)
    with pytest.raises(PreconditionUnmet) as exc:
        reconstructor.run()
    assert exc.value.missing == list(recovery.REQUIRED_TOOLS)
    assert fake_run.calls == []


def test_ambiguous_scheme_asks_operator(tmp_path, disks):
    prompt = ScriptedPrompt(choices=[2])
    reconstructor = _reconstructor(tmp_path, prompt, present=("/dev/nvme0n1p1", "/dev/nvme0n11"))
    reconstructor.report.disk0 = "/dev/nvme0n1"

    reconstructor.detect_partitions()

    assert reconstructor.report.partitions["efi"] == "/dev/nvme0n11"
    assert any("naming schemes" in q for q in prompt.asked)


def test_sanity_warning_requires_confirmation(tmp_path, disks):
    disks.on(["cryptsetup", "isLuks"], rc=1)
    reconstructor = _reconstructor(tmp_path, ScriptedPrompt(confirms=[False]))
    reconstructor.report.disk0 = "/dev/nvme0n1"
    with pytest.raises(OperatorAbort):
        reconstructor.detect_partitions()
    assert "not a LUKS container" in reconstructor.report.warnings[0]["message"]


def test_missing_root_volume(tmp_path, disks):
    reconstructor = _reconstructor(tmp_path, ScriptedPrompt(), present=())
    with pytest.raises(DeviceNotFound) as exc:
        reconstructor.activate_vg()
    assert exc.value.missing == [ROOT_DEV]


def test_root_mount_falls_back_to_plain_mount(tmp_path, disks):
    disks.on(["mount", "-o", "subvol=@", ROOT_DEV], rc=32, err="unknown subvolume")
    reconstructor = _reconstructor(tmp_path, ScriptedPrompt())
    reconstructor.report.vg, reconstructor.report.lv = "vg_io", "lv_io_root"
    reconstructor.report.partitions = {"boot": "/dev/nvme0n1p2", "efi": "/dev/nvme0n1p1"}

    reconstructor.mount_topology()

    assert ["mount", ROOT_DEV, str(tmp_path)] in disks.calls
    assert reconstructor.report.warnings[0]["step"] == "mount root @"


def test_live_mapping_under_other_name_is_a_mismatch(tmp_path, disks):
    reconstructor = _reconstructor(tmp_path, ScriptedPrompt())
    reconstructor.report.luks_name = "crypt_root"
    reconstructor.report.opened_name = "cryptroot"
    mismatches = reconstructor.detect_mismatches()
    assert mismatches == [{"artifact": "live mapping", "expected": "crypt_root", "found": ["cryptroot"]}]


def test_unreadable_root_uuid_leaves_artifacts_untouched(installed, disks):
    disks.on(["blkid", "-s", "UUID"], rc=2)
    before = {p: p.read_text() for p in installed.rglob("*") if p.is_file()}
    prompt = ScriptedPrompt(answers=["nvme0n1"], choices=[1, 1])

    with pytest.raises(OperationFailed) as exc:
        _reconstructor(installed, prompt).run()

    assert exc.value.cmd[-1] == "/dev/nvme0n1p3"
    assert {p: p.read_text() for p in installed.rglob("*") if p.is_file()} == before
    assert not any(cmd[:2] == ["chroot", str(installed)] for cmd in disks.calls)
