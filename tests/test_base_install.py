import pytest

from cryptstack import base_install

INDEX = """\
# Latest as of Sun, 12 Oct 2025 17:00:01 +0000
# ts=1760288401
-----BEGIN PGP SIGNED MESSAGE-----
Hash: SHA512

20251012T170101Z/stage3-amd64-desktop-openrc-20251012T170101Z.tar.xz 412345678
-----BEGIN PGP SIGNATURE-----
"""


def test_parse_latest_index():
    assert base_install.parse_latest_index(INDEX) == (
        "20251012T170101Z/stage3-amd64-desktop-openrc-20251012T170101Z.tar.xz"
    )
    with pytest.raises(ValueError):
        base_install.parse_latest_index("# nothing\n")


def test_local_stage3_needs_no_download(make_ctx, fake_run, tmp_path):
    tarball = tmp_path / "stage3.tar.xz"
    tarball.write_bytes(b"")
    ctx = make_ctx(STAGE3_FILE=str(tarball))

    assert base_install.select_stage3(ctx) == str(tarball)
    assert fake_run.calls == []


def test_latest_autobuild_is_downloaded(make_ctx, fake_run):
    fake_run.on(["wget", "-qO-"], out=INDEX)
    ctx = make_ctx(STAGE3_VARIANT="systemd")

    path = base_install.select_stage3(ctx)

    assert fake_run.calls[0][-1].endswith("latest-stage3-amd64-desktop-systemd.txt")
    download = fake_run.calls[-1]
    assert download[:3] == ["wget", "-O", path]
    assert download[-1] == f"{base_install.AUTOBUILDS}/20251012T170101Z/stage3-amd64-desktop-openrc-20251012T170101Z.tar.xz"
    assert path.startswith(base_install.stage3_dir())


def test_extract_keeps_pseudo_filesystems_out(make_ctx, fake_run):
    ctx = make_ctx()
    base_install.extract_stage3(ctx, "/tmp/stage3.tar.xz")
    cmd = fake_run.calls[0]
    assert cmd[:3] == ["tar", "xpf", "/tmp/stage3.tar.xz"]
    assert "--xattrs-include=*.*" in cmd and "--numeric-owner" in cmd
    assert "--exclude=./proc" in cmd


def test_setup_portage_writes_seed_files(make_ctx, fake_run, tmp_path):
    ctx = make_ctx()
    base_install.setup_portage(ctx)

    portage = tmp_path / "mnt/etc/portage"
    make_conf = (portage / "make.conf").read_text()
    assert 'PORTAGE_TMPDIR="/tensor_lab/var/tmp"' in make_conf
    assert "{tmpdir}" not in make_conf
    assert (portage / "package.use/desktop").is_file()
    assert (tmp_path / "mnt/tensor_lab/var/tmp").is_dir()
    assert fake_run.calls[0][-1] == str(portage / "repos.conf/gentoo.conf")


def test_install_base_dry_run_writes_nothing(make_ctx, fake_run, tmp_path):
    ctx = make_ctx(dry_run=True)
    base_install.install_base(ctx)

    assert not (tmp_path / "mnt").exists()
    assert [cmd[0] for cmd in fake_run.calls] == ["wget", "mkdir", "wget", "tar", "cp"]


def test_target_must_be_mounted(make_ctx, fake_run):
    fake_run.on(["mountpoint"], rc=1)
    assert "not a mountpoint" in base_install.check_target_mounted(make_ctx())
