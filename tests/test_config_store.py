import pytest

from cryptstack.config_store import ConfigurationStore, parse_config_text, render_config_text
from cryptstack.errors import ConfigurationLocked, ConfigurationMissing, NamingMismatch
from cryptstack.model import Config


def _store(tmp_path):
    return ConfigurationStore(path=str(tmp_path / "state/cryptstack.conf"), bindings_dir=str(tmp_path / "state"))


def test_save_then_load_returns_same_values(tmp_path):
    store = _store(tmp_path)
    config = Config(disk0="/dev/nvme0n1", disk1="/dev/nvme1n1", hostname="zen")

    store.save(config)

    assert store.load() == config
    text = store.path.read_text(encoding="utf-8")
    assert 'HOSTNAME="zen"' in text
    assert 'LUKS_ROOT="crypt_root"' in text


def test_save_overwrites_previous_attempt(tmp_path):
    store = _store(tmp_path)
    store.save(Config(hostname="first"))
    store.save(Config(hostname="second"))
    assert store.load().hostname == "second"


def test_load_without_save_raises(tmp_path):
    with pytest.raises(ConfigurationMissing):
        _store(tmp_path).load()


def test_amend_is_allowed_once(tmp_path):
    store = _store(tmp_path)
    config = Config(disk0="/dev/sda")
    store.save(config)

    updated = store.amend(config, {"hostname": "zen5"})
    assert updated.hostname == "zen5"
    assert store.load().hostname == "zen5"

    with pytest.raises(ConfigurationLocked):
        store.amend(updated, {"HOSTNAME": "again"})
    assert store.load().hostname == "zen5"


def test_unknown_keys_are_rejected(tmp_path):
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text('DISK0="/dev/sda"\nBOGUS="x"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="BOGUS"):
        store.load()


def test_quotes_survive_rendering():
    text = render_config_text({"HOSTNAME": 'a"b', "LOCALE": "en_US.UTF-8"})
    assert parse_config_text(text) == {"HOSTNAME": 'a"b', "LOCALE": "en_US.UTF-8"}


def test_parse_skips_comments_and_blank_lines():
    assert parse_config_text("# header\n\nDISK0=/dev/sda\nDISK1=\"\"\n") == {"DISK0": "/dev/sda", "DISK1": ""}


def test_bound_names_cannot_change(tmp_path):
    store = _store(tmp_path)
    config = Config()
    store.bind(config, ["LUKS_ROOT", "VG_OS"])
    assert store.bindings() == {"LUKS_ROOT": "crypt_root", "VG_OS": "vg_io"}

    store.check_bindings(config.with_changes({"HOSTNAME": "other"}))
    with pytest.raises(NamingMismatch) as exc:
        store.check_bindings(config.with_changes({"LUKS_ROOT": "cryptroot"}))
    assert exc.value.expected == "crypt_root"
    assert exc.value.found == ["cryptroot"]


def test_partitioned_disks_are_bound(tmp_path):
    store = _store(tmp_path)
    config = Config(disk0="/dev/nvme0n1", disk1="/dev/nvme1n1")
    store.bind(config, ["DISK0", "DISK1"])

    store.check_bindings(config)
    with pytest.raises(NamingMismatch) as exc:
        store.check_bindings(config.with_changes({"DISK0": "/dev/sdb"}))
    assert exc.value.expected == "/dev/nvme0n1"
    assert exc.value.found == ["/dev/sdb"]


def test_reset_forgets_config_lock_and_bindings(tmp_path):
    store = _store(tmp_path)
    config = Config()
    store.save(config)
    store.amend(config, {"HOSTNAME": "x"})
    store.bind(config, ["LUKS_ROOT"])

    store.reset()

    assert not store.exists()
    assert not store.lock_path.exists()
    assert store.bindings() == {}
    store.save(config)
    store.amend(config, {"HOSTNAME": "y"})
