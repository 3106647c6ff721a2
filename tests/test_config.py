"""Tests for the device cache and profile loading."""

import json
import time

import pytest

from ppa6.config import (
    CachedDevice,
    clear_cache,
    load_cached_device,
    load_profile,
    save_device,
)
from ppa6.errors import ConfigError
from ppa6.protocol import DEFAULT_PROFILE


@pytest.fixture(autouse=True)
def config_dir(tmp_path, monkeypatch):
    """Point the config files at a temporary directory."""
    config_dir = tmp_path / ".config" / "ppa6"
    monkeypatch.setattr("ppa6.config.CONFIG_DIR", config_dir)
    monkeypatch.setattr("ppa6.config.CACHE_FILE", config_dir / "last_device")
    monkeypatch.setattr("ppa6.config.PROFILE_FILE", config_dir / "profile.json")
    return config_dir


def write_cache(config_dir, data):
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "last_device").write_text(json.dumps(data))


class TestDeviceCache:
    """Test last-device caching."""

    def test_load_returns_none_when_no_cache(self):
        assert load_cached_device() is None

    def test_save_creates_config_dir(self, config_dir):
        assert not config_dir.exists()
        save_device("/dev/rfcomm0", "PeriPage")
        assert (config_dir / "last_device").exists()

    def test_save_and_load(self):
        save_device("AA:BB:CC:DD:EE:FF", "PeriPage_A6")
        cached = load_cached_device()
        assert cached.address == "AA:BB:CC:DD:EE:FF"
        assert cached.name == "PeriPage_A6"
        assert cached.last_used <= time.time()

    def test_name_defaults_to_address(self):
        save_device("/dev/rfcomm0")
        assert load_cached_device().name == "/dev/rfcomm0"

    def test_expired_cache(self, config_dir):
        write_cache(config_dir, {
            "address": "/dev/rfcomm0",
            "name": "PeriPage",
            "last_used": time.time() - 25 * 60 * 60,
        })
        assert load_cached_device() is None

    def test_custom_ttl(self, config_dir):
        write_cache(config_dir, {
            "address": "/dev/rfcomm0",
            "name": "PeriPage",
            "last_used": time.time() - 2 * 60 * 60,
        })
        assert load_cached_device() is not None
        assert load_cached_device(ttl_seconds=3600) is None

    def test_invalid_json(self, config_dir):
        config_dir.mkdir(parents=True)
        (config_dir / "last_device").write_text("not valid json")
        assert load_cached_device() is None

    def test_missing_fields(self, config_dir):
        write_cache(config_dir, {"address": "/dev/rfcomm0"})
        assert load_cached_device() is None

    def test_not_an_object(self, config_dir):
        write_cache(config_dir, ["/dev/rfcomm0"])
        assert load_cached_device() is None

    def test_bad_timestamp(self, config_dir):
        write_cache(config_dir, {"address": "/dev/rfcomm0", "name": "x", "last_used": "yesterday"})
        assert load_cached_device() is None

    def test_clear_cache(self, config_dir):
        save_device("/dev/rfcomm0")
        assert clear_cache() is True
        assert not (config_dir / "last_device").exists()
        assert clear_cache() is False

    def test_save_overwrites(self):
        save_device("/dev/rfcomm0", "First")
        save_device("/dev/rfcomm1", "Second")
        cached = load_cached_device()
        assert cached == CachedDevice("/dev/rfcomm1", "Second", cached.last_used)


class TestLoadProfile:
    """Test protocol profile overrides."""

    def test_default_when_no_file(self):
        assert load_profile() is DEFAULT_PROFILE

    def test_user_profile_file(self, config_dir):
        config_dir.mkdir(parents=True)
        (config_dir / "profile.json").write_text(json.dumps({
            "name": "crc",
            "checksum": "crc8",
            "ack_timeout": 0.5,
        }))
        profile = load_profile()
        assert profile.name == "crc"
        assert profile.checksum == "crc8"
        assert profile.ack_timeout == 0.5
        assert profile.opcodes == DEFAULT_PROFILE.opcodes

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "alt.json"
        path.write_text(json.dumps({"opcodes": {"PRINT": ["0x40", None]}}))
        assert load_profile(path).opcode("PRINT") == 0x40

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_profile(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{")
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_profile(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[]")
        with pytest.raises(ConfigError, match="JSON object"):
            load_profile(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad_values.json"
        path.write_text(json.dumps({"checksum": "md5"}))
        with pytest.raises(ConfigError):
            load_profile(path)

    def test_wrong_value_type(self, tmp_path):
        path = tmp_path / "bad_type.json"
        path.write_text(json.dumps({"max_payload": "big"}))
        with pytest.raises(ConfigError):
            load_profile(path)
