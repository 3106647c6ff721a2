"""
User configuration for the PPA6 tools.

Remembers the last successfully used printer so commands can run without
scanning, and loads optional protocol profile overrides.

Files (under ~/.config/ppa6/):
    last_device   {"address", "name", "last_used"} JSON, valid for 24 hours
    profile.json  Keys of ProtocolProfile to override, e.g.
                  {"checksum": "crc8", "opcodes": {"PRINT": ["0x13", null]}}
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigError
from .protocol import DEFAULT_PROFILE, ProtocolProfile

logger = logging.getLogger(__name__)

DEVICE_TTL_SECONDS = 24 * 60 * 60

CONFIG_DIR = Path.home() / ".config" / "ppa6"
CACHE_FILE = CONFIG_DIR / "last_device"
PROFILE_FILE = CONFIG_DIR / "profile.json"


@dataclass
class CachedDevice:
    """The last device string a command completed against."""

    address: str
    name: str
    last_used: float

    @property
    def age(self) -> float:
        return time.time() - self.last_used


def load_cached_device(ttl_seconds: float = DEVICE_TTL_SECONDS) -> Optional[CachedDevice]:
    """Return the remembered device, or None when absent, unreadable or stale."""
    try:
        fields = json.loads(CACHE_FILE.read_text())
        cached = CachedDevice(fields["address"], fields["name"], float(fields["last_used"]))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug("Ignoring device cache %s: %s", CACHE_FILE, e)
        return None

    if cached.age > ttl_seconds:
        logger.debug("Cached device %s is stale", cached.address)
        return None
    return cached


def save_device(address: str, name: str = "") -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    cached = CachedDevice(address, name or address, time.time())
    CACHE_FILE.write_text(json.dumps(asdict(cached), indent=2))


def clear_cache() -> bool:
    """Forget the remembered device. False if there was none."""
    try:
        CACHE_FILE.unlink()
    except FileNotFoundError:
        return False
    return True


def load_profile(path: Optional[Union[str, Path]] = None) -> ProtocolProfile:
    """
    Load the protocol profile.

    Without a path, ~/.config/ppa6/profile.json is used when it exists and
    the built-in profile otherwise. An explicit path must exist.

    Raises:
        ConfigError: If the file is unreadable or not a valid profile
    """
    if path is None:
        if not PROFILE_FILE.exists():
            return DEFAULT_PROFILE
        path = PROFILE_FILE

    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read profile {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Profile {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Profile {path} must be a JSON object")

    try:
        profile = ProtocolProfile.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid profile {path}: {e}") from e

    logger.debug("Loaded protocol profile %r from %s", profile.name, path)
    return profile
