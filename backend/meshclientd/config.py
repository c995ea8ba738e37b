import json
import os
import random
import socket
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from meshclientd.errors import ConfigError

CONFIG_FILE_NAME = "netbird.cfg"
STATE_FILE_NAME = "state.json"
PREFERENCES_FILE_NAME = "preferences.json"
DEVICE_NAME_FILE_NAME = "device_name"

DEFAULT_CONFIG_DIR = "/var/lib/meshclientd"

DEFAULT_PREFERENCES: Dict[str, Any] = {
    # Relay-only connections are the safe default on restricted networks.
    "force_relay": True,

    # Engine binary and how it is launched
    "engine_bin": "netbird",
    "management_url": "",
    "setup_key": "",
    "log_level": "info",

    # Supervision timings
    "early_fail_window_s": 1.0,
    "stop_timeout_s": 5.0,
}

_DEVICE_SUFFIX_CHARS = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class ClientConfig:
    config_path: str
    device_name: str

    @classmethod
    def create(cls, config_path: object, device_name: object) -> "ClientConfig":
        """
        Structural validation only. Whether the file parses is the agent's
        problem at start time.
        """
        if not isinstance(config_path, str) or not config_path.strip():
            raise ConfigError("config_path must be a non-empty string")
        if not isinstance(device_name, str) or not device_name.strip():
            raise ConfigError("device_name must be a non-empty string")
        return cls(config_path=config_path.strip(), device_name=device_name.strip())


def config_dir() -> Path:
    return Path(os.environ.get("MESHCLIENTD_CONFIG_DIR") or DEFAULT_CONFIG_DIR)


def default_config_path() -> str:
    return str(config_dir() / CONFIG_FILE_NAME)


def default_state_path() -> str:
    return str(config_dir() / STATE_FILE_NAME)


def _preferences_path() -> Path:
    return config_dir() / PREFERENCES_FILE_NAME


def _write_atomic(path: Path, payload: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            pass
    os.replace(tmp, path)


def read_preferences_file() -> Dict[str, Any]:
    """
    Returns the raw JSON content on disk (or {} if missing/invalid).
    """
    path = _preferences_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}


def load_preferences() -> Dict[str, Any]:
    """
    Returns DEFAULT_PREFERENCES merged with on-disk preferences.
    """
    prefs = DEFAULT_PREFERENCES.copy()
    prefs.update(read_preferences_file())
    return prefs


def write_preferences_file(partial_updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist a partial update to disk and return the merged preferences.
    """
    if not isinstance(partial_updates, dict):
        partial_updates = {}

    merged: Dict[str, Any] = DEFAULT_PREFERENCES.copy()
    merged.update(read_preferences_file())
    merged.update(partial_updates)

    path = _preferences_path()
    _write_atomic(path, json.dumps(merged, indent=2))
    # May hold a setup key.
    path.chmod(0o600)
    return merged


def _generate_device_name() -> str:
    host = (socket.gethostname() or "").split(".")[0].strip().lower() or "device"
    suffix = "".join(random.choice(_DEVICE_SUFFIX_CHARS) for _ in range(6))
    return f"{host}-{suffix}"


def resolve_device_name(explicit: Optional[str] = None) -> str:
    """
    Use the explicit name when given; otherwise reuse the generated name
    cached in the config dir so the device keeps one identity across launches.
    """
    if explicit and explicit.strip():
        return explicit.strip()

    cache = config_dir() / DEVICE_NAME_FILE_NAME
    try:
        cached = cache.read_text().strip()
        if cached:
            return cached
    except OSError:
        pass

    name = _generate_device_name()
    try:
        _write_atomic(cache, name + "\n")
    except OSError:
        pass
    return name


def agent_environment(prefs: Dict[str, Any]) -> Dict[str, str]:
    """
    Extra environment handed to the engine process.
    """
    force_relay = prefs.get("force_relay", DEFAULT_PREFERENCES["force_relay"])
    return {"NB_FORCE_RELAY": "true" if bool(force_relay) else "false"}
