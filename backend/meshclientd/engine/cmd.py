import os
import shutil
from typing import List, Optional

_LOG_LEVELS = ("panic", "fatal", "error", "warn", "info", "debug", "trace")

_SECRET_FLAGS = ("--setup-key", "-k")


def resolve_engine_bin(engine_bin: str) -> Optional[str]:
    """
    Absolute paths are taken as-is when executable; bare names go through PATH.
    """
    if not engine_bin:
        return None
    if os.path.isabs(engine_bin):
        return engine_bin if os.path.isfile(engine_bin) and os.access(engine_bin, os.X_OK) else None
    return shutil.which(engine_bin)


def build_cmd(
    *,
    engine_path: str,
    config_path: str,
    device_name: str,
    log_level: str = "info",
    management_url: Optional[str] = None,
    setup_key: Optional[str] = None,
) -> List[str]:
    """
    Build a deterministic foreground `up` command for the mesh client binary.

    Notes:
      - --foreground-mode keeps the engine attached so the supervisor owns its lifetime.
      - Logs go to the console so the supervisor's tails capture them.
    """
    if not engine_path:
        raise ValueError("engine_path is required")
    if not config_path:
        raise ValueError("config_path is required")
    if not device_name:
        raise ValueError("device_name is required")

    lvl = str(log_level or "").lower().strip()
    if lvl == "warning":
        lvl = "warn"
    if lvl not in _LOG_LEVELS:
        lvl = "info"

    cmd: List[str] = [
        engine_path,
        "up",
        "--foreground-mode",
        "--config",
        config_path,
        "--hostname",
        device_name,
        "--log-file",
        "console",
        "--log-level",
        lvl,
    ]

    if management_url:
        cmd += ["--management-url", management_url]

    if setup_key:
        cmd += ["--setup-key", setup_key]

    return cmd


def redact_cmd(cmd: List[str]) -> List[str]:
    """
    Keep setup keys out of logs and status snapshots.
    """
    out = list(cmd)
    for flag in _SECRET_FLAGS:
        try:
            i = out.index(flag)
            if i + 1 < len(out):
                out[i + 1] = "********"
        except ValueError:
            pass
    return out
