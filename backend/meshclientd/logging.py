import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional

_HANDLER_NAME = "meshclientd"
_STRUCTURED_FIELDS = ("handle", "op", "state", "kind", "device", "pid", "connection")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in _STRUCTURED_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """
    Install the JSON stdout handler on the root logger.

    Handlers the host installed stay in place; calling this again only swaps
    our own handler and level.
    """
    lvl = (level or os.environ.get("MESHCLIENTD_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    for h in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(h)
    root.setLevel(getattr(logging, lvl, logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
