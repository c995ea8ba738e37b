import json
import time
from enum import Enum
from typing import Any, Dict, FrozenSet, Tuple


class ClientState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class ConnectionStatus(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


TERMINAL_STATES: FrozenSet[ClientState] = frozenset({ClientState.STOPPED, ClientState.FAILED})

# Every transition a handle may take. Anything else is a bug in the controller.
_TRANSITIONS: FrozenSet[Tuple[ClientState, ClientState]] = frozenset({
    (ClientState.UNINITIALIZED, ClientState.INITIALIZED),
    (ClientState.INITIALIZED, ClientState.RUNNING),
    (ClientState.INITIALIZED, ClientState.STOPPED),
    (ClientState.RUNNING, ClientState.STOPPING),
    (ClientState.RUNNING, ClientState.FAILED),
    (ClientState.STOPPING, ClientState.STOPPED),
})


def can_transition(src: ClientState, dst: ClientState) -> bool:
    return (src, dst) in _TRANSITIONS


def is_terminal(state: ClientState) -> bool:
    return state in TERMINAL_STATES


DEFAULT_STATUS: Dict[str, Any] = {
    "handle": None,
    "state": ClientState.UNINITIALIZED.value,
    "connection": ConnectionStatus.DISCONNECTED.value,
    "device_name": None,
    "config_path": None,

    "agent": {
        "pid": None,
        "cmd": None,
        "started_ts": None,
        "last_exit_code": None,
        "last_error": None,
        "stdout_tail": [],
        "stderr_tail": [],
    },

    "last_error": None,
    "last_op": None,
    "last_op_ts": None,
}


def new_status() -> Dict[str, Any]:
    # JSON roundtrip is fine here; the snapshot is small.
    return json.loads(json.dumps(DEFAULT_STATUS))


def update_status(status: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """
    Merge kwargs into a status snapshot in place. The "agent" section is
    merged key by key so partial updates keep the other agent fields.
    """
    for k, v in kwargs.items():
        if k == "agent" and isinstance(v, dict):
            status["agent"].update(v)
        elif isinstance(v, Enum):
            status[k] = v.value
        else:
            status[k] = v

    status["last_op_ts"] = int(time.time())
    return status
