import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from meshclientd.agent import AgentExit, AgentFactory, NetworkAgent
from meshclientd.config import ClientConfig
from meshclientd.engine.supervisor import build_process_agent
from meshclientd.errors import (
    AgentConstructionError,
    AgentRuntimeError,
    ConfigError,
    ErrorRecord,
    InvalidStateError,
)
from meshclientd.state import (
    ClientState,
    ConnectionStatus,
    can_transition,
    new_status,
    update_status,
)

log = logging.getLogger("meshclientd.lifecycle")

_HANDLE_IDS = itertools.count(1)

_RUN_REJECT_VARIANTS = {
    ClientState.UNINITIALIZED: "not_initialized",
    ClientState.RUNNING: "already_running",
    ClientState.STOPPING: "stopping",
    ClientState.STOPPED: "stopped",
    ClientState.FAILED: "failed",
}


@dataclass(frozen=True)
class LifecycleResult:
    code: str
    state: ClientState


class ClientHandle:
    """
    One controller instance and the single agent it owns.

    The host keeps the only strong reference. Every state change happens
    under `_lock`; `_wake` is the cancellation signal run() sleeps on.
    """

    def __init__(self):
        self.id = f"client-{next(_HANDLE_IDS)}"
        self._lock = threading.Lock()
        self._state = ClientState.UNINITIALIZED
        self._config: Optional[ClientConfig] = None
        self._agent: Optional[NetworkAgent] = None
        self._wake = threading.Event()
        self._exit: Optional[AgentExit] = None
        self._connection = ConnectionStatus.DISCONNECTED
        self._last_error: Optional[ErrorRecord] = None
        self._status: Dict[str, Any] = new_status()
        self._status["handle"] = self.id

    @property
    def state(self) -> ClientState:
        return self._state

    def __repr__(self) -> str:
        return f"ClientHandle(id={self.id!r}, state={self._state.value})"


def _extra(handle: ClientHandle, op: str, **kwargs) -> Dict[str, Any]:
    out: Dict[str, Any] = {"handle": handle.id, "op": op, "state": handle._state.value}
    out.update(kwargs)
    return out


def _set_state(handle: ClientHandle, dst: ClientState, op: str) -> None:
    # Caller holds handle._lock.
    src = handle._state
    if not can_transition(src, dst):
        raise InvalidStateError(
            f"illegal transition {src.value} -> {dst.value}",
            variant=_RUN_REJECT_VARIANTS.get(src),
        )
    handle._state = dst
    update_status(handle._status, state=dst, last_op=op)
    log.info("state_%s", dst.value, extra=_extra(handle, op))


def _on_connection(handle: ClientHandle, status: ConnectionStatus) -> None:
    # Agents may call this while run() holds the handle lock; never take it here.
    if handle._connection is status:
        return
    handle._connection = status
    log.info("connection_%s", status.value, extra=_extra(handle, "connection", connection=status.value))


def _record_exit(handle: ClientHandle, agent_exit: Optional[AgentExit]) -> None:
    if agent_exit is None:
        return
    update_status(
        handle._status,
        agent={
            "pid": None,
            "last_exit_code": agent_exit.exit_code,
            "last_error": agent_exit.error,
            "stdout_tail": list(agent_exit.stdout_tail),
            "stderr_tail": list(agent_exit.stderr_tail),
        },
    )


def init(
    config_path: str,
    device_name: str,
    agent_factory: Optional[AgentFactory] = None,
) -> ClientHandle:
    """
    Validate the config and construct (but do not start) the agent.

    Raises ConfigError or AgentConstructionError; no handle exists on failure.
    """
    try:
        config = ClientConfig.create(config_path, device_name)
    except ConfigError as e:
        log.warning("init_rejected: %s", e.message, extra={"op": "init", "kind": e.kind})
        raise

    factory = agent_factory or build_process_agent
    try:
        agent = factory(config)
    except Exception as e:
        log.warning(
            "agent_construction_failed: %s", e,
            extra={"op": "init", "kind": AgentConstructionError.kind, "device": config.device_name},
        )
        raise AgentConstructionError(f"agent_construction_failed: {e}") from e
    if agent is None:
        raise AgentConstructionError("agent_construction_failed: factory returned no agent")

    handle = ClientHandle()
    agent.set_connection_listener(lambda status: _on_connection(handle, status))

    with handle._lock:
        handle._config = config
        handle._agent = agent
        update_status(
            handle._status,
            device_name=config.device_name,
            config_path=config.config_path,
            agent={"cmd": getattr(agent, "cmd", None)},
        )
        _set_state(handle, ClientState.INITIALIZED, "init")

    log.info("init_ok", extra=_extra(handle, "init", device=config.device_name))
    return handle


def _watch_exit(handle: ClientHandle, agent: NetworkAgent) -> None:
    try:
        agent_exit = agent.wait()
    except Exception as e:
        log.exception("agent_wait_failed", extra=_extra(handle, "run"))
        agent_exit = AgentExit(error=f"agent_wait_failed: {e}")
    if agent_exit is None:
        agent_exit = AgentExit(error="agent_wait_returned_nothing")
    with handle._lock:
        handle._exit = agent_exit
    handle._wake.set()


def _stop_agent(handle: ClientHandle, agent: NetworkAgent, op: str) -> None:
    try:
        agent.stop()
    except Exception:
        log.exception("agent_stop_failed", extra=_extra(handle, op))


def run(handle: Optional[ClientHandle]) -> LifecycleResult:
    """
    Start the agent and block until it exits.

    Returns LifecycleResult("stopped", ...) after a clean stop. Raises
    InvalidStateError without side effects unless the handle is INITIALIZED,
    and AgentRuntimeError (state FAILED) when the agent fails.
    """
    if handle is None:
        raise InvalidStateError("no client handle", variant="not_initialized")

    with handle._lock:
        state = handle._state
        if state is not ClientState.INITIALIZED:
            variant = _RUN_REJECT_VARIANTS.get(state, state.value)
            log.warning("run_rejected:%s", variant, extra=_extra(handle, "run", kind=InvalidStateError.kind))
            raise InvalidStateError(f"cannot run client in state {state.value}", variant=variant)

        agent = handle._agent
        assert agent is not None
        _set_state(handle, ClientState.RUNNING, "run")

        start_error: Optional[AgentRuntimeError] = None
        try:
            agent.start()
        except Exception as e:
            start_error = AgentRuntimeError(f"agent_start_failed: {e}", detail=str(e))
            handle._last_error = start_error.to_record()
            update_status(handle._status, last_error=handle._last_error.to_dict())
            _set_state(handle, ClientState.FAILED, "run")
        else:
            update_status(handle._status, agent={"pid": agent.pid, "started_ts": int(time.time())})

    if start_error is not None:
        log.error("agent_start_failed: %s", start_error.detail, extra=_extra(handle, "run", kind=start_error.kind))
        _stop_agent(handle, agent, "run")
        with handle._lock:
            handle._agent = None
        raise start_error

    watcher = threading.Thread(
        target=_watch_exit,
        args=(handle, agent),
        name=f"meshclientd-exit-watch-{handle.id}",
        daemon=True,
    )
    watcher.start()
    log.info("run_started", extra=_extra(handle, "run", pid=agent.pid))

    failure: Optional[AgentRuntimeError] = None
    try:
        handle._wake.wait()

        with handle._lock:
            agent_exit = handle._exit
            if handle._state is ClientState.RUNNING:
                if agent_exit is not None and agent_exit.failed:
                    failure = AgentRuntimeError(f"agent_failed: {agent_exit.error}", detail=agent_exit.error)
                    handle._last_error = failure.to_record()
                    update_status(handle._status, last_error=handle._last_error.to_dict())
                    _set_state(handle, ClientState.FAILED, "run")
                else:
                    # Agent went away on its own without reporting a fault.
                    _set_state(handle, ClientState.STOPPING, "run")
    finally:
        _stop_agent(handle, agent, "run")
        watcher.join()

        with handle._lock:
            _record_exit(handle, handle._exit)
            handle._agent = None
            if handle._state is ClientState.STOPPING:
                _set_state(handle, ClientState.STOPPED, "run")
            elif handle._state is ClientState.RUNNING:
                # Interrupted before an outcome was decided.
                _set_state(handle, ClientState.FAILED, "run")
            final_state = handle._state

    if failure is not None:
        log.error("agent_failed: %s", failure.detail, extra=_extra(handle, "run", kind=failure.kind))
        raise failure

    log.info("run_finished", extra=_extra(handle, "run"))
    return LifecycleResult("stopped", final_state)


def stop(handle: Optional[ClientHandle]) -> None:
    """
    Request termination. Idempotent, never raises, never waits for teardown.
    """
    if handle is None:
        return
    try:
        _stop_impl(handle)
    except Exception:
        log.exception("stop_failed", extra=_extra(handle, "stop"))


def _stop_impl(handle: ClientHandle) -> None:
    with handle._lock:
        state = handle._state

        if state is ClientState.RUNNING:
            if handle._exit is not None and handle._exit.failed:
                # The fault got here first; run() moves the handle to FAILED.
                log.info("stop_noop:agent_failed", extra=_extra(handle, "stop"))
                return
            _set_state(handle, ClientState.STOPPING, "stop")
            handle._wake.set()
            log.info("stop_requested", extra=_extra(handle, "stop"))
            return

        if state is not ClientState.INITIALIZED:
            log.debug("stop_noop", extra=_extra(handle, "stop"))
            return

        agent = handle._agent
        handle._agent = None
        _set_state(handle, ClientState.STOPPED, "stop")

    # Never started; release it outside the lock.
    if agent is not None:
        _stop_agent(handle, agent, "stop")


def client_state(handle: Optional[ClientHandle]) -> ClientState:
    if handle is None:
        return ClientState.UNINITIALIZED
    with handle._lock:
        return handle._state


def last_error(handle: Optional[ClientHandle]) -> Optional[ErrorRecord]:
    if handle is None:
        return None
    with handle._lock:
        return handle._last_error


def status(handle: Optional[ClientHandle]) -> Dict[str, Any]:
    """
    JSON-ready snapshot of the handle for diagnostics.
    """
    if handle is None:
        return new_status()
    with handle._lock:
        snap = new_status()
        snap.update({k: v for k, v in handle._status.items() if k != "agent"})
        snap["agent"].update(handle._status["agent"])
        snap["agent"]["stdout_tail"] = list(snap["agent"]["stdout_tail"])
        snap["agent"]["stderr_tail"] = list(snap["agent"]["stderr_tail"])
        snap["connection"] = handle._connection.value
        return snap
