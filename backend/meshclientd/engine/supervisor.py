import logging
import os
import signal
import subprocess
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from meshclientd.agent import AgentExit, AgentStartError, NetworkAgent
from meshclientd.config import ClientConfig, agent_environment, load_preferences
from meshclientd.engine.cmd import build_cmd, redact_cmd, resolve_engine_bin
from meshclientd.state import ConnectionStatus

log = logging.getLogger("meshclientd.engine.supervisor")

ENGINE_STDOUT_MAX_LINES = 200
ENGINE_STDERR_MAX_LINES = 200

_KILL_GRACE_S = 2.0
_READER_JOIN_S = 1.0


def _reader_thread(stream, tail: Deque[str], label: str) -> None:
    try:
        for line in iter(stream.readline, ""):
            if not line:
                break
            tail.append(line.rstrip("\n"))
    except (OSError, ValueError):
        tail.append(f"[{label}] reader error")
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _build_engine_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    if extra:
        env.update(extra)
    env.setdefault("LC_ALL", "C")
    env.setdefault("LANG", "C")
    return env


def _kill_process_group(pid: int, sig: int) -> None:
    """
    Kill the entire process group for a PID, with fallback to killing just the PID.
    The engine may spawn helpers; PGID kill prevents orphans.
    """
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return

    try:
        os.killpg(pgid, sig)
        return
    except ProcessLookupError:
        return
    except PermissionError:
        pass

    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return


class ProcessAgent(NetworkAgent):
    """
    Runs the mesh client binary as a child process in its own session.

    One instance supervises one process for its whole life; it is never
    restarted. stop() is idempotent and escalates SIGTERM -> SIGKILL.
    """

    def __init__(
        self,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None,
        early_fail_window_s: float = 1.0,
        stop_timeout_s: float = 5.0,
    ):
        if not cmd:
            raise ValueError("cmd is required")
        self._cmd = list(cmd)
        self._env = env
        self._early_fail_window_s = max(0.0, float(early_fail_window_s))
        self._stop_timeout_s = max(0.0, float(stop_timeout_s))

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._readers: List[threading.Thread] = []
        self._stdout_tail: Deque[str] = deque(maxlen=ENGINE_STDOUT_MAX_LINES)
        self._stderr_tail: Deque[str] = deque(maxlen=ENGINE_STDERR_MAX_LINES)
        self._stop_requested = False
        self._exit: Optional[AgentExit] = None
        self._exited = threading.Event()

    @property
    def cmd(self) -> List[str]:
        return redact_cmd(self._cmd)

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc is not None else None

    def _note(self, msg: str) -> None:
        # Keep supervisor notes in stderr tail so they show up for diagnostics.
        self._stderr_tail.append(f"[supervisor] {msg}")

    def start(self) -> None:
        with self._lock:
            if self._proc is not None:
                raise AgentStartError("engine_already_started")
            if self._stop_requested:
                raise AgentStartError("engine_stopped_before_start")

            try:
                proc = subprocess.Popen(
                    self._cmd,  # full cmd used to spawn (includes real setup key)
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    close_fds=True,
                    env=_build_engine_env(self._env),
                    # own session/PGID so the whole tree can be killed
                    start_new_session=True,
                )
            except OSError as e:
                raise AgentStartError(f"spawn_failed: {e}") from e

            self._proc = proc

        assert proc.stdout is not None
        assert proc.stderr is not None

        self._readers = [
            threading.Thread(
                target=_reader_thread,
                args=(proc.stdout, self._stdout_tail, "stdout"),
                name=f"meshclientd-engine-stdout-{proc.pid}",
                daemon=True,
            ),
            threading.Thread(
                target=_reader_thread,
                args=(proc.stderr, self._stderr_tail, "stderr"),
                name=f"meshclientd-engine-stderr-{proc.pid}",
                daemon=True,
            ),
        ]
        for t in self._readers:
            t.start()

        log.info("engine_spawned", extra={"pid": proc.pid})
        self._notify(ConnectionStatus.CONNECTING)

        threading.Thread(
            target=self._monitor,
            args=(proc,),
            name=f"meshclientd-engine-monitor-{proc.pid}",
            daemon=True,
        ).start()

    def _monitor(self, proc: subprocess.Popen) -> None:
        early = True
        try:
            rc = proc.wait(timeout=self._early_fail_window_s)
        except subprocess.TimeoutExpired:
            early = False
            if not self._stop_requested:
                self._notify(ConnectionStatus.CONNECTED)
            rc = proc.wait()

        for t in self._readers:
            t.join(timeout=_READER_JOIN_S)

        with self._lock:
            requested = self._stop_requested

        error: Optional[str] = None
        if not requested:
            error = f"engine_exited_early: rc={rc}" if early else f"engine_exited: rc={rc}"

        self._exit = AgentExit(
            exit_code=rc,
            error=error,
            stdout_tail=list(self._stdout_tail),
            stderr_tail=list(self._stderr_tail),
        )
        log.info("engine_exited rc=%s requested=%s", rc, requested, extra={"pid": proc.pid})
        self._notify(ConnectionStatus.DISCONNECTED)
        self._exited.set()

    def stop(self) -> None:
        with self._lock:
            if self._stop_requested:
                return
            self._stop_requested = True
            proc = self._proc

        if proc is None:
            # Never started: nothing to reap, but wait() must still return.
            self._exit = AgentExit()
            self._exited.set()
            return

        if proc.poll() is not None:
            return

        self._notify(ConnectionStatus.DISCONNECTING)
        _kill_process_group(proc.pid, signal.SIGTERM)
        if self._exited.wait(self._stop_timeout_s):
            return

        self._note(f"sigterm_timeout after {self._stop_timeout_s}s; sending SIGKILL")
        log.warning("engine_sigterm_timeout", extra={"pid": proc.pid})
        _kill_process_group(proc.pid, signal.SIGKILL)
        if not self._exited.wait(_KILL_GRACE_S):
            log.error("engine_kill_timeout", extra={"pid": proc.pid})

    def wait(self, timeout: Optional[float] = None) -> Optional[AgentExit]:
        if not self._exited.wait(timeout):
            return None
        return self._exit


def build_process_agent(config: ClientConfig) -> ProcessAgent:
    """
    Default agent factory: the engine binary driven by host preferences.
    """
    prefs = load_preferences()

    engine_bin = str(prefs.get("engine_bin") or "")
    engine_path = resolve_engine_bin(engine_bin)
    if not engine_path:
        raise RuntimeError(f"engine_not_found: {engine_bin or 'unset'}")

    cmd = build_cmd(
        engine_path=engine_path,
        config_path=config.config_path,
        device_name=config.device_name,
        log_level=str(prefs.get("log_level") or "info"),
        management_url=(prefs.get("management_url") or None),
        setup_key=(prefs.get("setup_key") or None),
    )

    return ProcessAgent(
        cmd,
        env=agent_environment(prefs),
        early_fail_window_s=float(prefs.get("early_fail_window_s", 1.0)),
        stop_timeout_s=float(prefs.get("stop_timeout_s", 5.0)),
    )
