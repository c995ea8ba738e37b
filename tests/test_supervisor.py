import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))

GRACE_S = 10.0

_SLEEPER = [sys.executable, "-c", "import sys, time; print('engine up', flush=True); time.sleep(60)"]
_TERM_IGNORER = [
    sys.executable,
    "-c",
    "import signal, sys, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(60)",
]


def test_stop_terminates_engine_and_reports_clean_exit():
    from meshclientd.engine.supervisor import ProcessAgent
    from meshclientd.state import ConnectionStatus

    seen = []
    agent = ProcessAgent(_SLEEPER, early_fail_window_s=0.2, stop_timeout_s=5.0)
    agent.set_connection_listener(seen.append)

    agent.start()
    assert agent.pid is not None
    assert agent.wait(timeout=0.5) is None

    agent.stop()
    res = agent.wait(timeout=GRACE_S)

    assert res is not None
    assert res.error is None
    assert not res.failed
    assert "engine up" in res.stdout_tail
    assert seen == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTING,
        ConnectionStatus.DISCONNECTED,
    ]

    # Idempotent.
    agent.stop()
    assert agent.wait(timeout=0) is res


def test_early_exit_is_reported_as_failure():
    from meshclientd.engine.supervisor import ProcessAgent

    cmd = [sys.executable, "-c", "import sys; sys.stderr.write('bad config\\n'); sys.exit(3)"]
    agent = ProcessAgent(cmd, early_fail_window_s=5.0)
    agent.start()

    res = agent.wait(timeout=GRACE_S)

    assert res.exit_code == 3
    assert res.error == "engine_exited_early: rc=3"
    assert "bad config" in res.stderr_tail


def test_late_unsolicited_exit_is_reported_as_failure():
    from meshclientd.engine.supervisor import ProcessAgent

    cmd = [sys.executable, "-c", "import time; time.sleep(0.3)"]
    agent = ProcessAgent(cmd, early_fail_window_s=0.05)
    agent.start()

    res = agent.wait(timeout=GRACE_S)

    assert res.exit_code == 0
    assert res.error == "engine_exited: rc=0"


def test_non_utf8_output_does_not_kill_engine():
    from meshclientd.engine.supervisor import ProcessAgent

    cmd = [
        sys.executable,
        "-c",
        "import sys, time; sys.stdout.buffer.write(b'\\xff\\xfe bad\\n'); sys.stdout.buffer.flush(); "
        "sys.stderr.buffer.write(b'iface \\xff down\\n'); sys.stderr.buffer.flush(); "
        "[print('line', i, flush=True) for i in range(2000)]; print('ready', flush=True); time.sleep(60)",
    ]
    agent = ProcessAgent(cmd, early_fail_window_s=0.05, stop_timeout_s=5.0)
    agent.start()

    assert agent.wait(timeout=1.5) is None

    agent.stop()
    res = agent.wait(timeout=GRACE_S)

    assert res.error is None
    assert "ready" in res.stdout_tail
    assert "[stdout] reader error" not in res.stdout_tail
    assert "iface \ufffd down" in res.stderr_tail


def test_stop_escalates_to_sigkill_when_sigterm_ignored():
    import signal

    from meshclientd.engine.supervisor import ProcessAgent

    agent = ProcessAgent(_TERM_IGNORER, early_fail_window_s=0.1, stop_timeout_s=0.5)
    agent.start()
    # Give the child time to install its handler.
    import time
    deadline = time.time() + GRACE_S
    while "ready" not in list(agent._stdout_tail) and time.time() < deadline:
        time.sleep(0.02)

    agent.stop()
    res = agent.wait(timeout=GRACE_S)

    assert res is not None
    assert res.exit_code == -signal.SIGKILL
    assert res.error is None
    assert any("sigterm_timeout" in line for line in res.stderr_tail)


def test_spawn_failure_raises_agent_start_error(tmp_path):
    from meshclientd.agent import AgentStartError
    from meshclientd.engine.supervisor import ProcessAgent

    agent = ProcessAgent([str(tmp_path / "does-not-exist")])
    with pytest.raises(AgentStartError) as exc:
        agent.start()
    assert "spawn_failed" in str(exc.value)


def test_stop_before_start_unblocks_wait_and_blocks_start():
    from meshclientd.agent import AgentStartError
    from meshclientd.engine.supervisor import ProcessAgent

    agent = ProcessAgent(_SLEEPER)
    agent.stop()

    res = agent.wait(timeout=0)
    assert res is not None and res.error is None
    with pytest.raises(AgentStartError):
        agent.start()


def test_engine_env_includes_extra_and_locale(monkeypatch):
    import meshclientd.engine.supervisor as supervisor

    monkeypatch.delenv("LC_ALL", raising=False)
    monkeypatch.setenv("LANG", "en_US.UTF-8")

    env = supervisor._build_engine_env({"NB_FORCE_RELAY": "true"})

    assert env["NB_FORCE_RELAY"] == "true"
    assert env["LC_ALL"] == "C"
    assert env["LANG"] == "en_US.UTF-8"


def test_build_process_agent_uses_preferences(monkeypatch, tmp_path):
    import meshclientd.engine.supervisor as supervisor
    from meshclientd.config import ClientConfig

    monkeypatch.setattr(
        supervisor,
        "load_preferences",
        lambda: {
            "engine_bin": "netbird",
            "force_relay": False,
            "log_level": "debug",
            "management_url": "",
            "setup_key": "k-123",
            "early_fail_window_s": 0.5,
            "stop_timeout_s": 2.0,
        },
    )
    monkeypatch.setattr(supervisor, "resolve_engine_bin", lambda name: f"/opt/bin/{name}")

    agent = supervisor.build_process_agent(ClientConfig.create("/data/netbird.cfg", "device-1"))

    assert agent.cmd[:2] == ["/opt/bin/netbird", "up"]
    assert agent.cmd[agent.cmd.index("--setup-key") + 1] == "********"
    assert "--management-url" not in agent.cmd
    assert agent._env == {"NB_FORCE_RELAY": "false"}
    assert agent._stop_timeout_s == 2.0


def test_build_process_agent_fails_when_engine_missing(monkeypatch):
    import meshclientd.engine.supervisor as supervisor
    import meshclientd.lifecycle as lifecycle
    from meshclientd.errors import AgentConstructionError

    monkeypatch.setattr(supervisor, "load_preferences", lambda: {"engine_bin": "no-such-engine"})
    monkeypatch.setattr(supervisor, "resolve_engine_bin", lambda _name: None)
    monkeypatch.setattr(lifecycle, "build_process_agent", supervisor.build_process_agent)

    with pytest.raises(AgentConstructionError) as exc:
        lifecycle.init("/data/netbird.cfg", "device-1")
    assert "engine_not_found: no-such-engine" in exc.value.message


def test_lifecycle_drives_real_process_end_to_end():
    import threading

    import meshclientd.lifecycle as lifecycle
    from meshclientd.engine.supervisor import ProcessAgent
    from meshclientd.state import ClientState

    handle = lifecycle.init(
        "/data/netbird.cfg",
        "device-1",
        agent_factory=lambda _cfg: ProcessAgent(_SLEEPER, early_fail_window_s=0.1),
    )
    stopper = threading.Timer(0.3, lifecycle.stop, args=(handle,))
    stopper.start()

    res = lifecycle.run(handle)
    stopper.join(GRACE_S)

    assert res.code == "stopped"
    assert handle.state is ClientState.STOPPED
    assert lifecycle.status(handle)["agent"]["pid"] is None
