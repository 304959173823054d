from __future__ import annotations

import shlex
import signal
import socket
import sys
import threading
import time
from pathlib import Path

import pytest


def _pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _wait_until(predicate, *, timeout_s: float = 10.0, poll_s: float = 0.05) -> None:
    end = time.time() + timeout_s
    while time.time() < end:
        if predicate():
            return
        time.sleep(poll_s)
    raise AssertionError("timeout waiting for condition")


def _fast_settings(**overrides):
    from hyve.config import OrchestratorSettings

    base = dict(
        dependency_health_timeout_s=0.2,
        service_health_timeout_s=0.2,
        health_poll_interval_s=0.05,
        health_request_timeout_s=0.2,
        settle_delay_s=0.0,
        level_delay_s=0.0,
        sweep_settle_s=0.0,
    )
    base.update(overrides)
    return OrchestratorSettings(**base)


def _supervisor(control, *, workspace: str = "alpha", health_gate=None, settings=None, services=None, sleep=None):
    from hyve.config import load_config
    from hyve.orchestration.models import RunContext
    from hyve.orchestration.supervisor import ServiceSupervisor
    from hyve.workspace import resolve_environment

    config = load_config()
    env = resolve_environment(config, workspace, services)
    kwargs = {}
    if health_gate is not None:
        kwargs["health_gate"] = health_gate
    context = RunContext(control, exit_process=lambda code: None)
    sup = ServiceSupervisor(
        config=config,
        env=env,
        control=control,
        settings=settings or _fast_settings(),
        context=context,
        sleep=sleep or (lambda s: None),
        **kwargs,
    )
    return sup, env, context


@pytest.mark.basic
def test_start_one_spawns_in_service_dir_with_port_env(make_project, fake_control) -> None:
    from hyve.orchestration.models import ServiceStatus
    from hyve.orchestration.supervisor import read_pid_file

    make_project(
        {"server": {"default_port": 3001, "dev_command": "pnpm dev --port ${port}", "env_var": "API_PORT"}},
        workspaces=("alpha", "beta"),
    )
    sup, env, context = _supervisor(fake_control, workspace="beta")

    record = sup.start_one("server")
    assert record.status == ServiceStatus.HEALTHY
    assert record.failure is None
    assert record.resolved_port == 5001

    spawned = fake_control.spawned[0]
    assert spawned["command"][:3] == ["bash", "-l", "-c"]
    assert spawned["command"][3] == f"cd {shlex.quote(str(env.service_dir('server')))} && pnpm dev --port 5001"
    assert spawned["env"]["PORT"] == "5001"
    assert spawned["env"]["API_PORT"] == "5001"

    assert read_pid_file(env.pid_path("server")) == record.process_id
    assert context.captured_pids == [record.process_id]
    assert sup.running.port_of("server") == 5001


@pytest.mark.basic
def test_shell_wrapper_prefixes_commands(make_project, fake_control) -> None:
    make_project({"web": {"default_port": 3002}}, shell_wrapper="nix develop --command")
    sup, _env, _ctx = _supervisor(fake_control)
    sup.start_one("web")
    assert fake_control.spawned[0]["command"][3].endswith("&& nix develop --command pnpm dev")


@pytest.mark.basic
def test_start_one_failures_are_reported_not_raised(make_project, fake_control) -> None:
    from hyve.errors import FailureReason
    from hyve.orchestration.models import ServiceOutcome, ServiceStatus

    cfg_path = make_project(
        {
            "gone": {"default_port": 3000},
            "crashy": {"default_port": 3001},
            "nospawn": {"default_port": 3002},
        }
    )
    (cfg_path.parent / "workspaces" / "alpha" / "gone").rmdir()
    fake_control.die_on_spawn.add("crashy")
    fake_control.fail_spawn.add("nospawn")
    sup, _env, context = _supervisor(fake_control)

    missing = sup.start_one("gone")
    assert missing.failure == FailureReason.DIRECTORY_NOT_FOUND
    assert missing.status == ServiceStatus.FAILED

    unknown = sup.start_one("ghost")
    assert unknown.failure == FailureReason.NO_SERVICE_CONFIG

    crashed = sup.start_one("crashy")
    assert crashed.failure == FailureReason.PROCESS_EXITED
    # The pid was captured before the liveness probe.
    assert context.captured_pids == [crashed.process_id]

    nospawn = sup.start_one("nospawn")
    assert nospawn.failure == FailureReason.SPAWN_ERROR
    assert "cannot spawn" in nospawn.detail

    outcome = ServiceOutcome.from_record(crashed)
    assert outcome.ok is False
    assert outcome.pid is None
    assert outcome.error.startswith("Process exited")
    assert outcome.to_dict()["error"] == outcome.error


@pytest.mark.basic
def test_health_timeout_fails_but_leaves_process_running(make_project, fake_control) -> None:
    from hyve.errors import FailureReason
    from hyve.orchestration.models import ServiceStatus

    make_project({"api": {"default_port": 3001, "health_check": "http://localhost:${port}/health"}})
    urls: list[str] = []

    def gate(url, timeout_s, **_kw):
        urls.append(url)
        return False

    sup, _env, _ctx = _supervisor(fake_control, health_gate=gate)
    record = sup.start_one("api")
    assert urls == ["http://localhost:4001/health"]
    assert record.failure == FailureReason.HEALTH_CHECK_TIMEOUT
    assert record.status == ServiceStatus.UNHEALTHY
    assert fake_control.is_alive(record.process_id)
    assert fake_control.signals == []


@pytest.mark.basic
def test_unhealthy_dependency_is_a_warning(make_project, fake_control) -> None:
    from hyve.errors import FailureReason

    make_project(
        {
            "db": {"default_port": 3000, "health_check": "http://localhost:${port}/ping"},
            "server": {"default_port": 3001, "depends_on": ["db"]},
        }
    )
    seen: list[tuple[str, float]] = []

    def gate(url, timeout_s, **_kw):
        seen.append((url, timeout_s))
        return "/ping" not in url or len(seen) == 1

    sup, _env, _ctx = _supervisor(fake_control, health_gate=gate, settings=_fast_settings(dependency_health_timeout_s=30.0))
    assert sup.start_one("db").failure is None

    record = sup.start_one("server")
    assert record.failure is None
    assert record.process_id is not None
    assert record.warnings == [FailureReason.DEPENDENCY_UNHEALTHY]
    # Pre-start dependency wait uses the short budget.
    assert seen[-1] == ("http://localhost:4000/ping", 30.0)


@pytest.mark.basic
def test_stop_one_with_dead_pid_is_already_stopped(make_project, fake_control) -> None:
    from hyve.orchestration.supervisor import write_pid_file

    make_project({"server": {"default_port": 3001}})
    sup, env, _ctx = _supervisor(fake_control)
    write_pid_file(env.pid_path("server"), 424242)

    result = sup.stop_one("server")
    assert result.state == "already_stopped"
    assert result.pid == 424242
    assert not env.pid_path("server").exists()
    assert fake_control.port_sweeps == [4001]


@pytest.mark.basic
def test_stop_one_terminates_group_then_sweeps_port(make_project, fake_control) -> None:
    make_project({"server": {"default_port": 3001}})
    sup, env, _ctx = _supervisor(fake_control)
    record = sup.start_one("server")

    result = sup.stop_one("server")
    assert result.state == "stopped"
    assert fake_control.signals[0] == ("group", record.process_id, int(signal.SIGTERM))
    assert fake_control.children_killed == [record.process_id]
    assert not env.pid_path("server").exists()

    again = sup.stop_one("server")
    assert again.state == "not_running"


@pytest.mark.basic
def test_stop_one_counts_untracked_port_listener_as_stopped(make_project, fake_control) -> None:
    make_project({"server": {"default_port": 3001}})
    sup, _env, _ctx = _supervisor(fake_control)
    fake_control.listeners[4001] = [777]
    result = sup.stop_one("server")
    assert result.state == "stopped"
    assert result.port_kills == 1


@pytest.mark.basic
def test_read_pid_file_tolerates_garbage(tmp_path: Path) -> None:
    from hyve.orchestration.supervisor import read_pid_file

    p = tmp_path / "x.pid"
    assert read_pid_file(p) is None
    p.write_text("not-a-pid\n", encoding="utf-8")
    assert read_pid_file(p) is None
    p.write_text("0\n", encoding="utf-8")
    assert read_pid_file(p) is None
    p.write_text(" 123 \n", encoding="utf-8")
    assert read_pid_file(p) == 123


@pytest.mark.integration
def test_run_prepare_substitutes_server_port(make_project, fake_control) -> None:
    make_project(
        {
            "server": {"default_port": 3001},
            "web": {
                "default_port": 3002,
                "pre_run": "echo server=${server_port} self=${port} env=$PORT > prepared.txt",
                "pre_run_deps": ["server"],
            },
            "broken": {"default_port": 3003, "pre_run": "exit 3"},
        }
    )
    sup, env, _ctx = _supervisor(fake_control)
    sup.start_one("server")

    assert sup.run_prepare("web") is True
    out = (env.service_dir("web") / "prepared.txt").read_text(encoding="utf-8").strip()
    assert out == "server=4001 self=4002 env=4002"

    assert sup.run_prepare("broken") is False
    assert sup.run_prepare("server") is True


@pytest.mark.integration
def test_real_process_spawn_and_terminate(tmp_path: Path) -> None:
    from hyve.orchestration.platform import PosixProcessControl, terminate

    control = PosixProcessControl()
    log_path = tmp_path / "logs" / "sleeper.log"
    pid = control.spawn_detached(
        [sys.executable, "-c", "import time; print('booted', flush=True); time.sleep(60)"],
        cwd=tmp_path,
        env={"PATH": "/usr/bin:/bin"},
        log_path=log_path,
    )
    assert control.is_alive(pid)
    _wait_until(lambda: "booted" in log_path.read_text(encoding="utf-8", errors="replace"))

    assert terminate(control, pid) is True
    _wait_until(lambda: not control.is_alive(pid))

    quick = control.spawn_detached([sys.executable, "-c", "pass"], cwd=tmp_path, env={}, log_path=log_path)
    _wait_until(lambda: not control.is_alive(quick))
    assert control.is_alive(-1) is False


@pytest.mark.integration
def test_start_and_halt_real_service(make_project) -> None:
    from hyve.orchestration.platform import PosixProcessControl

    port = _pick_free_port()
    script = "import os, time; print('PORT', os.environ['PORT'], flush=True); time.sleep(60)"
    make_project(
        {"svc": {"default_port": 3000, "dev_command": f"exec {shlex.quote(sys.executable)} -c {shlex.quote(script)}"}},
        base_port=port,
    )
    control = PosixProcessControl()
    sup, env, _ctx = _supervisor(control, settings=_fast_settings(settle_delay_s=0.5), sleep=time.sleep)

    record = sup.start_one("svc")
    try:
        assert record.failure is None, record.detail
        assert control.is_alive(record.process_id)
        _wait_until(lambda: f"PORT {port}" in env.log_path("svc").read_text(encoding="utf-8", errors="replace"))

        state = sup.service_state("svc")
        assert state.running is True
        assert state.pid == record.process_id
        assert state.port == port
    finally:
        result = sup.stop_one("svc")
    assert result.state == "stopped"
    _wait_until(lambda: not control.is_alive(record.process_id))
    assert not env.pid_path("svc").exists()


@pytest.mark.basic
def test_interrupt_racing_a_spawn_still_terminates_the_new_pid(
    make_project, fake_control, monkeypatch: pytest.MonkeyPatch
) -> None:
    make_project({"server": {"default_port": 3001}})
    sup, _env, context = _supervisor(fake_control)
    original = fake_control.spawn_detached
    handlers: list[threading.Thread] = []

    def spawn_detached(command, **kwargs):
        t = threading.Thread(target=context.handle_interrupt, args=(signal.SIGINT, None))
        t.start()
        handlers.append(t)
        # The handler cannot collect pids until this spawn has been captured.
        time.sleep(0.1)
        assert fake_control.signals == []
        return original(command, **kwargs)

    monkeypatch.setattr(fake_control, "spawn_detached", spawn_detached)
    record = sup.start_one("server")

    handlers[0].join(timeout=5.0)
    assert not handlers[0].is_alive()
    assert ("group", record.process_id, int(signal.SIGTERM)) in fake_control.signals
    assert not fake_control.is_alive(record.process_id)
