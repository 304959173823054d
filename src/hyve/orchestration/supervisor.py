"""Start, prepare and stop one service of a workspace.

A started service is fire-and-forget: it runs detached in its own process
group with output appended to `<state_dir>/<name>.log`, and the pid file is
the only durable record of it. There is no channel back from the child; the
supervisor launches, then probes liveness once.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from ..config import HyveConfig, OrchestratorSettings, ServiceSpec
from ..errors import FailureReason
from ..ports import SERVER_PORT_PLACEHOLDER, service_port, substitute_port
from ..workspace import EnvironmentContext
from .health import await_healthy, probe_once
from .models import RunContext, RunningService, ServiceOutcome, ServiceStatus
from .platform import ProcessControl, terminate


logger = logging.getLogger(__name__)

# Preparation steps may reference the port of the conventionally-named "server" service.
SERVER_SERVICE = "server"


def read_pid_file(path: Path) -> Optional[int]:
    """Missing or unparsable pid files mean "not running"."""
    try:
        raw = Path(path).read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    if not raw.isdigit():
        return None
    pid = int(raw)
    return pid if pid > 0 else None


def write_pid_file(path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(f"{int(pid)}\n", encoding="utf-8")
    tmp.replace(path)


@dataclass(frozen=True)
class StopResult:
    name: str
    state: str  # stopped|already_stopped|not_running
    pid: Optional[int] = None
    port_kills: int = 0


@dataclass(frozen=True)
class ServiceState:
    name: str
    port: int
    pid: Optional[int]
    running: bool
    port_in_use: bool
    healthy: Optional[bool] = None
    log_path: Optional[Path] = None


class RunningServices:
    """Thread-safe name -> port map of services that captured a pid in this run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ports: Dict[str, int] = {}

    def add(self, name: str, port: int) -> None:
        with self._lock:
            self._ports[name] = int(port)

    def port_of(self, name: str) -> Optional[int]:
        with self._lock:
            return self._ports.get(name)


class ServiceSupervisor:
    def __init__(
        self,
        *,
        config: HyveConfig,
        env: EnvironmentContext,
        control: ProcessControl,
        settings: Optional[OrchestratorSettings] = None,
        context: Optional[RunContext] = None,
        running: Optional[RunningServices] = None,
        health_gate: Callable[..., bool] = await_healthy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._env = env
        self._control = control
        self._settings = settings or OrchestratorSettings()
        self._context = context
        self._running = running or RunningServices()
        self._health_gate = health_gate
        self._sleep = sleep

    @property
    def running(self) -> RunningServices:
        return self._running

    def port_for(self, name: str) -> Optional[int]:
        spec = self._config.service(name)
        if spec is None:
            return None
        return service_port(spec, self._config, self._env.index)

    def health_url(self, spec: ServiceSpec, port: int) -> Optional[str]:
        if not spec.health_check:
            return None
        return substitute_port(spec.health_check, port)

    def wait_healthy(self, name: str, timeout_s: float) -> bool:
        """Gate on a service's own health endpoint; services without one count as healthy."""
        spec = self._config.service(name)
        port = self.port_for(name)
        if spec is None or port is None:
            return False
        url = self.health_url(spec, port)
        if url is None:
            return True
        return bool(
            self._health_gate(
                url,
                timeout_s,
                poll_interval_s=self._settings.health_poll_interval_s,
                request_timeout_s=self._settings.health_request_timeout_s,
            )
        )

    # ----------------------------
    # Command construction
    # ----------------------------

    def _wrap(self, command: str) -> str:
        wrapper = self._config.shell_wrapper
        return f"{wrapper} {command}" if wrapper else command

    def _shell_argv(self, service_dir: Path, command: str) -> list[str]:
        return ["bash", "-l", "-c", f"cd {shlex.quote(str(service_dir))} && {self._wrap(command)}"]

    def _child_env(self, spec: ServiceSpec, port: int) -> Dict[str, str]:
        env = dict(os.environ)
        env["PORT"] = str(port)
        if spec.env_var and spec.env_var != "PORT":
            env[spec.env_var] = str(port)
        return env

    def _prepare_command(self, spec: ServiceSpec, port: int) -> str:
        command = str(spec.prepare_command or "")
        server_port = self._running.port_of(SERVER_SERVICE)
        if server_port is not None:
            command = command.replace(SERVER_PORT_PLACEHOLDER, str(server_port))
        return substitute_port(command, port)

    # ----------------------------
    # Lifecycle
    # ----------------------------

    def run_prepare(self, name: str) -> bool:
        """Run the service's prepare step. Failures are logged and reported, never raised."""
        spec = self._config.service(name)
        if spec is None or not spec.prepare_command:
            return True
        port = service_port(spec, self._config, self._env.index)
        service_dir = self._env.service_dir(name)
        command = self._prepare_command(spec, port)
        logger.info("Running pre-run for %s: %s", name, command)
        try:
            proc = subprocess.run(
                self._shell_argv(service_dir, command),
                cwd=str(service_dir),
                env=self._child_env(spec, port),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self._settings.prepare_timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Pre-run for %s timed out after %.0fs", name, self._settings.prepare_timeout_s)
            return False
        except OSError as e:
            logger.warning("Pre-run for %s failed to launch: %s", name, e)
            return False
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "").strip().splitlines()[-5:]
            logger.warning("Pre-run failed for %s (exit=%s): %s", name, proc.returncode, " | ".join(tail))
            return False
        logger.info("Pre-run complete for %s", name)
        return True

    def _await_dependencies(self, spec: ServiceSpec, record: RunningService) -> None:
        for dep in spec.depends_on:
            dep_spec = self._config.service(dep)
            dep_port = self._running.port_of(dep)
            if dep_spec is None or dep_port is None or not dep_spec.health_check:
                continue
            record.status = ServiceStatus.WAITING_ON_DEPENDENCY
            url = substitute_port(dep_spec.health_check, dep_port)
            logger.info("Waiting for %s to be healthy (%s)...", dep, url)
            healthy = self._health_gate(
                url,
                self._settings.dependency_health_timeout_s,
                poll_interval_s=self._settings.health_poll_interval_s,
                request_timeout_s=self._settings.health_request_timeout_s,
            )
            if healthy:
                logger.info("%s is healthy", dep)
            else:
                # Pre-start dependency health is advisory; the service is still started.
                logger.warning("%s health check timed out (continuing anyway)", dep)
                record.warnings.append(FailureReason.DEPENDENCY_UNHEALTHY)

    def start_one(self, name: str) -> RunningService:
        spec = self._config.service(name)
        env = self._env
        if spec is None:
            record = RunningService(name=name, resolved_port=0, log_path=env.log_path(name), pid_file_path=env.pid_path(name))
            record.fail(FailureReason.NO_SERVICE_CONFIG)
            return record

        port = service_port(spec, self._config, env.index)
        record = RunningService(name=name, resolved_port=port, log_path=env.log_path(name), pid_file_path=env.pid_path(name))

        service_dir = env.service_dir(name)
        if not service_dir.is_dir():
            record.fail(FailureReason.DIRECTORY_NOT_FOUND, str(service_dir))
            return record

        self._await_dependencies(spec, record)

        if spec.prepare_command:
            record.status = ServiceStatus.PREPARING
            if not self.run_prepare(name):
                record.warnings.append(FailureReason.PREPARATION_FAILURE)

        record.status = ServiceStatus.STARTING
        command = substitute_port(spec.run_command, port)
        logger.info("Starting %s on port %s...", name, port)
        def spawn() -> int:
            return self._control.spawn_detached(
                self._shell_argv(service_dir, command),
                cwd=service_dir,
                env=self._child_env(spec, port),
                log_path=record.log_path,
            )

        try:
            pid = self._context.launch(spawn) if self._context is not None else spawn()
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            record.fail(FailureReason.SPAWN_ERROR, str(e))
            logger.error("%s failed: %s", name, e)
            return record

        record.process_id = pid
        try:
            write_pid_file(record.pid_file_path, pid)
        except OSError as e:
            # `hyve halt` finds services by pid file.
            terminate(self._control, pid)
            record.fail(FailureReason.SPAWN_ERROR, f"cannot write pid file {record.pid_file_path}: {e}")
            logger.error("%s failed: cannot write pid file %s: %s", name, record.pid_file_path, e)
            return record
        self._running.add(name, port)

        self._sleep(self._settings.settle_delay_s)
        if not self._control.is_alive(pid):
            record.fail(FailureReason.PROCESS_EXITED, f"see {record.log_path}")
            logger.error("%s failed to start (see %s)", name, record.log_path)
            return record

        url = self.health_url(spec, port)
        if url is not None:
            logger.info("Waiting for %s health check (%s)...", name, url)
            healthy = self._health_gate(
                url,
                self._settings.service_health_timeout_s,
                poll_interval_s=self._settings.health_poll_interval_s,
                request_timeout_s=self._settings.health_request_timeout_s,
            )
            if not healthy:
                # Left running; reported as a failed start.
                record.fail(FailureReason.HEALTH_CHECK_TIMEOUT, url)
                logger.error("%s health check timed out (pid %s still running)", name, pid)
                return record

        record.status = ServiceStatus.HEALTHY
        logger.info("%s started (PID %s)", name, pid)
        return record

    def start_outcome(self, name: str) -> ServiceOutcome:
        return ServiceOutcome.from_record(self.start_one(name))

    def stop_one(self, name: str) -> StopResult:
        pid_path = self._env.pid_path(name)
        pid = read_pid_file(pid_path)
        state = "not_running"
        if pid is not None:
            if self._control.is_alive(pid) and terminate(self._control, pid):
                state = "stopped"
            else:
                state = "already_stopped"
            self._control.kill_children(pid)
        try:
            pid_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove pid file %s: %s", pid_path, e)

        # The pid file may be stale relative to a process restarted outside hyve.
        port_kills = 0
        port = self.port_for(name)
        if port is not None:
            port_kills = self._control.kill_by_port(port)
            if port_kills and state != "stopped":
                state = "stopped"
        return StopResult(name=name, state=state, pid=pid, port_kills=port_kills)

    def service_state(self, name: str, *, probe_health: bool = False) -> ServiceState:
        spec = self._config.service(name)
        port = self.port_for(name) or 0
        pid = read_pid_file(self._env.pid_path(name))
        running = pid is not None and self._control.is_alive(pid)
        port_in_use = bool(port) and bool(self._control.pids_on_port(port))
        healthy: Optional[bool] = None
        if probe_health and spec is not None:
            url = self.health_url(spec, port)
            if url is not None:
                healthy = probe_once(url, request_timeout_s=self._settings.health_request_timeout_s)
        log_path = self._env.log_path(name)
        return ServiceState(
            name=name,
            port=port,
            pid=pid,
            running=running,
            port_in_use=port_in_use,
            healthy=healthy,
            log_path=log_path if log_path.exists() else None,
        )
