from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .config import HyveConfig, OrchestratorSettings, load_config
from .errors import HyveError
from .workspace import EnvironmentContext, list_workspaces, resolve_environment


def _stderr(line: str) -> None:
    print(str(line), file=sys.stderr)


def _configure_console_logging(level: int = logging.INFO) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=datefmt)
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            h.setFormatter(formatter)
        root.setLevel(int(level))
        return
    logging.basicConfig(level=int(level), format=fmt, datefmt=datefmt)


def _load(args: argparse.Namespace) -> HyveConfig:
    path = Path(str(args.config)).expanduser() if getattr(args, "config", None) else None
    config = load_config(path)
    config.validate_graph()
    return config


def _environment(config: HyveConfig, args: argparse.Namespace) -> EnvironmentContext:
    env = resolve_environment(config, str(args.workspace), list(getattr(args, "services", None) or []))
    if env.requested_services:
        return env
    # No explicit services and no sidecar repos: act on every configured service.
    return EnvironmentContext(
        name=env.name,
        index=env.index,
        directory=env.directory,
        requested_services=tuple(config.services.keys()),
        sidecar=env.sidecar,
    )


def _print_run_summary(env: EnvironmentContext, report) -> None:
    print("")
    print(f"Workspace {env.name} (index {env.index}):")
    for o in report.outcomes:
        if o.ok:
            line = f"  + {o.name:<16} http://localhost:{o.port}  (pid {o.pid})"
        else:
            line = f"  x {o.name:<16} {o.error}"
        if o.warnings:
            line += f"  [{'; '.join(o.warnings)}]"
        print(line)
    if report.at_risk:
        print(f"At risk (a dependency failed): {', '.join(report.at_risk)}")
    print(f"Logs: {env.state_dir}")
    print(f"Stop with: hyve halt {env.name}")


def _cmd_run(args: argparse.Namespace) -> None:
    from .orchestration.orchestrator import StartupOrchestrator
    from .orchestration.watcher import WatchPlan, WatchReactor

    config = _load(args)
    env = _environment(config, args)
    if not env.requested_services:
        _stderr(f"No services to run in workspace {env.name}")
        raise SystemExit(1)

    settings = OrchestratorSettings.from_env()
    orch = StartupOrchestrator(config=config, env=env, settings=settings)
    orch.context.install_signal_handlers()
    try:
        report = orch.run_all()
    except BaseException:
        orch.context.restore_signal_handlers()
        raise

    if bool(args.json):
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2, sort_keys=True))
    else:
        _print_run_summary(env, report)
    # From here on, an interrupt leaves the started services running.
    orch.context.complete_startup()
    orch.context.restore_signal_handlers()

    if not report.ok:
        raise SystemExit(1)
    if not bool(args.watch):
        return

    reactor = WatchReactor(
        supervisor=orch.supervisor,
        plan=WatchPlan.from_specs(config.services, env.requested_services),
        service_dir=env.service_dir,
        settings=settings,
    )
    if not reactor.start():
        return

    stop = threading.Event()

    def _handle(_signum, _frame) -> None:  # pragma: no cover
        stop.set()

    try:
        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)
    except (ValueError, OSError):
        pass

    print("Watching for changes (Ctrl+C to stop watching; services keep running)")
    reactor.run_forever(stop)


def _cmd_halt(args: argparse.Namespace) -> None:
    from .orchestration.graph import resolve_levels
    from .orchestration.platform import PosixProcessControl
    from .orchestration.supervisor import ServiceSupervisor

    config = _load(args)
    env = _environment(config, args)
    supervisor = ServiceSupervisor(config=config, env=env, control=PosixProcessControl())

    # Dependents first.
    order = list(reversed(resolve_levels(list(env.requested_services), config.services).order))
    for name in order:
        result = supervisor.stop_one(name)
        if result.state == "stopped":
            extra = f" (pid {result.pid})" if result.pid else ""
            print(f"  stopped {name}{extra}")
        elif result.state == "already_stopped":
            print(f"  {name} already stopped")
        else:
            print(f"  {name} not running")


def _cmd_status(args: argparse.Namespace) -> None:
    from .orchestration.platform import PosixProcessControl
    from .orchestration.supervisor import ServiceSupervisor

    config = _load(args)
    env = _environment(config, args)
    supervisor = ServiceSupervisor(
        config=config, env=env, control=PosixProcessControl(), settings=OrchestratorSettings.from_env()
    )
    states = [supervisor.service_state(name, probe_health=True) for name in env.requested_services]

    if bool(args.json):
        out = {
            "workspace": env.name,
            "index": env.index,
            "services": [
                {
                    "name": s.name,
                    "port": s.port,
                    "pid": s.pid,
                    "running": s.running,
                    "port_in_use": s.port_in_use,
                    "healthy": s.healthy,
                    "log": str(s.log_path) if s.log_path else None,
                }
                for s in states
            ],
        }
        print(json.dumps(out, ensure_ascii=False, indent=2, sort_keys=True))
        return

    print(f"Workspace {env.name} (index {env.index}):")
    for s in states:
        if s.running:
            state = "running"
        elif s.port_in_use:
            state = "port in use (untracked)"
        else:
            state = "stopped"
        health = "" if s.healthy is None else ("  healthy" if s.healthy else "  unhealthy")
        pid = f"  pid {s.pid}" if s.pid and s.running else ""
        print(f"  {s.name:<16} :{s.port:<6} {state}{pid}{health}")


def _cmd_list(args: argparse.Namespace) -> None:
    config = _load(args)
    names = list_workspaces(config)
    if not names:
        print(f"No workspaces under {config.workspaces_dir}")
        return
    for i, name in enumerate(names):
        print(f"  {i:>3}  {name}  (ports from {config.base_port + i * config.port_offset})")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="hyve")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", default=None, help="Path to .hyve.yaml (default: search upwards from cwd)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Start a workspace's services in dependency order")
    run.add_argument("workspace", help="Workspace name (directory under workspaces_dir)")
    run.add_argument("services", nargs="*", help="Services to start (default: the workspace's repos)")
    run.add_argument("--watch", action="store_true", help="Re-run pre_run steps when watched services change")
    run.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")

    halt = sub.add_parser("halt", aliases=["stop"], help="Stop a workspace's services")
    halt.add_argument("workspace", help="Workspace name")
    halt.add_argument("services", nargs="*", help="Services to stop (default: the workspace's repos)")

    status = sub.add_parser("status", help="Show per-service process, port and health state")
    status.add_argument("workspace", help="Workspace name")
    status.add_argument("services", nargs="*", help="Services to inspect (default: the workspace's repos)")
    status.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")

    sub.add_parser("list", help="List workspaces and their port ranges")

    args = parser.parse_args(argv)
    _configure_console_logging(logging.DEBUG if bool(args.verbose) else logging.INFO)

    commands = {
        "run": _cmd_run,
        "halt": _cmd_halt,
        "stop": _cmd_halt,
        "status": _cmd_status,
        "list": _cmd_list,
    }
    handler = commands.get(str(args.cmd))
    if handler is None:
        raise SystemExit(2)
    try:
        handler(args)
    except HyveError as e:
        _stderr(f"Error: {e}")
        raise SystemExit(2)


if __name__ == "__main__":
    main()
