from __future__ import annotations

import json
import os
import signal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import pytest
import yaml


@pytest.fixture(autouse=True)
def _isolate_hyve_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # A developer shell may export HYVE_CONFIG or timing overrides; tests must not see them.
    for key in list(os.environ.keys()):
        if key.startswith("HYVE_"):
            monkeypatch.delenv(key, raising=False)


class FakeProcessControl:
    """In-memory ProcessControl: records every signal and never touches real processes."""

    def __init__(self) -> None:
        self.next_pid = 1000
        self.alive: Set[int] = set()
        self.spawned: List[Dict[str, Any]] = []
        self.signals: List[Tuple[str, int, int]] = []
        self.children_killed: List[int] = []
        self.port_sweeps: List[int] = []
        self.listeners: Dict[int, List[int]] = {}
        # Service directory names whose process dies right after spawn / fails to spawn.
        self.die_on_spawn: Set[str] = set()
        self.fail_spawn: Set[str] = set()

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def kill_group(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        self.signals.append(("group", pid, int(sig)))
        if pid in self.alive:
            self.alive.discard(pid)
            return True
        return False

    def kill_single(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        self.signals.append(("single", pid, int(sig)))
        if pid in self.alive:
            self.alive.discard(pid)
            return True
        return False

    def kill_children(self, pid: int) -> None:
        self.children_killed.append(pid)

    def pids_on_port(self, port: int) -> List[int]:
        return list(self.listeners.get(port, []))

    def kill_by_port(self, port: int) -> int:
        self.port_sweeps.append(port)
        return len(self.listeners.pop(port, []))

    def spawn_detached(self, command: Sequence[str], *, cwd: Path, env: Dict[str, str], log_path: Path) -> int:
        name = Path(cwd).name
        if name in self.fail_spawn:
            raise OSError(f"cannot spawn {name}")
        pid = self.next_pid
        self.next_pid += 1
        self.spawned.append({"name": name, "pid": pid, "command": list(command), "cwd": Path(cwd), "env": dict(env)})
        if name not in self.die_on_spawn:
            self.alive.add(pid)
        return pid

    def pid_of(self, name: str) -> Optional[int]:
        for rec in self.spawned:
            if rec["name"] == name:
                return int(rec["pid"])
        return None


@pytest.fixture
def fake_control() -> FakeProcessControl:
    return FakeProcessControl()


@pytest.fixture
def make_project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[..., Path]:
    """Write a `.hyve.yaml` plus workspace dirs under tmp_path and point HYVE_CONFIG at it."""

    def _make(
        definitions: Dict[str, Dict[str, Any]],
        *,
        workspaces: Sequence[str] = ("alpha",),
        repos: Optional[Sequence[str]] = None,
        base_port: int = 4000,
        port_offset: int = 1000,
        shell_wrapper: str = "",
    ) -> Path:
        services: Dict[str, Any] = {"base_port": base_port, "port_offset": port_offset, "definitions": definitions}
        if shell_wrapper:
            services["shell_wrapper"] = shell_wrapper
        cfg_path = tmp_path / ".hyve.yaml"
        cfg_path.write_text(yaml.safe_dump({"workspaces_dir": "./workspaces", "services": services}), encoding="utf-8")
        for ws in workspaces:
            ws_dir = tmp_path / "workspaces" / ws
            for name in definitions:
                (ws_dir / name).mkdir(parents=True, exist_ok=True)
            if repos is not None:
                (ws_dir / ".hyve-workspace.json").write_text(json.dumps({"repos": list(repos)}), encoding="utf-8")
        monkeypatch.setenv("HYVE_CONFIG", str(cfg_path))
        return cfg_path

    return _make
