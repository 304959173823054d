from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import HyveConfig
from .errors import WorkspaceNotFound


SIDECAR_FILENAME = ".hyve-workspace.json"


def list_workspaces(config: HyveConfig) -> List[str]:
    root = Path(config.workspaces_dir)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))


def workspace_index(config: HyveConfig, name: str) -> int:
    """Stable index derived from sorted workspace names (unknown names get the next free index)."""
    names = list_workspaces(config)
    try:
        return names.index(name)
    except ValueError:
        return len(names)


def load_workspace_sidecar(workspace_dir: Path) -> Dict[str, Any]:
    path = Path(workspace_dir) / SIDECAR_FILENAME
    try:
        obj = json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except Exception:
        return {}
    return obj if isinstance(obj, dict) else {}


@dataclass(frozen=True)
class EnvironmentContext:
    name: str
    index: int
    directory: Path
    requested_services: Tuple[str, ...] = ()
    sidecar: Dict[str, Any] = field(default_factory=dict)

    @property
    def state_dir(self) -> Path:
        # Logs and pid files; read back by `hyve status` and `hyve halt`.
        return self.directory / ".hyve" / "logs"

    def service_dir(self, service: str) -> Path:
        return self.directory / service

    def log_path(self, service: str) -> Path:
        return self.state_dir / f"{service}.log"

    def pid_path(self, service: str) -> Path:
        return self.state_dir / f"{service}.pid"


def resolve_environment(
    config: HyveConfig,
    name: str,
    services: Optional[Sequence[str]] = None,
) -> EnvironmentContext:
    ws = str(name or "").strip()
    directory = (Path(config.workspaces_dir) / ws).resolve()
    if not ws or not directory.is_dir():
        raise WorkspaceNotFound(f"Workspace not found: {ws}")

    sidecar = load_workspace_sidecar(directory)
    requested: List[str] = [str(s) for s in (services or []) if str(s).strip()]
    if not requested:
        repos = sidecar.get("repos")
        if isinstance(repos, list):
            requested = [str(r) for r in repos if isinstance(r, str) and r.strip()]

    return EnvironmentContext(
        name=ws,
        index=workspace_index(config, ws),
        directory=directory,
        requested_services=tuple(dict.fromkeys(requested)),
        sidecar=sidecar,
    )
