"""Project configuration (`.hyve.yaml`) and runtime settings.

The project file is owned by the operator; this module only reads it. Service
definitions are validated once here so the orchestration layer can rely on a
fixed record shape instead of checking optional keys at each use site.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigurationError


CONFIG_FILENAMES = (".hyve.yaml", ".hyve.yml")

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

DEFAULT_RUN_COMMAND = "pnpm dev"
DEFAULT_BASE_PORT = 4000
DEFAULT_PORT_OFFSET = 1000


def _as_float(raw: Any, default: float, *, minimum: float = 0.0) -> float:
    s = str(raw if raw is not None else "").strip()
    if not s:
        return default
    try:
        value = float(s)
    except Exception:
        return default
    return max(minimum, value)


def _str_list(raw: Any, *, service: str, key: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConfigurationError(f"Service {service!r}: {key} must be a list of strings")
    out: List[str] = []
    for item in raw:
        if not isinstance(item, str) or not item.strip():
            raise ConfigurationError(f"Service {service!r}: {key} entries must be non-empty strings")
        if item.strip() not in out:
            out.append(item.strip())
    return tuple(out)


def _opt_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    default_port: int
    run_command: str = DEFAULT_RUN_COMMAND
    depends_on: Tuple[str, ...] = ()
    health_check: Optional[str] = None
    prepare_command: Optional[str] = None
    prepare_triggers: Tuple[str, ...] = ()
    watch_globs: Tuple[str, ...] = ()
    env_var: str = "PORT"

    @staticmethod
    def from_mapping(name: str, raw: Any) -> "ServiceSpec":
        if not isinstance(name, str) or not _SAFE_NAME_RE.match(name):
            raise ConfigurationError(f"Invalid service name: {name!r}")
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Service {name!r} definition must be a mapping")

        port = raw.get("default_port")
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConfigurationError(f"Service {name!r}: default_port must be an integer")

        return ServiceSpec(
            name=name,
            default_port=int(port),
            run_command=_opt_str(raw.get("dev_command")) or DEFAULT_RUN_COMMAND,
            depends_on=_str_list(raw.get("depends_on"), service=name, key="depends_on"),
            health_check=_opt_str(raw.get("health_check")),
            prepare_command=_opt_str(raw.get("pre_run")),
            prepare_triggers=_str_list(raw.get("pre_run_deps"), service=name, key="pre_run_deps"),
            watch_globs=_str_list(raw.get("watch_files"), service=name, key="watch_files"),
            env_var=_opt_str(raw.get("env_var")) or "PORT",
        )


@dataclass(frozen=True)
class HyveConfig:
    """Loaded project configuration (read-only for the duration of a command)."""

    project_root: Path
    workspaces_dir: Path
    base_port: int = DEFAULT_BASE_PORT
    port_offset: int = DEFAULT_PORT_OFFSET
    shell_wrapper: str = ""
    services: Dict[str, ServiceSpec] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    def service(self, name: str) -> Optional[ServiceSpec]:
        return self.services.get(name)

    def validate_graph(self) -> None:
        """Reject cycles across the whole service map."""
        from .orchestration.graph import topological_order

        topological_order(list(self.services.keys()), self.services)

    @staticmethod
    def from_mapping(obj: Any, *, project_root: Path) -> "HyveConfig":
        if obj is None:
            obj = {}
        if not isinstance(obj, dict):
            raise ConfigurationError("hyve config must be a YAML mapping")

        services_raw = obj.get("services") or {}
        if not isinstance(services_raw, dict):
            raise ConfigurationError("'services' must be a mapping")

        base_port = services_raw.get("base_port", DEFAULT_BASE_PORT)
        port_offset = services_raw.get("port_offset", DEFAULT_PORT_OFFSET)
        for key, value in (("base_port", base_port), ("port_offset", port_offset)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"services.{key} must be an integer")

        definitions = services_raw.get("definitions") or {}
        if not isinstance(definitions, dict):
            raise ConfigurationError("'services.definitions' must be a mapping")

        services: Dict[str, ServiceSpec] = {}
        for name, raw in definitions.items():
            spec = ServiceSpec.from_mapping(str(name), raw)
            services[spec.name] = spec

        for spec in services.values():
            for dep in spec.depends_on:
                if dep not in services:
                    raise ConfigurationError(f"Service {spec.name!r} depends on unknown service {dep!r}")
            for trigger in spec.prepare_triggers:
                if trigger not in services:
                    raise ConfigurationError(f"Service {spec.name!r} has unknown pre_run_deps entry {trigger!r}")

        workspaces_dir = str(obj.get("workspaces_dir") or "./workspaces").strip() or "./workspaces"
        return HyveConfig(
            project_root=project_root,
            workspaces_dir=(project_root / workspaces_dir).resolve(),
            base_port=int(base_port),
            port_offset=int(port_offset),
            shell_wrapper=str(services_raw.get("shell_wrapper") or "").strip(),
            services=services,
            raw=dict(obj),
        )


def find_config_file(start_dir: Optional[Path] = None) -> Optional[Path]:
    cur = Path(start_dir or Path.cwd()).expanduser().resolve()
    for d in (cur, *cur.parents):
        for fname in CONFIG_FILENAMES:
            candidate = d / fname
            if candidate.is_file():
                return candidate
    return None


def load_config(path: Optional[Path] = None, *, start_dir: Optional[Path] = None) -> HyveConfig:
    if path is None:
        env_path = str(os.getenv("HYVE_CONFIG") or "").strip()
        if env_path:
            path = Path(env_path)
    if path is None:
        path = find_config_file(start_dir)
    if path is None:
        raise ConfigurationError("No .hyve.yaml found in this directory or any parent (set HYVE_CONFIG to point at one)")

    cfg_path = Path(path).expanduser().resolve()
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {cfg_path}: {e}") from e
    try:
        obj = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {cfg_path}: {e}") from e
    return HyveConfig.from_mapping(obj, project_root=cfg_path.parent)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Timing knobs for startup and watch mode (seconds)."""

    dependency_health_timeout_s: float = 30.0
    service_health_timeout_s: float = 300.0
    health_poll_interval_s: float = 1.0
    health_request_timeout_s: float = 3.0
    prepare_timeout_s: float = 120.0
    settle_delay_s: float = 2.0
    level_delay_s: float = 3.0
    sweep_settle_s: float = 1.0
    watch_debounce_s: float = 2.0

    @staticmethod
    def from_env() -> "OrchestratorSettings":
        d = OrchestratorSettings()
        return OrchestratorSettings(
            dependency_health_timeout_s=_as_float(os.getenv("HYVE_DEPENDENCY_HEALTH_TIMEOUT_S"), d.dependency_health_timeout_s),
            service_health_timeout_s=_as_float(os.getenv("HYVE_SERVICE_HEALTH_TIMEOUT_S"), d.service_health_timeout_s),
            health_poll_interval_s=_as_float(os.getenv("HYVE_HEALTH_POLL_INTERVAL_S"), d.health_poll_interval_s, minimum=0.05),
            health_request_timeout_s=_as_float(
                os.getenv("HYVE_HEALTH_REQUEST_TIMEOUT_S"), d.health_request_timeout_s, minimum=0.1
            ),
            prepare_timeout_s=_as_float(os.getenv("HYVE_PREPARE_TIMEOUT_S"), d.prepare_timeout_s, minimum=1.0),
            settle_delay_s=_as_float(os.getenv("HYVE_SETTLE_DELAY_S"), d.settle_delay_s),
            level_delay_s=_as_float(os.getenv("HYVE_LEVEL_DELAY_S"), d.level_delay_s),
            sweep_settle_s=_as_float(os.getenv("HYVE_SWEEP_SETTLE_S"), d.sweep_settle_s),
            watch_debounce_s=_as_float(os.getenv("HYVE_WATCH_DEBOUNCE_S"), d.watch_debounce_s),
        )
