from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import HyveConfig, ServiceSpec


# Declared default ports live in the 3000 band; the band offset is preserved per workspace.
DEFAULT_PORT_BAND = 3000

PORT_PLACEHOLDER = "${port}"
SERVER_PORT_PLACEHOLDER = "${server_port}"


def resolve_port(default_port: int, base_port: int, environment_index: int, port_offset: int) -> int:
    """Return the port a service listens on inside a given workspace.

    Pure and total: out-of-band default ports produce a negative service offset,
    which is accepted as the config author's responsibility.
    """
    environment_base = int(base_port) + int(environment_index) * int(port_offset)
    service_offset = int(default_port) - DEFAULT_PORT_BAND
    return environment_base + service_offset


def service_port(spec: "ServiceSpec", config: "HyveConfig", environment_index: int) -> int:
    return resolve_port(spec.default_port, config.base_port, environment_index, config.port_offset)


def substitute_port(template: str, port: int) -> str:
    return str(template or "").replace(PORT_PLACEHOLDER, str(int(port)))
