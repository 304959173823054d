from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import FailureReason
from .platform import ProcessControl, terminate


logger = logging.getLogger(__name__)


class ServiceStatus(str, Enum):
    PENDING = "pending"
    WAITING_ON_DEPENDENCY = "waiting_on_dependency"
    PREPARING = "preparing"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"


@dataclass
class RunningService:
    """Mutable per-run record for one service start attempt."""

    name: str
    resolved_port: int
    log_path: Path
    pid_file_path: Path
    process_id: Optional[int] = None
    status: ServiceStatus = ServiceStatus.PENDING
    failure: Optional[FailureReason] = None
    detail: str = ""
    warnings: List[FailureReason] = field(default_factory=list)

    def fail(self, reason: FailureReason, detail: str = "") -> None:
        self.status = ServiceStatus.FAILED if reason != FailureReason.HEALTH_CHECK_TIMEOUT else ServiceStatus.UNHEALTHY
        self.failure = reason
        self.detail = str(detail or "")


@dataclass(frozen=True)
class ServiceOutcome:
    name: str
    port: int
    pid: Optional[int] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    at_risk: bool = False

    @property
    def ok(self) -> bool:
        return self.pid is not None and self.error is None

    @staticmethod
    def from_record(record: RunningService) -> "ServiceOutcome":
        error: Optional[str] = None
        if record.failure is not None:
            error = record.failure.value
            if record.detail:
                error = f"{error}: {record.detail}"
        return ServiceOutcome(
            name=record.name,
            port=record.resolved_port,
            pid=record.process_id if record.failure is None else None,
            error=error,
            warnings=[w.value for w in record.warnings],
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "port": self.port}
        if self.ok:
            out["pid"] = self.pid
        else:
            out["error"] = self.error
        if self.warnings:
            out["warnings"] = list(self.warnings)
        if self.at_risk:
            out["at_risk"] = True
        return out


@dataclass
class RunReport:
    order: List[str]
    levels: List[List[str]]
    outcomes: List[ServiceOutcome] = field(default_factory=list)
    at_risk: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[ServiceOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ServiceOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        # Only "nothing started at all" is a failed run.
        return bool(self.succeeded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": list(self.order),
            "levels": [list(level) for level in self.levels],
            "services": [o.to_dict() for o in self.outcomes],
            "at_risk": list(self.at_risk),
            "ok": self.ok,
        }


class RunContext:
    """Per-run mutable state consulted by the interrupt handler.

    While the startup phase is open, an interrupt terminates every pid captured
    so far. After `complete_startup()` the services are left running.
    """

    def __init__(self, control: ProcessControl, *, exit_process: Callable[[int], Any] = os._exit) -> None:
        self._control = control
        self._exit_process = exit_process
        # Reentrant: a signal handler can interrupt the main thread while it holds the lock.
        self._lock = threading.RLock()
        self._pids: List[int] = []
        self._startup_phase = True
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def startup_phase(self) -> bool:
        with self._lock:
            return self._startup_phase

    @property
    def captured_pids(self) -> List[int]:
        with self._lock:
            return list(self._pids)

    def launch(self, spawn: Callable[[], int]) -> int:
        """Spawn and capture under the lock, so an interrupt never misses a just-spawned pid."""
        with self._lock:
            pid = int(spawn())
            if pid not in self._pids:
                self._pids.append(pid)
        return pid

    def complete_startup(self) -> None:
        with self._lock:
            self._startup_phase = False

    def terminate_captured(self) -> List[int]:
        """SIGTERM every captured pid (group first, then single). Returns the pids signalled."""
        # Holding the lock waits out any spawn in progress on a worker thread.
        with self._lock:
            pids = list(self._pids)
            for pid in pids:
                terminate(self._control, pid, signal.SIGTERM)
        return pids

    def handle_interrupt(self, signum: int, _frame: Any = None) -> None:
        code = 128 + int(signum)
        if self.startup_phase:
            logger.warning("Startup interrupted, stopping services...")
            self.terminate_captured()
            # Start workers may be blocked in health polls; do not wait for them.
            self._exit_process(code)
            return
        raise SystemExit(code)

    def install_signal_handlers(self, *, install: Callable[[int, Any], Any] = signal.signal) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[sig] = install(sig, self.handle_interrupt)
            except (ValueError, OSError):
                # Not on the main thread, or unsupported platform.
                continue

    def restore_signal_handlers(self, *, install: Callable[[int, Any], Any] = signal.signal) -> None:
        for sig, handler in list(self._previous_handlers.items()):
            try:
                install(sig, handler)
            except (ValueError, OSError, TypeError):
                continue
        self._previous_handlers.clear()
