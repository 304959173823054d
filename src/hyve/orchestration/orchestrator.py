"""Level-by-level startup of a workspace's services."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from ..config import HyveConfig, OrchestratorSettings
from ..errors import FailureReason
from ..ports import service_port
from ..workspace import EnvironmentContext
from .graph import dependents_of, resolve_levels
from .models import RunContext, RunReport, ServiceOutcome
from .platform import ProcessControl, PosixProcessControl
from .supervisor import RunningServices, ServiceSupervisor


logger = logging.getLogger(__name__)


class StartupOrchestrator:
    def __init__(
        self,
        *,
        config: HyveConfig,
        env: EnvironmentContext,
        settings: Optional[OrchestratorSettings] = None,
        control: Optional[ProcessControl] = None,
        context: Optional[RunContext] = None,
        supervisor: Optional[ServiceSupervisor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._env = env
        self._settings = settings or OrchestratorSettings()
        self._control: ProcessControl = control or PosixProcessControl()
        self._context = context or RunContext(self._control)
        self._sleep = sleep
        self._supervisor = supervisor or ServiceSupervisor(
            config=config,
            env=env,
            control=self._control,
            settings=self._settings,
            context=self._context,
            running=RunningServices(),
            sleep=sleep,
        )

    @property
    def context(self) -> RunContext:
        return self._context

    @property
    def supervisor(self) -> ServiceSupervisor:
        return self._supervisor

    def ports_to_sweep(self) -> List[int]:
        ports: List[int] = []
        for name in self._env.requested_services:
            spec = self._config.service(name)
            if spec is None:
                continue
            for port in (spec.default_port, service_port(spec, self._config, self._env.index)):
                if port not in ports:
                    ports.append(port)
        return ports

    def sweep_stale_processes(self) -> int:
        """Kill anything bound to the requested services' ports (two passes)."""
        ports = self.ports_to_sweep()
        killed = 0
        for attempt in range(2):
            for port in ports:
                killed += self._control.kill_by_port(port)
            if attempt == 0:
                self._sleep(self._settings.sweep_settle_s)
        if killed:
            logger.info("Killed %d stale process(es)", killed)
        else:
            logger.info("No stale processes")
        return killed

    def _collect(self, name: str, future: "Future[ServiceOutcome]") -> ServiceOutcome:
        """Wait for one start attempt; an unexpected error fails that service only."""
        try:
            return future.result()
        except Exception as e:
            logger.exception("Starting %s raised", name)
            return ServiceOutcome(
                name=name,
                port=self._supervisor.port_for(name) or 0,
                error=f"{FailureReason.START_ERROR.value}: {e}",
            )

    def run_all(self) -> RunReport:
        specs = self._config.services
        # Raises ConfigurationError before anything is killed or spawned.
        plan = resolve_levels(list(self._env.requested_services), specs)
        logger.info("Start order: %s", " -> ".join(plan.order))

        self._env.state_dir.mkdir(parents=True, exist_ok=True)
        self.sweep_stale_processes()

        report = RunReport(order=list(plan.order), levels=[list(level) for level in plan.levels])
        outcomes: Dict[str, ServiceOutcome] = {}
        at_risk: Set[str] = set()

        workers = max(1, max((len(level) for level in plan.levels), default=1))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hyve-start")
        try:
            for i, level in enumerate(plan.levels):
                logger.debug("Starting level %d: %s", i, ", ".join(level))
                futures = [(name, pool.submit(self._supervisor.start_outcome, name)) for name in level]
                results = [self._collect(name, future) for name, future in futures]

                failed = [o.name for o in results if not o.ok]
                for outcome in results:
                    outcomes[outcome.name] = outcome

                if failed:
                    started = {n for lvl in plan.levels[: i + 1] for n in lvl}
                    dependents = [d for d in dependents_of(failed, plan.order, specs) if d not in started]
                    if dependents:
                        logger.warning(
                            "Services depending on failed services may not work: %s", ", ".join(dependents)
                        )
                        at_risk.update(dependents)

                if i < len(plan.levels) - 1:
                    self._sleep(self._settings.level_delay_s)
        except BaseException:
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

        for name in plan.order:
            outcome = outcomes[name]
            if name in at_risk:
                outcome = ServiceOutcome(
                    name=outcome.name,
                    port=outcome.port,
                    pid=outcome.pid,
                    error=outcome.error,
                    warnings=list(outcome.warnings),
                    at_risk=True,
                )
            report.outcomes.append(outcome)
        report.at_risk = [n for n in plan.order if n in at_risk]
        return report
