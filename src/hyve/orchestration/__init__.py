from .graph import StartPlan, resolve_levels
from .health import await_healthy
from .models import RunContext, RunReport, ServiceOutcome
from .orchestrator import StartupOrchestrator
from .supervisor import ServiceSupervisor

__all__ = [
    "RunContext",
    "RunReport",
    "ServiceOutcome",
    "ServiceSupervisor",
    "StartPlan",
    "StartupOrchestrator",
    "await_healthy",
    "resolve_levels",
]
