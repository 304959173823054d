from __future__ import annotations

from enum import Enum


class HyveError(RuntimeError):
    """Base class for hyve errors that abort a command."""


class ConfigurationError(HyveError):
    """Invalid project/service configuration (fatal, raised before anything is spawned)."""


class WorkspaceNotFound(HyveError):
    """Raised when a workspace directory does not exist."""


class FailureReason(str, Enum):
    # Per-service failures: reported in the summary, never abort the run.
    NO_SERVICE_CONFIG = "No service config"
    DIRECTORY_NOT_FOUND = "Directory not found"
    SPAWN_ERROR = "Spawn error"
    PROCESS_EXITED = "Process exited"
    HEALTH_CHECK_TIMEOUT = "Health check timed out"
    START_ERROR = "Start error"

    # Warnings: logged and attached to the outcome, startup continues.
    DEPENDENCY_UNHEALTHY = "Dependency unhealthy"
    PREPARATION_FAILURE = "Pre-run failed"
