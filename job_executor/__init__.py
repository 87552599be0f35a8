"""Multi-Agent Job Executor.

Matches jobs against a pool of remote agents, fans each job out to several
candidates concurrently, tracks every agent's execution and keeps a single
winning result.

Core Components:
- services.scorer: agent filtering, scoring and ranking
- services.coordinator: opening distributions and concurrent dispatch
- services.tracker: assignment state machine and performance counters
- services.selector: winner selection and loser cancellation
- services.orchestrator: batch processing, dispatch queue and timeout sweep
- integrations.agent_client: HTTP client for remote agents
"""

from .config import ExecutorSettings, get_settings
from .database import Database
from .exceptions import (
    ExecutorError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceFailure,
    RemoteCallFailure,
    ValidationFailure,
)
from .integrations import AgentClient
from .services import ControlService, Orchestrator

__all__ = [
    "AgentClient",
    "ControlService",
    "Database",
    "ExecutorError",
    "ExecutorSettings",
    "InvalidTransitionError",
    "NotFoundError",
    "Orchestrator",
    "PersistenceFailure",
    "RemoteCallFailure",
    "ValidationFailure",
    "get_settings",
]

__version__ = "0.1.0"
