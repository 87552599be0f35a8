"""Service layer for job distribution and execution.

Services coordinate repositories, the remote agent client and the state
machines of jobs and assignments.
"""

from .control import ControlService, categorize_error
from .coordinator import DistributionCoordinator
from .orchestrator import (
    DispatchQueue,
    JobSource,
    Orchestrator,
    RepositoryJobSource,
    WorkerSummary,
)
from .scorer import AgentScorer
from .selector import ResultSelector, result_score
from .tracker import ExecutionTracker

__all__ = [
    "AgentScorer",
    "ControlService",
    "DispatchQueue",
    "DistributionCoordinator",
    "ExecutionTracker",
    "JobSource",
    "Orchestrator",
    "RepositoryJobSource",
    "ResultSelector",
    "WorkerSummary",
    "categorize_error",
    "result_score",
]
