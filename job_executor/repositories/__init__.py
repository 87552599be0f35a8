"""Repository pattern implementations for clean data access.

Repositories work on a session owned by ``Database.session()`` and never
commit on their own.
"""

from .base import BaseRepository
from .distribution_repository import (
    AssignmentRepository,
    DistributionRepository,
    ExecutionLogRepository,
    PerformanceRepository,
)
from .job_repository import AgentRepository, JobRepository

__all__ = [
    "AgentRepository",
    "AssignmentRepository",
    "BaseRepository",
    "DistributionRepository",
    "ExecutionLogRepository",
    "JobRepository",
    "PerformanceRepository",
]
