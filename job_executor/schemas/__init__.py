"""Schema package for the job executor.

- Enums, value objects and read views (``models``)
- SQLModel table entities (``database``)

Quick usage:
    from job_executor.schemas import Job, JobStatus, WorkStatus
"""

from .database import (
    Agent,
    AgentAssignment,
    AgentPerformance,
    DistributionRecord,
    ExecutionLogEntry,
    Job,
    new_id,
)
from .models import (
    AgentLoad,
    AgentPerformanceView,
    AgentResponse,
    AgentScore,
    AgentStatusReport,
    AssignmentView,
    BatchFailure,
    BatchReport,
    CycleReport,
    DispatchOutcome,
    DistributionDetail,
    DistributionStats,
    ErrorCategory,
    ExecutionStats,
    HealthStatus,
    JobPayload,
    JobStatus,
    JobStatusView,
    MatchCriteria,
    ResultSubmission,
    RetryPolicy,
    ScoreFactors,
    SelectionStrategy,
    SkillLevel,
    StatusUpdate,
    SweepOutcome,
    WorkStatus,
    can_transition_job,
    can_transition_work,
    missing_job_fields,
    skill_index,
)

__all__ = [
    "Agent",
    "AgentAssignment",
    "AgentLoad",
    "AgentPerformance",
    "AgentPerformanceView",
    "AgentResponse",
    "AgentScore",
    "AgentStatusReport",
    "AssignmentView",
    "BatchFailure",
    "BatchReport",
    "CycleReport",
    "DispatchOutcome",
    "DistributionDetail",
    "DistributionRecord",
    "DistributionStats",
    "ErrorCategory",
    "ExecutionLogEntry",
    "ExecutionStats",
    "HealthStatus",
    "Job",
    "JobPayload",
    "JobStatus",
    "JobStatusView",
    "MatchCriteria",
    "ResultSubmission",
    "RetryPolicy",
    "ScoreFactors",
    "SelectionStrategy",
    "SkillLevel",
    "StatusUpdate",
    "SweepOutcome",
    "WorkStatus",
    "can_transition_job",
    "can_transition_work",
    "missing_job_fields",
    "new_id",
    "skill_index",
]
