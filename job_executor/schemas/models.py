"""Business models, enums and state machine rules for job execution.

Pydantic v2 models used across services: match criteria snapshots, agent
scores, call payloads and responses, status updates and the read views
returned by the control service. SQLModel table definitions live in
``schemas.database``.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

# ============================================================================
# ENUMS
# ============================================================================


class JobStatus(StrEnum):
    """Lifecycle of a job."""

    OPEN = "open"
    DISTRIBUTED = "distributed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class WorkStatus(StrEnum):
    """Lifecycle of one agent's leg of a distribution."""

    ASSIGNED = "assigned"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class SkillLevel(StrEnum):
    """Ordered skill scale shared by jobs and agents."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class SelectionStrategy(StrEnum):
    """Winner selection strategies."""

    FIRST_COMPLETED = "first_completed"
    BEST_SCORED = "best_scored"


class ErrorCategory(StrEnum):
    """Stable error categories exposed by the control surface."""

    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    INTERNAL = "internal"


SKILL_ORDER: tuple[str, ...] = tuple(level.value for level in SkillLevel)

TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.EXPIRED}
)
ACTIVE_JOB_STATUSES = frozenset({JobStatus.DISTRIBUTED, JobStatus.IN_PROGRESS})

TERMINAL_WORK_STATUSES = frozenset(
    {WorkStatus.COMPLETED, WorkStatus.FAILED, WorkStatus.CANCELLED, WorkStatus.TIMEOUT}
)
ACTIVE_WORK_STATUSES = frozenset({WorkStatus.ASSIGNED, WorkStatus.WORKING})


# ============================================================================
# BASE CONFIGURATION
# ============================================================================


class BaseBusinessModel(BaseModel):
    """Base for business models shared by all services."""

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        use_enum_values=False,
        from_attributes=True,
    )


class FrozenBusinessModel(BaseModel):
    """Base for immutable value objects."""

    model_config = ConfigDict(extra="forbid", frozen=True, from_attributes=True)


# ============================================================================
# MATCHING AND SCORING
# ============================================================================


class MatchCriteria(FrozenBusinessModel):
    """Snapshot of a job's requirements taken when it is distributed."""

    tags: list[str] = Field(default_factory=list)
    category: str = ""
    skill_level: str = ""
    max_budget: float | None = None
    auto_accept_jobs: bool = True
    is_active: bool = True

    @classmethod
    def from_job(cls, job: Any) -> "MatchCriteria":
        """Freeze the matching fields of a job entity."""
        return cls(
            tags=list(job.tags or []),
            category=job.category or "",
            skill_level=job.skill_level or "",
            max_budget=job.max_budget,
        )


class ScoreFactors(FrozenBusinessModel):
    """Individual suitability factors, each in [0, 1]."""

    skill_match: float = Field(ge=0.0, le=1.0)
    reputation: float = Field(ge=0.0, le=1.0)
    success_rate: float = Field(ge=0.0, le=1.0)
    availability: float = Field(ge=0.0, le=1.0)


class AgentScore(FrozenBusinessModel):
    """Composite suitability of one agent for one job."""

    agent_id: str
    agent_name: str
    agent_address: str
    score: float = Field(ge=0.0, le=1.0)
    factors: ScoreFactors


# ============================================================================
# REMOTE AGENT COMMUNICATION
# ============================================================================


class JobPayload(FrozenBusinessModel):
    """Job content sent to a remote agent."""

    job_id: str
    job_title: str
    description: str = ""
    deliverables: str = ""
    deadline: str
    priority: str = "medium"
    distribution_id: str
    budget: float | None = None
    tags: list[str] = Field(default_factory=list)

    def message(self) -> str:
        """Prompt text delivered as the user message."""
        return f"{self.job_title}\n{self.description}"


class AgentResponse(BaseBusinessModel):
    """Outcome of a (possibly retried) agent call."""

    success: bool
    job_id: str | None = None
    message: str = ""
    error: str | None = None
    status_code: int | None = None
    attempts: int = Field(default=1, ge=0)


class AgentLoad(BaseBusinessModel):
    """Load reported by an agent's status endpoint."""

    is_online: bool
    current_tasks: int = 0
    max_tasks: int = 1
    is_available: bool = False


class HealthStatus(BaseBusinessModel):
    """Result of a single health probe."""

    address: str
    is_healthy: bool
    response_time_ms: float = Field(default=0.0, ge=0.0)
    checked_at: datetime = Field(default_factory=datetime.now)
    error: str | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    load: AgentLoad | None = None


class RetryPolicy(BaseModel):
    """Retry behaviour for agent calls.

    ``retry_predicate`` receives the exception raised by an attempt and
    decides whether another attempt is made. ``None`` selects the client's
    default predicate.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_retries: int = Field(default=2, ge=0)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_predicate: Any = None

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given zero-based failed attempt."""
        return self.base_delay_seconds * (self.backoff_multiplier**attempt)


# ============================================================================
# EXECUTION TRACKING
# ============================================================================


class StatusUpdate(BaseBusinessModel):
    """Partial update applied to an assignment."""

    work_status: WorkStatus
    progress: int | None = Field(default=None, ge=0, le=100)
    execution_result: str | None = None
    error_message: str | None = None
    execution_time_ms: int | None = Field(default=None, ge=0)
    retry_count: int | None = Field(default=None, ge=0)

    def changed_fields(self) -> dict[str, Any]:
        """Fields explicitly carried by this update, excluding the status."""
        return {
            key: value
            for key, value in self.model_dump(exclude={"work_status"}).items()
            if value is not None
        }


class AssignmentView(BaseBusinessModel):
    """Read view of one agent assignment."""

    distribution_id: str
    agent_id: str
    agent_name: str = ""
    work_status: WorkStatus
    progress: int = 0
    execution_result: str | None = None
    error_message: str | None = None
    execution_time_ms: int | None = None
    retry_count: int = 0
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class DistributionStats(BaseBusinessModel):
    """Assignment counts by work status for one distribution."""

    total_agents: int = 0
    assigned_agents: int = 0
    working_agents: int = 0
    completed_agents: int = 0
    failed_agents: int = 0
    timeout_agents: int = 0
    cancelled_agents: int = 0

    @classmethod
    def from_counts(cls, counts: dict[WorkStatus, int]) -> "DistributionStats":
        """Build from a ``{status: count}`` aggregate."""
        return cls(
            total_agents=sum(counts.values()),
            assigned_agents=counts.get(WorkStatus.ASSIGNED, 0),
            working_agents=counts.get(WorkStatus.WORKING, 0),
            completed_agents=counts.get(WorkStatus.COMPLETED, 0),
            failed_agents=counts.get(WorkStatus.FAILED, 0),
            timeout_agents=counts.get(WorkStatus.TIMEOUT, 0),
            cancelled_agents=counts.get(WorkStatus.CANCELLED, 0),
        )


class DistributionDetail(BaseBusinessModel):
    """Distribution record together with its assignments."""

    id: str
    job_id: str
    job_name: str
    total_agents: int
    assigned_count: int
    response_count: int
    winning_agent_id: str | None = None
    winning_agent_name: str | None = None
    created_at: datetime
    match_criteria: MatchCriteria
    assignments: list[AssignmentView] = Field(default_factory=list)


# ============================================================================
# ORCHESTRATION RESULTS
# ============================================================================


class DispatchOutcome(BaseBusinessModel):
    """Summary of one distribution's fan-out."""

    distribution_id: str
    completed: int = 0
    failed: int = 0
    ignored: int = 0


class SweepOutcome(BaseBusinessModel):
    """Result of forcing resolution of one distribution."""

    distribution_id: str
    skipped: bool = False
    timed_out: int = 0
    winner_agent_id: str | None = None
    expired: bool = False


class BatchFailure(BaseBusinessModel):
    """A job that could not be distributed in a batch."""

    job_id: str
    error: str


class BatchReport(BaseBusinessModel):
    """Counters for one processed batch of jobs."""

    processed: int = 0
    distributed: int = 0
    cancelled: int = 0
    skipped: int = 0
    rejected: list[BatchFailure] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)
    distribution_ids: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def success_count(self) -> int:
        """Jobs that ended the batch distributed."""
        return self.distributed


class CycleReport(BaseBusinessModel):
    """One pass of the scheduled processing loop."""

    started_at: datetime
    finished_at: datetime | None = None
    batch: BatchReport = Field(default_factory=BatchReport)
    resolved: int = 0
    sweeps: list[SweepOutcome] = Field(default_factory=list)


# ============================================================================
# CONTROL SURFACE VIEWS AND REQUESTS
# ============================================================================


class JobStatusView(BaseBusinessModel):
    """Job status with its distribution, if any."""

    job_id: str
    status: JobStatus
    distribution: DistributionDetail | None = None
    stats: DistributionStats | None = None


class AgentPerformanceView(BaseBusinessModel):
    """Aggregated performance of one agent."""

    agent_id: str
    agent_name: str = "Unknown"
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    avg_execution_time: float = 0.0
    success_rate: float = 0.0


class ExecutionStats(BaseBusinessModel):
    """Global execution counters."""

    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    in_progress_jobs: int = 0
    avg_execution_time: float = 0.0
    success_rate: float = 0.0
    top_agents: list[AgentPerformanceView] = Field(default_factory=list)


class AgentStatusReport(BaseBusinessModel):
    """Status update pushed by an agent."""

    distribution_id: str
    work_status: WorkStatus
    progress: int | None = Field(default=None, ge=0, le=100)
    execution_result: str | None = None
    error_message: str | None = None


class ResultSubmission(BaseBusinessModel):
    """Final result pushed by an agent."""

    distribution_id: str
    execution_result: str
    execution_time_ms: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def skill_index(level: str | None) -> int | None:
    """Position of a level on the skill scale, ``None`` when unrecognised."""
    if not level:
        return None
    try:
        return SKILL_ORDER.index(level.strip().lower())
    except ValueError:
        return None


def can_transition_work(from_status: WorkStatus, to_status: WorkStatus) -> bool:
    """Check if an assignment may move between work statuses."""
    valid_transitions = {
        WorkStatus.ASSIGNED: [
            WorkStatus.WORKING,
            WorkStatus.TIMEOUT,
            WorkStatus.CANCELLED,
        ],
        WorkStatus.WORKING: [
            WorkStatus.WORKING,
            WorkStatus.COMPLETED,
            WorkStatus.FAILED,
            WorkStatus.TIMEOUT,
            WorkStatus.CANCELLED,
        ],
    }
    return to_status in valid_transitions.get(from_status, [])


def can_transition_job(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Check if a job may move between statuses."""
    valid_transitions = {
        JobStatus.OPEN: [JobStatus.DISTRIBUTED, JobStatus.CANCELLED],
        JobStatus.DISTRIBUTED: [
            JobStatus.IN_PROGRESS,
            JobStatus.COMPLETED,
            JobStatus.CANCELLED,
            JobStatus.EXPIRED,
        ],
        JobStatus.IN_PROGRESS: [
            JobStatus.COMPLETED,
            JobStatus.CANCELLED,
            JobStatus.EXPIRED,
        ],
    }
    return to_status in valid_transitions.get(from_status, [])


def missing_job_fields(job: Any) -> list[str]:
    """Names of required job fields that are empty or absent."""
    required = ["id", "title", "category", "skill_level", "deadline"]
    missing = [name for name in required if not getattr(job, name, None)]
    if getattr(job, "tags", None) is None:
        missing.append("tags")
    return missing
