"""SQLModel table definitions for jobs, agents and distributions.

Tables mirror the business models in ``schemas.models``; conversion helpers
turn entities into read views without leaking sessions.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, Column, Index
from sqlmodel import Field, SQLModel

from .models import (
    AgentPerformanceView,
    AssignmentView,
    DistributionDetail,
    JobStatus,
    MatchCriteria,
    WorkStatus,
)


def new_id() -> str:
    """Generate a new opaque identifier."""
    return uuid4().hex


class TimestampedModel(SQLModel):
    """Base for entities with creation and update timestamps."""

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Job(TimestampedModel, table=True):
    """A unit of work to be fanned out to agents."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status", "status"),
        Index("ix_jobs_deadline", "deadline"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    title: str = Field(max_length=200)
    description: str = Field(default="")
    deliverables: str = Field(default="")
    priority: str = Field(default="medium", max_length=20)
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    category: str = Field(default="", max_length=100)
    skill_level: str = Field(default="", max_length=50)
    max_budget: float | None = None
    deadline: datetime
    status: JobStatus = JobStatus.OPEN

    @property
    def is_terminal(self) -> bool:
        """Whether the job reached a final status."""
        return self.status in (
            JobStatus.COMPLETED,
            JobStatus.CANCELLED,
            JobStatus.EXPIRED,
        )


class Agent(TimestampedModel, table=True):
    """A remote worker that can execute jobs."""

    __tablename__ = "agents"
    __table_args__ = (
        Index("ix_agents_active", "is_active", "auto_accept_jobs"),
        CheckConstraint(
            "success_rate BETWEEN 0 AND 1", name="ck_agent_success_rate"
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(max_length=200)
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    classification: str = Field(default="", max_length=50)
    reputation: float = Field(default=0.0, ge=0.0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    total_jobs_completed: int = Field(default=0, ge=0)
    is_active: bool = True
    auto_accept_jobs: bool = True
    address: str = Field(max_length=500)
    is_free: bool = False
    price: float | None = None


class DistributionRecord(SQLModel, table=True):
    """One fan-out of one job to a set of agents."""

    __tablename__ = "distribution_records"
    __table_args__ = (
        Index("ix_distribution_records_created_at", "created_at"),
        CheckConstraint(
            "assigned_count <= total_agents", name="ck_assigned_within_total"
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    job_id: str = Field(foreign_key="jobs.id", ondelete="CASCADE", unique=True)
    job_name: str = Field(max_length=200)
    match_criteria: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )
    total_agents: int = Field(default=0, ge=0)
    assigned_count: int = Field(default=0, ge=0)
    response_count: int = Field(default=0, ge=0)
    winning_agent_id: str | None = None
    winning_agent_name: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    def criteria(self) -> MatchCriteria:
        """Frozen match criteria captured at open time."""
        return MatchCriteria.model_validate(self.match_criteria or {})

    def to_detail(self, assignments: list[AssignmentView]) -> DistributionDetail:
        """Convert to a read view including the given assignments."""
        return DistributionDetail(
            id=self.id,
            job_id=self.job_id,
            job_name=self.job_name,
            total_agents=self.total_agents,
            assigned_count=self.assigned_count,
            response_count=self.response_count,
            winning_agent_id=self.winning_agent_id,
            winning_agent_name=self.winning_agent_name,
            created_at=self.created_at,
            match_criteria=self.criteria(),
            assignments=assignments,
        )


class AgentAssignment(SQLModel, table=True):
    """One agent's leg of a distribution."""

    __tablename__ = "agent_assignments"
    __table_args__ = (
        Index("ix_agent_assignments_agent_status", "agent_id", "work_status"),
        Index("ix_agent_assignments_assigned_at", "assigned_at"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_valid_progress"),
    )

    distribution_id: str = Field(
        foreign_key="distribution_records.id", ondelete="CASCADE", primary_key=True
    )
    agent_id: str = Field(foreign_key="agents.id", primary_key=True)
    position: int = Field(default=0, ge=0)
    work_status: WorkStatus = WorkStatus.ASSIGNED
    assigned_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: int = Field(default=0, ge=0, le=100)
    execution_result: str | None = None
    error_message: str | None = None
    execution_time_ms: int | None = None
    retry_count: int = Field(default=0, ge=0)

    @property
    def is_terminal(self) -> bool:
        """Whether the assignment reached a final status."""
        return self.work_status not in (WorkStatus.ASSIGNED, WorkStatus.WORKING)

    def to_view(self, agent_name: str = "") -> AssignmentView:
        """Convert to a read view."""
        return AssignmentView(
            distribution_id=self.distribution_id,
            agent_id=self.agent_id,
            agent_name=agent_name,
            work_status=self.work_status,
            progress=self.progress,
            execution_result=self.execution_result,
            error_message=self.error_message,
            execution_time_ms=self.execution_time_ms,
            retry_count=self.retry_count,
            assigned_at=self.assigned_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class AgentPerformance(SQLModel, table=True):
    """Running performance counters of one agent."""

    __tablename__ = "agent_performance"
    __table_args__ = (
        Index("ix_agent_performance_completed", "completed_jobs"),
        CheckConstraint(
            "completed_jobs + failed_jobs <= total_jobs", name="ck_job_counts"
        ),
    )

    agent_id: str = Field(foreign_key="agents.id", primary_key=True)
    total_jobs: int = Field(default=0, ge=0)
    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    avg_execution_time: float = Field(default=0.0, ge=0.0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    last_updated: datetime = Field(default_factory=datetime.now)

    def to_view(self, agent_name: str = "Unknown") -> AgentPerformanceView:
        """Convert to a read view."""
        return AgentPerformanceView(
            agent_id=self.agent_id,
            agent_name=agent_name,
            total_jobs=self.total_jobs,
            completed_jobs=self.completed_jobs,
            failed_jobs=self.failed_jobs,
            avg_execution_time=self.avg_execution_time,
            success_rate=self.success_rate,
        )


class ExecutionLogEntry(SQLModel, table=True):
    """Append-only audit record of assignment events."""

    __tablename__ = "execution_logs"
    __table_args__ = (
        Index("ix_execution_logs_job_id", "job_id"),
        Index("ix_execution_logs_agent_id", "agent_id"),
        Index("ix_execution_logs_event_type", "event_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str
    agent_id: str | None = None
    event_type: str = Field(max_length=50)
    event_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.now)
