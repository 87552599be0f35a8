"""Repositories for distributions, assignments, performance and audit logs."""

from datetime import datetime
from typing import Any

from sqlalchemy import func, update
from sqlmodel import col, select

from ..schemas.database import (
    AgentAssignment,
    AgentPerformance,
    DistributionRecord,
    ExecutionLogEntry,
    Job,
)
from ..schemas.models import ACTIVE_JOB_STATUSES, ACTIVE_WORK_STATUSES, WorkStatus
from .base import BaseRepository


class DistributionRepository(BaseRepository[DistributionRecord]):
    """Repository for distribution records."""

    def get_entity_class(self) -> type[DistributionRecord]:
        """Return the database entity class for this repository."""
        return DistributionRecord

    def get_by_job(self, job_id: str) -> DistributionRecord | None:
        """The distribution of a job, if it was ever distributed."""
        statement = select(DistributionRecord).where(
            DistributionRecord.job_id == job_id
        )
        return self.session.exec(statement).first()

    def get_active(self) -> list[tuple[DistributionRecord, Job]]:
        """Distributions whose job is distributed or in progress, newest first."""
        statement = (
            select(DistributionRecord, Job)
            .join(Job, Job.id == DistributionRecord.job_id)
            .where(col(Job.status).in_(list(ACTIVE_JOB_STATUSES)))
            .order_by(col(DistributionRecord.created_at).desc())
        )
        return list(self.session.exec(statement).all())

    def set_response_count(self, distribution: DistributionRecord, count: int) -> int:
        """Raise the response count; it never decreases."""
        distribution.response_count = max(distribution.response_count, count)
        self.session.add(distribution)
        self.session.flush()
        return distribution.response_count

    def claim_winner(
        self, distribution: DistributionRecord, agent_id: str, agent_name: str
    ) -> bool:
        """Record the winner unless one is already stored.

        The check and the write are a single conditional UPDATE. The record
        is refreshed afterwards, so on False it carries the stored winner.
        """
        statement = (
            update(DistributionRecord)
            .where(
                col(DistributionRecord.id) == distribution.id,
                col(DistributionRecord.winning_agent_id).is_(None),
            )
            .values(winning_agent_id=agent_id, winning_agent_name=agent_name)
        )
        claimed = self.session.connection().execute(statement).rowcount == 1
        self.session.refresh(distribution)
        return claimed


class AssignmentRepository(BaseRepository[AgentAssignment]):
    """Repository for agent assignments."""

    def get_entity_class(self) -> type[AgentAssignment]:
        """Return the database entity class for this repository."""
        return AgentAssignment

    def get(self, distribution_id: str, agent_id: str) -> AgentAssignment | None:
        """Get one assignment by its composite key."""
        return self.get_by_id((distribution_id, agent_id))

    def list_for_distribution(
        self, distribution_id: str, statuses: list[WorkStatus] | None = None
    ) -> list[AgentAssignment]:
        """Assignments of a distribution in assignment order."""
        statement = select(AgentAssignment).where(
            AgentAssignment.distribution_id == distribution_id
        )
        if statuses:
            statement = statement.where(col(AgentAssignment.work_status).in_(statuses))
        statement = statement.order_by(AgentAssignment.position)
        return list(self.session.exec(statement).all())

    def list_for_agent(
        self, agent_id: str, statuses: list[WorkStatus] | None = None
    ) -> list[AgentAssignment]:
        """Assignments held by one agent."""
        statement = select(AgentAssignment).where(AgentAssignment.agent_id == agent_id)
        if statuses:
            statement = statement.where(col(AgentAssignment.work_status).in_(statuses))
        statement = statement.order_by(col(AgentAssignment.assigned_at).desc())
        return list(self.session.exec(statement).all())

    def busy_agent_ids(self, agent_ids: list[str]) -> set[str]:
        """Agents among ``agent_ids`` holding an assigned or working leg."""
        if not agent_ids:
            return set()
        statement = (
            select(AgentAssignment.agent_id)
            .where(
                col(AgentAssignment.agent_id).in_(agent_ids),
                col(AgentAssignment.work_status).in_(list(ACTIVE_WORK_STATUSES)),
            )
            .distinct()
        )
        return set(self.session.exec(statement).all())

    def count_assigned_since(self, agent_id: str, since: datetime) -> int:
        """Assignments given to an agent on or after ``since``."""
        statement = (
            select(func.count())
            .select_from(AgentAssignment)
            .where(
                AgentAssignment.agent_id == agent_id,
                AgentAssignment.assigned_at >= since,
            )
        )
        return self.session.exec(statement).one()

    def status_counts(self, distribution_id: str) -> dict[WorkStatus, int]:
        """Number of assignments per work status for a distribution."""
        statement = (
            select(AgentAssignment.work_status, func.count())
            .where(AgentAssignment.distribution_id == distribution_id)
            .group_by(AgentAssignment.work_status)
        )
        return {status: count for status, count in self.session.exec(statement).all()}

    def count_started(self, distribution_id: str) -> int:
        """Assignments that ever reached the working state."""
        statement = (
            select(func.count())
            .select_from(AgentAssignment)
            .where(
                AgentAssignment.distribution_id == distribution_id,
                col(AgentAssignment.started_at).is_not(None),
            )
        )
        return self.session.exec(statement).one()

    def average_completed_time(self) -> float:
        """Mean measured execution time of completed assignments."""
        statement = select(func.avg(AgentAssignment.execution_time_ms)).where(
            AgentAssignment.work_status == WorkStatus.COMPLETED,
            col(AgentAssignment.execution_time_ms).is_not(None),
        )
        return float(self.session.exec(statement).one() or 0.0)


class PerformanceRepository(BaseRepository[AgentPerformance]):
    """Repository for agent performance counters."""

    def get_entity_class(self) -> type[AgentPerformance]:
        """Return the database entity class for this repository."""
        return AgentPerformance

    def get_or_create(self, agent_id: str) -> AgentPerformance:
        """Performance row for an agent, created empty when missing."""
        performance = self.get_by_id(agent_id)
        if performance is None:
            performance = self.add(AgentPerformance(agent_id=agent_id))
        return performance

    def top_by_completed(self, limit: int = 10) -> list[AgentPerformance]:
        """Agents with the most completed jobs."""
        statement = (
            select(AgentPerformance)
            .order_by(
                col(AgentPerformance.completed_jobs).desc(),
                AgentPerformance.agent_id,
            )
            .limit(limit)
        )
        return list(self.session.exec(statement).all())


class ExecutionLogRepository(BaseRepository[ExecutionLogEntry]):
    """Append-only audit log of assignment events."""

    def get_entity_class(self) -> type[ExecutionLogEntry]:
        """Return the database entity class for this repository."""
        return ExecutionLogEntry

    def append(
        self,
        job_id: str,
        event_type: str,
        agent_id: str | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> ExecutionLogEntry:
        """Record one event."""
        return self.add(
            ExecutionLogEntry(
                job_id=job_id,
                agent_id=agent_id,
                event_type=event_type,
                event_data=event_data or {},
            )
        )

    def list_for_job(self, job_id: str) -> list[ExecutionLogEntry]:
        """Events of one job in insertion order."""
        statement = (
            select(ExecutionLogEntry)
            .where(ExecutionLogEntry.job_id == job_id)
            .order_by(ExecutionLogEntry.id)
        )
        return list(self.session.exec(statement).all())
