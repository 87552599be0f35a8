"""Job and agent repositories."""

import logging
from datetime import datetime

from sqlalchemy import func
from sqlmodel import col, select

from ..exceptions import InvalidTransitionError
from ..schemas.database import Agent, DistributionRecord, Job
from ..schemas.models import (
    TERMINAL_JOB_STATUSES,
    JobStatus,
    can_transition_job,
)
from .base import BaseRepository

logger = logging.getLogger(__name__)


class JobRepository(BaseRepository[Job]):
    """Repository for jobs and their status machine."""

    def get_entity_class(self) -> type[Job]:
        """Return the database entity class for this repository."""
        return Job

    def get_pending(self, limit: int = 10) -> list[Job]:
        """Open or distributed jobs that have no distribution record yet."""
        statement = (
            select(Job)
            .outerjoin(DistributionRecord, DistributionRecord.job_id == Job.id)
            .where(
                col(Job.status).in_([JobStatus.OPEN, JobStatus.DISTRIBUTED]),
                col(DistributionRecord.id).is_(None),
            )
            .order_by(Job.created_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def set_status(self, job: Job, status: JobStatus) -> bool:
        """Move a job to a new status.

        Returns False when the job is already terminal and the change was
        ignored.

        Raises:
            InvalidTransitionError: If the change is not a legal transition

        """
        if job.status in TERMINAL_JOB_STATUSES:
            logger.info(
                f"Ignoring {job.status.value} -> {status.value} "
                f"for terminal job {job.id}"
            )
            return False
        if not can_transition_job(job.status, status):
            raise InvalidTransitionError(job.status.value, status.value)
        job.status = status
        job.updated_at = datetime.now()
        self.session.add(job)
        self.session.flush()
        return True

    def count_by_status(self) -> dict[JobStatus, int]:
        """Number of jobs per status."""
        statement = select(Job.status, func.count()).group_by(Job.status)
        return {status: count for status, count in self.session.exec(statement).all()}


class AgentRepository(BaseRepository[Agent]):
    """Read access to the agent pool plus mirrored counters."""

    def get_entity_class(self) -> type[Agent]:
        """Return the database entity class for this repository."""
        return Agent

    def get_available(self) -> list[Agent]:
        """Active agents that accept jobs automatically."""
        statement = (
            select(Agent)
            .where(
                col(Agent.is_active).is_(True),
                col(Agent.auto_accept_jobs).is_(True),
            )
            .order_by(Agent.created_at, Agent.id)
        )
        return list(self.session.exec(statement).all())

    def get_many(self, agent_ids: list[str]) -> list[Agent]:
        """Agents for the given ids, in the order requested."""
        if not agent_ids:
            return []
        statement = select(Agent).where(col(Agent.id).in_(agent_ids))
        by_id = {agent.id: agent for agent in self.session.exec(statement).all()}
        return [by_id[agent_id] for agent_id in agent_ids if agent_id in by_id]

    def names_for(self, agent_ids: list[str]) -> dict[str, str]:
        """Map agent ids to names."""
        return {agent.id: agent.name for agent in self.get_many(agent_ids)}

    def mirror_performance(
        self, agent_id: str, completed_jobs: int, success_rate: float
    ) -> None:
        """Copy performance counters onto the agent row."""
        self.update(
            agent_id,
            {"total_jobs_completed": completed_jobs, "success_rate": success_rate},
        )
