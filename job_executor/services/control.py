"""Control surface: status queries, agent callbacks and manual triggers.

Every operation raises ``ExecutorError`` subclasses; callers map them onto
stable categories with ``categorize_error``.
"""

import asyncio
import logging

from sqlmodel import Session

from ..database import Database
from ..exceptions import NotFoundError, ValidationFailure
from ..integrations import AgentClient
from ..repositories import (
    AgentRepository,
    AssignmentRepository,
    DistributionRepository,
    JobRepository,
    PerformanceRepository,
)
from ..schemas.database import DistributionRecord
from ..schemas.models import (
    AgentStatusReport,
    AssignmentView,
    BatchReport,
    DistributionDetail,
    DistributionStats,
    ErrorCategory,
    ExecutionStats,
    HealthStatus,
    JobStatus,
    JobStatusView,
    ResultSubmission,
    SelectionStrategy,
    StatusUpdate,
)
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

TOP_AGENTS_LIMIT = 10


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map an exception onto a stable, caller-visible category."""
    if isinstance(error, NotFoundError):
        return ErrorCategory.NOT_FOUND
    if isinstance(error, ValidationFailure):
        return ErrorCategory.BAD_REQUEST
    return ErrorCategory.INTERNAL


class ControlService:
    """Operations exposed to operators and agents."""

    def __init__(
        self, database: Database, orchestrator: Orchestrator, client: AgentClient
    ):
        self.database = database
        self.orchestrator = orchestrator
        self.client = client

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def job_status(self, job_id: str) -> JobStatusView:
        """Status of a job with its distribution and per-status counts.

        Raises:
            NotFoundError: If the job does not exist

        """
        with self.database.session() as session:
            job = JobRepository(session).get_by_id(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            distribution = DistributionRepository(session).get_by_job(job_id)
            if distribution is None:
                return JobStatusView(job_id=job.id, status=job.status)
            counts = AssignmentRepository(session).status_counts(distribution.id)
            return JobStatusView(
                job_id=job.id,
                status=job.status,
                distribution=self._detail(session, distribution),
                stats=DistributionStats.from_counts(counts),
            )

    def active_distributions(self) -> list[DistributionDetail]:
        """Distributions whose job is still being worked on."""
        with self.database.session() as session:
            active = DistributionRepository(session).get_active()
            return [self._detail(session, distribution) for distribution, _ in active]

    def distribution_detail(self, distribution_id: str) -> DistributionDetail:
        """One distribution with its assignments.

        Raises:
            NotFoundError: If the distribution does not exist

        """
        with self.database.session() as session:
            distribution = DistributionRepository(session).get_by_id(distribution_id)
            if distribution is None:
                raise NotFoundError("Distribution", distribution_id)
            return self._detail(session, distribution)

    def execution_stats(self) -> ExecutionStats:
        """Job counters, mean execution time and the top agents."""
        with self.database.session() as session:
            by_status = JobRepository(session).count_by_status()
            average = AssignmentRepository(session).average_completed_time()
            top = PerformanceRepository(session).top_by_completed(TOP_AGENTS_LIMIT)
            names = AgentRepository(session).names_for([p.agent_id for p in top])

        total = sum(by_status.values())
        completed = by_status.get(JobStatus.COMPLETED, 0)
        return ExecutionStats(
            total_jobs=total,
            completed_jobs=completed,
            failed_jobs=by_status.get(JobStatus.CANCELLED, 0)
            + by_status.get(JobStatus.EXPIRED, 0),
            in_progress_jobs=by_status.get(JobStatus.DISTRIBUTED, 0)
            + by_status.get(JobStatus.IN_PROGRESS, 0),
            avg_execution_time=average,
            success_rate=completed / total if total else 0.0,
            top_agents=[
                performance.to_view(names.get(performance.agent_id, "Unknown"))
                for performance in top
            ],
        )

    def _detail(
        self, session: Session, distribution: DistributionRecord
    ) -> DistributionDetail:
        assignments = AssignmentRepository(session).list_for_distribution(
            distribution.id
        )
        names = AgentRepository(session).names_for([a.agent_id for a in assignments])
        return distribution.to_detail(
            [a.to_view(names.get(a.agent_id, "")) for a in assignments]
        )

    # ------------------------------------------------------------------
    # Agent callbacks
    # ------------------------------------------------------------------

    def report_status(
        self, agent_id: str, request: AgentStatusReport
    ) -> AssignmentView | None:
        """Apply a status update pushed by an agent."""
        view = self.orchestrator.tracker.update_status(
            request.distribution_id,
            agent_id,
            StatusUpdate(
                work_status=request.work_status,
                progress=request.progress,
                execution_result=request.execution_result,
                error_message=request.error_message,
            ),
        )
        self.orchestrator.tracker.refresh_response_count(request.distribution_id)
        return view

    async def submit_result(
        self, agent_id: str, request: ResultSubmission
    ) -> str | None:
        """Record a pushed result, then resolve the distribution.

        Returns:
            The winning agent id after resolution

        """
        self.orchestrator.tracker.completed(
            request.distribution_id,
            agent_id,
            request.execution_result,
            request.execution_time_ms,
        )
        self.orchestrator.tracker.refresh_response_count(request.distribution_id)
        return await self.orchestrator.selector.select_winner(
            request.distribution_id, SelectionStrategy.FIRST_COMPLETED
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def process_pending(self) -> BatchReport:
        """On-demand processing of pending jobs through the shared batch path."""
        jobs = self.orchestrator.job_source.fetch_pending(
            self.orchestrator.settings.scheduler.batch_size
        )
        report = await self.orchestrator.process_batch(jobs)
        await self.orchestrator.drain()
        return report

    async def distribute_job(
        self, job_id: str, max_agents: int | None = None
    ) -> DistributionDetail:
        """Distribute one open job immediately.

        Raises:
            NotFoundError: If the job does not exist or no agent qualifies
            ValidationFailure: If the job is not open

        """
        with self.database.session() as session:
            job = JobRepository(session).get_by_id(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
        if job.status != JobStatus.OPEN:
            raise ValidationFailure(
                f"Job {job_id} is {job.status.value}; only open jobs can be distributed"
            )

        ranked = self.orchestrator.scorer.select(job, limit=max_agents)
        if not ranked:
            raise NotFoundError("Eligible agents for job", job_id)

        record = self.orchestrator.coordinator.open(job_id, ranked)
        await self.orchestrator.queue.put(record.id)
        logger.info(f"Manually distributed job {job_id} to {len(ranked)} agents")
        return self.distribution_detail(record.id)

    async def agents_health(self) -> list[HealthStatus]:
        """Probe every active agent in parallel.

        Healthy agents are also asked for their current load.
        """
        with self.database.session() as session:
            agents = [
                agent
                for agent in AgentRepository(session).list_all()
                if agent.is_active
            ]
        statuses = await self.client.batch_health_check(
            [agent.address for agent in agents]
        )
        for agent, status in zip(agents, statuses, strict=True):
            status.agent_id = agent.id
            status.agent_name = agent.name

        healthy = [status for status in statuses if status.is_healthy]
        loads = await asyncio.gather(
            *(self.client.get_status(status.address) for status in healthy)
        )
        for status, load in zip(healthy, loads, strict=True):
            status.load = load
        return statuses
