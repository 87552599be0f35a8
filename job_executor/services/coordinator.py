"""Distribution coordination: opening distributions and fanning out calls."""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime

from ..database import Database
from ..exceptions import ExecutorError, NotFoundError, ValidationFailure
from ..integrations import AgentClient
from ..repositories import (
    AgentRepository,
    AssignmentRepository,
    DistributionRepository,
    JobRepository,
)
from ..schemas.database import Agent, AgentAssignment, DistributionRecord, Job
from ..schemas.models import (
    AgentScore,
    DispatchOutcome,
    JobPayload,
    JobStatus,
    MatchCriteria,
    RetryPolicy,
    WorkStatus,
)
from .tracker import ExecutionTracker

logger = logging.getLogger(__name__)

LEG_COMPLETED = "completed"
LEG_FAILED = "failed"
LEG_IGNORED = "ignored"


class DistributionCoordinator:
    """Opens distributions and dispatches them to their agents."""

    def __init__(
        self,
        database: Database,
        tracker: ExecutionTracker,
        client: AgentClient,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.now,
        timer: Callable[[], float] = time.perf_counter,
    ):
        """Initialize the coordinator.

        Args:
            database: Unit-of-work factory.
            tracker: Records each leg's transitions.
            client: Remote agent client.
            retry_policy: Policy for agent calls. The client's default
                policy is used when omitted.
            clock: Source of record timestamps.
            timer: Monotonic timer used to measure call durations.

        """
        self.database = database
        self.tracker = tracker
        self.client = client
        self.retry_policy = retry_policy
        self.clock = clock
        self.timer = timer

    def open(self, job_id: str, ranked_agents: list[AgentScore]) -> DistributionRecord:
        """Create a distribution with one assignment per ranked agent.

        The record, its assignments and the job status change commit
        together or not at all.

        Raises:
            NotFoundError: If the job does not exist
            ValidationFailure: If no agents are given or the job is closed
            PersistenceFailure: If the job already has a distribution

        """
        if not ranked_agents:
            raise ValidationFailure(f"Job {job_id} has no agents to distribute to")

        now = self.clock()
        with self.database.session() as session:
            jobs = JobRepository(session)
            job = jobs.get_by_id(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            if job.is_terminal:
                raise ValidationFailure(f"Job {job_id} is already {job.status.value}")

            record = DistributionRepository(session).add(
                DistributionRecord(
                    job_id=job.id,
                    job_name=job.title,
                    match_criteria=MatchCriteria.from_job(job).model_dump(mode="json"),
                    total_agents=len(ranked_agents),
                    assigned_count=len(ranked_agents),
                    response_count=0,
                    created_at=now,
                )
            )
            AssignmentRepository(session).add_all(
                [
                    AgentAssignment(
                        distribution_id=record.id,
                        agent_id=ranked.agent_id,
                        position=position,
                        work_status=WorkStatus.ASSIGNED,
                        assigned_at=now,
                    )
                    for position, ranked in enumerate(ranked_agents)
                ]
            )
            if job.status != JobStatus.DISTRIBUTED:
                jobs.set_status(job, JobStatus.DISTRIBUTED)

        logger.info(
            f"Opened distribution {record.id} for job {job_id} "
            f"with {len(ranked_agents)} agents"
        )
        return record

    def cancel_unmatched(self, job_id: str) -> bool:
        """Cancel a job no agent qualified for, without a distribution.

        Raises:
            NotFoundError: If the job does not exist

        """
        with self.database.session() as session:
            jobs = JobRepository(session)
            job = jobs.get_by_id(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            cancelled = jobs.set_status(job, JobStatus.CANCELLED)
        if cancelled:
            logger.info(f"No eligible agents for job {job_id}; job cancelled")
        return cancelled

    def build_payload(self, job: Job, distribution_id: str) -> JobPayload:
        """Job content sent to every agent of a distribution."""
        return JobPayload(
            job_id=job.id,
            job_title=job.title,
            description=job.description or "",
            deliverables=job.deliverables or "",
            deadline=job.deadline.isoformat(),
            priority=job.priority or "medium",
            distribution_id=distribution_id,
            budget=job.max_budget,
            tags=list(job.tags or []),
        )

    async def dispatch(self, distribution_id: str) -> DispatchOutcome:
        """Call every assigned agent concurrently and record the outcomes.

        Waits for all legs; one failing leg never cancels its siblings. When
        every leg has settled the job moves to in progress unless it already
        reached a final status.

        Raises:
            NotFoundError: If the distribution or its job does not exist

        """
        with self.database.session() as session:
            distribution = DistributionRepository(session).get_by_id(distribution_id)
            if distribution is None:
                raise NotFoundError("Distribution", distribution_id)
            job = JobRepository(session).get_by_id(distribution.job_id)
            if job is None:
                raise NotFoundError("Job", distribution.job_id)
            pending = AssignmentRepository(session).list_for_distribution(
                distribution_id, [WorkStatus.ASSIGNED]
            )
            agents = AgentRepository(session).get_many(
                [assignment.agent_id for assignment in pending]
            )
        payload = self.build_payload(job, distribution_id)

        logger.info(
            f"Dispatching distribution {distribution_id} to {len(agents)} agents"
        )
        results = await asyncio.gather(
            *(self._run_leg(distribution_id, agent, payload) for agent in agents),
            return_exceptions=True,
        )

        outcome = DispatchOutcome(distribution_id=distribution_id)
        for agent, result in zip(agents, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    f"Leg for agent {agent.id} in distribution {distribution_id} "
                    f"raised: {result!r}"
                )
                result = self._fail_leg(distribution_id, agent.id, result)
            if result == LEG_COMPLETED:
                outcome.completed += 1
            elif result == LEG_FAILED:
                outcome.failed += 1
            else:
                outcome.ignored += 1

        self.tracker.refresh_response_count(distribution_id)
        self._mark_in_progress(distribution.job_id)
        logger.info(
            f"Distribution {distribution_id} settled: {outcome.completed} completed, "
            f"{outcome.failed} failed, {outcome.ignored} ignored"
        )
        return outcome

    async def _run_leg(
        self, distribution_id: str, agent: Agent, payload: JobPayload
    ) -> str:
        if self.tracker.track(distribution_id, agent.id) is None:
            return LEG_IGNORED

        started = self.timer()
        response = await self.client.call(agent.address, payload, self.retry_policy)
        elapsed_ms = int((self.timer() - started) * 1000)
        retries = max(response.attempts - 1, 0)

        if response.success:
            view = self.tracker.completed(
                distribution_id, agent.id, response.message, elapsed_ms, retries
            )
            return LEG_COMPLETED if view else LEG_IGNORED
        view = self.tracker.failed(
            distribution_id, agent.id, response.error or "Unknown error", retries
        )
        return LEG_FAILED if view else LEG_IGNORED

    def _fail_leg(
        self, distribution_id: str, agent_id: str, error: BaseException
    ) -> str:
        try:
            view = self.tracker.failed(
                distribution_id, agent_id, f"Unexpected error: {error}"
            )
        except ExecutorError as e:
            logger.warning(f"Could not record failure for agent {agent_id}: {e}")
            return LEG_FAILED
        return LEG_FAILED if view else LEG_IGNORED

    def _mark_in_progress(self, job_id: str) -> None:
        with self.database.session() as session:
            jobs = JobRepository(session)
            job = jobs.get_by_id(job_id)
            if job is not None and job.status == JobStatus.DISTRIBUTED:
                jobs.set_status(job, JobStatus.IN_PROGRESS)
