"""Orchestration loop tying scoring, distribution, tracking and selection.

``process_batch`` is the single batch entry point shared by the scheduled
loop and on-demand triggers. Opened distributions are handed to a
``DispatchQueue`` whose workers dispatch and then resolve them, so dispatch
failures are counted instead of vanishing in unawaited tasks.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from ..config import ExecutorSettings
from ..database import Database
from ..exceptions import ExecutorError, NotFoundError, ValidationFailure
from ..integrations import AgentClient
from ..repositories import AssignmentRepository, DistributionRepository, JobRepository
from ..schemas.database import Job
from ..schemas.models import (
    ACTIVE_WORK_STATUSES,
    BatchFailure,
    BatchReport,
    CycleReport,
    JobStatus,
    SelectionStrategy,
    SweepOutcome,
    missing_job_fields,
)
from .coordinator import DistributionCoordinator
from .scorer import AgentScorer
from .selector import ResultSelector
from .tracker import ExecutionTracker

logger = logging.getLogger(__name__)


class JobSource(Protocol):
    """Supplies pending jobs to the orchestration loop."""

    def fetch_pending(self, limit: int) -> list[Job]:
        """Return up to ``limit`` jobs waiting for distribution."""
        ...


class RepositoryJobSource:
    """Default intake: open or distributed jobs without a distribution."""

    def __init__(self, database: Database):
        self.database = database

    def fetch_pending(self, limit: int) -> list[Job]:
        """Return up to ``limit`` pending jobs, oldest first."""
        with self.database.session() as session:
            return JobRepository(session).get_pending(limit)


@dataclass(slots=True)
class WorkerSummary:
    """Aggregate dispatch worker counters for CLI reporting."""

    dispatched: int = 0
    resolved: int = 0
    failed: int = 0


class DispatchQueue:
    """Queue of distribution ids consumed by a pool of worker tasks."""

    def __init__(
        self,
        handler: Callable[[str], Awaitable[bool]],
        workers: int = 4,
    ):
        """Initialize the queue.

        Args:
            handler: Coroutine run per distribution id; returns True when
                the distribution was resolved.
            workers: Number of concurrent worker tasks.

        """
        self.handler = handler
        self.worker_count = workers
        self.summary = WorkerSummary()
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        """Whether worker tasks are alive."""
        return any(not worker.done() for worker in self._workers)

    def start(self) -> None:
        """Start worker tasks on the running loop if not already started."""
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"dispatch-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.debug(f"Started {self.worker_count} dispatch workers")

    async def put(self, distribution_id: str) -> None:
        """Hand a distribution to the workers."""
        self.start()
        await self._queue.put(distribution_id)

    async def drain(self) -> WorkerSummary:
        """Wait until every queued distribution has been handled."""
        if not self._queue.empty():
            self.start()
        await self._queue.join()
        return self.summary

    async def stop(self) -> None:
        """Cancel the worker tasks."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self, index: int) -> None:
        while True:
            distribution_id = await self._queue.get()
            try:
                resolved = await self.handler(distribution_id)
                self.summary.dispatched += 1
                if resolved:
                    self.summary.resolved += 1
            except Exception:
                self.summary.failed += 1
                logger.exception(
                    f"Worker {index} failed on distribution {distribution_id}"
                )
            finally:
                self._queue.task_done()


class Orchestrator:
    """Drives jobs from intake to a resolved distribution."""

    def __init__(
        self,
        database: Database,
        scorer: AgentScorer,
        coordinator: DistributionCoordinator,
        tracker: ExecutionTracker,
        selector: ResultSelector,
        settings: ExecutorSettings | None = None,
        job_source: JobSource | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.database = database
        self.scorer = scorer
        self.coordinator = coordinator
        self.tracker = tracker
        self.selector = selector
        self.settings = settings or ExecutorSettings()
        self.job_source = job_source or RepositoryJobSource(database)
        self.clock = clock
        self.queue = DispatchQueue(
            self._dispatch_and_resolve,
            workers=self.settings.scheduler.dispatch_workers,
        )

    @classmethod
    def build(
        cls,
        settings: ExecutorSettings,
        database: Database,
        client: AgentClient,
        job_source: JobSource | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "Orchestrator":
        """Wire all services from settings."""
        tracker = ExecutionTracker(database, clock=clock)
        return cls(
            database=database,
            scorer=AgentScorer(database, settings.distribution, clock=clock),
            coordinator=DistributionCoordinator(
                database, tracker, client, clock=clock
            ),
            tracker=tracker,
            selector=ResultSelector(
                database, settings.distribution, client=client, clock=clock
            ),
            settings=settings,
            job_source=job_source,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def process_batch(self, jobs: list[Job]) -> BatchReport:
        """Distribute a batch of jobs, isolating failures per job.

        Structurally incomplete jobs are rejected and left untouched. Jobs
        with no eligible agent are cancelled. Any other failure cancels only
        the job that caused it.
        """
        report = BatchReport()
        for job in jobs:
            report.processed += 1
            try:
                missing = missing_job_fields(job)
                if missing:
                    raise ValidationFailure(
                        f"Job {job.id} is missing {', '.join(missing)}"
                    )
                if self._has_distribution(job.id):
                    logger.debug(f"Job {job.id} already distributed; skipping")
                    report.skipped += 1
                    continue

                ranked = self.scorer.select(job)
                if not ranked:
                    self.coordinator.cancel_unmatched(job.id)
                    report.cancelled += 1
                    continue

                record = self.coordinator.open(job.id, ranked)
                await self.queue.put(record.id)
                report.distributed += 1
                report.distribution_ids.append(record.id)
            except ValidationFailure as e:
                logger.warning(f"Rejected job {job.id}: {e}")
                report.rejected.append(BatchFailure(job_id=job.id or "", error=str(e)))
            except Exception as e:
                logger.exception(f"Failed to distribute job {job.id}")
                report.failed.append(BatchFailure(job_id=job.id or "", error=str(e)))
                self._cancel_quietly(job.id)

        logger.info(
            f"Batch processed: {report.processed} jobs, {report.distributed} "
            f"distributed, {report.cancelled} cancelled, {report.skipped} skipped, "
            f"{len(report.rejected)} rejected, {len(report.failed)} failed"
        )
        return report

    def _has_distribution(self, job_id: str) -> bool:
        with self.database.session() as session:
            return DistributionRepository(session).get_by_job(job_id) is not None

    def _cancel_quietly(self, job_id: str) -> None:
        try:
            self.coordinator.cancel_unmatched(job_id)
        except ExecutorError as e:
            logger.warning(f"Could not cancel job {job_id} after failure: {e}")

    async def _dispatch_and_resolve(self, distribution_id: str) -> bool:
        await self.coordinator.dispatch(distribution_id)
        return await self.resolve(distribution_id) is not None

    async def resolve(self, distribution_id: str) -> str | None:
        """Select a winner if any assignment has completed."""
        if not self.tracker.is_resolvable(distribution_id):
            logger.info(f"Distribution {distribution_id} has no completed result yet")
            return None
        return await self.selector.select_winner(distribution_id)

    async def drain(self) -> None:
        """Wait for all queued distributions to be dispatched and resolved."""
        summary = await self.queue.drain()
        logger.debug(
            f"Dispatch queue drained: {summary.dispatched} dispatched, "
            f"{summary.resolved} resolved, {summary.failed} failed"
        )

    # ------------------------------------------------------------------
    # Timeout sweep
    # ------------------------------------------------------------------

    async def timeout_distribution(self, distribution_id: str) -> SweepOutcome:
        """Force resolution of one distribution.

        Live legs time out. If any leg had completed, the earliest
        completion wins; otherwise the job expires. A distribution whose job
        is already final is left alone.

        Raises:
            NotFoundError: If the distribution does not exist

        """
        with self.database.session() as session:
            distribution = DistributionRepository(session).get_by_id(distribution_id)
            if distribution is None:
                raise NotFoundError("Distribution", distribution_id)
            job = JobRepository(session).get_by_id(distribution.job_id)
            if job is None or job.is_terminal:
                return SweepOutcome(distribution_id=distribution_id, skipped=True)
            live = AssignmentRepository(session).list_for_distribution(
                distribution_id, list(ACTIVE_WORK_STATUSES)
            )

        outcome = SweepOutcome(distribution_id=distribution_id)
        for assignment in live:
            if self.tracker.timeout(distribution_id, assignment.agent_id):
                outcome.timed_out += 1

        if self.tracker.is_resolvable(distribution_id):
            outcome.winner_agent_id = await self.selector.select_winner(
                distribution_id, SelectionStrategy.FIRST_COMPLETED
            )
        else:
            with self.database.session() as session:
                jobs = JobRepository(session)
                job = jobs.get_by_id(distribution.job_id)
                outcome.expired = job is not None and jobs.set_status(
                    job, JobStatus.EXPIRED
                )
            logger.warning(f"Job {distribution.job_id} expired without a result")

        logger.info(
            f"Swept distribution {distribution_id}: {outcome.timed_out} timed out, "
            f"winner {outcome.winner_agent_id}"
        )
        return outcome

    async def sweep_timeouts(self, now: datetime | None = None) -> list[SweepOutcome]:
        """Resolve every active distribution whose deadline has passed.

        A distribution's deadline is the earlier of its job's deadline and
        its creation time plus the distribution timeout.
        """
        now = now or self.clock()
        window = timedelta(
            seconds=self.settings.distribution.distribution_timeout_seconds
        )
        with self.database.session() as session:
            active = DistributionRepository(session).get_active()
        due = [
            distribution.id
            for distribution, job in active
            if min(job.deadline, distribution.created_at + window) <= now
        ]

        outcomes = []
        for distribution_id in due:
            try:
                outcomes.append(await self.timeout_distribution(distribution_id))
            except ExecutorError as e:
                logger.error(f"Timeout sweep failed for {distribution_id}: {e}")
        if due:
            logger.info(f"Timeout sweep resolved {len(outcomes)} of {len(due)}")
        return outcomes

    # ------------------------------------------------------------------
    # Scheduled loop
    # ------------------------------------------------------------------

    async def run_once(self) -> CycleReport:
        """One cycle: intake, distribute, drain the queue, sweep timeouts."""
        report = CycleReport(started_at=self.clock())
        jobs = self.job_source.fetch_pending(self.settings.scheduler.batch_size)
        report.batch = await self.process_batch(jobs)

        resolved_before = self.queue.summary.resolved
        await self.drain()
        report.resolved = self.queue.summary.resolved - resolved_before

        report.sweeps = await self.sweep_timeouts()
        report.finished_at = self.clock()
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Repeat ``run_once`` every poll interval until ``stop_event`` is set."""
        interval = self.settings.scheduler.poll_interval_seconds
        logger.info(f"Scheduler started; polling every {interval}s")
        try:
            while not stop_event.is_set():
                try:
                    report = await self.run_once()
                    logger.info(
                        f"Cycle finished: {report.batch.distributed} distributed, "
                        f"{report.resolved} resolved, {len(report.sweeps)} swept"
                    )
                except Exception:
                    logger.exception("Processing cycle failed")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except TimeoutError:
                    pass
        finally:
            await self.close()
            logger.info("Scheduler stopped")

    async def close(self) -> None:
        """Stop the dispatch workers."""
        await self.queue.stop()
