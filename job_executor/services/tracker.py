"""Execution tracking for agent assignments.

Owns the per-assignment state machine, stamps lifecycle timestamps and keeps
agent performance counters. Audit log and performance writes run in their own
unit of work after the transition has committed; their failure is logged and
never undoes the transition.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..database import Database
from ..exceptions import InvalidTransitionError, NotFoundError, PersistenceFailure
from ..repositories import (
    AgentRepository,
    AssignmentRepository,
    DistributionRepository,
    ExecutionLogRepository,
    PerformanceRepository,
)
from ..schemas.models import (
    ACTIVE_WORK_STATUSES,
    TERMINAL_WORK_STATUSES,
    AssignmentView,
    DistributionStats,
    StatusUpdate,
    WorkStatus,
    can_transition_work,
)

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Task execution timeout"


class ExecutionTracker:
    """Tracks each agent's leg of a distribution."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the tracker.

        Args:
            database: Unit-of-work factory.
            clock: Source of timestamps, injectable for deterministic tests.

        """
        self.database = database
        self.clock = clock

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def track(self, distribution_id: str, agent_id: str) -> AssignmentView | None:
        """Mark an assignment as working and stamp its start time."""
        return self.update_status(
            distribution_id, agent_id, StatusUpdate(work_status=WorkStatus.WORKING)
        )

    def update_status(
        self, distribution_id: str, agent_id: str, update: StatusUpdate
    ) -> AssignmentView | None:
        """Apply a status change and any fields carried by the update.

        Returns:
            The updated assignment, or None when the assignment was already
            terminal and the update was ignored.

        Raises:
            NotFoundError: If the assignment does not exist
            InvalidTransitionError: If the state machine forbids the change

        """
        now = self.clock()
        with self.database.session() as session:
            assignment = AssignmentRepository(session).get(distribution_id, agent_id)
            if assignment is None:
                raise NotFoundError("Assignment", f"{distribution_id}/{agent_id}")

            previous = assignment.work_status
            if previous in TERMINAL_WORK_STATUSES:
                logger.info(
                    f"Ignoring {update.work_status.value} for agent {agent_id} in "
                    f"distribution {distribution_id}: already {previous.value}"
                )
                return None
            if not can_transition_work(previous, update.work_status):
                raise InvalidTransitionError(previous.value, update.work_status.value)

            for field, value in update.changed_fields().items():
                setattr(assignment, field, value)
            assignment.work_status = update.work_status
            starting = update.work_status == WorkStatus.WORKING
            if starting and assignment.started_at is None:
                assignment.started_at = now
            if update.work_status in TERMINAL_WORK_STATUSES:
                assignment.completed_at = now
            session.add(assignment)
            session.flush()

            distribution = DistributionRepository(session).get_by_id(distribution_id)
            job_id = distribution.job_id if distribution else distribution_id
            view = assignment.to_view()

        self._log_event(
            job_id,
            agent_id,
            f"agent_{update.work_status.value}",
            {
                "distribution_id": distribution_id,
                "previous_status": previous.value,
                **{
                    key: value
                    for key, value in update.changed_fields().items()
                    if key != "execution_result"
                },
            },
        )
        return view

    def completed(
        self,
        distribution_id: str,
        agent_id: str,
        result: str,
        execution_time_ms: int | None = None,
        retry_count: int | None = None,
    ) -> AssignmentView | None:
        """Record a successful result and update performance counters."""
        view = self.update_status(
            distribution_id,
            agent_id,
            StatusUpdate(
                work_status=WorkStatus.COMPLETED,
                progress=100,
                execution_result=result,
                execution_time_ms=execution_time_ms,
                retry_count=retry_count,
            ),
        )
        if view is not None:
            timing = "" if execution_time_ms is None else f" in {execution_time_ms}ms"
            logger.info(
                f"Agent {agent_id} completed distribution {distribution_id}{timing}"
            )
            self._record_performance(agent_id, True, execution_time_ms)
        return view

    def failed(
        self,
        distribution_id: str,
        agent_id: str,
        error: str,
        retry_count: int | None = None,
    ) -> AssignmentView | None:
        """Record a failed leg and update performance counters."""
        view = self.update_status(
            distribution_id,
            agent_id,
            StatusUpdate(
                work_status=WorkStatus.FAILED,
                error_message=error,
                retry_count=retry_count,
            ),
        )
        if view is not None:
            logger.warning(
                f"Agent {agent_id} failed distribution {distribution_id}: {error}"
            )
            self._record_performance(agent_id, False)
        return view

    def timeout(self, distribution_id: str, agent_id: str) -> AssignmentView | None:
        """Time out a leg; counts as a failure in performance."""
        view = self.update_status(
            distribution_id,
            agent_id,
            StatusUpdate(work_status=WorkStatus.TIMEOUT, error_message=TIMEOUT_MESSAGE),
        )
        if view is not None:
            logger.warning(
                f"Agent {agent_id} timed out on distribution {distribution_id}"
            )
            self._record_performance(agent_id, False)
        return view

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_resolvable(self, distribution_id: str) -> bool:
        """True iff at least one assignment completed."""
        with self.database.session() as session:
            counts = AssignmentRepository(session).status_counts(distribution_id)
        return counts.get(WorkStatus.COMPLETED, 0) > 0

    def stats(self, distribution_id: str) -> DistributionStats:
        """Assignment counts by work status."""
        with self.database.session() as session:
            counts = AssignmentRepository(session).status_counts(distribution_id)
        return DistributionStats.from_counts(counts)

    def progress(self, distribution_id: str) -> list[AssignmentView]:
        """All assignments of a distribution with agent names."""
        with self.database.session() as session:
            assignments = AssignmentRepository(session).list_for_distribution(
                distribution_id
            )
            names = AgentRepository(session).names_for(
                [assignment.agent_id for assignment in assignments]
            )
            return [
                assignment.to_view(names.get(assignment.agent_id, ""))
                for assignment in assignments
            ]

    def active_statuses(self, agent_id: str) -> list[AssignmentView]:
        """Assigned or working legs currently held by an agent."""
        with self.database.session() as session:
            assignments = AssignmentRepository(session).list_for_agent(
                agent_id, list(ACTIVE_WORK_STATUSES)
            )
            return [assignment.to_view() for assignment in assignments]

    def refresh_response_count(self, distribution_id: str) -> int:
        """Persist the number of agents that ever started working.

        The stored count only ever grows.

        Raises:
            NotFoundError: If the distribution does not exist

        """
        with self.database.session() as session:
            distributions = DistributionRepository(session)
            distribution = distributions.get_by_id(distribution_id)
            if distribution is None:
                raise NotFoundError("Distribution", distribution_id)
            started = AssignmentRepository(session).count_started(distribution_id)
            return distributions.set_response_count(distribution, started)

    # ------------------------------------------------------------------
    # Best-effort side effects
    # ------------------------------------------------------------------

    def _record_performance(
        self, agent_id: str, success: bool, execution_time_ms: int | None = None
    ) -> None:
        try:
            with self.database.session() as session:
                performance = PerformanceRepository(session).get_or_create(agent_id)
                performance.total_jobs += 1
                if success:
                    completed = performance.completed_jobs + 1
                    if execution_time_ms is not None:
                        performance.avg_execution_time = (
                            performance.avg_execution_time * performance.completed_jobs
                            + execution_time_ms
                        ) / completed
                    performance.completed_jobs = completed
                else:
                    performance.failed_jobs += 1
                performance.success_rate = (
                    performance.completed_jobs / performance.total_jobs
                )
                performance.last_updated = self.clock()
                session.add(performance)
                session.flush()
                AgentRepository(session).mirror_performance(
                    agent_id, performance.completed_jobs, performance.success_rate
                )
        except PersistenceFailure as e:
            logger.warning(f"Failed to update performance for agent {agent_id}: {e}")

    def _log_event(
        self,
        job_id: str,
        agent_id: str | None,
        event_type: str,
        event_data: dict[str, Any],
    ) -> None:
        try:
            with self.database.session() as session:
                ExecutionLogRepository(session).append(
                    job_id, event_type, agent_id=agent_id, event_data=event_data
                )
        except PersistenceFailure as e:
            logger.warning(f"Failed to log {event_type} for job {job_id}: {e}")
