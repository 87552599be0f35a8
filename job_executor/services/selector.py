"""Winner selection for distributions."""

import logging
from collections.abc import Callable
from datetime import datetime

from ..config import DistributionSettings
from ..database import Database
from ..exceptions import NotFoundError, PersistenceFailure
from ..integrations import AgentClient
from ..repositories import (
    AgentRepository,
    AssignmentRepository,
    DistributionRepository,
    ExecutionLogRepository,
    JobRepository,
)
from ..schemas.database import AgentAssignment
from ..schemas.models import (
    ACTIVE_WORK_STATUSES,
    JobStatus,
    SelectionStrategy,
    WorkStatus,
)

logger = logging.getLogger(__name__)

LOSER_MESSAGE = "Task completed by another agent"


def result_score(assignment: AgentAssignment) -> float:
    """Completion base plus speed and content-richness bonuses."""
    score = 100.0
    if assignment.execution_time_ms is not None:
        score += max(0.0, 50.0 - assignment.execution_time_ms / 60000)
    if assignment.execution_result:
        score += min(20.0, len(assignment.execution_result) / 100)
    return score


def pick_winner(
    completed: list[AgentAssignment], strategy: SelectionStrategy
) -> AgentAssignment:
    """Choose among completed assignments; ties go to the earliest listed."""
    if strategy == SelectionStrategy.BEST_SCORED:
        return max(completed, key=result_score)
    return min(completed, key=lambda a: a.completed_at or datetime.max)


class ResultSelector:
    """Selects one winning assignment and cancels the rest."""

    def __init__(
        self,
        database: Database,
        settings: DistributionSettings | None = None,
        client: AgentClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.database = database
        self.settings = settings or DistributionSettings()
        self.client = client
        self.clock = clock

    async def select_winner(
        self, distribution_id: str, strategy: SelectionStrategy | None = None
    ) -> str | None:
        """Resolve a distribution to a single winning agent.

        Recording the winner, completing the job and cancelling the other
        live assignments happen in one unit of work.

        Returns:
            The winning agent id, the existing winner when the distribution
            was already resolved, or None when nothing has completed yet.

        Raises:
            NotFoundError: If the distribution does not exist

        """
        strategy = strategy or self.settings.selection_strategy
        now = self.clock()

        with self.database.session() as session:
            distributions = DistributionRepository(session)
            distribution = distributions.get_by_id(distribution_id)
            if distribution is None:
                raise NotFoundError("Distribution", distribution_id)
            if distribution.winning_agent_id:
                logger.info(
                    f"Distribution {distribution_id} already won by "
                    f"{distribution.winning_agent_id}"
                )
                return distribution.winning_agent_id

            assignments = AssignmentRepository(session).list_for_distribution(
                distribution_id
            )
            completed = [
                a for a in assignments if a.work_status == WorkStatus.COMPLETED
            ]
            if not completed:
                logger.info(f"Nothing completed in distribution {distribution_id}")
                return None

            winner = pick_winner(completed, strategy)
            agents = AgentRepository(session)
            name = agents.names_for([winner.agent_id]).get(winner.agent_id, "")
            if not distributions.claim_winner(distribution, winner.agent_id, name):
                logger.info(
                    f"Distribution {distribution_id} was claimed concurrently by "
                    f"{distribution.winning_agent_id}"
                )
                return distribution.winning_agent_id

            jobs = JobRepository(session)
            job = jobs.get_by_id(distribution.job_id)
            if job is not None:
                jobs.set_status(job, JobStatus.COMPLETED)

            losers = [
                a
                for a in assignments
                if a.agent_id != winner.agent_id
                and a.work_status in ACTIVE_WORK_STATUSES
            ]
            for assignment in losers:
                assignment.work_status = WorkStatus.CANCELLED
                assignment.error_message = LOSER_MESSAGE
                assignment.completed_at = now
                session.add(assignment)
            session.flush()

            job_id = distribution.job_id
            loser_addresses = {
                agent.id: agent.address
                for agent in agents.get_many([a.agent_id for a in losers])
            }

        logger.info(
            f"Agent {winner.agent_id} won distribution {distribution_id} "
            f"({strategy.value}); cancelled {len(losers)} other agents"
        )
        self._log_selection(job_id, distribution_id, winner.agent_id, strategy, losers)

        if self.settings.cancel_losers_remotely and self.client is not None:
            for address in loser_addresses.values():
                await self.client.cancel(address, job_id)

        return winner.agent_id

    def _log_selection(
        self,
        job_id: str,
        distribution_id: str,
        winner_id: str,
        strategy: SelectionStrategy,
        losers: list[AgentAssignment],
    ) -> None:
        try:
            with self.database.session() as session:
                log = ExecutionLogRepository(session)
                log.append(
                    job_id,
                    "winner_selected",
                    agent_id=winner_id,
                    event_data={
                        "distribution_id": distribution_id,
                        "strategy": strategy.value,
                    },
                )
                for assignment in losers:
                    log.append(
                        job_id,
                        "agent_cancelled",
                        agent_id=assignment.agent_id,
                        event_data={
                            "distribution_id": distribution_id,
                            "reason": LOSER_MESSAGE,
                        },
                    )
        except PersistenceFailure as e:
            logger.warning(f"Failed to log selection for job {job_id}: {e}")
