"""Agent filtering, scoring and ranking."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from ..config import DistributionSettings
from ..database import Database
from ..exceptions import PersistenceFailure
from ..repositories import AgentRepository, AssignmentRepository
from ..schemas.database import Agent, Job
from ..schemas.models import AgentScore, ScoreFactors, skill_index

logger = logging.getLogger(__name__)

WEIGHTS = {
    "skill_match": 0.35,
    "reputation": 0.25,
    "success_rate": 0.25,
    "availability": 0.15,
}
AVAILABILITY_WINDOW = timedelta(days=7)
FALLBACK_AVAILABILITY = 0.5


class AgentScorer:
    """Filters the agent pool for a job and ranks the survivors."""

    def __init__(
        self,
        database: Database,
        settings: DistributionSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.database = database
        self.settings = settings or DistributionSettings()
        self.clock = clock

    def match(self, job: Job, candidates: list[Agent]) -> list[Agent]:
        """Agents that pass every filter rule, in candidate order."""
        with self.database.session() as session:
            busy = AssignmentRepository(session).busy_agent_ids(
                [agent.id for agent in candidates]
            )

        matched = []
        for agent in candidates:
            reason = self._rejection_reason(job, agent, busy)
            if reason:
                logger.debug(f"Agent {agent.name} rejected for job {job.id}: {reason}")
                continue
            matched.append(agent)

        logger.info(
            f"{len(matched)} of {len(candidates)} agents eligible for job {job.id}"
        )
        return matched

    def _rejection_reason(self, job: Job, agent: Agent, busy: set[str]) -> str | None:
        if not agent.is_active:
            return "inactive"
        if not agent.auto_accept_jobs:
            return "auto-accept disabled"
        if agent.id in busy:
            return "busy with another job"
        if not skill_level_passes(agent.classification, job.skill_level):
            return f"skill {agent.classification} below {job.skill_level}"
        if job.tags and not set(job.tags) & set(agent.tags or []):
            return "no tag overlap"
        if job.max_budget is not None and not (
            agent.is_free or (agent.price is not None and agent.price <= job.max_budget)
        ):
            return "over budget"
        return None

    def score(self, job: Job, agent: Agent) -> AgentScore:
        """Weighted suitability of an agent for a job."""
        factors = ScoreFactors(
            skill_match=skill_match(job, agent),
            reputation=min(max(agent.reputation, 0.0) / 5.0, 1.0),
            success_rate=agent.success_rate,
            availability=self._availability(agent.id),
        )
        total = sum(getattr(factors, name) * weight for name, weight in WEIGHTS.items())
        return AgentScore(
            agent_id=agent.id,
            agent_name=agent.name,
            agent_address=agent.address,
            score=min(total, 1.0),
            factors=factors,
        )

    def _availability(self, agent_id: str) -> float:
        since = self.clock() - AVAILABILITY_WINDOW
        try:
            with self.database.session() as session:
                recent = AssignmentRepository(session).count_assigned_since(
                    agent_id, since
                )
        except PersistenceFailure as e:
            logger.warning(f"Availability unavailable for agent {agent_id}: {e}")
            return FALLBACK_AVAILABILITY
        return availability_for(recent)

    def rank(self, scores: list[AgentScore]) -> list[AgentScore]:
        """Descending by score; equal scores keep their input order."""
        return sorted(scores, key=lambda item: item.score, reverse=True)

    def select(
        self,
        job: Job,
        candidates: list[Agent] | None = None,
        limit: int | None = None,
    ) -> list[AgentScore]:
        """Match, score, rank and truncate in one call.

        Args:
            job: Job being distributed.
            candidates: Agent pool. Defaults to all active auto-accepting
                agents.
            limit: Maximum agents returned. Defaults to the configured
                agents-per-job cap.

        """
        if candidates is None:
            with self.database.session() as session:
                candidates = AgentRepository(session).get_available()

        matched = self.match(job, candidates)
        ranked = self.rank([self.score(job, agent) for agent in matched])
        for item in ranked:
            logger.debug(
                f"Agent {item.agent_name}: {item.score:.2f} "
                f"(skill: {item.factors.skill_match:.2f}, "
                f"reputation: {item.factors.reputation:.2f}, "
                f"success: {item.factors.success_rate:.2f}, "
                f"availability: {item.factors.availability:.2f})"
            )
        return ranked[: limit or self.settings.max_agents_per_job]


def skill_level_passes(agent_level: str | None, job_level: str | None) -> bool:
    """Agent level must reach the job level; unknown levels always pass."""
    agent_index = skill_index(agent_level)
    job_index = skill_index(job_level)
    if agent_index is None or job_index is None:
        return True
    return agent_index >= job_index


def skill_match(job: Job, agent: Agent) -> float:
    """Tag coverage of the job plus a bonus for a fitting classification."""
    job_tags = set(job.tags or [])
    if not job_tags:
        ratio = 1.0
    else:
        ratio = len(job_tags & set(agent.tags or [])) / len(job_tags)

    bonus = 0.0
    agent_level = (agent.classification or "").strip().lower()
    job_level = (job.skill_level or "").strip().lower()
    agent_index = skill_index(agent_level)
    job_index = skill_index(job_level)
    if agent_level and agent_level == job_level:
        bonus = 0.2
    elif agent_index is not None and job_index is not None:
        if agent_index == job_index + 1:
            bonus = 0.1
    return min(ratio + bonus, 1.0)


def availability_for(recent_assignments: int) -> float:
    """Stepped availability from the trailing-week assignment count."""
    if recent_assignments == 0:
        return 1.0
    if recent_assignments <= 3:
        return 0.8
    if recent_assignments <= 6:
        return 0.6
    if recent_assignments <= 10:
        return 0.4
    return 0.2
