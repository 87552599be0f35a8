"""Unit tests for agent matching, scoring and ranking."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from job_executor.repositories import AssignmentRepository
from job_executor.schemas.models import WorkStatus
from job_executor.services.scorer import (
    FALLBACK_AVAILABILITY,
    availability_for,
    skill_level_passes,
    skill_match,
)
from tests.utils.factories import (
    BASE_TIME,
    create_agent,
    create_distribution,
    create_job,
    persist,
)


class TestFilterRules:
    """Test each eligibility rule in isolation."""

    def test_eligible_agent_passes(self, scorer, database):
        """Test a matching agent survives every rule."""
        agent = create_agent()
        persist(database, agent)

        assert scorer.match(create_job(), [agent]) == [agent]

    def test_inactive_and_manual_rejected(self, scorer, database):
        """Test inactive or manual-accept agents are filtered."""
        inactive = create_agent(is_active=False)
        manual = create_agent(auto_accept_jobs=False)
        persist(database, inactive, manual)

        assert scorer.match(create_job(), [inactive, manual]) == []

    def test_busy_agent_rejected(self, scorer, database):
        """Test an agent holding a live assignment is skipped."""
        busy, idle = create_agent(), create_agent()
        other_job = create_job()
        record, assignments = create_distribution(other_job, [busy])
        persist(database, busy, idle, other_job, record, *assignments)

        assert scorer.match(create_job(), [busy, idle]) == [idle]

    def test_finished_assignment_is_not_busy(self, scorer, database):
        """Test terminal legs do not block an agent."""
        agent = create_agent()
        other_job = create_job()
        record, assignments = create_distribution(other_job, [agent])
        assignments[0].work_status = WorkStatus.COMPLETED
        persist(database, agent, other_job, record, *assignments)

        assert scorer.match(create_job(), [agent]) == [agent]

    def test_skill_below_job_rejected(self, scorer, database):
        """Test an agent below the required level is filtered."""
        junior = create_agent(classification="beginner")
        senior = create_agent(classification="expert")
        persist(database, junior, senior)

        job = create_job(skill_level="advanced")

        assert scorer.match(job, [junior, senior]) == [senior]

    def test_unknown_skill_levels_pass(self, scorer, database):
        """Test unrecognised levels on either side never filter."""
        odd = create_agent(classification="wizard")
        persist(database, odd)

        assert scorer.match(create_job(skill_level="expert"), [odd]) == [odd]
        assert scorer.match(create_job(skill_level="guru"), [odd]) == [odd]

    def test_tag_overlap_required(self, scorer, database):
        """Test agents sharing no tag with the job are filtered."""
        unrelated = create_agent(tags=["cooking"])
        persist(database, unrelated)

        assert scorer.match(create_job(tags=["python"]), [unrelated]) == []
        assert scorer.match(create_job(tags=[]), [unrelated]) == [unrelated]

    def test_budget_rule(self, scorer, database):
        """Test free agents or prices within budget pass."""
        free = create_agent(is_free=True, price=500.0)
        cheap = create_agent(is_free=False, price=40.0)
        pricey = create_agent(is_free=False, price=80.0)
        unpriced = create_agent(is_free=False, price=None)
        persist(database, free, cheap, pricey, unpriced)
        candidates = [free, cheap, pricey, unpriced]

        assert scorer.match(create_job(max_budget=50.0), candidates) == [free, cheap]
        assert scorer.match(create_job(max_budget=None), candidates) == candidates

    def test_category_never_filters(self, scorer, database):
        """Test the job category plays no part in matching."""
        agent = create_agent()
        persist(database, agent)

        assert scorer.match(create_job(category="legal"), [agent]) == [agent]


class TestSkillFunctions:
    """Test skill helpers."""

    def test_skill_level_passes(self):
        """Test ordering on the skill scale."""
        assert skill_level_passes("advanced", "intermediate")
        assert skill_level_passes("advanced", "advanced")
        assert not skill_level_passes("beginner", "expert")
        assert skill_level_passes(None, "expert")

    def test_skill_match_exact_level_bonus(self):
        """Test full overlap plus an exact level is capped at 1."""
        job = create_job(tags=["python", "writing"], skill_level="intermediate")
        agent = create_agent(tags=["python", "writing"], classification="Intermediate")

        assert skill_match(job, agent) == 1.0

    def test_skill_match_one_level_above(self):
        """Test a one-level-higher agent earns the smaller bonus."""
        job = create_job(tags=["python", "writing"], skill_level="intermediate")
        agent = create_agent(tags=["python"], classification="advanced")

        assert skill_match(job, agent) == pytest.approx(0.6)

    def test_skill_match_no_bonus(self):
        """Test agents two levels above earn no bonus."""
        job = create_job(tags=["python", "writing"], skill_level="beginner")
        agent = create_agent(tags=["python"], classification="advanced")

        assert skill_match(job, agent) == pytest.approx(0.5)

    def test_skill_match_without_job_tags(self):
        """Test a job without tags counts as fully covered."""
        job = create_job(tags=[], skill_level="expert")
        agent = create_agent(tags=[], classification="beginner")

        assert skill_match(job, agent) == 1.0


class TestScoring:
    """Test composite scores and availability."""

    def test_weighted_score(self, scorer, database):
        """Test the weighted sum of all factors."""
        agent = create_agent(reputation=4.0, success_rate=0.8)
        persist(database, agent)

        result = scorer.score(create_job(), agent)

        assert result.factors.skill_match == 1.0
        assert result.factors.reputation == pytest.approx(0.8)
        assert result.factors.availability == 1.0
        assert result.score == pytest.approx(0.35 + 0.2 + 0.2 + 0.15)
        assert result.agent_address == agent.address

    def test_reputation_is_clamped(self, scorer, database):
        """Test reputations outside 0..5 are clamped."""
        agent = create_agent(reputation=9.0)
        persist(database, agent)

        assert scorer.score(create_job(), agent).factors.reputation == 1.0

    @pytest.mark.parametrize(
        ("recent", "expected"),
        [
            (0, 1.0),
            (1, 0.8),
            (3, 0.8),
            (4, 0.6),
            (6, 0.6),
            (7, 0.4),
            (10, 0.4),
            (11, 0.2),
        ],
    )
    def test_availability_steps(self, recent, expected):
        """Test the stepped availability table."""
        assert availability_for(recent) == expected

    def test_availability_counts_trailing_week(self, scorer, database, clock):
        """Test only assignments inside the window reduce availability."""
        agent = create_agent()
        entities = [agent]
        for days_ago in (1, 2, 30):
            job = create_job()
            record, legs = create_distribution(
                job, [agent], created_at=BASE_TIME - timedelta(days=days_ago)
            )
            legs[0].work_status = WorkStatus.COMPLETED
            entities.extend([job, record, *legs])
        persist(database, *entities)

        result = scorer.score(create_job(), agent)

        assert result.factors.availability == 0.8

    def test_availability_falls_back_on_store_error(self, scorer, database):
        """Test a failing count yields the neutral availability."""
        agent = create_agent()
        persist(database, agent)

        with patch.object(
            AssignmentRepository,
            "count_assigned_since",
            side_effect=SQLAlchemyError("database unavailable"),
        ):
            result = scorer.score(create_job(), agent)

        assert result.factors.availability == FALLBACK_AVAILABILITY


class TestRankingAndSelection:
    """Test ranking and the one-call selection."""

    def test_rank_descending_and_stable(self, scorer, database):
        """Test higher scores first with ties kept in input order."""
        twin_a = create_agent(reputation=3.0)
        twin_b = create_agent(reputation=3.0)
        star = create_agent(reputation=5.0, success_rate=1.0)
        persist(database, twin_a, twin_b, star)
        job = create_job()

        ranked = scorer.rank([scorer.score(job, a) for a in (twin_a, twin_b, star)])

        assert [item.agent_id for item in ranked] == [star.id, twin_a.id, twin_b.id]

    def test_select_defaults_to_available_pool_and_cap(self, scorer, database):
        """Test select reads the pool and truncates to the configured cap."""
        agents = [create_agent() for _ in range(5)]
        persist(database, *agents, create_agent(is_active=False))

        selected = scorer.select(create_job())

        assert len(selected) == 3
        assert [item.agent_id for item in selected] == [a.id for a in agents[:3]]

    def test_select_explicit_limit(self, scorer, database):
        """Test an explicit limit overrides the cap."""
        agents = [create_agent() for _ in range(4)]
        persist(database, *agents)

        assert len(scorer.select(create_job(), candidates=agents, limit=1)) == 1

    def test_select_no_match(self, scorer, database):
        """Test an empty result when nobody qualifies."""
        persist(database, create_agent(tags=["cooking"]))

        assert scorer.select(create_job(tags=["python"])) == []
