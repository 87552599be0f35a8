"""Unit tests for batch processing, the dispatch queue and the timeout sweep."""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from job_executor.exceptions import NotFoundError
from job_executor.repositories import (
    AssignmentRepository,
    DistributionRepository,
    JobRepository,
)
from job_executor.schemas.models import JobStatus, WorkStatus
from job_executor.services import DispatchQueue, Orchestrator
from tests.utils.factories import (
    BASE_TIME,
    create_agent,
    create_distribution,
    create_job,
    persist,
)
from tests.utils.http_mocks import fail_with, reply


def job_state(database, job_id):
    """Fresh job status and its distribution, if any."""
    with database.session() as session:
        job = JobRepository(session).get_by_id(job_id)
        record = DistributionRepository(session).get_by_job(job_id)
    return job.status, record


def legs_of(database, distribution_id):
    """Assignments of a distribution keyed by agent id."""
    with database.session() as session:
        assignments = AssignmentRepository(session).list_for_distribution(
            distribution_id
        )
    return {a.agent_id: a for a in assignments}


class StoppingJobSource:
    """Job source that asks the loop to stop once it has been polled."""

    def __init__(self, stop_event: asyncio.Event):
        self.stop_event = stop_event
        self.calls = 0

    def fetch_pending(self, limit: int):
        self.calls += 1
        self.stop_event.set()
        return []


class TestProcessBatch:
    """Test batch distribution."""

    @pytest.mark.asyncio
    async def test_no_eligible_agents_cancels_job(self, orchestrator, database):
        """Test a job nobody qualifies for is cancelled without a record."""
        persist(database, create_agent(tags=["cooking"]))
        job = create_job(tags=["python"])
        persist(database, job)

        report = await orchestrator.process_batch([job])

        assert report.cancelled == 1
        assert report.distributed == 0
        status, record = job_state(database, job.id)
        assert status == JobStatus.CANCELLED
        assert record is None

    @pytest.mark.asyncio
    async def test_distributes_to_ranked_agents(
        self, orchestrator, database, agent_server
    ):
        """Test eligible jobs get a distribution capped at the agent limit."""
        agents = [create_agent() for _ in range(4)]
        job = create_job()
        persist(database, *agents, job)
        for agent in agents:
            agent_server.route(agent.address, reply("ok"))

        report = await orchestrator.process_batch([job])
        await orchestrator.drain()

        assert report.distributed == 1
        assert report.success_count == 1
        status, record = job_state(database, job.id)
        assert record.id == report.distribution_ids[0]
        assert record.total_agents == 3
        assert status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_is_isolated_per_job(
        self, orchestrator, database, agent_server
    ):
        """Test one job's unexpected error does not stop the batch."""
        agent = create_agent()
        first, broken, last = create_job(), create_job(), create_job()
        persist(database, agent, first, broken, last)
        agent_server.route(agent.address, reply("ok"))
        original_select = orchestrator.scorer.select

        def select(job, *args, **kwargs):
            if job.id == broken.id:
                raise RuntimeError("scoring exploded")
            return original_select(job, *args, **kwargs)

        with patch.object(orchestrator.scorer, "select", side_effect=select):
            report = await orchestrator.process_batch([first, broken, last])
            await orchestrator.drain()

        assert report.processed == 3
        assert [f.job_id for f in report.failed] == [broken.id]
        assert "scoring exploded" in report.failed[0].error
        assert job_state(database, broken.id)[0] == JobStatus.CANCELLED
        assert job_state(database, first.id)[1] is not None

    @pytest.mark.asyncio
    async def test_incomplete_job_rejected(self, orchestrator, database):
        """Test jobs missing required fields are reported and left open."""
        persist(database, create_agent())
        job = create_job(category="")
        persist(database, job)

        report = await orchestrator.process_batch([job])

        assert report.rejected[0].job_id == job.id
        assert "category" in report.rejected[0].error
        assert job_state(database, job.id) == (JobStatus.OPEN, None)

    @pytest.mark.asyncio
    async def test_already_distributed_job_skipped(self, orchestrator, database):
        """Test a job with a distribution is not distributed again."""
        agent = create_agent()
        job = create_job(status=JobStatus.DISTRIBUTED)
        record, legs = create_distribution(job, [agent])
        persist(database, agent, job, record, *legs)

        report = await orchestrator.process_batch([job])

        assert report.skipped == 1
        assert database.table_counts()["distribution_records"] == 1

    @pytest.mark.asyncio
    async def test_unresolved_when_all_legs_fail(
        self, orchestrator, database, agent_server
    ):
        """Test a distribution without a completed leg stays in progress."""
        agent = create_agent()
        job = create_job()
        persist(database, agent, job)
        agent_server.route(agent.address, fail_with(400))

        await orchestrator.process_batch([job])
        await orchestrator.drain()

        status, record = job_state(database, job.id)
        assert status == JobStatus.IN_PROGRESS
        assert record.winning_agent_id is None
        assert orchestrator.queue.summary.dispatched == 1
        assert orchestrator.queue.summary.resolved == 0


class TestDispatchQueue:
    """Test the worker queue."""

    @pytest.mark.asyncio
    async def test_handler_errors_are_counted(self):
        """Test a failing handler is counted and later items still run."""
        handled = []

        async def handler(distribution_id):
            if distribution_id == "bad":
                raise RuntimeError("boom")
            handled.append(distribution_id)
            return True

        queue = DispatchQueue(handler, workers=2)
        for item in ("a", "bad", "b"):
            await queue.put(item)

        summary = await queue.drain()
        await queue.stop()

        assert sorted(handled) == ["a", "b"]
        assert summary.failed == 1
        assert summary.resolved == 2
        assert queue.running is False

    @pytest.mark.asyncio
    async def test_drain_empty_queue(self):
        """Test draining with nothing queued returns immediately."""
        queue = DispatchQueue(lambda distribution_id: None)

        summary = await queue.drain()

        assert summary.dispatched == 0


class TestTimeoutSweep:
    """Test forced resolution of overdue distributions."""

    @pytest.mark.asyncio
    async def test_expires_without_result(self, orchestrator, database):
        """Test live legs time out and the job expires."""
        agents = [create_agent(), create_agent()]
        job = create_job(status=JobStatus.DISTRIBUTED)
        record, legs = create_distribution(job, agents)
        legs[1].work_status = WorkStatus.FAILED
        persist(database, *agents, job, record, *legs)

        outcomes = await orchestrator.sweep_timeouts(BASE_TIME + timedelta(hours=2))

        assert len(outcomes) == 1
        assert outcomes[0].timed_out == 1
        assert outcomes[0].expired is True
        assert outcomes[0].winner_agent_id is None
        assert job_state(database, job.id)[0] == JobStatus.EXPIRED
        stored = legs_of(database, record.id)
        assert stored[agents[0].id].work_status == WorkStatus.TIMEOUT
        assert stored[agents[1].id].work_status == WorkStatus.FAILED

    @pytest.mark.asyncio
    async def test_selects_completed_result(self, orchestrator, database):
        """Test a completed leg wins when the deadline passes."""
        agents = [create_agent(), create_agent()]
        job = create_job(status=JobStatus.IN_PROGRESS)
        record, legs = create_distribution(job, agents)
        legs[0].work_status = WorkStatus.WORKING
        legs[0].started_at = BASE_TIME
        legs[1].work_status = WorkStatus.COMPLETED
        legs[1].started_at = BASE_TIME
        legs[1].completed_at = BASE_TIME + timedelta(minutes=5)
        legs[1].execution_result = "partial but valid"
        persist(database, *agents, job, record, *legs)

        outcomes = await orchestrator.sweep_timeouts(BASE_TIME + timedelta(hours=2))

        assert outcomes[0].winner_agent_id == agents[1].id
        assert outcomes[0].expired is False
        assert job_state(database, job.id)[0] == JobStatus.COMPLETED
        assert legs_of(database, record.id)[agents[0].id].work_status == (
            WorkStatus.TIMEOUT
        )

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, orchestrator, database):
        """Test a second sweep finds nothing left to resolve."""
        agent = create_agent()
        job = create_job(status=JobStatus.DISTRIBUTED)
        record, legs = create_distribution(job, [agent])
        persist(database, agent, job, record, *legs)
        later = BASE_TIME + timedelta(hours=2)

        await orchestrator.sweep_timeouts(later)

        assert await orchestrator.sweep_timeouts(later) == []
        outcome = await orchestrator.timeout_distribution(record.id)
        assert outcome.skipped is True

    @pytest.mark.asyncio
    async def test_deadline_is_earliest_of_job_and_window(
        self, orchestrator, database
    ):
        """Test the job deadline can end a distribution before the window."""
        agent_a, agent_b = create_agent(), create_agent()
        urgent = create_job(
            status=JobStatus.DISTRIBUTED, deadline=BASE_TIME + timedelta(minutes=10)
        )
        relaxed = create_job(status=JobStatus.DISTRIBUTED)
        urgent_record, urgent_legs = create_distribution(urgent, [agent_a])
        relaxed_record, relaxed_legs = create_distribution(relaxed, [agent_b])
        persist(
            database,
            agent_a,
            agent_b,
            urgent,
            relaxed,
            urgent_record,
            relaxed_record,
            *urgent_legs,
            *relaxed_legs,
        )

        outcomes = await orchestrator.sweep_timeouts(BASE_TIME + timedelta(minutes=20))

        assert [o.distribution_id for o in outcomes] == [urgent_record.id]
        assert job_state(database, relaxed.id)[0] == JobStatus.DISTRIBUTED

    @pytest.mark.asyncio
    async def test_unknown_distribution(self, orchestrator):
        """Test forcing a missing distribution raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await orchestrator.timeout_distribution("missing")


class TestScheduledLoop:
    """Test the processing cycle and loop."""

    @pytest.mark.asyncio
    async def test_run_once(self, orchestrator, database, agent_server, clock):
        """Test one cycle distributes, resolves and reports."""
        agents = [create_agent(), create_agent()]
        job = create_job()
        persist(database, *agents, job)
        for agent in agents:
            agent_server.route(agent.address, reply("answer"))

        report = await orchestrator.run_once()

        assert report.batch.distributed == 1
        assert report.resolved == 1
        assert report.sweeps == []
        assert report.started_at == clock()
        status, record = job_state(database, job.id)
        assert status == JobStatus.COMPLETED
        assert record.winning_agent_id == agents[0].id
        assert record.response_count == 2

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, database, settings, agent_client):
        """Test the loop exits when the stop event is set and closes workers."""
        stop_event = asyncio.Event()
        source = StoppingJobSource(stop_event)
        orchestrator = Orchestrator.build(
            settings, database, agent_client, job_source=source
        )

        await asyncio.wait_for(orchestrator.run_forever(stop_event), timeout=5)

        assert source.calls == 1
        assert orchestrator.queue.running is False

    @pytest.mark.asyncio
    async def test_run_forever_survives_cycle_errors(
        self, database, settings, agent_client
    ):
        """Test a failing cycle is logged and the loop keeps polling."""
        stop_event = asyncio.Event()
        orchestrator = Orchestrator.build(settings, database, agent_client)
        calls = []

        async def run_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("cycle failed")
            stop_event.set()

        with patch.object(orchestrator, "run_once", side_effect=run_once):
            await asyncio.wait_for(orchestrator.run_forever(stop_event), timeout=5)

        assert len(calls) == 2
