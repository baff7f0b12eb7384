"""Tests for agentbox.orchestration.orchestrator — spawning, scheduling and the registry."""

from __future__ import annotations

import asyncio

import pytest

from agentbox.config import OrchestrationConfig
from agentbox.errors import AgentboxError, AgentBusyError, AgentNotFoundError
from agentbox.orchestration import AgentConfig, AgentContext, AgentOrchestrator, AgentTask, TaskSpec


@pytest.fixture()
def orchestrator(agent_factory) -> AgentOrchestrator:
    return AgentOrchestrator(agent_factory, max_parallel=4)


async def _wait_running(orchestrator: AgentOrchestrator, agent_id: str) -> None:
    while orchestrator.get_status(agent_id).status != "running":
        await asyncio.sleep(0)


def _task(name: str, **extra) -> AgentTask:
    return AgentTask(task=name, config=AgentConfig(**extra))


# ---------------------------------------------------------------------------
# Spawning and single execution
# ---------------------------------------------------------------------------


class TestSpawnAndExecute:
    def test_limit_from_config(self, agent_factory):
        assert AgentOrchestrator(agent_factory, config=OrchestrationConfig(max_parallel=3)).max_parallel == 3
        assert AgentOrchestrator(agent_factory, max_parallel=0).max_parallel == 1

    @pytest.mark.asyncio
    async def test_spawn_registers_pending(self, orchestrator, agent_factory):
        agent_id, agent = await orchestrator.spawn("write tests")
        state = orchestrator.get_status(agent_id)
        assert state.status == "pending"
        assert state.task == "write tests"
        assert state.agent is agent
        assert agent_factory.tracker.started == []
        assert agent_id.startswith("agent-")

    @pytest.mark.asyncio
    async def test_spawn_uses_agent_id_when_unique(self, orchestrator):
        first, _ = await orchestrator.spawn("a", AgentConfig(agent_id="reviewer"))
        second, _ = await orchestrator.spawn("b", AgentConfig(agent_id="reviewer"))
        assert first == "reviewer"
        assert second != "reviewer"

    @pytest.mark.asyncio
    async def test_execute_success(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("build", AgentConfig(delay=0.01))
        result = await orchestrator.execute(agent_id)

        state = orchestrator.get_status(agent_id)
        assert result.final_response == "done: build"
        assert state.status == "completed"
        assert state.result is result
        assert state.duration is not None and state.duration >= 0

    @pytest.mark.asyncio
    async def test_execute_passes_context(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("build")
        await orchestrator.execute(agent_id, AgentContext(conversation_id="conv-1"))
        assert agent.contexts[0].conversation_id == "conv-1"

    @pytest.mark.asyncio
    async def test_execute_exception_is_recorded_and_raised(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("deploy", AgentConfig(fail="model overloaded"))
        with pytest.raises(RuntimeError, match="model overloaded"):
            await orchestrator.execute(agent_id)
        state = orchestrator.get_status(agent_id)
        assert state.status == "failed"
        assert state.error == "model overloaded"
        assert state.end_time is not None

    @pytest.mark.asyncio
    async def test_unsuccessful_result_marks_failed(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("refactor", AgentConfig(success=False))
        result = await orchestrator.execute(agent_id)
        assert result.success is False
        state = orchestrator.get_status(agent_id)
        assert state.status == "failed"
        assert state.error == "gave up on refactor"

    @pytest.mark.asyncio
    async def test_unknown_agent(self, orchestrator):
        assert orchestrator.get_status("nobody") is None
        with pytest.raises(AgentNotFoundError):
            await orchestrator.execute("nobody")
        with pytest.raises(KeyError):
            orchestrator.check_result("nobody")

    @pytest.mark.asyncio
    async def test_busy_agent(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("long job")
        agent.release = asyncio.Event()
        running = asyncio.create_task(orchestrator.execute(agent_id))
        await _wait_running(orchestrator, agent_id)

        with pytest.raises(AgentBusyError):
            await orchestrator.execute(agent_id)

        agent.release.set()
        await running
        assert orchestrator.get_status(agent_id).status == "completed"


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestParallel:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_siblings(self, orchestrator):
        result = await orchestrator.execute_parallel([
            _task("a"),
            _task("b", fail="boom"),
            {"task": "c", "config": {"tokens": 5, "cost": 0.25}},
        ])

        assert result.success is False
        assert [state.status for state in result.agents] == ["completed", "failed", "completed"]
        assert len(result.errors) == 1
        assert result.errors[0] == f"Agent {result.agents[1].agent_id}: boom"
        assert result.total_tokens == 15
        assert result.total_cost == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_all_succeed(self, orchestrator):
        result = await orchestrator.execute_parallel([_task("a"), _task("b")])
        assert result.success is True
        assert result.errors == []
        assert result.total_duration >= 0

    @pytest.mark.asyncio
    async def test_max_parallel_bound(self, agent_factory):
        orchestrator = AgentOrchestrator(agent_factory, max_parallel=2)
        result = await orchestrator.execute_parallel([_task(f"t{i}", delay=0.02) for i in range(6)])
        assert result.success is True
        assert agent_factory.tracker.peak == 2

    @pytest.mark.asyncio
    async def test_tasks_overlap(self, agent_factory, orchestrator):
        await orchestrator.execute_parallel([_task(f"t{i}", delay=0.02) for i in range(3)])
        assert agent_factory.tracker.peak == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator):
        result = await orchestrator.execute_parallel([])
        assert result.success is True
        assert result.agents == []

    @pytest.mark.asyncio
    async def test_result_is_a_snapshot(self, orchestrator):
        result = await orchestrator.execute_parallel([_task("a")])
        snapshot = result.agents[0]
        started, ended = snapshot.start_time, snapshot.end_time

        await asyncio.sleep(0.01)
        await orchestrator.execute(snapshot.agent_id)

        assert result.agents[0].start_time == started
        assert result.agents[0].end_time == ended
        assert orchestrator.get_status(snapshot.agent_id).start_time > started


class TestSequential:
    @pytest.mark.asyncio
    async def test_runs_in_order_one_at_a_time(self, orchestrator, agent_factory):
        result = await orchestrator.execute_sequential([_task("a", delay=0.01), _task("b"), _task("c")])
        assert result.success is True
        assert agent_factory.tracker.started == ["a", "b", "c"]
        assert agent_factory.tracker.peak == 1

    @pytest.mark.asyncio
    async def test_continues_after_failure(self, orchestrator, agent_factory):
        result = await orchestrator.execute_sequential([_task("a", fail="nope"), _task("b")])
        assert result.success is False
        assert agent_factory.tracker.finished == ["a", "b"]
        assert result.agents[1].status == "completed"
        assert result.errors == [f"Agent {result.agents[0].agent_id}: nope"]


class TestDependencies:
    @pytest.mark.asyncio
    async def test_diamond(self, orchestrator, agent_factory):
        result = await orchestrator.execute_with_dependencies([
            TaskSpec(id="d", task="d", depends_on=["b", "c"]),
            TaskSpec(id="b", task="b", depends_on=["a"]),
            TaskSpec(id="c", task="c", depends_on=["a"]),
            TaskSpec(id="a", task="a"),
        ])

        started = agent_factory.tracker.started
        assert result.success is True
        assert started[0] == "a"
        assert set(started[1:3]) == {"b", "c"}
        assert started[3] == "d"
        assert len(result.agents) == 4

    @pytest.mark.asyncio
    async def test_accepts_dicts(self, orchestrator, agent_factory):
        result = await orchestrator.execute_with_dependencies([
            {"id": "lint", "task": "lint"},
            {"id": "test", "task": "test", "depends_on": ["lint"]},
        ])
        assert result.success is True
        assert agent_factory.tracker.started == ["lint", "test"]

    @pytest.mark.asyncio
    async def test_cycle(self, orchestrator, agent_factory):
        result = await orchestrator.execute_with_dependencies([
            TaskSpec(id="a", task="a", depends_on=["b"]),
            TaskSpec(id="b", task="b", depends_on=["a"]),
            TaskSpec(id="c", task="c"),
        ])
        assert result.success is False
        assert agent_factory.tracker.started == ["c"]
        assert result.errors == ["Circular dependency detected. Remaining tasks: a, b"]

    @pytest.mark.asyncio
    async def test_missing_dependency(self, orchestrator, agent_factory):
        result = await orchestrator.execute_with_dependencies([TaskSpec(id="b", task="b", depends_on=["z"])])
        assert result.success is False
        assert result.errors == ["Task b depends on non-existent task z"]
        assert result.agents == []
        assert agent_factory.created == []

    @pytest.mark.asyncio
    async def test_duplicate_ids(self, orchestrator, agent_factory):
        result = await orchestrator.execute_with_dependencies([
            TaskSpec(id="a", task="first"),
            TaskSpec(id="a", task="second"),
        ])
        assert result.errors == ["Duplicate task id a"]
        assert agent_factory.created == []

    @pytest.mark.asyncio
    async def test_failed_task_still_releases_dependents(self, orchestrator, agent_factory):
        result = await orchestrator.execute_with_dependencies([
            TaskSpec(id="a", task="a", config=AgentConfig(fail="boom")),
            TaskSpec(id="b", task="b", depends_on=["a"]),
        ])
        assert agent_factory.tracker.started == ["a", "b"]
        assert result.success is False
        failed = result.agents[0]
        assert result.errors == [f"Task a (agent {failed.agent_id}) failed: boom"]
        assert result.agents[1].status == "completed"


# ---------------------------------------------------------------------------
# Results, background work and the registry
# ---------------------------------------------------------------------------


class TestResults:
    @pytest.mark.asyncio
    async def test_get_result_runs_pending_agent(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("audit")
        result = await orchestrator.get_result(agent_id)
        assert result.final_response == "done: audit"

    @pytest.mark.asyncio
    async def test_get_result_waits_for_running_agent(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("audit")
        agent.release = asyncio.Event()
        orchestrator.execute_background(agent_id)
        await _wait_running(orchestrator, agent_id)

        waiter = asyncio.create_task(orchestrator.get_result(agent_id))
        await asyncio.sleep(0)
        assert not waiter.done()
        agent.release.set()
        assert (await waiter).success is True

    @pytest.mark.asyncio
    async def test_get_result_of_failed_agent(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("audit", AgentConfig(fail="crashed"))
        await orchestrator.execute_background(agent_id)
        with pytest.raises(AgentboxError, match="crashed"):
            await orchestrator.get_result(agent_id)

    @pytest.mark.asyncio
    async def test_check_result_never_blocks(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("audit")
        assert orchestrator.check_result(agent_id) is None
        await orchestrator.execute(agent_id)
        assert orchestrator.check_result(agent_id).success is True

    @pytest.mark.asyncio
    async def test_background_failure_stays_on_state(self, orchestrator):
        agent_id, _ = await orchestrator.spawn("flaky", AgentConfig(fail="timeout"))
        task = orchestrator.execute_background(agent_id)
        assert await task is None
        state = orchestrator.get_status(agent_id)
        assert state.status == "failed"
        assert state.error == "timeout"


    @pytest.mark.asyncio
    async def test_second_background_run_leaves_first_untouched(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("build")
        agent.release = asyncio.Event()
        first = orchestrator.execute_background(agent_id)
        await _wait_running(orchestrator, agent_id)

        assert await orchestrator.execute_background(agent_id) is None
        assert orchestrator.get_status(agent_id).error is None

        agent.release.set()
        assert (await first).success is True
        state = orchestrator.get_status(agent_id)
        assert state.status == "completed"
        assert state.error is None


class TestRegistry:
    @pytest.mark.asyncio
    async def test_stop_sync_agent(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("x")
        await orchestrator.stop(agent_id)
        assert agent.stopped is True
        assert orchestrator.get_status(agent_id) is not None

    @pytest.mark.asyncio
    async def test_stop_async_agent(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("x")
        stopped = []

        async def stop():
            stopped.append(True)

        agent.stop = stop
        await orchestrator.stop(agent_id)
        assert stopped == [True]

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, orchestrator):
        await orchestrator.execute_parallel([_task("ok"), _task("bad", fail="x")])
        await orchestrator.spawn("waiting")

        assert orchestrator.get_stats() == {"total": 3, "pending": 1, "running": 0, "completed": 1, "failed": 1}
        assert len(orchestrator.list_agents()) == 3

        assert orchestrator.clear_completed() == 2
        assert orchestrator.get_stats()["total"] == 1
        assert orchestrator.clear_completed() == 0

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_and_drains_background(self, orchestrator):
        agent_id, agent = await orchestrator.spawn("long job")
        agent.release = asyncio.Event()

        def stop():
            agent.stopped = True
            agent.release.set()

        agent.stop = stop
        task = orchestrator.execute_background(agent_id)
        await _wait_running(orchestrator, agent_id)

        await orchestrator.shutdown()
        assert agent.stopped is True
        assert task.done()
        assert orchestrator.get_status(agent_id).status == "completed"
