"""
Agent Orchestrator — spawning, running and aggregating sub-agents.

Three batch shapes are supported:
  - parallel:      every task at once, bounded by ``max_parallel``
  - sequential:    one task at a time, in input order
  - dependencies:  waves of a DAG; a wave is every task whose dependencies
                   have all reached a terminal state, and it runs in parallel

A failing agent never aborts its siblings. Its exception is recorded on its
SubAgentState and in the batch ``errors`` list, and the batch reports
``success=False``. In a DAG a failed task still releases its dependents;
callers inspect each state to spot failed ancestors.

The registry (agent id -> SubAgentState) is the only shared mutable state.
It lives on one event loop and each row is written only by the call that is
executing that agent.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import Counter
from typing import Any, Iterable, Optional, Union

import structlog

from agentbox.config import OrchestrationConfig
from agentbox.errors import AgentboxError, AgentBusyError, AgentNotFoundError, ValidationError
from agentbox.orchestration.models import (
    Agent,
    AgentConfig,
    AgentContext,
    AgentFactory,
    AgentResult,
    AgentTask,
    OrchestrationResult,
    SubAgentState,
    TaskSpec,
)

logger = structlog.get_logger(__name__)

_SHUTDOWN_TIMEOUT = 10.0


class AgentOrchestrator:
    """Registry and scheduler for sub-agents built by an injected factory."""

    def __init__(
        self,
        agent_factory: AgentFactory,
        config: Optional[OrchestrationConfig] = None,
        max_parallel: Optional[int] = None,
    ):
        self._factory = agent_factory
        limit = max_parallel if max_parallel is not None else (config or OrchestrationConfig()).max_parallel
        self._max_parallel = max(1, int(limit))

        # agent_id -> SubAgentState
        self._agents: dict[str, SubAgentState] = {}
        # agent_id -> set when the latest execution reached a terminal state
        self._done: dict[str, asyncio.Event] = {}
        self._in_flight: set[str] = set()
        self._background: dict[str, asyncio.Task] = {}

        self._semaphore = asyncio.Semaphore(self._max_parallel)

        logger.info("orchestration.initialized", max_parallel=self._max_parallel)

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    @property
    def running_count(self) -> int:
        return sum(1 for state in self._agents.values() if state.status == "running")

    async def spawn(
        self,
        task: str,
        config: Optional[AgentConfig] = None,
        context: Optional[AgentContext] = None,
    ) -> tuple[str, Agent]:
        """Create an agent and register it as pending. Never executes it."""
        agent = self._factory.create_agent(config or AgentConfig())

        agent_id = getattr(agent, "id", None)
        if not isinstance(agent_id, str) or not agent_id or agent_id in self._agents:
            agent_id = f"agent-{uuid.uuid4().hex[:12]}"

        self._agents[agent_id] = SubAgentState(agent_id=agent_id, agent=agent, task=task)
        self._done[agent_id] = asyncio.Event()

        logger.info("orchestration.spawn", agent_id=agent_id, task=task[:80])
        return agent_id, agent

    async def execute(self, agent_id: str, context: Optional[AgentContext] = None) -> AgentResult:
        """Run one agent once a slot is free. Failures are recorded, then re-raised."""
        state = self._require(agent_id)
        if agent_id in self._in_flight:
            raise AgentBusyError(f"Agent {agent_id} is already executing")

        self._in_flight.add(agent_id)
        done = self._done[agent_id]
        done.clear()
        try:
            async with self._semaphore:
                state.status = "running"
                state.start_time = time.time()
                state.end_time = None
                state.result = None
                state.error = None
                logger.info("orchestration.execute", agent_id=agent_id)

                try:
                    result = await state.agent.execute(state.task, context or AgentContext())
                except asyncio.CancelledError:
                    state.status = "failed"
                    state.error = "Execution cancelled"
                    state.end_time = time.time()
                    raise
                except Exception as exc:
                    state.status = "failed"
                    state.error = str(exc) or type(exc).__name__
                    state.end_time = time.time()
                    logger.warning("orchestration.agent_failed", agent_id=agent_id, error=state.error)
                    raise

                state.result = result
                state.end_time = time.time()
                if result.success:
                    state.status = "completed"
                else:
                    state.status = "failed"
                    state.error = result.final_response or result.error or "Agent execution failed"
                    logger.warning("orchestration.agent_failed", agent_id=agent_id, error=state.error)

                logger.info(
                    "orchestration.complete",
                    agent_id=agent_id,
                    status=state.status,
                    elapsed=round(state.duration or 0.0, 3),
                    tokens=result.total_tokens,
                )
                return result
        finally:
            self._in_flight.discard(agent_id)
            done.set()

    def execute_background(self, agent_id: str, context: Optional[AgentContext] = None) -> asyncio.Task:
        """Start ``execute`` detached. Errors land on the agent's state, not the caller."""
        self._require(agent_id)

        async def _run() -> Optional[AgentResult]:
            try:
                return await self.execute(agent_id, context)
            except AgentBusyError:
                logger.warning("orchestration.background_busy", agent_id=agent_id)
                return None
            except Exception as exc:
                state = self._agents.get(agent_id)
                if state is not None and not state.error:
                    state.error = str(exc) or type(exc).__name__
                logger.debug("orchestration.background_failed", agent_id=agent_id, exc_info=True)
                return None

        task = asyncio.create_task(_run())
        self._background[agent_id] = task
        task.add_done_callback(lambda _t: self._background.pop(agent_id, None))
        return task

    async def execute_parallel(self, tasks: Iterable[Union[AgentTask, dict[str, Any]]]) -> OrchestrationResult:
        started = time.monotonic()
        states, errors = await self._run_batch([_as_task(item) for item in tasks])
        return self._build_result([state for state in states if state is not None], errors, started)

    async def execute_sequential(self, tasks: Iterable[Union[AgentTask, dict[str, Any]]]) -> OrchestrationResult:
        started = time.monotonic()
        states: list[SubAgentState] = []
        errors: list[str] = []

        for item in tasks:
            spec = _as_task(item)
            try:
                agent_id, _ = await self.spawn(spec.task, spec.config, spec.context)
            except Exception as exc:
                errors.append(f"Failed to spawn agent: {exc}")
                continue

            state = self._agents[agent_id]
            states.append(state)
            try:
                await self.execute(agent_id, spec.context)
            except Exception as exc:
                errors.append(f"Agent {agent_id}: {exc}")
                continue
            if state.status == "failed":
                errors.append(f"Agent {agent_id}: {state.error}")

        return self._build_result(states, errors, started)

    async def execute_with_dependencies(
        self, tasks: Iterable[Union[TaskSpec, dict[str, Any]]]
    ) -> OrchestrationResult:
        """Run a task graph wave by wave. Stops with an error on a cycle."""
        started = time.monotonic()
        try:
            specs = _validate_graph(tasks)
        except ValidationError as exc:
            logger.warning("orchestration.invalid_graph", problems=exc.problems)
            return OrchestrationResult(success=False, errors=exc.problems, total_duration=time.monotonic() - started)

        completed: set[str] = set()
        states: list[SubAgentState] = []
        errors: list[str] = []
        wave = 0

        while len(completed) < len(specs):
            ready = [
                spec
                for spec in specs
                if spec.id not in completed and all(dep in completed for dep in spec.depends_on)
            ]
            if not ready:
                remaining = ", ".join(spec.id for spec in specs if spec.id not in completed)
                errors.append(f"Circular dependency detected. Remaining tasks: {remaining}")
                logger.warning("orchestration.cycle", remaining=remaining)
                break

            wave += 1
            logger.info("orchestration.wave", wave=wave, tasks=[spec.id for spec in ready])
            wave_states, wave_errors = await self._run_batch(ready)

            failed_ids = []
            for spec, state in zip(ready, wave_states):
                completed.add(spec.id)
                if state is None:
                    continue
                states.append(state)
                if state.status == "failed":
                    failed_ids.append(state.agent_id)
                    errors.append(f"Task {spec.id} (agent {state.agent_id}) failed: {state.error}")

            errors.extend(
                error for error in wave_errors if not any(agent_id in error for agent_id in failed_ids)
            )

        return self._build_result(states, errors, started)

    def get_status(self, agent_id: str) -> Optional[SubAgentState]:
        return self._agents.get(agent_id)

    async def get_result(self, agent_id: str) -> AgentResult:
        """Block until the agent has a result, starting it if it is still pending."""
        state = self._require(agent_id)

        if state.status == "pending" and agent_id not in self._in_flight:
            return await self.execute(agent_id)

        if state.status == "running" or agent_id in self._in_flight:
            await self._done[agent_id].wait()

        if state.result is None:
            raise AgentboxError(f"Agent {agent_id} failed: {state.error}")
        return state.result

    def check_result(self, agent_id: str) -> Optional[AgentResult]:
        return self._require(agent_id).result

    async def stop(self, agent_id: str) -> None:
        """Ask the agent to stop. The registry entry stays."""
        state = self._require(agent_id)
        outcome = state.agent.stop()
        if inspect.isawaitable(outcome):
            await outcome
        logger.info("orchestration.stop", agent_id=agent_id)

    def list_agents(self) -> list[SubAgentState]:
        return list(self._agents.values())

    def clear_completed(self) -> int:
        """Drop every completed or failed entry. Returns how many were removed."""
        finished = [
            agent_id
            for agent_id, state in self._agents.items()
            if state.is_terminal and agent_id not in self._in_flight
        ]
        for agent_id in finished:
            del self._agents[agent_id]
            self._done.pop(agent_id, None)
        if finished:
            logger.debug("orchestration.cleared", count=len(finished))
        return len(finished)

    def get_stats(self) -> dict[str, int]:
        counts = Counter(state.status for state in self._agents.values())
        return {
            "total": len(self._agents),
            "pending": counts["pending"],
            "running": counts["running"],
            "completed": counts["completed"],
            "failed": counts["failed"],
        }

    async def shutdown(self) -> None:
        """Stop running agents and wait briefly for background executions."""
        logger.info("orchestration.shutting_down", running=self.running_count, background=len(self._background))

        for state in list(self._agents.values()):
            if state.status != "running":
                continue
            try:
                await self.stop(state.agent_id)
            except Exception as exc:
                logger.warning("orchestration.stop_failed", agent_id=state.agent_id, error=str(exc))

        if self._background:
            pending = list(self._background.values())
            try:
                await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=_SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("orchestration.shutdown_timeout", remaining=len(self._background))
                for task in pending:
                    task.cancel()

        logger.info("orchestration.shutdown_complete")

    async def _run_batch(
        self, specs: list[AgentTask]
    ) -> tuple[list[Optional[SubAgentState]], list[str]]:
        """Spawn then execute ``specs`` concurrently. States align with ``specs``; None = spawn failed."""
        errors: list[str] = []
        states: list[Optional[SubAgentState]] = []
        for spec in specs:
            try:
                agent_id, _ = await self.spawn(spec.task, spec.config, spec.context)
                states.append(self._agents[agent_id])
            except Exception as exc:
                errors.append(f"Failed to spawn agent: {exc}")
                states.append(None)

        runnable = [(state, spec) for state, spec in zip(states, specs) if state is not None]
        outcomes = await asyncio.gather(
            *(self.execute(state.agent_id, spec.context) for state, spec in runnable),
            return_exceptions=True,
        )

        for (state, _), outcome in zip(runnable, outcomes):
            if isinstance(outcome, BaseException):
                errors.append(f"Agent {state.agent_id}: {state.error or outcome}")
            elif state.status == "failed":
                errors.append(f"Agent {state.agent_id}: {state.error}")

        return states, errors

    def _build_result(self, states: list[SubAgentState], errors: list[str], started: float) -> OrchestrationResult:
        with_result = [state.result for state in states if state.result is not None]
        return OrchestrationResult(
            success=all(state.status == "completed" for state in states) and not errors,
            agents=[state.model_copy() for state in states],
            total_duration=time.monotonic() - started,
            total_tokens=sum(result.total_tokens for result in with_result),
            total_cost=sum(result.total_cost for result in with_result),
            errors=errors,
        )

    def _require(self, agent_id: str) -> SubAgentState:
        state = self._agents.get(agent_id)
        if state is None:
            raise AgentNotFoundError(agent_id)
        return state


def _as_task(item: Union[AgentTask, dict[str, Any]]) -> AgentTask:
    return item if isinstance(item, AgentTask) else AgentTask.model_validate(item)


def _validate_graph(tasks: Iterable[Union[TaskSpec, dict[str, Any]]]) -> list[TaskSpec]:
    specs = [item if isinstance(item, TaskSpec) else TaskSpec.model_validate(item) for item in tasks]
    problems: list[str] = []

    seen: set[str] = set()
    for spec in specs:
        if spec.id in seen:
            problems.append(f"Duplicate task id {spec.id}")
        seen.add(spec.id)

    for spec in specs:
        for dep in spec.depends_on:
            if dep not in seen:
                problems.append(f"Task {spec.id} depends on non-existent task {dep}")

    if problems:
        raise ValidationError(problems)
    return specs
