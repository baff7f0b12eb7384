"""
Orchestration Data Models — what goes into a batch and what comes out.

AgentTask describes one unit of work. TaskSpec adds an id and dependencies for
DAG scheduling. SubAgentState is the registry row for a spawned agent.
OrchestrationResult aggregates a batch. The Agent and AgentFactory protocols
are the only things the orchestrator needs from the LLM side.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Literal, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field

AgentStatus = Literal["pending", "running", "completed", "failed"]


class AgentConfig(BaseModel):
    """How to build an agent. Unknown keys are kept for the factory."""

    name: Optional[str] = None
    role: Optional[str] = None
    model: str = ""  # empty = factory default
    temperature: Optional[float] = None
    system_prompt: Optional[str] = None
    tools: list[str] = Field(default_factory=list)
    max_iterations: Optional[int] = None

    model_config = {"extra": "allow"}


class AgentContext(BaseModel):
    conversation_id: Optional[str] = None
    parent_agent_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AgentStep(BaseModel):
    step_number: int
    thought: str = ""
    action: dict[str, Any] = Field(default_factory=dict)
    observation: Optional[str] = None
    tokens: int = 0
    cost: float = 0.0
    timestamp: float = Field(default_factory=time.time)


class AgentResult(BaseModel):
    """Outcome an agent reports for one task."""

    success: bool
    status: str = "completed"
    final_response: Optional[str] = None
    error: Optional[str] = None
    steps: list[AgentStep] = Field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    duration: float = 0.0  # seconds


class AgentTask(BaseModel):
    """One task for ``execute_parallel`` / ``execute_sequential``."""

    task: str
    config: AgentConfig = Field(default_factory=AgentConfig)
    context: Optional[AgentContext] = None


class TaskSpec(AgentTask):
    """A task inside a dependency graph. ``id`` is unique within its batch."""

    id: str
    depends_on: list[str] = Field(default_factory=list)


class SubAgentState(BaseModel):
    """Registry row for one spawned agent."""

    agent_id: str
    agent: Any = Field(exclude=True, repr=False)
    task: str
    status: AgentStatus = "pending"
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    result: Optional[AgentResult] = None
    error: Optional[str] = None

    model_config = {"arbitrary_types_allowed": True}

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class OrchestrationResult(BaseModel):
    """Outcome of a batch. ``success`` is False whenever anything went wrong."""

    success: bool
    agents: list[SubAgentState] = Field(default_factory=list)
    total_duration: float = 0.0
    total_tokens: int = 0
    total_cost: float = 0.0
    errors: list[str] = Field(default_factory=list)


@runtime_checkable
class Agent(Protocol):
    """An LLM-driven worker. ``id`` is optional; ``stop`` may be sync or async."""

    async def execute(self, task: str, context: AgentContext) -> AgentResult: ...

    def stop(self) -> Union[None, Awaitable[None]]: ...


class AgentFactory(Protocol):
    def create_agent(self, config: AgentConfig) -> Agent: ...
