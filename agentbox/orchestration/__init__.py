"""
Orchestration — run many agents in parallel, in sequence, or as a DAG.
"""

from __future__ import annotations

from agentbox.orchestration.models import (
    Agent,
    AgentConfig,
    AgentContext,
    AgentFactory,
    AgentResult,
    AgentStep,
    AgentTask,
    OrchestrationResult,
    SubAgentState,
    TaskSpec,
)
from agentbox.orchestration.orchestrator import AgentOrchestrator

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentContext",
    "AgentFactory",
    "AgentOrchestrator",
    "AgentResult",
    "AgentStep",
    "AgentTask",
    "OrchestrationResult",
    "SubAgentState",
    "TaskSpec",
]
