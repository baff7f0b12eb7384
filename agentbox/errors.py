"""
Error taxonomy.

Non-zero exit codes are *not* errors: ``Executor.execute`` returns them in an
``ExecutionResult``. The exceptions below are reserved for configuration,
policy and security problems, plus transport failures from the container CLI.
"""

from __future__ import annotations

from typing import Any, Optional


class AgentboxError(Exception):
    """Base class for every error raised by agentbox."""


class ValidationError(AgentboxError):
    """A batch failed validation before any work started."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ConfigurationError(AgentboxError):
    """Executor configuration is missing or invalid."""


class SecurityError(AgentboxError):
    """An unsupported or unsafe operation was attempted."""


class PermissionDeniedError(AgentboxError):
    """The permission gate refused an action. The sandbox was not touched."""

    def __init__(self, message: str, reason: str = "", assessment: Any = None):
        super().__init__(message)
        self.reason = reason
        self.assessment = assessment


class ExecutionError(AgentboxError):
    """A helper command backing a file operation exited non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ContainerRuntimeError(AgentboxError):
    """The container runtime rejected a call (daemon down, no such container...)."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class AgentNotFoundError(AgentboxError, KeyError):
    """No agent with the given id is registered."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")

    def __str__(self) -> str:
        return self.args[0]


class AgentBusyError(AgentboxError):
    """An execution for this agent id is already in flight."""
