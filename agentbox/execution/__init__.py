"""
Execution — sandboxes that run agent commands and file operations.
"""

from __future__ import annotations

from agentbox.execution.base import (
    ContainerRuntime,
    ExecuteOptions,
    ExecutionResult,
    Executor,
    FileSystem,
    ProcessExecutor,
)
from agentbox.execution.container import ContainerExecutor
from agentbox.execution.devcontainer import DevContainerExecutor
from agentbox.execution.docker_runtime import DockerCliRuntime
from agentbox.execution.factory import DetectionResult, ExecutorFactory
from agentbox.execution.native import NativeExecutor
from agentbox.execution.platform import LocalFileSystem, LocalProcessExecutor

__all__ = [
    "ContainerExecutor",
    "ContainerRuntime",
    "DetectionResult",
    "DevContainerExecutor",
    "DockerCliRuntime",
    "ExecuteOptions",
    "ExecutionResult",
    "Executor",
    "ExecutorFactory",
    "FileSystem",
    "LocalFileSystem",
    "LocalProcessExecutor",
    "NativeExecutor",
    "ProcessExecutor",
]
