"""
Executor Factory — sandbox auto-detection and backend construction.

Detection priority:

    1. devcontainer  a devcontainer.json under the project and a reachable engine
    2. docker        a Dockerfile (or compose file) in the project and a reachable engine
    3. native        always available

``create_executor`` resolves ``mode: auto`` through ``detect``. An explicit
mode is honoured or refused, never swapped for a different backend.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import structlog

from agentbox.config import DockerConfig, ExecutionConfig
from agentbox.errors import ConfigurationError
from agentbox.execution.base import ContainerRuntime, ExecutionMode, Executor, FileSystem, ProcessExecutor
from agentbox.execution.container import ContainerExecutor
from agentbox.execution.devcontainer import (
    DevContainerDescriptor,
    DevContainerExecutor,
    find_devcontainer_config,
    parse_devcontainer,
)
from agentbox.execution.docker_runtime import DockerCliRuntime
from agentbox.execution.native import NativeExecutor
from agentbox.execution.platform import LocalFileSystem, LocalProcessExecutor
from agentbox.permissions.manager import PermissionManager

logger = structlog.get_logger(__name__)

SUPPORTED_MODES: tuple[ExecutionMode, ...] = ("native", "docker", "devcontainer")

_DOCKER_MARKERS = ("Dockerfile", "docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


@dataclass
class DetectionResult:
    mode: ExecutionMode
    available: bool
    reason: str
    config_path: Optional[str] = None
    devcontainer_config: Optional[DevContainerDescriptor] = None


class ExecutorFactory:
    """Builds executors that share one permission manager and one set of capabilities."""

    def __init__(
        self,
        permission_manager: Optional[PermissionManager] = None,
        fs: Optional[FileSystem] = None,
        process: Optional[ProcessExecutor] = None,
        runtime: Optional[ContainerRuntime] = None,
    ):
        self._permissions = permission_manager or PermissionManager()
        self._fs = fs or LocalFileSystem()
        self._process = process or LocalProcessExecutor()
        self._runtime = runtime or DockerCliRuntime()

    @property
    def permission_manager(self) -> PermissionManager:
        return self._permissions

    async def detect_available_modes(self, project_dir: str) -> list[DetectionResult]:
        """Every candidate backend for the project, in priority order. Native is always last."""
        project_dir = str(project_dir)
        results: list[DetectionResult] = []
        runtime_up: Optional[bool] = None

        async def runtime_available() -> bool:
            nonlocal runtime_up
            if runtime_up is None:
                runtime_up = await self._runtime.ping()
            return runtime_up

        devcontainer_path = await find_devcontainer_config(project_dir, self._fs)
        if devcontainer_path:
            results.append(await self._detect_devcontainer(devcontainer_path, runtime_available))

        for marker in _DOCKER_MARKERS:
            path = os.path.join(project_dir, marker)
            if not await self._fs.exists(path):
                continue
            if marker != "Dockerfile":
                results.append(
                    DetectionResult("docker", False, f"{marker} found (Docker Compose is not supported)", path)
                )
            elif await runtime_available():
                results.append(DetectionResult("docker", True, "Dockerfile found", path))
            else:
                results.append(DetectionResult("docker", False, "Dockerfile found but Docker is not available", path))

        results.append(DetectionResult("native", True, "Native execution always available"))
        return results

    async def detect(self, project_dir: str) -> DetectionResult:
        """The highest-priority backend that can actually run."""
        candidates = await self.detect_available_modes(project_dir)
        best = next(candidate for candidate in candidates if candidate.available)
        if best.mode == "native":
            skipped = [candidate.reason for candidate in candidates if not candidate.available]
            if skipped:
                best = DetectionResult("native", True, f"Falling back to native: {'; '.join(skipped)}")
        logger.info("executor.detect", project_dir=str(project_dir), mode=best.mode, reason=best.reason)
        return best

    async def recommend_mode(self, config: ExecutionConfig) -> DetectionResult:
        if config.mode == "auto":
            return await self.detect(str(config.project_dir))
        if config.mode not in SUPPORTED_MODES:
            return DetectionResult("native", False, f"Unknown execution mode: {config.mode}")
        if config.mode == "native":
            return DetectionResult("native", True, "Explicitly configured")
        available = await self._runtime.ping()
        reason = "Explicitly configured" if available else "Explicitly configured but Docker is not available"
        return DetectionResult(config.mode, available, reason)  # type: ignore[arg-type]

    async def create_executor(self, config: ExecutionConfig) -> Executor:
        """Construct (but do not initialize) the backend for ``config``."""
        mode = config.mode
        if mode == "auto":
            detection = await self.detect(str(config.project_dir))
            mode = detection.mode
            if mode == "docker" and config.docker is None and detection.config_path:
                config = config.model_copy(
                    update={"docker": DockerConfig(dockerfile=os.path.basename(detection.config_path))}
                )

        if mode not in SUPPORTED_MODES:
            raise ConfigurationError(f"Unknown execution mode: {mode}")

        if mode in ("docker", "devcontainer") and not await self._runtime.ping():
            raise ConfigurationError(f"Execution mode '{mode}' requires Docker, which is not available")

        logger.info("executor.create", mode=mode, project_dir=str(config.project_dir))
        if mode == "native":
            return NativeExecutor(config, self._permissions, fs=self._fs, process=self._process)
        if mode == "docker":
            return ContainerExecutor(config, self._permissions, self._runtime)
        return DevContainerExecutor(config, self._permissions, self._runtime, fs=self._fs)

    async def _detect_devcontainer(self, path: str, runtime_available) -> DetectionResult:
        try:
            descriptor = parse_devcontainer(await self._fs.read_file(path))
        except ConfigurationError as exc:
            return DetectionResult("devcontainer", False, str(exc), path)

        if not descriptor.image and not descriptor.dockerfile:
            return DetectionResult(
                "devcontainer", False, "Dev container uses Docker Compose, which is not supported", path, descriptor
            )
        if not await runtime_available():
            return DetectionResult(
                "devcontainer", False, "Dev container configuration found but Docker is not available", path, descriptor
            )
        return DetectionResult("devcontainer", True, "Dev container configuration found", path, descriptor)
