"""
Container Executor — ephemeral Docker sandbox for one executor lifetime.

``initialize`` builds (from a Dockerfile) or pulls an image, creates a
container with the project bind-mounted at ``workspace_folder`` and starts it.
Commands run as ``sh -c <command>`` through the runtime's exec call. File
reads and writes go through ``cat`` with content piped on stdin, so there is
no separate copy-in/copy-out path. ``cleanup`` stops the container with a 5s
grace period and force-removes it along with its anonymous volumes.

Isolation defaults:
  - ``network: disabled`` maps to network mode ``none``; ``limited`` and
    ``full`` both map to ``bridge``
  - All Linux capabilities are dropped unless ``cap_drop`` says otherwise
  - CPU and memory limits pass straight through to the engine
"""

from __future__ import annotations

import posixpath
import re
import shlex
import uuid
from pathlib import Path
from typing import Optional

import structlog

from agentbox.config import DockerConfig, ExecutionConfig
from agentbox.errors import ConfigurationError, ContainerRuntimeError, ExecutionError, SecurityError
from agentbox.execution.base import (
    ContainerRuntime,
    ContainerSpec,
    ExecuteOptions,
    ExecutionMode,
    ExecutionResult,
    Executor,
    HostConfig,
)
from agentbox.permissions.manager import PermissionManager, PermissionRequest

logger = structlog.get_logger(__name__)

STOP_GRACE_SECONDS = 5
_FILE_OP_TIMEOUT = 60.0


def project_slug(project_dir: Path | str) -> str:
    """Docker-safe name fragment derived from the project directory name."""
    name = Path(project_dir).name.lower() or "project"
    return re.sub(r"[^a-z0-9_.-]+", "-", name).strip("-.") or "project"


def network_mode(network: str) -> str:
    return "none" if network == "disabled" else "bridge"


class ContainerBackedExecutor(Executor):
    """Command and file operations shared by every container backend."""

    _kind = "container"

    def __init__(
        self,
        config: ExecutionConfig,
        permission_manager: PermissionManager,
        runtime: ContainerRuntime,
        workspace_folder: str = "/workspace",
    ):
        super().__init__(permission_manager)
        self._config = config
        self._runtime = runtime
        self._workspace_folder = workspace_folder
        self._container_id: Optional[str] = None
        self._user: Optional[str] = None

    @property
    def container_id(self) -> Optional[str]:
        return self._container_id

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    def _require_container(self) -> str:
        if not self._container_id:
            raise SecurityError(f"{self._kind.capitalize()} not initialized")
        return self._container_id

    async def execute(self, command: str, options: Optional[ExecuteOptions] = None) -> ExecutionResult:
        container_id = self._require_container()
        options = options or ExecuteOptions()
        workdir = self.container_path(options.cwd) if options.cwd else self._workspace_folder

        await self._require_permission(PermissionRequest(type="bash", command=command, working_dir=workdir))

        result = await self._runtime.exec(
            container_id,
            ["sh", "-c", command],
            workdir=workdir,
            env=options.env,
            user=self._user,
            timeout=options.timeout or self._config.command_timeout,
        )
        logger.info(
            f"executor.{self.get_mode()}.execute",
            command=command,
            exit_code=result.exit_code,
            duration=round(result.duration, 3),
        )
        return result

    async def read_file(self, path: str) -> str:
        container_id = self._require_container()
        target = self.container_path(path)
        result = await self._exec_helper(container_id, ["cat", target])
        if not result.ok:
            raise ExecutionError(
                f"Failed to read {target}", exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr
            )
        return result.stdout

    async def write_file(self, path: str, content: str, create_dirs: bool = False) -> None:
        container_id = self._require_container()
        target = self.container_path(path)

        await self._require_permission(PermissionRequest(type="file_write", path=target, working_dir=self._workspace_folder))

        if create_dirs:
            mkdir = await self._exec_helper(container_id, ["mkdir", "-p", posixpath.dirname(target)])
            if not mkdir.ok:
                raise ExecutionError(
                    f"Failed to create parent directory for {target}",
                    exit_code=mkdir.exit_code,
                    stderr=mkdir.stderr,
                )

        result = await self._exec_helper(
            container_id, ["sh", "-c", f"cat > {shlex.quote(target)}"], stdin=content
        )
        if not result.ok:
            raise ExecutionError(
                f"Failed to write {target}", exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr
            )

    async def exists(self, path: str) -> bool:
        container_id = self._require_container()
        result = await self._exec_helper(container_id, ["test", "-e", self.container_path(path)])
        return result.ok

    async def list_dir(self, path: str) -> list[str]:
        container_id = self._require_container()
        target = self.container_path(path)
        result = await self._exec_helper(container_id, ["ls", "-1A", target])
        if not result.ok:
            raise ExecutionError(f"Failed to list {target}", exit_code=result.exit_code, stderr=result.stderr)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def delete_file(self, path: str) -> None:
        container_id = self._require_container()
        target = self.container_path(path)

        await self._require_permission(PermissionRequest(type="file_delete", path=target, working_dir=self._workspace_folder))

        result = await self._exec_helper(container_id, ["rm", target])
        if not result.ok:
            raise ExecutionError(f"Failed to delete {target}", exit_code=result.exit_code, stderr=result.stderr)

    def get_cwd(self) -> str:
        return self._workspace_folder

    def set_cwd(self, path: str) -> None:
        raise SecurityError(
            f"Cannot change working directory in {self._kind}. Use execute() with the cwd option."
        )

    def container_path(self, path: str) -> str:
        """Map a host path under the project, or a relative path, into the container."""
        workspace = self._workspace_folder
        if posixpath.isabs(path):
            if path == workspace or path.startswith(workspace.rstrip("/") + "/"):
                return posixpath.normpath(path)
            project = str(self._config.project_dir)
            if path == project or path.startswith(project.rstrip("/") + "/"):
                relative = path[len(project):].lstrip("/")
                return posixpath.normpath(posixpath.join(workspace, relative))
            return posixpath.normpath(path)
        return posixpath.normpath(posixpath.join(workspace, path))

    async def _exec_helper(
        self, container_id: str, cmd: list[str], stdin: Optional[str] = None
    ) -> ExecutionResult:
        return await self._runtime.exec(
            container_id, cmd, user=self._user, stdin=stdin, timeout=_FILE_OP_TIMEOUT
        )

    async def _stop_and_remove(self, container_id: str) -> None:
        """Best-effort teardown. Runtime errors are logged, never raised."""
        try:
            await self._runtime.stop(container_id, timeout=STOP_GRACE_SECONDS)
        except ContainerRuntimeError as exc:
            logger.warning(f"executor.{self.get_mode()}.stop_failed", container=container_id[:12], error=str(exc))
        try:
            await self._runtime.remove(container_id, force=True, volumes=True)
        except ContainerRuntimeError as exc:
            logger.warning(f"executor.{self.get_mode()}.remove_failed", container=container_id[:12], error=str(exc))


class ContainerExecutor(ContainerBackedExecutor):
    """Ephemeral container built from ``ExecutionConfig.docker``."""

    _kind = "docker container"

    def __init__(
        self,
        config: ExecutionConfig,
        permission_manager: PermissionManager,
        runtime: ContainerRuntime,
    ):
        workspace = config.docker.workspace_folder if config.docker else "/workspace"
        super().__init__(config, permission_manager, runtime, workspace_folder=workspace)
        self._user = config.docker.user if config.docker else None
        self._image: Optional[str] = None

    @property
    def image(self) -> Optional[str]:
        return self._image

    async def initialize(self) -> None:
        if self._container_id:
            return

        docker = self._config.docker
        if docker is None:
            raise ConfigurationError("Docker configuration not provided")
        if not docker.has_image_source():
            raise ConfigurationError("Docker config must specify dockerfile, image, or compose_file")
        if not docker.dockerfile and not docker.image:
            raise ConfigurationError("Docker Compose is not supported; use a Dockerfile or an image")

        if docker.dockerfile:
            self._image = await self._build_image(docker)
        else:
            self._image = docker.image
            await self._runtime.pull_image(docker.image)

        spec = self.build_container_spec(self._image, docker)
        container_id = await self._runtime.create_container(spec)
        try:
            await self._runtime.start(container_id)
        except ContainerRuntimeError:
            await self._stop_and_remove(container_id)
            raise

        self._container_id = container_id
        logger.info(
            "executor.docker.initialized",
            container=container_id[:12],
            image=self._image,
            network=spec.host_config.network_mode,
        )

    def build_container_spec(self, image: str, docker: DockerConfig) -> ContainerSpec:
        project = self._config.project_dir
        return ContainerSpec(
            name=f"agentbox-docker-{project_slug(project)}-{uuid.uuid4().hex[:8]}",
            image=image,
            working_dir=self._workspace_folder,
            env=dict(docker.env),
            user=docker.user,
            labels={"agentbox.executor": "docker", "agentbox.project": project.name},
            host_config=HostConfig(
                binds=[f"{project}:{self._workspace_folder}"],
                network_mode=network_mode(docker.network),
                memory=docker.memory_limit,
                cpus=docker.cpu_limit,
                readonly_rootfs=docker.readonly_rootfs,
                cap_add=list(docker.cap_add),
                cap_drop=list(docker.cap_drop) if docker.cap_drop is not None else ["ALL"],
            ),
            network_disabled=docker.network == "disabled",
        )

    async def _build_image(self, docker: DockerConfig) -> str:
        tag = f"agentbox-docker-{project_slug(self._config.project_dir)}"
        dockerfile = self._config.project_dir / docker.dockerfile
        await self._runtime.build_image(
            context=str(dockerfile.parent),
            dockerfile=str(dockerfile),
            tag=tag,
            build_args=dict(docker.build_args),
            no_cache=docker.no_cache,
        )
        return tag

    async def cleanup(self) -> None:
        container_id, self._container_id = self._container_id, None
        if not container_id:
            return
        await self._stop_and_remove(container_id)
        logger.info("executor.docker.cleanup", container=container_id[:12])

    def get_mode(self) -> ExecutionMode:
        return "docker"
