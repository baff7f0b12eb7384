"""
Dev Container Executor — runs commands in the project's own dev container.

The descriptor is found at ``.devcontainer/devcontainer.json`` or
``.devcontainer.json`` (or an explicit path) and parsed as JSON with comments.
The container is named after the project and reused across runs:

    running  ->  attach, nothing else happens
    stopped  ->  start it, run ``postStartCommand``
    missing  ->  build or pull, create, start, run ``postCreateCommand`` then
                 ``postStartCommand``

``cleanup`` leaves the container up for the next run unless
``stop_on_exit`` is set.
"""

from __future__ import annotations

import json
import os
import re
import shlex
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field

from agentbox.config import ExecutionConfig
from agentbox.errors import ConfigurationError, ContainerRuntimeError
from agentbox.execution.base import ContainerRuntime, ContainerSpec, ExecutionMode, FileSystem, HostConfig
from agentbox.execution.container import ContainerBackedExecutor, project_slug
from agentbox.execution.platform import LocalFileSystem
from agentbox.permissions.manager import PermissionManager

logger = structlog.get_logger(__name__)

DEVCONTAINER_CANDIDATES = (
    os.path.join(".devcontainer", "devcontainer.json"),
    ".devcontainer.json",
)

# Strings are matched first so "//" inside a URL survives.
_JSONC_TOKENS = re.compile(r'("(?:\\.|[^"\\])*")|/\*[\s\S]*?\*/|//[^\n]*')
_TRAILING_COMMA = re.compile(r'("(?:\\.|[^"\\])*")|,(\s*[}\]])')
_VALUED_RUN_FLAGS = frozenset({"--cap-add", "--cap-drop", "--network", "--net", "--memory", "-m", "--cpus"})


class DevContainerDescriptor(BaseModel):
    """The subset of devcontainer.json this backend understands."""

    name: Optional[str] = None
    image: Optional[str] = None
    docker_file: Optional[str] = Field(None, alias="dockerFile")
    build: dict[str, Any] = Field(default_factory=dict)
    docker_compose_file: Optional[Union[str, list[str]]] = Field(None, alias="dockerComposeFile")
    service: Optional[str] = None
    workspace_folder: Optional[str] = Field(None, alias="workspaceFolder")
    mounts: list[str] = Field(default_factory=list)
    run_args: list[str] = Field(default_factory=list, alias="runArgs")
    container_env: dict[str, str] = Field(default_factory=dict, alias="containerEnv")
    remote_user: Optional[str] = Field(None, alias="remoteUser")
    post_create_command: Optional[Union[str, list[str]]] = Field(None, alias="postCreateCommand")
    post_start_command: Optional[Union[str, list[str]]] = Field(None, alias="postStartCommand")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def dockerfile(self) -> Optional[str]:
        return self.docker_file or self.build.get("dockerfile")


def strip_json_comments(text: str) -> str:
    """Remove ``//`` and ``/* */`` comments and trailing commas outside strings."""
    text = _JSONC_TOKENS.sub(lambda m: m.group(1) or "", text)
    return _TRAILING_COMMA.sub(lambda m: m.group(1) or m.group(2), text)


def parse_devcontainer(content: str) -> DevContainerDescriptor:
    try:
        data = json.loads(strip_json_comments(content))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Failed to parse devcontainer.json: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("Failed to parse devcontainer.json: top level must be an object")

    descriptor = DevContainerDescriptor.model_validate(data)
    if not (descriptor.image or descriptor.dockerfile or descriptor.docker_compose_file):
        raise ConfigurationError("Dev container config must specify image, dockerFile, or dockerComposeFile")
    return descriptor


async def find_devcontainer_config(
    project_dir: str, fs: FileSystem, config_path: Optional[str] = None
) -> Optional[str]:
    """Return the first descriptor path that exists, or None."""
    candidates = []
    if config_path:
        candidates.append(config_path if os.path.isabs(config_path) else os.path.join(project_dir, config_path))
    candidates.extend(os.path.join(project_dir, candidate) for candidate in DEVCONTAINER_CANDIDATES)

    for candidate in candidates:
        if await fs.exists(candidate):
            return candidate
    return None


def _command_text(command: Union[str, list[str], None]) -> Optional[str]:
    if not command:
        return None
    return command if isinstance(command, str) else shlex.join(command)


class DevContainerExecutor(ContainerBackedExecutor):
    """Executor attached to a long-lived, reusable dev container."""

    _kind = "dev container"

    def __init__(
        self,
        config: ExecutionConfig,
        permission_manager: PermissionManager,
        runtime: ContainerRuntime,
        fs: Optional[FileSystem] = None,
    ):
        options = config.devcontainer
        workspace = options.workspace_folder if options else "/workspace"
        super().__init__(config, permission_manager, runtime, workspace_folder=workspace)
        self._fs = fs or LocalFileSystem()
        self._descriptor: Optional[DevContainerDescriptor] = None
        self._container_name = f"agentbox-devcontainer-{project_slug(config.project_dir)}"

    @property
    def container_name(self) -> str:
        return self._container_name

    @property
    def descriptor(self) -> Optional[DevContainerDescriptor]:
        return self._descriptor

    async def initialize(self) -> None:
        if self._container_id:
            return

        project_dir = str(self._config.project_dir)
        options = self._config.devcontainer
        config_path = await find_devcontainer_config(
            project_dir, self._fs, options.config_path if options else None
        )
        if config_path is None:
            raise ConfigurationError(
                "No .devcontainer/devcontainer.json found. Use native mode or provide a devcontainer config."
            )

        descriptor = parse_devcontainer(await self._fs.read_file(config_path))
        if not descriptor.image and not descriptor.dockerfile:
            raise ConfigurationError("Docker Compose dev containers are not supported")
        self._descriptor = descriptor
        if descriptor.workspace_folder:
            self._workspace_folder = descriptor.workspace_folder
        self._user = descriptor.remote_user

        existing = await self._runtime.list_containers(name=self._container_name, all=True)
        if existing and existing[0].state == "running":
            self._container_id = existing[0].id
            logger.info("executor.devcontainer.reused", container=self._container_name)
            return

        if existing:
            await self._runtime.start(existing[0].id)
            self._container_id = existing[0].id
            logger.info("executor.devcontainer.restarted", container=self._container_name)
        else:
            image = await self._prepare_image(descriptor, os.path.dirname(config_path))
            container_id = await self._runtime.create_container(self.build_container_spec(image, descriptor))
            await self._runtime.start(container_id)
            self._container_id = container_id
            logger.info("executor.devcontainer.created", container=self._container_name, image=image)
            await self._run_lifecycle_command("postCreateCommand", descriptor.post_create_command)

        await self._run_lifecycle_command("postStartCommand", descriptor.post_start_command)

    def build_container_spec(self, image: str, descriptor: DevContainerDescriptor) -> ContainerSpec:
        host = HostConfig(
            binds=[f"{self._config.project_dir}:{self._workspace_folder}", *descriptor.mounts],
            network_mode="bridge",
        )
        _apply_run_args(host, descriptor.run_args)
        return ContainerSpec(
            name=self._container_name,
            image=image,
            working_dir=self._workspace_folder,
            env=dict(descriptor.container_env),
            user=descriptor.remote_user,
            labels={"agentbox.executor": "devcontainer", "agentbox.project": self._config.project_dir.name},
            host_config=host,
        )

    async def _prepare_image(self, descriptor: DevContainerDescriptor, config_dir: str) -> str:
        if descriptor.dockerfile:
            tag = self._container_name
            dockerfile = os.path.normpath(os.path.join(config_dir, descriptor.dockerfile))
            context = descriptor.build.get("context")
            await self._runtime.build_image(
                context=os.path.normpath(os.path.join(config_dir, context)) if context else os.path.dirname(dockerfile),
                dockerfile=dockerfile,
                tag=tag,
                build_args={str(k): str(v) for k, v in (descriptor.build.get("args") or {}).items()},
            )
            return tag
        await self._runtime.pull_image(descriptor.image)
        return descriptor.image

    async def _run_lifecycle_command(self, hook: str, command: Union[str, list[str], None]) -> None:
        text = _command_text(command)
        if not text or not self._container_id:
            return
        logger.info("executor.devcontainer.lifecycle", hook=hook, command=text)
        result = await self._runtime.exec(
            self._container_id,
            ["sh", "-c", text],
            workdir=self._workspace_folder,
            user=self._user,
        )
        if not result.ok:
            logger.warning(
                "executor.devcontainer.lifecycle_failed",
                hook=hook,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

    async def cleanup(self) -> None:
        container_id, self._container_id = self._container_id, None
        if not container_id:
            return
        options = self._config.devcontainer
        if options is None or not options.stop_on_exit:
            return
        try:
            await self._runtime.stop(container_id, timeout=5)
            logger.info("executor.devcontainer.stopped", container=self._container_name)
        except ContainerRuntimeError as exc:
            logger.warning("executor.devcontainer.stop_failed", container=self._container_name, error=str(exc))

    def get_mode(self) -> ExecutionMode:
        return "devcontainer"


def _apply_run_args(host: HostConfig, run_args: list[str]) -> None:
    """Fold the ``runArgs`` flags this backend supports into the host config."""
    args = list(run_args)
    while args:
        arg = args.pop(0)
        flag, _, value = arg.partition("=")
        if not value and flag in _VALUED_RUN_FLAGS and args:
            value = args.pop(0)
        if flag == "--cap-add" and value:
            host.cap_add.append(value)
        elif flag == "--cap-drop" and value:
            host.cap_drop.append(value)
        elif flag in ("--network", "--net") and value:
            host.network_mode = value
        elif flag in ("--memory", "-m") and value:
            host.memory = value
        elif flag == "--cpus" and value:
            host.cpus = float(value)
