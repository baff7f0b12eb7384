"""
Executor contract and the capabilities backends are built on.

An ``Executor`` owns one sandbox for its lifetime:

    initialize()  ->  execute / read_file / write_file / ...  ->  cleanup()

Backends never talk to the operating system directly. The native backend goes
through a ``ProcessExecutor`` and a ``FileSystem``; container backends go
through a ``ContainerRuntime``. That keeps every side effect behind an
injectable seam, which is what lets tests assert that a denied command never
reached the sandbox.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from agentbox.errors import PermissionDeniedError
from agentbox.permissions.manager import PermissionManager, PermissionRequest, PermissionResult


ExecutionMode = Literal["native", "docker", "devcontainer"]


@dataclass
class ExecuteOptions:
    """Per-call overrides for ``Executor.execute``."""

    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None
    timeout: Optional[float] = None  # seconds


@dataclass
class ExecutionResult:
    """Outcome of a command. A non-zero exit code is a normal result."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    signal: Optional[str] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class FileStat:
    size: int
    is_file: bool
    is_dir: bool
    modified: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class ProcessExecutor(ABC):
    """Runs a shell command on the host."""

    @abstractmethod
    async def execute(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """Run ``command`` through the shell and return its exit status and output."""


class FileSystem(ABC):
    """Host filesystem access."""

    @abstractmethod
    async def read_file(self, path: str) -> str: ...

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None: ...

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    @abstractmethod
    async def mkdir(self, path: str, parents: bool = True) -> None: ...

    @abstractmethod
    async def readdir(self, path: str) -> list[str]: ...

    @abstractmethod
    async def unlink(self, path: str) -> None: ...

    @abstractmethod
    async def stat(self, path: str) -> FileStat: ...

    @abstractmethod
    async def glob(self, root: str, pattern: str) -> list[str]: ...


class HostConfig(BaseModel):
    """Resource and isolation settings for a new container."""

    binds: list[str] = Field(default_factory=list)
    network_mode: str = "none"
    memory: Optional[int | str] = None
    cpus: Optional[float] = None
    readonly_rootfs: bool = False
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)


class ContainerSpec(BaseModel):
    """Everything needed to create one container."""

    name: str
    image: str
    working_dir: str = "/workspace"
    env: dict[str, str] = Field(default_factory=dict)
    user: Optional[str] = None
    labels: dict[str, str] = Field(default_factory=dict)
    host_config: HostConfig = Field(default_factory=HostConfig)
    network_disabled: bool = False
    command: list[str] = Field(default_factory=lambda: ["sleep", "infinity"])


class ContainerInfo(BaseModel):
    id: str
    name: str
    state: str  # running | exited | created | paused
    image: str = ""


class ContainerRuntime(ABC):
    """Container engine operations used by the container backends."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the engine is reachable."""

    @abstractmethod
    async def pull_image(self, image: str) -> None: ...

    @abstractmethod
    async def build_image(
        self,
        context: str,
        dockerfile: str,
        tag: str,
        build_args: Optional[dict[str, str]] = None,
        no_cache: bool = False,
    ) -> None: ...

    @abstractmethod
    async def create_container(self, spec: ContainerSpec) -> str:
        """Create a container and return its id."""

    @abstractmethod
    async def start(self, container_id: str) -> None: ...

    @abstractmethod
    async def stop(self, container_id: str, timeout: int = 10) -> None: ...

    @abstractmethod
    async def remove(self, container_id: str, force: bool = False, volumes: bool = False) -> None: ...

    @abstractmethod
    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        workdir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        user: Optional[str] = None,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult: ...

    @abstractmethod
    async def inspect(self, container_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def list_containers(self, name: Optional[str] = None, all: bool = True) -> list[ContainerInfo]: ...


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class Executor(ABC):
    """A sandbox that runs commands and file operations behind the permission gate."""

    def __init__(self, permission_manager: PermissionManager):
        self._permissions = permission_manager

    @property
    def permission_manager(self) -> PermissionManager:
        return self._permissions

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the sandbox. Safe to call again once initialized."""

    @abstractmethod
    async def execute(self, command: str, options: Optional[ExecuteOptions] = None) -> ExecutionResult:
        """Run a shell command inside the sandbox."""

    @abstractmethod
    async def read_file(self, path: str) -> str: ...

    @abstractmethod
    async def write_file(self, path: str, content: str, create_dirs: bool = False) -> None: ...

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    @abstractmethod
    async def list_dir(self, path: str) -> list[str]: ...

    @abstractmethod
    async def delete_file(self, path: str) -> None: ...

    @abstractmethod
    async def cleanup(self) -> None:
        """Release the sandbox. Must tolerate repeated calls."""

    @abstractmethod
    def get_mode(self) -> ExecutionMode: ...

    @abstractmethod
    def get_cwd(self) -> str: ...

    @abstractmethod
    def set_cwd(self, path: str) -> None: ...

    async def _require_permission(self, request: PermissionRequest) -> PermissionResult:
        """Consult the permission gate; raise before any side effect on denial."""
        result = await self._permissions.check_permission(request)
        if not result.allowed:
            verb = "Command" if request.type == "bash" else request.type.replace("file_", "").capitalize()
            raise PermissionDeniedError(
                f"{verb} denied: {request.operation}",
                reason=result.reason,
                assessment=result.assessment,
            )
        return result

    async def __aenter__(self) -> "Executor":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cleanup()
