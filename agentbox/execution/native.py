"""
Native Executor — runs commands directly on the host, confined to the project.

Security model:
  - The working directory must stay inside ``project_dir``
  - Writes and deletes must land inside the project, outside the denied
    paths (``.env``, ``.git/``, ``node_modules/`` by default) and, when
    ``write_access`` is set, inside one of its globs
  - Every command, write and delete then passes the permission gate
  - Reads are unrestricted unless ``read_access`` is ``project-only``
"""

from __future__ import annotations

import os
import re
from typing import Optional

import structlog

from agentbox.config import DEFAULT_DENIED_PATHS, ExecutionConfig
from agentbox.errors import ConfigurationError, PermissionDeniedError, SecurityError
from agentbox.execution.base import (
    ExecuteOptions,
    ExecutionMode,
    ExecutionResult,
    Executor,
    FileSystem,
    ProcessExecutor,
)
from agentbox.execution.platform import LocalFileSystem, LocalProcessExecutor
from agentbox.permissions.manager import PermissionManager, PermissionRequest

logger = structlog.get_logger(__name__)


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a path glob: ``**`` spans directories, ``*`` stays within one, ``?`` is one char."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append(".")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def is_within(path: str, root: str) -> bool:
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    return path == root or os.path.commonpath([path, root]) == root


class NativeExecutor(Executor):
    """Executor backed by the host's own shell and filesystem."""

    def __init__(
        self,
        config: ExecutionConfig,
        permission_manager: PermissionManager,
        fs: Optional[FileSystem] = None,
        process: Optional[ProcessExecutor] = None,
    ):
        super().__init__(permission_manager)
        self._config = config
        self._project_dir = os.path.normpath(str(config.project_dir))
        self._fs = fs or LocalFileSystem()
        self._process = process or LocalProcessExecutor()
        self._cwd = self._project_dir
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not await self._fs.exists(self._project_dir):
            raise ConfigurationError(f"Project directory does not exist: {self._project_dir}")
        if not (await self._fs.stat(self._project_dir)).is_dir:
            raise ConfigurationError(f"Project path is not a directory: {self._project_dir}")
        self._initialized = True
        logger.info("executor.native.initialized", project_dir=self._project_dir)

    async def execute(self, command: str, options: Optional[ExecuteOptions] = None) -> ExecutionResult:
        options = options or ExecuteOptions()
        cwd = self._resolve(options.cwd) if options.cwd else self._cwd

        if not is_within(cwd, self._project_dir):
            logger.warning("executor.native.cwd_rejected", command=command, cwd=cwd)
            raise SecurityError(f"Working directory outside project: {cwd}")

        await self._require_permission(PermissionRequest(type="bash", command=command, working_dir=cwd))

        result = await self._process.execute(
            command,
            cwd=cwd,
            env=options.env,
            timeout=options.timeout or self._config.command_timeout,
        )
        logger.info(
            "executor.native.execute",
            command=command,
            exit_code=result.exit_code,
            duration=round(result.duration, 3),
        )
        return result

    async def read_file(self, path: str) -> str:
        target = self._resolve(path)
        if self._config.filesystem.read_access == "project-only" and not is_within(target, self._project_dir):
            raise PermissionDeniedError(f"Cannot read {target} (outside project)", reason="Outside project")
        return await self._fs.read_file(target)

    async def write_file(self, path: str, content: str, create_dirs: bool = False) -> None:
        target = self._resolve(path)
        if not self.can_write(target):
            logger.warning("executor.native.write_rejected", path=target)
            raise PermissionDeniedError(
                f"Cannot write to {target} (outside allowed paths)", reason="Outside allowed paths"
            )

        await self._require_permission(PermissionRequest(type="file_write", path=target, working_dir=self._cwd))

        if create_dirs:
            await self._fs.mkdir(os.path.dirname(target), parents=True)
        await self._fs.write_file(target, content)
        logger.debug("executor.native.write", path=target, size=len(content))

    async def exists(self, path: str) -> bool:
        return await self._fs.exists(self._resolve(path))

    async def list_dir(self, path: str) -> list[str]:
        return await self._fs.readdir(self._resolve(path))

    async def delete_file(self, path: str) -> None:
        target = self._resolve(path)
        if not self.can_write(target):
            logger.warning("executor.native.delete_rejected", path=target)
            raise PermissionDeniedError(
                f"Cannot delete {target} (outside allowed paths)", reason="Outside allowed paths"
            )

        await self._require_permission(PermissionRequest(type="file_delete", path=target, working_dir=self._cwd))
        await self._fs.unlink(target)
        logger.debug("executor.native.delete", path=target)

    async def cleanup(self) -> None:
        # Nothing was provisioned.
        self._initialized = False

    def get_mode(self) -> ExecutionMode:
        return "native"

    def get_cwd(self) -> str:
        return self._cwd

    def set_cwd(self, path: str) -> None:
        target = self._resolve(path)
        if not is_within(target, self._project_dir):
            raise SecurityError(f"Cannot set cwd outside project: {target}")
        self._cwd = target

    def can_write(self, path: str) -> bool:
        """Apply the filesystem policy to an absolute path."""
        target = os.path.normpath(path).replace("\\", "/")
        if not is_within(target, self._project_dir):
            return False

        policy = self._config.filesystem
        denied = policy.denied_paths if policy.denied_paths is not None else DEFAULT_DENIED_PATHS
        if any(self._matches(target, pattern) for pattern in denied):
            return False
        if policy.write_access:
            return any(self._matches(target, pattern) for pattern in policy.write_access)
        return True

    def _matches(self, path: str, pattern: str) -> bool:
        expanded = pattern.replace("${PROJECT_DIR}", self._project_dir).replace("\\", "/")
        return glob_to_regex(expanded).match(path) is not None

    def _resolve(self, path: str) -> str:
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self._cwd, path))
