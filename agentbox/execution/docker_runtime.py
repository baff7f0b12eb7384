"""
Docker Runtime — ContainerRuntime over the ``docker`` CLI.

Every operation shells out with ``asyncio.create_subprocess_exec`` and waits
on ``communicate()``, so stdin is closed and both output pipes are drained
before a call returns. A non-zero exit from a lifecycle command (pull, build,
create, start, stop, rm, inspect) raises ``ContainerRuntimeError``; ``exec``
returns the command's own exit status as a normal result.

An ``exec`` timeout runs the command under ``timeout -s KILL`` inside the
container, so the process dies with its deadline rather than outliving the
local client. The image needs a ``timeout`` binary (coreutils or busybox).
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

import structlog

from agentbox.errors import ContainerRuntimeError
from agentbox.execution.base import ContainerInfo, ContainerRuntime, ContainerSpec, ExecutionResult
from agentbox.execution.platform import TIMEOUT_EXIT_CODE

logger = structlog.get_logger(__name__)

_PING_TIMEOUT = 5.0
# extra time the local client waits for the in-container timeout to fire
_EXEC_GRACE = 5.0
_KILLED_EXIT_CODE = 137


class DockerCliRuntime(ContainerRuntime):
    """Talks to the local Docker engine through its command-line client."""

    def __init__(self, binary: str = "docker", exec_grace: float = _EXEC_GRACE):
        self._binary = binary
        self._exec_grace = exec_grace
        self._available: Optional[bool] = None

    async def ping(self) -> bool:
        """Check if Docker is available on this system. The answer is cached."""
        if self._available is not None:
            return self._available

        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                "version",
                "--format",
                "{{.Server.Version}}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_PING_TIMEOUT)
            self._available = proc.returncode == 0
            if self._available:
                logger.info("docker.available", version=stdout.decode().strip())
            else:
                logger.warning("docker.unavailable")
        except (FileNotFoundError, asyncio.TimeoutError):
            self._available = False
            logger.warning("docker.not_found")

        return self._available

    async def pull_image(self, image: str) -> None:
        logger.info("docker.pulling_image", image=image)
        await self._run("pull", image)

    async def build_image(
        self,
        context: str,
        dockerfile: str,
        tag: str,
        build_args: Optional[dict[str, str]] = None,
        no_cache: bool = False,
    ) -> None:
        args = ["build", "-t", tag, "-f", dockerfile]
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        if no_cache:
            args.append("--no-cache")
        args.append(context)

        logger.info("docker.building_image", tag=tag, dockerfile=dockerfile)
        await self._run(*args)
        logger.info("docker.image_built", tag=tag)

    async def create_container(self, spec: ContainerSpec) -> str:
        _, stdout, _ = await self._run(*self.create_args(spec))
        container_id = stdout.strip()
        logger.info("docker.container_created", name=spec.name, container=container_id[:12])
        return container_id

    @staticmethod
    def create_args(spec: ContainerSpec) -> list[str]:
        """Translate a ContainerSpec into ``docker create`` arguments."""
        host = spec.host_config
        args = ["create", "--name", spec.name, "-w", spec.working_dir]

        network = "none" if spec.network_disabled else host.network_mode
        args.extend(["--network", network])
        if host.memory is not None:
            args.append(f"--memory={host.memory}")
        if host.cpus is not None:
            args.append(f"--cpus={host.cpus}")
        if host.readonly_rootfs:
            args.append("--read-only")
        for cap in host.cap_add:
            args.extend(["--cap-add", cap])
        for cap in host.cap_drop:
            args.extend(["--cap-drop", cap])
        for bind in host.binds:
            args.extend(["-v", bind])
        for key, value in spec.env.items():
            args.extend(["-e", f"{key}={value}"])
        for key, value in spec.labels.items():
            args.extend(["--label", f"{key}={value}"])
        if spec.user:
            args.extend(["--user", spec.user])

        args.append(spec.image)
        args.extend(spec.command)
        return args

    async def start(self, container_id: str) -> None:
        await self._run("start", container_id)
        logger.info("docker.container_started", container=container_id[:12])

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        await self._run("stop", "-t", str(timeout), container_id, timeout=timeout + 10.0)
        logger.info("docker.container_stopped", container=container_id[:12])

    async def remove(self, container_id: str, force: bool = False, volumes: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        if volumes:
            args.append("-v")
        args.append(container_id)
        await self._run(*args)
        logger.info("docker.container_removed", container=container_id[:12])

    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        workdir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        user: Optional[str] = None,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        if workdir:
            args.extend(["-w", workdir])
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        if user:
            args.extend(["-u", user])
        args.append(container_id)
        if timeout:
            # deadline enforced inside the container; the local wait is a backstop
            args.extend(["timeout", "-s", "KILL", f"{timeout:g}"])
        args.extend(cmd)

        started = time.monotonic()
        try:
            returncode, stdout, stderr = await self._run(
                *args,
                stdin=stdin,
                timeout=timeout + self._exec_grace if timeout else None,
                check=False,
            )
        except asyncio.TimeoutError:
            logger.warning("docker.exec_timeout", container=container_id[:12], timeout=timeout)
            return ExecutionResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Command timed out after {timeout}s",
                signal="SIGKILL",
                duration=time.monotonic() - started,
            )

        elapsed = time.monotonic() - started
        if timeout and returncode == _KILLED_EXIT_CODE and elapsed >= timeout:
            logger.warning("docker.exec_timeout", container=container_id[:12], timeout=timeout)
            return ExecutionResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout,
                stderr=stderr or f"Command timed out after {timeout}s",
                signal="SIGKILL",
                duration=elapsed,
            )

        return ExecutionResult(
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            duration=time.monotonic() - started,
        )

    async def inspect(self, container_id: str) -> dict[str, Any]:
        _, stdout, _ = await self._run("inspect", container_id)
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ContainerRuntimeError(f"Unreadable inspect output for {container_id}") from exc
        if not data:
            raise ContainerRuntimeError(f"No such container: {container_id}")
        return data[0]

    async def list_containers(self, name: Optional[str] = None, all: bool = True) -> list[ContainerInfo]:
        args = ["ps", "--no-trunc", "--format", "{{json .}}"]
        if all:
            args.append("-a")
        if name:
            args.extend(["--filter", f"name=^/{name}$"])
        _, stdout, _ = await self._run(*args)

        containers = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            row = json.loads(line)
            containers.append(
                ContainerInfo(
                    id=row.get("ID", ""),
                    name=row.get("Names", "").lstrip("/"),
                    state=row.get("State", "").lower(),
                    image=row.get("Image", ""),
                )
            )
        return containers

    async def _run(
        self,
        *args: str,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> tuple[int, str, str]:
        """Run one docker CLI call. Raises ``asyncio.TimeoutError`` only when ``check`` is off."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(f"{self._binary} CLI not found") from exc

        payload = stdin.encode() if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            if not check:
                raise
            raise ContainerRuntimeError(f"docker {args[0]} timed out after {timeout}s")

        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        returncode = proc.returncode if proc.returncode is not None else 1

        if check and returncode != 0:
            logger.error("docker.command_failed", command=args[0], stderr=err[:500])
            raise ContainerRuntimeError(
                f"docker {args[0]} failed: {err.strip() or f'exit code {returncode}'}",
                stderr=err,
            )
        return returncode, out, err
