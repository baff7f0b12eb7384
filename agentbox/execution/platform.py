"""
Host platform adapters — the real ProcessExecutor and FileSystem.

``LocalProcessExecutor`` runs shell commands with asyncio subprocesses and
always drains their pipes. ``LocalFileSystem`` wraps pathlib calls in
``asyncio.to_thread`` so the event loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import os
import signal as signal_module
import time
from pathlib import Path
from typing import Optional

import structlog

from agentbox.execution.base import ExecutionResult, FileStat, FileSystem, ProcessExecutor

logger = structlog.get_logger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


def _signal_name(returncode: int) -> Optional[str]:
    if returncode >= 0:
        return None
    try:
        return signal_module.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the shell and everything it started."""
    try:
        os.killpg(proc.pid, signal_module.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class LocalProcessExecutor(ProcessExecutor):
    """Runs commands through ``/bin/sh`` on the host."""

    async def execute(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        merged_env = {**os.environ, **env} if env else None

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=merged_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
            logger.warning("process.spawn_failed", command=command, cwd=cwd, error=str(exc))
            return ExecutionResult(
                exit_code=NOT_FOUND_EXIT_CODE,
                stderr=str(exc),
                duration=time.monotonic() - started,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.CancelledError:
            _kill_group(proc)
            raise
        except asyncio.TimeoutError:
            _kill_group(proc)
            stdout, stderr = await proc.communicate()
            logger.warning("process.timeout", command=command, timeout=timeout)
            return ExecutionResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout.decode(errors="replace"),
                stderr=stderr.decode(errors="replace") or f"Command timed out after {timeout}s",
                signal="SIGKILL",
                duration=time.monotonic() - started,
            )

        returncode = proc.returncode if proc.returncode is not None else 1
        return ExecutionResult(
            exit_code=returncode if returncode >= 0 else 128 - returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            signal=_signal_name(returncode),
            duration=time.monotonic() - started,
        )


class LocalFileSystem(FileSystem):
    """UTF-8 text file access on the host filesystem."""

    async def read_file(self, path: str) -> str:
        def _read() -> str:
            with open(path, encoding="utf-8", newline="") as handle:
                return handle.read()

        return await asyncio.to_thread(_read)

    async def write_file(self, path: str, content: str) -> None:
        await asyncio.to_thread(Path(path).write_text, content, encoding="utf-8", newline="")

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(Path(path).exists)

    async def mkdir(self, path: str, parents: bool = True) -> None:
        await asyncio.to_thread(Path(path).mkdir, parents=parents, exist_ok=True)

    async def readdir(self, path: str) -> list[str]:
        def _list() -> list[str]:
            return sorted(entry.name for entry in Path(path).iterdir())

        return await asyncio.to_thread(_list)

    async def unlink(self, path: str) -> None:
        await asyncio.to_thread(Path(path).unlink)

    async def stat(self, path: str) -> FileStat:
        def _stat() -> FileStat:
            target = Path(path)
            info = target.stat()
            return FileStat(
                size=info.st_size,
                is_file=target.is_file(),
                is_dir=target.is_dir(),
                modified=info.st_mtime,
            )

        return await asyncio.to_thread(_stat)

    async def glob(self, root: str, pattern: str) -> list[str]:
        def _glob() -> list[str]:
            return sorted(str(match) for match in Path(root).glob(pattern))

        return await asyncio.to_thread(_glob)
