"""
Shared fixtures for the agentbox test suite.

Provides in-memory fakes for every capability the core depends on (process
execution, filesystem, container runtime, agents) so individual test modules
can focus on behavior rather than setup. Nothing here touches Docker or
spawns real processes.
"""

from __future__ import annotations

import asyncio
import fnmatch
import posixpath
import shlex
from typing import Any, Optional

import pytest

from agentbox.config import ExecutionConfig, PermissionConfig
from agentbox.errors import ContainerRuntimeError
from agentbox.execution.base import (
    ContainerInfo,
    ContainerRuntime,
    ContainerSpec,
    ExecutionResult,
    FileStat,
    FileSystem,
    ProcessExecutor,
)
from agentbox.orchestration.models import AgentConfig, AgentContext, AgentResult
from agentbox.permissions.manager import PermissionManager


# ---------------------------------------------------------------------------
# Process + filesystem fakes
# ---------------------------------------------------------------------------


class FakeProcessExecutor(ProcessExecutor):
    """Records every command and answers with a canned result."""

    def __init__(self, result: Optional[ExecutionResult] = None):
        self.result = result or ExecutionResult(exit_code=0, stdout="ok\n")
        self.calls: list[dict[str, Any]] = []

    async def execute(self, command, cwd=None, env=None, timeout=None):
        self.calls.append({"command": command, "cwd": cwd, "env": env, "timeout": timeout})
        return self.result


class InMemoryFileSystem(FileSystem):
    """A dict-backed filesystem using absolute POSIX paths."""

    def __init__(self, files: Optional[dict[str, str]] = None, dirs: Optional[set[str]] = None):
        self.files: dict[str, str] = dict(files or {})
        self.dirs: set[str] = set(dirs or ())
        for path in list(self.files):
            self._add_parents(path)

    def _add_parents(self, path: str) -> None:
        parent = posixpath.dirname(path)
        while parent and parent not in self.dirs:
            self.dirs.add(parent)
            if parent == "/":
                break
            parent = posixpath.dirname(parent)

    async def read_file(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path, content):
        self.files[path] = content

    async def exists(self, path):
        return path in self.files or path in self.dirs

    async def mkdir(self, path, parents=True):
        self.dirs.add(path)
        self._add_parents(path)

    async def readdir(self, path):
        children = {
            p[len(path.rstrip("/")) + 1:].split("/")[0]
            for p in list(self.files) + list(self.dirs)
            if p.startswith(path.rstrip("/") + "/")
        }
        return sorted(children)

    async def unlink(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    async def stat(self, path):
        if path in self.files:
            return FileStat(size=len(self.files[path]), is_file=True, is_dir=False)
        if path in self.dirs:
            return FileStat(size=0, is_file=False, is_dir=True)
        raise FileNotFoundError(path)

    async def glob(self, root, pattern):
        prefix = root.rstrip("/") + "/"
        return sorted(p for p in self.files if p.startswith(prefix) and fnmatch.fnmatch(p[len(prefix):], pattern))


# ---------------------------------------------------------------------------
# Container runtime fake
# ---------------------------------------------------------------------------


class FakeContainerRuntime(ContainerRuntime):
    """Container engine stand-in that keeps container files in a dict.

    ``exec`` understands the helper commands the container backends issue
    (``cat``, ``cat > path`` with stdin, ``test -e``, ``mkdir -p``, ``ls``,
    ``rm``). Any other ``sh -c`` command answers from ``command_results``.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self.files: dict[str, str] = {}
        self.dirs: set[str] = {"/workspace"}
        self.containers: dict[str, ContainerInfo] = {}
        self.specs: list[ContainerSpec] = []
        self.calls: list[tuple[str, Any]] = []
        self.exec_calls: list[dict[str, Any]] = []
        self.command_results: dict[str, ExecutionResult] = {}
        self._next_id = 0

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def add_container(self, name: str, state: str, image: str = "img") -> str:
        self._next_id += 1
        container_id = f"c{self._next_id:011d}"
        self.containers[container_id] = ContainerInfo(id=container_id, name=name, state=state, image=image)
        return container_id

    async def ping(self):
        self.calls.append(("ping", None))
        return self.available

    async def pull_image(self, image):
        self.calls.append(("pull_image", image))

    async def build_image(self, context, dockerfile, tag, build_args=None, no_cache=False):
        self.calls.append(("build_image", {"context": context, "dockerfile": dockerfile, "tag": tag,
                                           "build_args": build_args, "no_cache": no_cache}))

    async def create_container(self, spec):
        self.calls.append(("create_container", spec.name))
        self.specs.append(spec)
        return self.add_container(spec.name, "created", spec.image)

    async def start(self, container_id):
        self.calls.append(("start", container_id))
        if container_id not in self.containers:
            raise ContainerRuntimeError(f"No such container: {container_id}")
        self.containers[container_id].state = "running"

    async def stop(self, container_id, timeout=10):
        self.calls.append(("stop", container_id))
        info = self.containers.get(container_id)
        if info is None:
            raise ContainerRuntimeError(f"No such container: {container_id}")
        if info.state != "running":
            raise ContainerRuntimeError(f"Container {container_id} is not running")
        info.state = "exited"

    async def remove(self, container_id, force=False, volumes=False):
        self.calls.append(("remove", container_id))
        if container_id not in self.containers:
            raise ContainerRuntimeError(f"No such container: {container_id}")
        del self.containers[container_id]

    async def inspect(self, container_id):
        info = self.containers.get(container_id)
        if info is None:
            raise ContainerRuntimeError(f"No such container: {container_id}")
        return {"Id": info.id, "Name": info.name, "State": {"Status": info.state}}

    async def list_containers(self, name=None, all=True):
        self.calls.append(("list_containers", name))
        return [c for c in self.containers.values() if name is None or c.name == name]

    async def exec(self, container_id, cmd, workdir=None, env=None, user=None, stdin=None, timeout=None):
        self.exec_calls.append({"container_id": container_id, "cmd": list(cmd), "workdir": workdir,
                                "env": env, "user": user, "stdin": stdin})
        if container_id not in self.containers:
            raise ContainerRuntimeError(f"No such container: {container_id}")

        if cmd[:2] == ["sh", "-c"]:
            script = cmd[2]
            if script.startswith("cat > "):
                path = shlex.split(script)[-1]
                self.files[path] = stdin or ""
                return ExecutionResult(exit_code=0)
            return self.command_results.get(script, ExecutionResult(exit_code=0, stdout=f"ran: {script}\n"))
        if cmd[0] == "cat":
            if cmd[1] in self.files:
                return ExecutionResult(exit_code=0, stdout=self.files[cmd[1]])
            return ExecutionResult(exit_code=1, stderr=f"cat: {cmd[1]}: No such file or directory")
        if cmd[:2] == ["test", "-e"]:
            return ExecutionResult(exit_code=0 if cmd[2] in self.files or cmd[2] in self.dirs else 1)
        if cmd[:2] == ["mkdir", "-p"]:
            self.dirs.add(cmd[2])
            return ExecutionResult(exit_code=0)
        if cmd[0] == "ls":
            prefix = cmd[-1].rstrip("/") + "/"
            names = sorted({p[len(prefix):].split("/")[0] for p in self.files if p.startswith(prefix)})
            return ExecutionResult(exit_code=0, stdout="".join(f"{n}\n" for n in names))
        if cmd[0] == "rm":
            if cmd[1] not in self.files:
                return ExecutionResult(exit_code=1, stderr="rm: cannot remove")
            del self.files[cmd[1]]
            return ExecutionResult(exit_code=0)
        return ExecutionResult(exit_code=127, stderr=f"unknown command {cmd[0]}")


# ---------------------------------------------------------------------------
# Agent fakes
# ---------------------------------------------------------------------------


class ConcurrencyTracker:
    """Observes how many fake agents run at once and in what order."""

    def __init__(self):
        self.current = 0
        self.peak = 0
        self.started: list[str] = []
        self.finished: list[str] = []

    def enter(self, task: str) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)
        self.started.append(task)

    def leave(self, task: str) -> None:
        self.current -= 1
        self.finished.append(task)


class FakeAgent:
    """Agent whose behaviour comes from extra keys on its AgentConfig.

    ``delay`` (seconds), ``fail`` (raise RuntimeError with that text),
    ``success`` (False returns an unsuccessful result), ``tokens``, ``cost``,
    ``agent_id``.
    """

    def __init__(self, config: AgentConfig, tracker: ConcurrencyTracker):
        extra = config.model_extra or {}
        self.id = extra.get("agent_id")
        self.delay = extra.get("delay", 0.0)
        self.fail = extra.get("fail")
        self.success = extra.get("success", True)
        self.tokens = extra.get("tokens", 10)
        self.cost = extra.get("cost", 0.5)
        self.tracker = tracker
        self.stopped = False
        self.contexts: list[AgentContext] = []
        self.release: Optional[asyncio.Event] = None

    async def execute(self, task, context):
        self.contexts.append(context)
        self.tracker.enter(task)
        try:
            if self.release is not None:
                await self.release.wait()
            await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError(self.fail)
            return AgentResult(
                success=self.success,
                final_response=f"done: {task}" if self.success else f"gave up on {task}",
                total_tokens=self.tokens,
                total_cost=self.cost,
            )
        finally:
            self.tracker.leave(task)

    def stop(self):
        self.stopped = True


class FakeAgentFactory:
    def __init__(self):
        self.tracker = ConcurrencyTracker()
        self.created: list[FakeAgent] = []

    def create_agent(self, config):
        agent = FakeAgent(config, self.tracker)
        self.created.append(agent)
        return agent


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def permission_manager() -> PermissionManager:
    return PermissionManager(PermissionConfig(accept_risk_level="medium"))


@pytest.fixture()
def project_dir() -> str:
    return "/projects/demo"


@pytest.fixture()
def project_fs(project_dir) -> InMemoryFileSystem:
    return InMemoryFileSystem(dirs={project_dir})


@pytest.fixture()
def fake_process() -> FakeProcessExecutor:
    return FakeProcessExecutor()


@pytest.fixture()
def fake_runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture()
def agent_factory() -> FakeAgentFactory:
    return FakeAgentFactory()


@pytest.fixture()
def native_config(project_dir) -> ExecutionConfig:
    return ExecutionConfig(mode="native", project_dir=project_dir)


@pytest.fixture()
def make_fs():
    """Build an InMemoryFileSystem with given files/dirs."""
    return InMemoryFileSystem
