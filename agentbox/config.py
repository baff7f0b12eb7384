# agentbox/config.py
"""
Configuration for agentbox.

Process-wide settings (permission policy, orchestration limits, default
sandbox selection) load from environment variables and an optional ``.env``
file and are validated with pydantic-settings. The per-run sandbox description
handed to executors (``ExecutionConfig``) is a plain pydantic model so callers
can build it in code.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import structlog
from pydantic import BaseModel, BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

RiskLevelName = Literal["low", "medium", "high", "critical"]

EXECUTION_MODES = frozenset({"native", "docker", "devcontainer", "auto"})

DEFAULT_DENIED_PATHS = ["**/.env", "**/.git/**", "**/node_modules/**"]


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts a bare string, a comma-separated string, a JSON array (decoded by
    pydantic-settings before this runs) or an existing list.
    """
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


# ---------------------------------------------------------------------------
# Sandbox description (runtime models)
# ---------------------------------------------------------------------------


class DockerConfig(BaseModel):
    """Container sandbox settings. One of image / dockerfile / compose_file is required."""

    image: Optional[str] = None
    dockerfile: Optional[str] = None  # relative to project_dir
    compose_file: Optional[str] = None
    service: Optional[str] = None
    network: Literal["disabled", "limited", "full"] = "disabled"
    cpu_limit: Optional[float] = None
    memory_limit: Optional[Union[int, str]] = None  # bytes or docker size string ("512m")
    workspace_folder: str = "/workspace"
    user: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    build_args: dict[str, str] = Field(default_factory=dict)
    no_cache: bool = False
    readonly_rootfs: bool = False
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: Optional[list[str]] = None  # None = drop ALL

    def has_image_source(self) -> bool:
        return bool(self.image or self.dockerfile or self.compose_file)


class DevContainerOptions(BaseModel):
    """How to locate and treat a project's dev container."""

    config_path: Optional[str] = None
    workspace_folder: str = "/workspace"
    stop_on_exit: bool = False


class FilesystemPolicy(BaseModel):
    """Path restrictions applied by the native backend before the permission gate."""

    read_access: Literal["anywhere", "project-only"] = "anywhere"
    write_access: list[str] = Field(default_factory=list)
    denied_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_DENIED_PATHS))


class ExecutionConfig(BaseModel):
    """Which sandbox to use and how to set it up."""

    mode: str = "auto"  # native | docker | devcontainer | auto
    project_dir: Path
    docker: Optional[DockerConfig] = None
    devcontainer: Optional[DevContainerOptions] = None
    filesystem: FilesystemPolicy = Field(default_factory=FilesystemPolicy)
    command_timeout: float = 120.0

    @model_validator(mode="after")
    def normalize(self) -> "ExecutionConfig":
        self.mode = self.mode.strip().lower()
        self.project_dir = Path(self.project_dir).expanduser().absolute()
        self.command_timeout = max(1.0, float(self.command_timeout))
        return self


# ---------------------------------------------------------------------------
# Process-wide settings
# ---------------------------------------------------------------------------


class PermissionConfig(BaseSettings):
    """Policy for the permission gate."""

    allowlist: StrList = Field(default_factory=list, alias="AGENTBOX_ALLOWLIST")
    blocklist: StrList = Field(default_factory=list, alias="AGENTBOX_BLOCKLIST")
    accept_risk_level: RiskLevelName = Field("medium", alias="AGENTBOX_ACCEPT_RISK_LEVEL")
    auto_accept: bool = Field(False, alias="AGENTBOX_AUTO_ACCEPT")
    audit_log_max_entries: int = Field(1000, alias="AGENTBOX_AUDIT_LOG_MAX_ENTRIES")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "PermissionConfig":
        self.audit_log_max_entries = max(1, int(self.audit_log_max_entries))
        return self


class OrchestrationConfig(BaseSettings):
    """Configuration for the multi-agent scheduler."""

    max_parallel: int = Field(4, alias="AGENTBOX_MAX_PARALLEL")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "OrchestrationConfig":
        self.max_parallel = max(1, int(self.max_parallel))
        return self


class ExecutionSettings(BaseSettings):
    """Environment defaults used to build an ``ExecutionConfig``."""

    mode: str = Field("auto", alias="AGENTBOX_EXECUTION_MODE")
    project_dir: Path = Field(Path("."), alias="AGENTBOX_PROJECT_DIR")
    image: Optional[str] = Field(None, alias="AGENTBOX_DOCKER_IMAGE")
    dockerfile: Optional[str] = Field(None, alias="AGENTBOX_DOCKERFILE")
    network: Literal["disabled", "limited", "full"] = Field(
        "disabled", alias="AGENTBOX_DOCKER_NETWORK"
    )
    cpu_limit: Optional[float] = Field(None, alias="AGENTBOX_DOCKER_CPU")
    memory_limit: Optional[str] = Field(None, alias="AGENTBOX_DOCKER_MEMORY")
    workspace_folder: str = Field("/workspace", alias="AGENTBOX_WORKSPACE_FOLDER")
    command_timeout: float = Field(120.0, alias="AGENTBOX_COMMAND_TIMEOUT")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_mode(self) -> "ExecutionSettings":
        mode = self.mode.strip().lower()
        if mode not in EXECUTION_MODES:
            logger.warning("config.unknown_execution_mode", mode=self.mode, fallback="auto")
            mode = "auto"
        self.mode = mode
        return self

    def to_execution_config(self, **overrides: object) -> ExecutionConfig:
        docker = None
        if self.image or self.dockerfile:
            docker = DockerConfig(
                image=self.image,
                dockerfile=self.dockerfile,
                network=self.network,
                cpu_limit=self.cpu_limit,
                memory_limit=self.memory_limit,
                workspace_folder=self.workspace_folder,
            )
        values: dict[str, object] = {
            "mode": self.mode,
            "project_dir": self.project_dir,
            "docker": docker,
            "devcontainer": DevContainerOptions(workspace_folder=self.workspace_folder),
            "command_timeout": self.command_timeout,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ExecutionConfig(**values)


class AgentboxConfig:
    """Composes every settings group. Each component receives its slice from here."""

    def __init__(self):
        self.permissions = PermissionConfig()
        self.orchestration = OrchestrationConfig()
        self.execution = ExecutionSettings()

    def __repr__(self) -> str:
        return (
            f"AgentboxConfig(mode={self.execution.mode}, "
            f"accept_risk_level={self.permissions.accept_risk_level}, "
            f"max_parallel={self.orchestration.max_parallel})"
        )
