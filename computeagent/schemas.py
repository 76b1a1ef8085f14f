"""Pydantic schemas for compute agent jobs, kernels and gateway contracts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class KernelStatus(str, Enum):
    """Kernel session status."""

    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    TERMINATED = "terminated"


class GatewayConnectionState(str, Enum):
    """Connection state towards the orchestration gateway."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


# --- Jobs ---


class JobMetrics(BaseModel):
    """Resource metrics collected for a finished job.

    Only the duration is measured; memory and CPU fields are reserved.
    """

    duration_seconds: float = 0.0
    peak_memory_gb: float = 0.0
    cpu_utilization: float = 0.0


class JobSubmitRequest(BaseModel):
    """Request to run a script on the local agent."""

    name: str = Field(default="job", min_length=1, max_length=200)
    script: str | None = Field(default=None, description="Inline Python source")
    script_path: str | None = Field(default=None, description="Path to a .py or shell script")
    working_dir: str | None = None
    environment: dict[str, str | None] = Field(default_factory=dict)
    priority: int = Field(default=1, ge=0, le=100)
    framework: str = "generic"

    @model_validator(mode="after")
    def _require_script(self) -> JobSubmitRequest:
        if not self.script and not self.script_path:
            raise ValueError("Either 'script' or 'script_path' is required")
        return self


class Job(BaseModel):
    """A one-shot script execution tracked from queued to a terminal state."""

    id: str
    name: str
    script: str | None = None
    script_path: str | None = None
    working_dir: str | None = None
    environment: dict[str, str | None] = Field(default_factory=dict)
    priority: int = 1
    framework: str = "generic"
    status: JobStatus = JobStatus.QUEUED
    submitted_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    logs: list[str] = Field(default_factory=list)
    metrics: JobMetrics | None = None
    error: str | None = None


class JobSummary(BaseModel):
    """Job reference sent along with heartbeats."""

    id: str
    name: str


class JobListResponse(BaseModel):
    jobs: list[Job]


class JobLogsResponse(BaseModel):
    logs: list[str]


class SuccessResponse(BaseModel):
    success: bool = True


# --- Kernels ---


class KernelSession(BaseModel):
    """A long-lived interactive interpreter session."""

    id: str
    language: str = "python"
    created_at: datetime
    last_activity: datetime
    status: KernelStatus = KernelStatus.STARTING
    execution_count: int = 0


class KernelCreateRequest(BaseModel):
    language: str = "python"


class KernelListResponse(BaseModel):
    kernels: list[KernelSession]


class ExecuteRequest(BaseModel):
    """Code to run in a kernel; a kernel is created when none is given."""

    code: str
    kernel_id: str | None = None


class ExecutionOutput(BaseModel):
    """One ordered output item produced by an execution."""

    type: Literal["stream", "execute_result"] = "stream"
    name: Literal["stdout", "stderr"] | None = "stdout"
    text: str = ""


class ExecutionErrorInfo(BaseModel):
    """Structured exception raised by user code."""

    name: str
    value: str
    traceback: list[str] = Field(default_factory=list)


class ExecuteResult(BaseModel):
    """Result of one code-execution round trip."""

    kernel_id: str
    execution_count: int
    status: Literal["ok", "error"]
    outputs: list[ExecutionOutput] = Field(default_factory=list)
    error: ExecutionErrorInfo | None = None
    duration: int = Field(default=0, description="Wall time in milliseconds")


# --- Hardware ---


class CPUInfo(BaseModel):
    model: str = "unknown"
    cores: int = 1
    performance_cores: int | None = None
    efficiency_cores: int | None = None


class MemoryInfo(BaseModel):
    total: float = Field(default=0.0, description="Total RAM in GB")
    available: float = Field(default=0.0, description="Available RAM in GB")
    unified: bool = False


class GPUInfo(BaseModel):
    type: str
    memory: float = 0.0
    api: str = ""
    compute_capability: str | None = None
    neural_engine: bool | None = None
    neural_engine_tops: float | None = None


class FrameworkInfo(BaseModel):
    name: str
    version: str | None = None
    available: bool = False
    gpu_support: bool = False


class HardwareInfo(BaseModel):
    """Capabilities of the local machine."""

    platform: str
    arch: str
    hostname: str
    cpu: CPUInfo
    memory: MemoryInfo
    gpu: GPUInfo | None = None
    frameworks: list[FrameworkInfo] = Field(default_factory=list)


# --- Gateway wire contract (camelCase on the wire) ---


class GatewayModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentCapabilities(GatewayModel):
    gpu_type: str = "none"
    gpu_memory: float = 0.0
    cpu_cores: int = 1
    ram_total: float = 0.0
    frameworks: list[str] = Field(default_factory=list)
    metal_version: int | None = None
    compute_capability: str | None = None
    neural_engine: bool | None = None
    neural_engine_tops: float | None = None


class AgentRegistrationConfig(GatewayModel):
    max_memory_percent: int
    allow_remote_jobs: bool
    idle_timeout_minutes: float


class AgentRegistration(GatewayModel):
    """Body of POST /register."""

    type: Literal["local-compute"] = "local-compute"
    name: str
    hostname: str
    capabilities: AgentCapabilities
    config: AgentRegistrationConfig


class RegistrationResponse(GatewayModel):
    agent_id: str
    heartbeat_interval: float | None = Field(
        default=None,
        description="Heartbeat interval in milliseconds, if the gateway sets one",
    )


class HeartbeatPayload(GatewayModel):
    """Body of POST /heartbeat."""

    agent_id: str
    status: Literal["idle", "busy"]
    current_job: JobSummary | None = None


# --- Agent status ---


class AgentStatus(BaseModel):
    """Full agent status for the local API."""

    id: str | None
    name: str
    status: Literal["idle", "busy"]
    pid: int
    started_at: datetime | None = None
    uptime: str | None = None
    current_job: Job | None = None
    queue_depth: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    total_compute_time: float = 0.0
    kernels: int = 0
    gateway: GatewayConnectionState = GatewayConnectionState.DISCONNECTED
    hardware: HardwareInfo | None = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    agent_id: str | None = None


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None
