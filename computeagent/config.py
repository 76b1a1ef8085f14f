"""Agent configuration, read from COMPUTE_AGENT_* environment variables."""

from __future__ import annotations

import socket
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STATE_DIR = Path.home() / ".computeagent"
DEFAULT_GATEWAY_URL = "https://api.adverant.ai/hpc"
PID_FILE_NAME = "compute-agent.pid"


class AgentConfig(BaseSettings):
    """Settings for one local compute agent."""

    name: str = Field(default_factory=socket.gethostname)
    gateway_url: str = DEFAULT_GATEWAY_URL

    max_memory_percent: int = Field(default=75, ge=1, le=100)
    allow_remote_jobs: bool = False
    # 0 disables idle shutdown
    idle_timeout_minutes: float = Field(default=0, ge=0)

    # ---- local API ----
    api_host: str = "127.0.0.1"
    api_port: int = 9200

    # ---- gateway ----
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 10
    registration_timeout: float = 10.0
    heartbeat_interval: float = 15.0

    # ---- processes ----
    python_executable: str = "python3"
    shell_executable: str = "bash"
    cancel_grace_period: float = 5.0
    kernel_startup_timeout: float = 30.0
    kernel_execution_timeout: float = 300.0
    kernel_shutdown_grace: float = 5.0

    # ---- in-memory retention ----
    max_job_history: int = 500
    log_buffer_lines: int = 1000
    event_queue_size: int = 1000

    state_dir: Path = DEFAULT_STATE_DIR

    model_config = SettingsConfigDict(env_prefix="COMPUTE_AGENT_", extra="ignore")

    @property
    def pid_file(self) -> Path:
        return self.state_dir / PID_FILE_NAME

    @property
    def credentials_file(self) -> Path:
        return self.state_dir / "credentials.json"


def load_config(**overrides: object) -> AgentConfig:
    """Build config from the environment, then apply explicit overrides.

    `None` overrides are ignored so unset CLI options keep env/default values.
    """
    updates = {key: value for key, value in overrides.items() if value is not None}
    return AgentConfig(**updates)
