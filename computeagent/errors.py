"""Exception types raised across the compute agent."""

from __future__ import annotations


class ComputeAgentError(Exception):
    """Base class for compute agent errors."""

    error_code = "INTERNAL_ERROR"


class ValidationError(ComputeAgentError):
    """Raised when a job or kernel request is malformed."""

    error_code = "VALIDATION_ERROR"


class ProcessSpawnError(ComputeAgentError):
    """Raised when a child process cannot be started."""

    error_code = "SPAWN_FAILED"


class ExecutionError(ComputeAgentError):
    """Raised when a child process exits abnormally."""

    error_code = "EXECUTION_FAILED"


class KernelTimeoutError(ComputeAgentError, TimeoutError):
    """Raised when a kernel does not become ready or respond in time."""

    error_code = "TIMEOUT"


class GatewayConnectionError(ComputeAgentError, ConnectionError):
    """Raised when the orchestration gateway cannot be reached."""

    error_code = "CONNECTION_ERROR"

    def __init__(self, message: str, code: str | None = None):
        self.code = code or self.error_code
        super().__init__(message)


class NotFoundError(ComputeAgentError):
    """Raised for unknown job or kernel ids."""

    error_code = "NOT_FOUND"


class AgentAlreadyRunningError(ComputeAgentError):
    """Raised when another agent already holds the PID file."""

    error_code = "ALREADY_RUNNING"

    def __init__(self, pid: int | None = None):
        self.pid = pid
        detail = f" (pid {pid})" if pid else ""
        super().__init__(
            f"Another compute agent is already running{detail}. "
            "Stop it first with: computeagent stop"
        )


class AgentNotRunningError(ComputeAgentError):
    """Raised by the local client when no agent answers."""

    error_code = "NOT_RUNNING"
