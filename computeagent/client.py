"""Synchronous client for a running agent's local API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from computeagent.errors import AgentNotRunningError, ComputeAgentError, KernelTimeoutError, NotFoundError, ValidationError
from computeagent.schemas import (
    AgentStatus,
    ExecuteResult,
    HealthResponse,
    Job,
    JobSubmitRequest,
    KernelSession,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0  # seconds
EXECUTE_TIMEOUT = 330.0  # kernel execution timeout plus margin
KERNEL_CREATE_TIMEOUT = 45.0  # kernel startup timeout plus margin

_ERRORS_BY_STATUS: dict[int, type[ComputeAgentError]] = {
    400: ValidationError,
    404: NotFoundError,
    504: KernelTimeoutError,
}


class LocalComputeClient:
    """Talks to the agent listening on host:port."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9200,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = f"http://{host}:{port}"
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> LocalComputeClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise AgentNotRunningError(
                f"No compute agent at {self.base_url}. Start one with: computeagent start"
            ) from e
        except httpx.TimeoutException as e:
            raise KernelTimeoutError(f"Request to {path} timed out") from e

        if response.is_error:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            error_class = _ERRORS_BY_STATUS.get(response.status_code, ComputeAgentError)
            raise error_class(detail)
        return response.json()

    # --- Agent ---

    def check_health(self) -> bool:
        """True when an agent answers /health."""
        try:
            HealthResponse.model_validate(self._request("GET", "/health"))
        except ComputeAgentError:
            return False
        return True

    def get_status(self) -> AgentStatus:
        return AgentStatus.model_validate(self._request("GET", "/status"))

    def shutdown(self) -> None:
        self._request("POST", "/shutdown")

    # --- Jobs ---

    def submit_job(self, request: JobSubmitRequest) -> Job:
        return Job.model_validate(self._request("POST", "/jobs", json=request.model_dump()))

    def get_job(self, job_id: str) -> Job:
        return Job.model_validate(self._request("GET", f"/jobs/{job_id}"))

    def list_jobs(self, status: str | None = None, limit: int | None = None) -> list[Job]:
        params = {key: value for key, value in {"status": status, "limit": limit}.items() if value is not None}
        data = self._request("GET", "/jobs", params=params)
        return [Job.model_validate(job) for job in data["jobs"]]

    def get_job_logs(self, job_id: str, tail: int | None = None) -> list[str]:
        params = {"tail": tail} if tail else {}
        return self._request("GET", f"/jobs/{job_id}/logs", params=params)["logs"]

    def cancel_job(self, job_id: str) -> bool:
        try:
            self._request("POST", f"/jobs/{job_id}/cancel")
        except NotFoundError:
            return False
        return True

    # --- Kernels ---

    def create_kernel(self, language: str = "python") -> KernelSession:
        data = self._request("POST", "/kernels", json={"language": language}, timeout=KERNEL_CREATE_TIMEOUT)
        return KernelSession.model_validate(data)

    def list_kernels(self) -> list[KernelSession]:
        data = self._request("GET", "/kernels")
        return [KernelSession.model_validate(kernel) for kernel in data["kernels"]]

    def get_kernel(self, kernel_id: str) -> KernelSession:
        return KernelSession.model_validate(self._request("GET", f"/kernels/{kernel_id}"))

    def shutdown_kernel(self, kernel_id: str) -> None:
        self._request("DELETE", f"/kernels/{kernel_id}")

    def interrupt_kernel(self, kernel_id: str) -> None:
        self._request("POST", f"/kernels/{kernel_id}/interrupt")

    def execute(self, code: str, kernel_id: str | None = None) -> ExecuteResult:
        data = self._request(
            "POST",
            "/execute",
            json={"code": code, "kernel_id": kernel_id},
            timeout=EXECUTE_TIMEOUT,
        )
        return ExecuteResult.model_validate(data)
