"""Local HTTP/WebSocket API over AgentCore."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import TYPE_CHECKING

import uvicorn
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from computeagent import __version__
from computeagent.errors import (
    ComputeAgentError,
    KernelTimeoutError,
    NotFoundError,
    ValidationError,
)
from computeagent.events import AgentStopped, Event
from computeagent.schemas import (
    AgentStatus,
    ErrorResponse,
    ExecuteRequest,
    ExecuteResult,
    HealthResponse,
    Job,
    JobListResponse,
    JobLogsResponse,
    JobStatus,
    JobSubmitRequest,
    KernelCreateRequest,
    KernelListResponse,
    KernelSession,
    SuccessResponse,
)

if TYPE_CHECKING:
    from computeagent.agent import AgentCore

logger = logging.getLogger(__name__)

SERVER_STOP_TIMEOUT = 5.0  # seconds


def _status_code(exc: ComputeAgentError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, KernelTimeoutError):
        return 504
    return 500


def create_app(agent: AgentCore) -> FastAPI:
    """Build the local API for one agent."""
    app = FastAPI(
        title="Compute Agent",
        description="Local control API for the compute agent",
        version=__version__,
    )

    @app.exception_handler(ComputeAgentError)
    async def agent_error_handler(request, exc: ComputeAgentError) -> JSONResponse:
        status_code = _status_code(exc)
        if status_code >= 500:
            logger.error(f"Request failed: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(detail=str(exc), error_code=exc.error_code).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request, exc: RequestValidationError) -> JSONResponse:
        messages = [error.get("msg", "") for error in exc.errors()]
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                detail="; ".join(messages) or "Invalid request",
                error_code=ValidationError.error_code,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(detail=str(exc), error_code="INTERNAL_ERROR").model_dump(),
        )

    # --- Agent ---

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return agent.health()

    @app.get("/status", response_model=AgentStatus)
    async def status() -> AgentStatus:
        return agent.status()

    @app.post("/shutdown", response_model=SuccessResponse)
    async def shutdown() -> SuccessResponse:
        """Stop the agent once this response has been sent."""
        logger.info("Shutdown requested via local API")
        agent.request_stop(reason="api")
        return SuccessResponse()

    # --- Jobs ---

    @app.post("/jobs", response_model=Job)
    async def submit_job(request: JobSubmitRequest) -> Job:
        return agent.submit_job(request)

    @app.get("/jobs", response_model=JobListResponse)
    async def list_jobs(
        status: JobStatus | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> JobListResponse:
        return JobListResponse(jobs=agent.list_jobs(status=status, limit=limit))

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job_id: str) -> Job:
        job = agent.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    @app.get("/jobs/{job_id}/logs", response_model=JobLogsResponse)
    async def get_job_logs(job_id: str, tail: int | None = None) -> JobLogsResponse:
        return JobLogsResponse(logs=agent.get_job_logs(job_id, tail=tail))

    @app.post("/jobs/{job_id}/cancel", response_model=SuccessResponse)
    async def cancel_job(job_id: str) -> SuccessResponse:
        if not await agent.cancel_job(job_id):
            raise NotFoundError(f"Job not found or not cancellable: {job_id}")
        return SuccessResponse()

    # --- Kernels ---

    @app.post("/kernels", response_model=KernelSession)
    async def create_kernel(request: KernelCreateRequest | None = None) -> KernelSession:
        language = request.language if request else "python"
        return await agent.create_kernel(language)

    @app.get("/kernels", response_model=KernelListResponse)
    async def list_kernels() -> KernelListResponse:
        return KernelListResponse(kernels=agent.list_kernels())

    @app.get("/kernels/{kernel_id}", response_model=KernelSession)
    async def get_kernel(kernel_id: str) -> KernelSession:
        kernel = agent.get_kernel(kernel_id)
        if kernel is None:
            raise NotFoundError(f"Kernel not found: {kernel_id}")
        return kernel

    @app.post("/kernels/{kernel_id}/execute", response_model=ExecuteResult)
    async def execute_in_kernel(kernel_id: str, request: ExecuteRequest) -> ExecuteResult:
        return await agent.execute_code(request.model_copy(update={"kernel_id": kernel_id}))

    @app.post("/execute", response_model=ExecuteResult)
    async def execute(request: ExecuteRequest) -> ExecuteResult:
        return await agent.execute_code(request)

    @app.delete("/kernels/{kernel_id}", response_model=SuccessResponse)
    async def shutdown_kernel(kernel_id: str) -> SuccessResponse:
        await agent.shutdown_kernel(kernel_id)
        return SuccessResponse()

    @app.post("/kernels/{kernel_id}/interrupt", response_model=SuccessResponse)
    async def interrupt_kernel(kernel_id: str) -> SuccessResponse:
        if not await agent.interrupt_kernel(kernel_id):
            raise NotFoundError(f"Kernel not found: {kernel_id}")
        return SuccessResponse()

    # --- Event stream ---

    @app.websocket("/ws")
    async def event_stream(websocket: WebSocket) -> None:
        """Stream job logs or kernel output.

        Clients send {"subscribe": "logs", "job_id": ...} or
        {"subscribe": "kernel", "kernel_id": ...}; each is acknowledged.
        """
        await websocket.accept()
        job_ids: set[str] = set()
        kernel_ids: set[str] = set()

        def wanted(event: Event) -> bool:
            if isinstance(event, AgentStopped):
                return True
            job_id = getattr(event, "job_id", None)
            if job_id is not None:
                return job_id in job_ids
            kernel_id = getattr(event, "kernel_id", None)
            return kernel_id is not None and kernel_id in kernel_ids

        async def receive() -> None:
            while True:
                message = await websocket.receive_json()
                kind = message.get("subscribe") if isinstance(message, dict) else None
                if kind == "logs" and message.get("job_id"):
                    job_ids.add(message["job_id"])
                    await websocket.send_json({"type": "subscribed", "job_id": message["job_id"]})
                elif kind == "kernel" and message.get("kernel_id"):
                    kernel_ids.add(message["kernel_id"])
                    await websocket.send_json({"type": "subscribed", "kernel_id": message["kernel_id"]})
                else:
                    await websocket.send_json({"type": "error", "message": f"Unknown subscription: {message}"})

        async def send(subscription) -> None:
            while True:
                event = await subscription.get()
                await websocket.send_json(event.to_dict())

        with agent.bus.subscribe(wanted) as subscription:
            tasks = [asyncio.create_task(receive()), asyncio.create_task(send(subscription))]
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.warning(f"Event stream closed: {exc}")
            if subscription.dropped:
                logger.info(f"Event stream dropped {subscription.dropped} events for a slow client")

    return app


class LocalApiServer:
    """Runs the local API under uvicorn inside the agent's event loop."""

    def __init__(self, agent: AgentCore, host: str, port: int):
        self.agent = agent
        self.host = host
        self.port = port
        self.server = uvicorn.Server(uvicorn.Config(
            create_app(agent),
            host=host,
            port=port,
            log_level="warning",
            lifespan="off",
        ))
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    async def start(self) -> None:
        # Bind here so a busy port raises instead of exiting inside uvicorn
        try:
            sock = socket.create_server((self.host, self.port))
        except OSError as e:
            raise ComputeAgentError(f"Cannot listen on {self.host}:{self.port}: {e}") from e

        self._task = asyncio.create_task(self.server.serve(sockets=[sock]))
        self._task.add_done_callback(self._on_exit)
        while not self.server.started and not self._task.done():
            await asyncio.sleep(0.05)
        if self._task.done():
            raise ComputeAgentError(f"Local API on {self.host}:{self.port} failed to start")
        logger.info(f"Local API listening on http://{self.host}:{self.port}")

    def _on_exit(self, task: asyncio.Task[None]) -> None:
        if self._stopping:
            return
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Local API server crashed: {task.exception()}")
        else:
            logger.warning("Local API server exited")
        self.agent.request_stop(reason="api server exited")

    async def stop(self) -> None:
        if self._task is None or self._stopping:
            return
        self._stopping = True
        self.server.should_exit = True
        _, pending = await asyncio.wait([self._task], timeout=SERVER_STOP_TIMEOUT)
        if pending:
            self.server.force_exit = True
            await asyncio.wait(pending, timeout=SERVER_STOP_TIMEOUT)
