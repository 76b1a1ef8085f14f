"""AgentCore: the compute agent process and everything it owns.

Composes the job executor, the kernel manager and the gateway connector,
enforces one agent per host through a locked PID file, and stops itself
after a configurable idle period.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import signal
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Coroutine

import httpx

from computeagent.config import AgentConfig
from computeagent.credentials import Credentials, CredentialsStore
from computeagent.errors import AgentAlreadyRunningError
from computeagent.events import AgentStopped, Event, EventBus, JobCancelled, JobCompleted, JobFailed
from computeagent.executor import JobExecutor
from computeagent.gateway import GatewayConnector
from computeagent.hardware import detect_hardware
from computeagent.kernels import KernelManager
from computeagent.procutil import process_alive
from computeagent.schemas import (
    AgentStatus,
    ExecuteRequest,
    ExecuteResult,
    HardwareInfo,
    HealthResponse,
    Job,
    JobStatus,
    JobSubmitRequest,
    JobSummary,
    KernelSession,
)

logger = logging.getLogger(__name__)


def read_pid_file(path: Path | str) -> int | None:
    try:
        raw = Path(path).read_text().strip()
    except (FileNotFoundError, OSError):
        return None
    return int(raw) if raw.isdigit() else None


def read_agent_pid(path: Path | str) -> int | None:
    """PID of the running agent, or None when the PID file is missing or stale."""
    pid = read_pid_file(path)
    if pid is not None and process_alive(pid):
        return pid
    return None


class PidFile:
    """PID file held under an exclusive flock for the agent's lifetime."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        previous = read_pid_file(self.path)

        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise AgentAlreadyRunningError(previous)

        if previous is not None and previous != os.getpid():
            if process_alive(previous):
                logger.warning(f"PID file {self.path} names pid {previous} but it holds no lock, taking over")
            else:
                logger.warning(f"Removing stale PID file {self.path} (pid {previous} is not running)")

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        if read_pid_file(self.path) == os.getpid():
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class AgentCore:
    """The single object the local API calls into."""

    def __init__(
        self,
        config: AgentConfig | None = None,
        credentials: Credentials | None = None,
        gateway_transport: httpx.AsyncBaseTransport | None = None,
        hardware_probe: Callable[[], HardwareInfo] = detect_hardware,
        serve_api: bool = True,
        handle_signals: bool = True,
    ):
        self.config = config or AgentConfig()
        self.serve_api = serve_api
        self.handle_signals = handle_signals
        self._hardware_probe = hardware_probe

        if credentials is None:
            credentials = CredentialsStore(self.config.credentials_file).load()
        if credentials is None:
            logger.info("No stored credentials, gateway requests will be unauthenticated")

        self.bus = EventBus(queue_size=self.config.event_queue_size)
        self.executor = JobExecutor(
            self.bus,
            python_executable=self.config.python_executable,
            shell_executable=self.config.shell_executable,
            cancel_grace_period=self.config.cancel_grace_period,
            max_job_history=self.config.max_job_history,
            log_buffer_lines=self.config.log_buffer_lines,
        )
        self.kernels = KernelManager(
            self.bus,
            python_executable=self.config.python_executable,
            startup_timeout=self.config.kernel_startup_timeout,
            execution_timeout=self.config.kernel_execution_timeout,
            shutdown_grace=self.config.kernel_shutdown_grace,
        )
        self.gateway = GatewayConnector(
            self.bus,
            self.config,
            credentials=credentials,
            status_provider=self._heartbeat_status,
            transport=gateway_transport,
        )

        self.hardware: HardwareInfo | None = None
        self.started_at: datetime | None = None
        self._started_monotonic = 0.0
        self._pid_file = PidFile(self.config.pid_file)
        self._server: Any = None
        self._idle_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._signals_installed: list[signal.Signals] = []
        self._running = False
        self._stopping = False
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running and not self._stopping

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bring the agent up. Raises AgentAlreadyRunningError if another agent holds the PID file."""
        if self._running:
            return
        self._pid_file.acquire()
        self._running = True
        self.started_at = datetime.now()
        self._started_monotonic = time.monotonic()
        logger.info(f"Starting compute agent '{self.config.name}' (pid {os.getpid()})")

        try:
            self.hardware = await asyncio.to_thread(self._hardware_probe)
            if self.hardware.gpu and "Apple M" in self.hardware.gpu.type:
                self.executor.extra_env["PYTORCH_ENABLE_MPS_FALLBACK"] = "1"
            self.gateway.hardware = self.hardware

            if not await self.gateway.connect():
                logger.warning("Gateway unavailable, accepting local jobs only")

            if self.serve_api:
                from computeagent.server import LocalApiServer

                self._server = LocalApiServer(self, self.config.api_host, self.config.api_port)
                await self._server.start()

            self.gateway.start_heartbeat()
            self.bus.add_listener(self._on_event)
            self._reset_idle_timer()
            if self.handle_signals:
                self._install_signal_handlers()
        except Exception:
            logger.error("Compute agent failed to start", exc_info=True)
            await self.stop(reason="startup failed")
            raise

        logger.info("Compute agent ready")

    async def stop(self, reason: str = "shutdown") -> None:
        """Tear everything down. Later calls wait for the first one to finish."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        logger.info(f"Stopping compute agent ({reason})")

        self._cancel_idle_timer()
        self._remove_signal_handlers()
        self.bus.remove_listener(self._on_event)

        try:
            await self.kernels.shutdown_all()
            await self.executor.shutdown()
            await self.gateway.disconnect(reason)
            await self.gateway.aclose()
            if self._server is not None:
                await self._server.stop()
        finally:
            current = asyncio.current_task()
            for task in list(self._tasks):
                if task is not current:
                    task.cancel()
            self._pid_file.release()
            self._running = False
            self.bus.publish(AgentStopped(reason=reason))
            self._stopped.set()
            logger.info("Compute agent stopped")

    def request_stop(self, reason: str = "shutdown") -> None:
        """Schedule stop() without waiting for it."""
        self._spawn(self.stop(reason=reason))

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self) -> None:
        """Start, then block until the agent stops."""
        await self.start()
        await self.wait_stopped()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"Cannot install handler for {sig.name}: {e}")
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}")
        self.request_stop(reason=sig.name)

    def _on_event(self, event: Event) -> None:
        if isinstance(event, (JobCompleted, JobFailed, JobCancelled)):
            self._reset_idle_timer()
            self._spawn(self.gateway.send_heartbeat())

    # --- Idle timeout ---

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _reset_idle_timer(self) -> None:
        self._cancel_idle_timer()
        minutes = self.config.idle_timeout_minutes
        if minutes <= 0 or not self.running:
            return
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(minutes * 60, self._on_idle_timeout)

    def _on_idle_timeout(self) -> None:
        self._idle_timer = None
        if self.executor.is_busy:
            self._reset_idle_timer()
            return
        logger.info(f"Idle for {self.config.idle_timeout_minutes} minutes, shutting down")
        self.request_stop(reason="idle timeout")

    # --- Status ---

    def _heartbeat_status(self) -> tuple[str, JobSummary | None]:
        job = self.executor.current_job
        if job is None:
            return "idle", None
        return "busy", JobSummary(id=job.id, name=job.name)

    def status(self) -> AgentStatus:
        executor = self.executor
        current = executor.current_job
        uptime = None
        if self.started_at is not None:
            uptime = format_uptime(time.monotonic() - self._started_monotonic)
        return AgentStatus(
            id=self.gateway.agent_id,
            name=self.config.name,
            status="busy" if current else "idle",
            pid=os.getpid(),
            started_at=self.started_at,
            uptime=uptime,
            current_job=current,
            queue_depth=executor.queue_depth,
            jobs_completed=executor.jobs_completed,
            jobs_failed=executor.jobs_failed,
            total_compute_time=round(executor.total_compute_time, 3),
            kernels=self.kernels.count,
            gateway=self.gateway.state,
            hardware=self.hardware,
        )

    def health(self) -> HealthResponse:
        return HealthResponse(agent_id=self.gateway.agent_id)

    # --- Jobs ---

    def submit_job(self, request: JobSubmitRequest) -> Job:
        job = self.executor.submit(request)
        self._reset_idle_timer()
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.executor.get_job(job_id)

    def list_jobs(self, status: JobStatus | None = None, limit: int | None = None) -> list[Job]:
        return self.executor.list_jobs(status=status, limit=limit)

    def get_job_logs(self, job_id: str, tail: int | None = None) -> list[str]:
        return self.executor.get_job_logs(job_id, tail=tail)

    async def cancel_job(self, job_id: str) -> bool:
        return await self.executor.cancel_job(job_id)

    # --- Kernels ---

    async def create_kernel(self, language: str = "python") -> KernelSession:
        return await self.kernels.create_kernel(language)

    def list_kernels(self) -> list[KernelSession]:
        return self.kernels.list_kernels()

    def get_kernel(self, kernel_id: str) -> KernelSession | None:
        return self.kernels.get_kernel(kernel_id)

    async def shutdown_kernel(self, kernel_id: str) -> None:
        await self.kernels.shutdown_kernel(kernel_id)

    async def interrupt_kernel(self, kernel_id: str) -> bool:
        return await self.kernels.interrupt_kernel(kernel_id)

    async def execute_code(self, request: ExecuteRequest) -> ExecuteResult:
        return await self.kernels.execute_code(request)
