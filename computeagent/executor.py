"""Single-flight job executor: a priority queue feeding one child process at a time."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import os
import signal
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from computeagent.errors import ExecutionError, ProcessSpawnError
from computeagent.events import EventBus, JobCancelled, JobCompleted, JobFailed, JobLog, JobStarted
from computeagent.procutil import iter_lines
from computeagent.schemas import Job, JobMetrics, JobStatus, JobSubmitRequest

logger = logging.getLogger(__name__)

# Exit code recorded for jobs terminated by a signal
SIGNAL_EXIT_CODE = 128

CANCEL_POLL_INTERVAL = 0.1  # seconds
PIPE_DRAIN_TIMEOUT = 1.0  # seconds to finish reading output after exit

STDERR_PREFIX = "[stderr] "


@dataclass
class QueuedJob:
    """Job waiting in the queue. Orders by priority desc, then submission order."""

    job: Job
    priority: int
    sequence: int
    submitted_at: float = field(default_factory=time.monotonic)

    def __lt__(self, other: QueuedJob) -> bool:
        return (-self.priority, self.sequence) < (-other.priority, other.sequence)


@dataclass
class RunningJobHandle:
    """The one job currently executing."""

    job: Job
    process: asyncio.subprocess.Process
    start_time: float
    cancel_requested: bool = False
    finished: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def pid(self) -> int:
        return self.process.pid


class JobExecutor:
    """Runs submitted jobs one at a time as child processes.

    Job records are owned here; every read returns a copy.
    """

    def __init__(
        self,
        bus: EventBus,
        python_executable: str = "python3",
        shell_executable: str = "bash",
        cancel_grace_period: float = 5.0,
        max_job_history: int = 500,
        log_buffer_lines: int = 1000,
        extra_env: dict[str, str] | None = None,
    ):
        self.bus = bus
        self.python_executable = python_executable
        self.shell_executable = shell_executable
        self.cancel_grace_period = cancel_grace_period
        self.max_job_history = max_job_history
        self.log_buffer_lines = log_buffer_lines
        self.extra_env = dict(extra_env or {})

        self._jobs: dict[str, Job] = {}
        self._queue: list[QueuedJob] = []
        self._current: RunningJobHandle | None = None
        # Job popped from the queue whose process is being spawned
        self._starting: Job | None = None
        self._start_cancelled = False
        self._spawned = asyncio.Event()
        self._terminal: deque[str] = deque()
        self._sequence = itertools.count()
        self._runner: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self.jobs_completed = 0
        self.jobs_failed = 0
        self.total_compute_time = 0.0

    # --- Submission and scheduling ---

    def submit(self, request: JobSubmitRequest) -> Job:
        """Queue a job and start it if nothing is running. Returns a copy."""
        job = Job(
            id=str(uuid.uuid4()),
            name=request.name,
            script=request.script,
            script_path=request.script_path,
            working_dir=request.working_dir,
            environment=dict(request.environment),
            priority=request.priority,
            framework=request.framework,
            status=JobStatus.QUEUED,
            submitted_at=datetime.now(),
        )
        self._jobs[job.id] = job
        heapq.heappush(
            self._queue,
            QueuedJob(job=job, priority=request.priority, sequence=next(self._sequence)),
        )
        self._idle.clear()
        logger.info(f"Queued job {job.id} ({job.name}), priority={job.priority}")

        snapshot = job.model_copy(deep=True)
        self.process_queue()
        return snapshot

    def process_queue(self) -> None:
        """Start draining the queue unless a job is already running."""
        if self._runner is not None and not self._runner.done():
            return
        if self._closed or not self._queue:
            if self._current is None:
                self._idle.set()
            return
        self._runner = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue and not self._closed:
                queued = heapq.heappop(self._queue)
                await self._execute(queued.job)
        finally:
            if self._current is None and (self._closed or not self._queue):
                self._idle.set()

    def _build_command(self, job: Job) -> list[str]:
        if job.script_path:
            if job.script_path.endswith(".py"):
                return [self.python_executable, job.script_path]
            return [self.shell_executable, job.script_path]
        return [self.python_executable, "-c", job.script or ""]

    def _build_env(self, job: Job) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env.update({key: value for key, value in job.environment.items() if value is not None})
        env.setdefault("PYTHONUNBUFFERED", "1")
        return env

    async def _execute(self, job: Job) -> None:
        command = self._build_command(job)
        self._starting = job
        self._start_cancelled = False
        self._spawned = asyncio.Event()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=job.working_dir or None,
                env=self._build_env(job),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            cancelled = self._start_cancelled
            self._end_start()
            if cancelled:
                self._mark_cancelled(job)
            else:
                self._fail_spawn(job, e)
            return
        except asyncio.CancelledError:
            self._end_start()
            raise

        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        handle = RunningJobHandle(
            job=job,
            process=process,
            start_time=time.monotonic(),
            cancel_requested=self._start_cancelled,
        )
        self._current = handle
        self._end_start()
        logger.info(f"Started job {job.id} (pid {process.pid}): {' '.join(command[:2])}")
        self.bus.publish(JobStarted(job_id=job.id))

        pumps = [
            asyncio.create_task(self._pump(process.stdout, handle, "")),
            asyncio.create_task(self._pump(process.stderr, handle, STDERR_PREFIX)),
        ]
        try:
            returncode = await process.wait()
        except asyncio.CancelledError:
            handle.cancel_requested = True
            self._send_signal(handle, signal.SIGKILL)
            returncode = await process.wait()
            self._finish(handle, returncode)
            raise
        finally:
            _, pending = await asyncio.wait(pumps, timeout=PIPE_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()

        self._finish(handle, returncode)

    def _end_start(self) -> None:
        self._starting = None
        self._start_cancelled = False
        self._spawned.set()

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        handle: RunningJobHandle,
        prefix: str,
    ) -> None:
        if stream is None:
            return
        async for text in iter_lines(stream):
            line = f"{prefix}{text}"
            logs = handle.job.logs
            logs.append(line)
            if len(logs) > self.log_buffer_lines:
                del logs[: len(logs) - self.log_buffer_lines]
            self.bus.publish(JobLog(job_id=handle.job.id, line=line))

    def _fail_spawn(self, job: Job, error: Exception) -> None:
        message = str(ProcessSpawnError(f"Failed to start process: {error}"))
        logger.error(f"Job {job.id} failed to spawn: {error}")
        job.status = JobStatus.FAILED
        job.error = message
        job.completed_at = datetime.now()
        job.metrics = JobMetrics()
        self.jobs_failed += 1
        self._retire(job)
        self.bus.publish(JobFailed(job_id=job.id, error=message))

    def _finish(self, handle: RunningJobHandle, returncode: int) -> None:
        if handle.finished.is_set():
            return
        job = handle.job
        duration = time.monotonic() - handle.start_time
        job.completed_at = datetime.now()
        job.metrics = JobMetrics(duration_seconds=duration)

        killed_by: str | None = None
        if returncode < 0:
            job.exit_code = SIGNAL_EXIT_CODE
            try:
                killed_by = signal.Signals(-returncode).name
            except ValueError:
                killed_by = str(-returncode)
        else:
            job.exit_code = returncode

        if handle.cancel_requested:
            job.status = JobStatus.CANCELLED
            event = JobCancelled(job_id=job.id)
        elif returncode == 0:
            job.status = JobStatus.COMPLETED
            self.jobs_completed += 1
            event = JobCompleted(job_id=job.id, exit_code=0, duration_seconds=duration)
        else:
            job.status = JobStatus.FAILED
            job.error = str(ExecutionError(
                f"Process killed by signal: {killed_by}"
                if killed_by
                else f"Process exited with code: {returncode}"
            ))
            self.jobs_failed += 1
            event = JobFailed(job_id=job.id, error=job.error, exit_code=job.exit_code)

        self.total_compute_time += duration
        self._current = None
        self._retire(job)
        handle.finished.set()

        logger.info(f"Job {job.id} {job.status.value} (exit {job.exit_code}, {duration:.2f}s)")
        self.bus.publish(event)

    def _retire(self, job: Job) -> None:
        """Record a terminal job, evicting the oldest beyond the history limit."""
        self._terminal.append(job.id)
        while len(self._terminal) > self.max_job_history:
            evicted = self._terminal.popleft()
            self._jobs.pop(evicted, None)

    # --- Cancellation ---

    def _send_signal(self, handle: RunningJobHandle, sig: signal.Signals) -> bool:
        """Signal the job process; False if it has already exited."""
        if handle.process.returncode is not None:
            return False
        try:
            handle.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a running or queued job. Never raises."""
        try:
            handle = self._current
            if handle is not None and handle.job.id == job_id and not handle.finished.is_set():
                return await self._cancel_running(handle)
            if self._starting is not None and self._starting.id == job_id:
                return await self._cancel_starting(job_id)
            return self._cancel_queued(job_id)
        except Exception as e:
            logger.error(f"Failed to cancel job {job_id}: {e}", exc_info=True)
            return False

    async def _cancel_starting(self, job_id: str) -> bool:
        """Cancel a job whose process is being spawned right now."""
        self._start_cancelled = True
        logger.info(f"Cancelling job {job_id} while it starts")
        await self._spawned.wait()

        handle = self._current
        if handle is not None and handle.job.id == job_id and not handle.finished.is_set():
            return await self._cancel_running(handle)
        job = self._jobs.get(job_id)
        return job is not None and job.status == JobStatus.CANCELLED

    async def _cancel_running(self, handle: RunningJobHandle) -> bool:
        handle.cancel_requested = True
        logger.info(f"Cancelling job {handle.job.id} (pid {handle.pid})")
        self._send_signal(handle, signal.SIGTERM)

        deadline = time.monotonic() + self.cancel_grace_period
        while handle.process.returncode is None and time.monotonic() < deadline:
            await asyncio.sleep(CANCEL_POLL_INTERVAL)

        if handle.process.returncode is None:
            logger.warning(f"Job {handle.job.id} ignored SIGTERM, sending SIGKILL")
            self._send_signal(handle, signal.SIGKILL)

        # Only the captured handle is waited on, never whatever is current now
        await handle.finished.wait()
        return True

    def _cancel_queued(self, job_id: str) -> bool:
        for index, queued in enumerate(self._queue):
            if queued.job.id == job_id:
                break
        else:
            return False

        self._queue.pop(index)
        heapq.heapify(self._queue)
        self._mark_cancelled(queued.job)
        if not self._queue and self._current is None and self._starting is None:
            self._idle.set()
        logger.info(f"Removed queued job {job_id}")
        return True

    def _mark_cancelled(self, job: Job) -> None:
        """Cancel a job that never got a process."""
        job.status = JobStatus.CANCELLED
        job.completed_at = datetime.now()
        self._retire(job)
        self.bus.publish(JobCancelled(job_id=job.id))

    async def shutdown(self) -> None:
        """Stop taking jobs from the queue and cancel the running one."""
        self._closed = True
        job = self._current.job if self._current is not None else self._starting
        if job is not None:
            await self.cancel_job(job.id)
        if self._runner is not None and not self._runner.done():
            await asyncio.wait([self._runner], timeout=self.cancel_grace_period + 1)

    # --- Read-only lookups ---

    def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(self, status: JobStatus | None = None, limit: int | None = None) -> list[Job]:
        """Jobs newest-submitted first, optionally filtered and limited."""
        jobs = [job for job in reversed(list(self._jobs.values())) if status is None or job.status == status]
        jobs.sort(key=lambda job: job.submitted_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return [job.model_copy(deep=True) for job in jobs]

    def get_job_logs(self, job_id: str, tail: int | None = None) -> list[str]:
        job = self._jobs.get(job_id)
        if job is None:
            return []
        if tail and tail > 0:
            return job.logs[-tail:]
        return list(job.logs)

    @property
    def current_job(self) -> Job | None:
        handle = self._current
        return handle.job.model_copy(deep=True) if handle else None

    @property
    def current_handle(self) -> RunningJobHandle | None:
        return self._current

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def is_busy(self) -> bool:
        return self._current is not None or bool(self._queue)

    async def wait_idle(self) -> None:
        """Wait until no job is running or queued."""
        await self._idle.wait()
