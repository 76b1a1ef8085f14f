"""Interactive Python kernels: long-lived interpreter subprocesses.

Each kernel runs ``kernel_driver.py``. Requests go in as JSON lines on the
kernel's stdin; replies come back as JSON frames on its stdout, each tagged
with the id of the execution it belongs to. Frames for any other execution
(a cell that timed out, or anything printed between cells) are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from computeagent.errors import KernelTimeoutError, NotFoundError, ProcessSpawnError, ValidationError
from computeagent.events import (
    EventBus,
    KernelCreated,
    KernelOutput,
    KernelResult,
    KernelShutdown,
    KernelStatusChanged,
)
from computeagent.procutil import iter_lines
from computeagent.schemas import (
    ExecuteRequest,
    ExecuteResult,
    ExecutionErrorInfo,
    ExecutionOutput,
    KernelSession,
    KernelStatus,
)

logger = logging.getLogger(__name__)

KERNEL_DRIVER = Path(__file__).with_name("kernel_driver.py")

SUPPORTED_LANGUAGES = ("python",)

READER_JOIN_TIMEOUT = 1.0  # seconds


@dataclass
class _PendingExecution:
    """The execution a kernel is currently working on."""

    exec_id: str
    done: asyncio.Future[None]
    started: bool = False
    died: bool = False
    outputs: list[ExecutionOutput] = field(default_factory=list)
    error: ExecutionErrorInfo | None = None


@dataclass
class _KernelHandle:
    session: KernelSession
    process: asyncio.subprocess.Process
    ready_token: str
    ready: asyncio.Future[bool]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: _PendingExecution | None = None
    readers: list[asyncio.Task[None]] = field(default_factory=list)
    closing: bool = False

    @property
    def id(self) -> str:
        return self.session.id


class KernelManager:
    """Creates kernels, runs code in them, and tears them down."""

    def __init__(
        self,
        bus: EventBus,
        python_executable: str = "python3",
        startup_timeout: float = 30.0,
        execution_timeout: float = 300.0,
        shutdown_grace: float = 5.0,
        driver_path: Path | str = KERNEL_DRIVER,
        extra_env: dict[str, str] | None = None,
    ):
        self.bus = bus
        self.python_executable = python_executable
        self.startup_timeout = startup_timeout
        self.execution_timeout = execution_timeout
        self.shutdown_grace = shutdown_grace
        self.driver_path = Path(driver_path)
        self.extra_env = dict(extra_env or {})
        self._kernels: dict[str, _KernelHandle] = {}

    # --- Lifecycle ---

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env["PYTHONUNBUFFERED"] = "1"
        env.setdefault("PYTORCH_ENABLE_MPS_FALLBACK", "1")
        return env

    async def create_kernel(self, language: str = "python") -> KernelSession:
        """Start a kernel and wait until its driver reports ready."""
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError(f"Unsupported kernel language: {language}")

        kernel_id = str(uuid.uuid4())
        token = f"__KERNEL_READY_{uuid.uuid4().hex}__"
        try:
            process = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-u",
                str(self.driver_path),
                token,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
            )
        except (OSError, ValueError) as e:
            raise ProcessSpawnError(f"Failed to start kernel: {e}") from e

        now = datetime.now()
        handle = _KernelHandle(
            session=KernelSession(id=kernel_id, language=language, created_at=now, last_activity=now),
            process=process,
            ready_token=token,
            ready=asyncio.get_running_loop().create_future(),
        )
        self._kernels[kernel_id] = handle
        handle.readers = [
            asyncio.create_task(self._read_frames(handle)),
            asyncio.create_task(self._read_stderr(handle)),
        ]
        logger.info(f"Starting kernel {kernel_id} (pid {process.pid})")

        try:
            ready = await asyncio.wait_for(asyncio.shield(handle.ready), timeout=self.startup_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Kernel {kernel_id} not ready after {self.startup_timeout}s, killing it")
            await self._discard(handle)
            raise KernelTimeoutError(f"Kernel did not become ready within {self.startup_timeout}s")

        if not ready:
            await self._discard(handle)
            raise ProcessSpawnError(
                f"Kernel process exited before becoming ready (code {process.returncode})"
            )

        self._set_status(handle, KernelStatus.IDLE)
        self.bus.publish(KernelCreated(kernel_id=kernel_id, language=language))
        logger.info(f"Kernel {kernel_id} ready")
        return handle.session.model_copy()

    async def shutdown_kernel(self, kernel_id: str) -> None:
        """Ask a kernel to quit, killing it after the grace period."""
        handle = self._kernels.get(kernel_id)
        if handle is None:
            raise NotFoundError(f"Kernel not found: {kernel_id}")
        await self._terminate(handle)

    async def shutdown_all(self) -> None:
        handles = list(self._kernels.values())
        if handles:
            await asyncio.gather(*(self._terminate(handle) for handle in handles))

    async def _terminate(self, handle: _KernelHandle) -> None:
        if handle.closing:
            return
        handle.closing = True
        self._set_status(handle, KernelStatus.TERMINATED)
        self._forget(handle)

        process = handle.process
        if process.returncode is None:
            await self._send(handle, {"op": "quit"})
            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Kernel {handle.id} did not quit, killing it")
                self._signal(handle, signal.SIGKILL)
                await process.wait()

        self._resolve_died(handle, f"Kernel shut down (code {process.returncode})")
        await self._join_readers(handle)
        logger.info(f"Kernel {handle.id} shut down")
        self.bus.publish(KernelShutdown(kernel_id=handle.id))

    async def _discard(self, handle: _KernelHandle) -> None:
        """Drop a kernel that never became ready."""
        handle.closing = True
        handle.session.status = KernelStatus.TERMINATED
        self._forget(handle)
        self._signal(handle, signal.SIGKILL)
        await handle.process.wait()
        await self._join_readers(handle)

    def _forget(self, handle: _KernelHandle) -> None:
        if self._kernels.get(handle.id) is handle:
            del self._kernels[handle.id]

    async def _join_readers(self, handle: _KernelHandle) -> None:
        current = asyncio.current_task()
        readers = [task for task in handle.readers if task is not current]
        if not readers:
            return
        _, pending = await asyncio.wait(readers, timeout=READER_JOIN_TIMEOUT)
        for task in pending:
            task.cancel()

    # --- Execution ---

    async def execute_code(self, request: ExecuteRequest) -> ExecuteResult:
        """Run code in a kernel, creating one when the id is missing or unknown.

        Executions on the same kernel run one at a time. User errors and
        timeouts are reported in the result, not raised.
        """
        handle = self._kernels.get(request.kernel_id) if request.kernel_id else None
        if handle is None:
            if request.kernel_id:
                logger.info(f"Kernel {request.kernel_id} not found, creating a new one")
            session = await self.create_kernel()
            handle = self._kernels[session.id]

        async with handle.lock:
            if handle.closing or self._kernels.get(handle.id) is not handle:
                return self._died_result(handle, "Kernel is no longer running")
            return await self._run(handle, request.code)

    async def _run(self, handle: _KernelHandle, code: str) -> ExecuteResult:
        session = handle.session
        pending = _PendingExecution(
            exec_id=uuid.uuid4().hex,
            done=asyncio.get_running_loop().create_future(),
        )
        handle.pending = pending
        session.last_activity = datetime.now()
        self._set_status(handle, KernelStatus.BUSY)

        start = time.monotonic()
        timed_out = False
        try:
            if await self._send(handle, {"op": "execute", "exec_id": pending.exec_id, "code": code}):
                await asyncio.wait_for(asyncio.shield(pending.done), timeout=self.execution_timeout)
            else:
                self._resolve_died(handle, "Kernel stdin is closed")
        except asyncio.TimeoutError:
            timed_out = True
        finally:
            if handle.pending is pending:
                handle.pending = None
        duration = int((time.monotonic() - start) * 1000)

        if timed_out:
            logger.warning(f"Execution in kernel {handle.id} timed out, interrupting")
            self._signal(handle, signal.SIGINT)
            error = ExecutionErrorInfo(
                name="TimeoutError",
                value=f"Execution timed out after {self.execution_timeout}s",
            )
        else:
            error = pending.error
            if not pending.died:
                session.execution_count += 1

        session.last_activity = datetime.now()
        if not handle.closing:
            self._set_status(handle, KernelStatus.IDLE)

        result = ExecuteResult(
            kernel_id=handle.id,
            execution_count=session.execution_count,
            status="error" if error else "ok",
            outputs=pending.outputs,
            error=error,
            duration=duration,
        )
        self.bus.publish(KernelResult(kernel_id=handle.id, result=result.model_dump(mode="json")))
        return result

    def _died_result(self, handle: _KernelHandle, message: str) -> ExecuteResult:
        return ExecuteResult(
            kernel_id=handle.id,
            execution_count=handle.session.execution_count,
            status="error",
            error=ExecutionErrorInfo(name="KernelDied", value=message),
        )

    def _resolve_died(self, handle: _KernelHandle, message: str) -> None:
        pending = handle.pending
        if pending is None or pending.done.done():
            return
        pending.died = True
        pending.error = ExecutionErrorInfo(name="KernelDied", value=message)
        pending.done.set_result(None)

    async def interrupt_kernel(self, kernel_id: str) -> bool:
        """Send SIGINT; a running cell ends with KeyboardInterrupt."""
        handle = self._kernels.get(kernel_id)
        if handle is None:
            return False
        if not self._signal(handle, signal.SIGINT):
            return False
        logger.info(f"Interrupted kernel {kernel_id}")
        self._set_status(handle, KernelStatus.IDLE)
        return True

    # --- Process I/O ---

    async def _send(self, handle: _KernelHandle, message: dict[str, Any]) -> bool:
        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write((json.dumps(message) + "\n").encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Write to kernel {handle.id} failed: {e}")
            return False
        return True

    def _signal(self, handle: _KernelHandle, sig: signal.Signals) -> bool:
        if handle.process.returncode is not None:
            return False
        try:
            handle.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    async def _read_frames(self, handle: _KernelHandle) -> None:
        if handle.process.stdout is not None:
            async for line in iter_lines(handle.process.stdout):
                if not line.strip():
                    continue
                try:
                    frame = json.loads(line)
                except ValueError:
                    logger.debug(f"Kernel {handle.id}: ignoring non-frame output {line[:80]!r}")
                    continue
                if isinstance(frame, dict):
                    self._handle_frame(handle, frame)
        await self._on_exit(handle)

    async def _read_stderr(self, handle: _KernelHandle) -> None:
        """Native stderr: output from C extensions and interpreter crashes."""
        if handle.process.stderr is None:
            return
        async for line in iter_lines(handle.process.stderr):
            pending = handle.pending
            if pending is not None and pending.started and not pending.done.done():
                self._add_output(handle, pending, ExecutionOutput(type="stream", name="stderr", text=line + "\n"))
            else:
                logger.debug(f"Kernel {handle.id} stderr: {line}")

    def _handle_frame(self, handle: _KernelHandle, frame: dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "ready":
            if frame.get("token") == handle.ready_token and not handle.ready.done():
                handle.ready.set_result(True)
            return

        pending = handle.pending
        if pending is None or frame.get("exec_id") != pending.exec_id or pending.done.done():
            logger.debug(f"Kernel {handle.id}: dropping {kind} frame for execution {frame.get('exec_id')}")
            return

        if kind == "start":
            pending.started = True
        elif kind == "stream":
            name = "stderr" if frame.get("name") == "stderr" else "stdout"
            self._add_output(handle, pending, ExecutionOutput(type="stream", name=name, text=str(frame.get("text", ""))))
        elif kind == "result":
            self._add_output(handle, pending, ExecutionOutput(type="execute_result", name=None, text=str(frame.get("text", ""))))
        elif kind == "error":
            pending.error = ExecutionErrorInfo(
                name=str(frame.get("name", "Error")),
                value=str(frame.get("value", "")),
                traceback=[str(line) for line in frame.get("traceback") or []],
            )
        elif kind == "end":
            pending.done.set_result(None)

    def _add_output(self, handle: _KernelHandle, pending: _PendingExecution, output: ExecutionOutput) -> None:
        # Consecutive chunks of the same stream become one output item
        outputs = pending.outputs
        if outputs and output.type == "stream" and outputs[-1].type == "stream" and outputs[-1].name == output.name:
            outputs[-1] = outputs[-1].model_copy(update={"text": outputs[-1].text + output.text})
        else:
            outputs.append(output)
        self.bus.publish(KernelOutput(kernel_id=handle.id, output=output.model_dump()))

    async def _on_exit(self, handle: _KernelHandle) -> None:
        returncode = await handle.process.wait()
        if not handle.ready.done():
            handle.ready.set_result(False)
        self._resolve_died(handle, f"Kernel process exited with code {returncode}")
        if handle.closing:
            return

        logger.warning(f"Kernel {handle.id} exited unexpectedly (code {returncode})")
        handle.closing = True
        self._set_status(handle, KernelStatus.TERMINATED)
        self._forget(handle)
        self.bus.publish(KernelShutdown(kernel_id=handle.id))

    def _set_status(self, handle: _KernelHandle, status: KernelStatus) -> None:
        if handle.session.status == status:
            return
        handle.session.status = status
        self.bus.publish(KernelStatusChanged(kernel_id=handle.id, status=status.value))

    # --- Read-only lookups ---

    def get_kernel(self, kernel_id: str) -> KernelSession | None:
        handle = self._kernels.get(kernel_id)
        return handle.session.model_copy() if handle else None

    def list_kernels(self) -> list[KernelSession]:
        return [handle.session.model_copy() for handle in self._kernels.values()]

    @property
    def count(self) -> int:
        return len(self._kernels)
