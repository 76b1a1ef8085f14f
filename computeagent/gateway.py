"""Registration, heartbeat and reconnection against the orchestration gateway.

Gateway trouble never stops the agent: failures are logged, published as
``GatewayError`` events, and the agent keeps running local work.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Literal

import httpx

from computeagent.config import AgentConfig
from computeagent.credentials import Credentials
from computeagent.errors import GatewayConnectionError
from computeagent.events import (
    EventBus,
    GatewayConnected,
    GatewayDisconnected,
    GatewayError,
    GatewayHeartbeat,
    GatewayReconnecting,
)
from computeagent.schemas import (
    AgentCapabilities,
    AgentRegistration,
    AgentRegistrationConfig,
    GatewayConnectionState,
    HardwareInfo,
    HeartbeatPayload,
    JobSummary,
    RegistrationResponse,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/local-compute"

MAX_RECONNECT_DELAY = 60.0  # seconds
REQUEST_TIMEOUT = 10.0  # seconds, heartbeat and disconnect

StatusProvider = Callable[[], tuple[Literal["idle", "busy"], JobSummary | None]]
Sleep = Callable[[float], Awaitable[None]]


def build_auth_headers(credentials: Credentials | None) -> dict[str, str]:
    if credentials is None:
        return {}
    headers = {"Authorization": f"Bearer {credentials.access_token}"}
    if credentials.user_id:
        headers["X-User-ID"] = credentials.user_id
    return headers


def build_registration(config: AgentConfig, hardware: HardwareInfo | None) -> AgentRegistration:
    """Capability descriptor sent to POST /register."""
    gpu = hardware.gpu if hardware else None
    capabilities = AgentCapabilities(
        gpu_type=gpu.type if gpu else "none",
        gpu_memory=gpu.memory if gpu else 0.0,
        cpu_cores=hardware.cpu.cores if hardware else 1,
        ram_total=hardware.memory.total if hardware else 0.0,
        frameworks=[f.name.lower() for f in hardware.frameworks if f.available] if hardware else [],
        metal_version=3 if gpu and gpu.api == "Metal 3" else None,
        compute_capability=gpu.compute_capability if gpu else None,
        neural_engine=gpu.neural_engine if gpu else None,
        neural_engine_tops=gpu.neural_engine_tops if gpu else None,
    )
    return AgentRegistration(
        name=config.name,
        hostname=hardware.hostname if hardware else config.name,
        capabilities=capabilities,
        config=AgentRegistrationConfig(
            max_memory_percent=config.max_memory_percent,
            allow_remote_jobs=config.allow_remote_jobs,
            idle_timeout_minutes=config.idle_timeout_minutes,
        ),
    )


class GatewayConnector:
    """Connection state machine towards the gateway.

    DISCONNECTED -> CONNECTING -> CONNECTED -> (ERROR | DISCONNECTING) -> DISCONNECTED
    """

    def __init__(
        self,
        bus: EventBus,
        config: AgentConfig,
        hardware: HardwareInfo | None = None,
        credentials: Credentials | None = None,
        status_provider: StatusProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.bus = bus
        self.config = config
        self.hardware = hardware
        self.status_provider = status_provider
        self._sleep = sleep

        self.state = GatewayConnectionState.DISCONNECTED
        self.agent_id: str | None = None
        self.reconnect_attempts = 0
        self.heartbeat_interval = config.heartbeat_interval

        self._client = httpx.AsyncClient(
            base_url=config.gateway_url.rstrip("/") + API_PREFIX,
            headers=build_auth_headers(credentials),
            timeout=REQUEST_TIMEOUT,
            transport=transport,
        )
        self._connect_task: asyncio.Task[bool] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._gave_up = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.state == GatewayConnectionState.CONNECTED

    # --- Registration ---

    async def connect(self) -> bool:
        """Register with the gateway. Concurrent callers share one attempt.

        Returns True when connected; failure is reported, never raised.
        """
        if self._closed:
            return False
        if self.state == GatewayConnectionState.CONNECTED:
            return True
        if self._connect_task is None or self._connect_task.done():
            self.state = GatewayConnectionState.CONNECTING
            self._connect_task = asyncio.create_task(self.register())
        return await asyncio.shield(self._connect_task)

    async def register(self) -> bool:
        logger.info(f"Registering with gateway at {self.config.gateway_url}")
        try:
            data = await self._post_registration(build_registration(self.config, self.hardware))
        except GatewayConnectionError as e:
            self._fail(e.code, str(e))
            return False

        self.agent_id = data.agent_id
        self.reconnect_attempts = 0
        self._gave_up = False
        if data.heartbeat_interval:
            self.heartbeat_interval = data.heartbeat_interval / 1000
        self.state = GatewayConnectionState.CONNECTED
        logger.info(f"Connected to gateway, agent id {self.agent_id}")
        self.bus.publish(GatewayConnected(agent_id=self.agent_id))
        return True

    async def _post_registration(self, registration: AgentRegistration) -> RegistrationResponse:
        """POST /register. Raises GatewayConnectionError carrying the event code."""
        try:
            response = await self._client.post(
                "/register",
                json=registration.model_dump(by_alias=True, exclude_none=True),
                timeout=self.config.registration_timeout,
            )
            response.raise_for_status()
            return RegistrationResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            raise GatewayConnectionError(_error_message(e.response), code="REGISTRATION_FAILED") from e
        except httpx.TimeoutException as e:
            raise GatewayConnectionError("Gateway connection timeout") from e
        except httpx.HTTPError as e:
            raise GatewayConnectionError(str(e) or type(e).__name__) from e
        except ValueError as e:
            raise GatewayConnectionError(
                f"Invalid registration response: {e}", code="REGISTRATION_FAILED"
            ) from e

    def _fail(self, code: str, message: str) -> None:
        self.state = GatewayConnectionState.ERROR
        logger.warning(f"Gateway registration failed ({code}): {message} - running in standalone mode")
        self.bus.publish(GatewayError(code=code, message=message))

    # --- Reconnect ---

    def schedule_reconnect(self) -> None:
        """Start the backoff loop unless it is already running."""
        if self._closed or self._gave_up:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.config.reconnect_interval * 2 ** attempt, MAX_RECONNECT_DELAY)

    async def _reconnect_loop(self) -> None:
        while not self._closed:
            if self.reconnect_attempts >= self.config.max_reconnect_attempts:
                self.state = GatewayConnectionState.ERROR
                self._gave_up = True
                logger.error("Maximum gateway reconnection attempts reached, giving up")
                self.bus.publish(GatewayError(
                    code="MAX_RECONNECT_ATTEMPTS",
                    message="Maximum reconnection attempts reached",
                ))
                return

            delay = self.reconnect_delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            logger.info(f"Reconnecting to gateway in {delay:.0f}s (attempt {self.reconnect_attempts})")
            self.bus.publish(GatewayReconnecting(attempt=self.reconnect_attempts, delay=delay))
            await self._sleep(delay)

            if await self.connect():
                return

    # --- Heartbeat ---

    def start_heartbeat(self) -> None:
        if self._closed:
            return
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.heartbeat_interval)
            if self.connected:
                await self.send_heartbeat()

    async def send_heartbeat(self) -> bool:
        """Post one heartbeat. Only sent while connected."""
        if not self.connected or not self.agent_id:
            return False

        status, current_job = self.status_provider() if self.status_provider else ("idle", None)
        payload = HeartbeatPayload(agent_id=self.agent_id, status=status, current_job=current_job)
        try:
            response = await self._client.post("/heartbeat", json=payload.model_dump(by_alias=True))
        except httpx.HTTPError as e:
            logger.warning(f"Heartbeat failed: {e or type(e).__name__}")
            return False

        if response.status_code == 404:
            logger.warning("Agent not found on gateway, re-registering...")
            self.state = GatewayConnectionState.DISCONNECTED
            self.schedule_reconnect()
            return False
        if response.is_error:
            logger.warning(f"Heartbeat rejected: HTTP {response.status_code}")
            return False

        self.bus.publish(GatewayHeartbeat())
        return True

    # --- Shutdown ---

    async def disconnect(self, reason: str = "shutdown") -> None:
        """Notify the gateway and stop all timers. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self._cancel_tasks()

        if self.state == GatewayConnectionState.CONNECTED and self.agent_id:
            self.state = GatewayConnectionState.DISCONNECTING
            try:
                await self._client.post("/disconnect", json={"agentId": self.agent_id})
            except httpx.HTTPError as e:
                logger.debug(f"Ignoring disconnect error: {e}")

        self.state = GatewayConnectionState.DISCONNECTED
        logger.info(f"Disconnected from gateway ({reason})")
        self.bus.publish(GatewayDisconnected(reason=reason))

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._heartbeat_task, self._reconnect_task, self._connect_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.reason_phrase or f"HTTP {response.status_code}"
