"""Typed lifecycle events and the bus that fans them out to subscribers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Union

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


def _now() -> datetime:
    return datetime.now()


@dataclass(frozen=True)
class Event:
    """Base for all events; `kind` is the wire name."""

    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        data["type"] = self.kind
        return data


# --- Job events ---


@dataclass(frozen=True)
class JobStarted(Event):
    kind: ClassVar[str] = "job:started"
    job_id: str


@dataclass(frozen=True)
class JobLog(Event):
    kind: ClassVar[str] = "job:log"
    job_id: str
    line: str
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class JobCompleted(Event):
    kind: ClassVar[str] = "job:completed"
    job_id: str
    exit_code: int
    duration_seconds: float


@dataclass(frozen=True)
class JobFailed(Event):
    kind: ClassVar[str] = "job:failed"
    job_id: str
    error: str
    exit_code: int | None = None


@dataclass(frozen=True)
class JobCancelled(Event):
    kind: ClassVar[str] = "job:cancelled"
    job_id: str


JobEvent = Union[JobStarted, JobLog, JobCompleted, JobFailed, JobCancelled]


# --- Kernel events ---


@dataclass(frozen=True)
class KernelCreated(Event):
    kind: ClassVar[str] = "kernel:created"
    kernel_id: str
    language: str


@dataclass(frozen=True)
class KernelStatusChanged(Event):
    kind: ClassVar[str] = "kernel:status"
    kernel_id: str
    status: str


@dataclass(frozen=True)
class KernelOutput(Event):
    kind: ClassVar[str] = "kernel:output"
    kernel_id: str
    output: dict[str, Any]


@dataclass(frozen=True)
class KernelResult(Event):
    kind: ClassVar[str] = "kernel:result"
    kernel_id: str
    result: dict[str, Any]


@dataclass(frozen=True)
class KernelShutdown(Event):
    kind: ClassVar[str] = "kernel:shutdown"
    kernel_id: str


KernelEvent = Union[KernelCreated, KernelStatusChanged, KernelOutput, KernelResult, KernelShutdown]


# --- Gateway events ---


@dataclass(frozen=True)
class GatewayConnected(Event):
    kind: ClassVar[str] = "gateway:connected"
    agent_id: str


@dataclass(frozen=True)
class GatewayReconnecting(Event):
    kind: ClassVar[str] = "gateway:reconnecting"
    attempt: int
    delay: float


@dataclass(frozen=True)
class GatewayHeartbeat(Event):
    kind: ClassVar[str] = "gateway:heartbeat"
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class GatewayError(Event):
    kind: ClassVar[str] = "gateway:error"
    code: str
    message: str


@dataclass(frozen=True)
class GatewayDisconnected(Event):
    kind: ClassVar[str] = "gateway:disconnected"
    reason: str


GatewayEvent = Union[GatewayConnected, GatewayReconnecting, GatewayHeartbeat, GatewayError, GatewayDisconnected]


# --- Agent events ---


@dataclass(frozen=True)
class AgentStopped(Event):
    kind: ClassVar[str] = "agent:stopped"
    reason: str


AnyEvent = Union[JobEvent, KernelEvent, GatewayEvent, AgentStopped]

Listener = Callable[[Event], None]


class Subscription:
    """Bounded queue of events for one consumer.

    When the queue is full the oldest event is dropped so a slow consumer
    never blocks producers.
    """

    def __init__(self, bus: EventBus, maxsize: int, predicate: Callable[[Event], bool] | None):
        self._bus = bus
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._predicate = predicate
        self.dropped = 0

    def offer(self, event: Event) -> None:
        if self._predicate is not None and not self._predicate(event):
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Event:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Fire-and-forget fan-out of events to listeners and subscriptions."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._listeners: list[Listener] = []
        self._subscriptions: list[Subscription] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(
        self,
        predicate: Callable[[Event], bool] | None = None,
        maxsize: int | None = None,
    ) -> Subscription:
        subscription = Subscription(self, maxsize or self.queue_size, predicate)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.kind}: {e}", exc_info=True)
        for subscription in list(self._subscriptions):
            subscription.offer(event)
