"""Pytest configuration and fixtures for compute agent tests."""

import asyncio
import sys
import time
from pathlib import Path

import pytest

from computeagent.config import AgentConfig
from computeagent.events import EventBus
from computeagent.schemas import CPUInfo, FrameworkInfo, GPUInfo, HardwareInfo, MemoryInfo

PYTHON = sys.executable


class EventRecorder:
    """Bus listener that keeps every published event."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.add_listener(self.events.append)

    def of_type(self, event_type):
        return [event for event in self.events if isinstance(event, event_type)]

    def kinds(self):
        return [event.kind for event in self.events]


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll until predicate() is truthy, failing the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def agent_config(state_dir: Path) -> AgentConfig:
    """Config pointing at a throwaway state dir and a fake gateway."""
    return AgentConfig(
        name="test-agent",
        gateway_url="http://gateway.test",
        state_dir=state_dir,
        python_executable=PYTHON,
        cancel_grace_period=1.0,
        kernel_shutdown_grace=2.0,
    )


@pytest.fixture
def hardware() -> HardwareInfo:
    """An Apple Silicon machine with PyTorch installed."""
    return HardwareInfo(
        platform="darwin",
        arch="arm64",
        hostname="test-host",
        cpu=CPUInfo(model="Apple M2 Pro", cores=12),
        memory=MemoryInfo(total=32.0, available=20.0, unified=True),
        gpu=GPUInfo(type="Apple M2 Pro", memory=32.0, api="Metal 3", neural_engine=True),
        frameworks=[
            FrameworkInfo(name="PyTorch", version="2.3.0", available=True, gpu_support=True),
            FrameworkInfo(name="JAX", available=False),
        ],
    )
