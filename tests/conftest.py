"""
Shared fixtures for Flowgate tests.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from flowgate.capabilities.notification import Notifier
from flowgate.capabilities.registry import CapabilityRegistry, CapabilityRequest
from flowgate.core.config import EngineConfig, FlowgateConfig, TriggerSettings
from flowgate.service import OrchestrationService


AGENT = "ops_agent"
SERVICE = "ops"


def make_step(step_id: str, step_type: str = "detect", action: Optional[str] = None, **extra) -> Dict[str, Any]:
    """Step dict bound to the (ops_agent, ops, action) capability."""
    step = {
        "id": step_id,
        "type": step_type,
        "agent": AGENT,
        "service": SERVICE,
        "action": action or step_id,
    }
    step.update(extra)
    return step


def make_definition(
    steps: List[Dict[str, Any]],
    use_case_id: str = "uc_ops",
    version: str = "1.0.0",
    **extra,
) -> Dict[str, Any]:
    definition = {
        "use_case_id": use_case_id,
        "version": version,
        "name": use_case_id.replace("_", " ").title(),
        "steps": steps,
    }
    definition.update(extra)
    return definition


class RecordingNotifier(Notifier):
    """Notifier that keeps every message."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[Dict[str, Any]] = []

    async def notify(self, channels, recipients, message, metadata=None):
        self.messages.append({
            "channels": list(channels),
            "recipients": list(recipients),
            "message": message,
            "metadata": dict(metadata or {}),
        })
        if self.fail:
            raise RuntimeError("notification sink down")


class HandlerLog:
    """Records capability invocations across handlers."""

    def __init__(self):
        self.requests: List[CapabilityRequest] = []

    def calls(self, step_id: str) -> List[CapabilityRequest]:
        return [r for r in self.requests if r.step_id == step_id]


def returning(log: HandlerLog, outputs: Optional[Dict[str, Any]] = None):
    """Async handler returning fixed outputs."""
    async def handler(request: CapabilityRequest) -> Dict[str, Any]:
        log.requests.append(request)
        return dict(outputs or {})
    return handler


def failing(log: HandlerLog, error: Exception):
    """Async handler that always raises."""
    async def handler(request: CapabilityRequest) -> Dict[str, Any]:
        log.requests.append(request)
        raise error
    return handler


def blocking(log: HandlerLog, started: asyncio.Event, release: Optional[asyncio.Event] = None):
    """Async handler that waits until released (or forever)."""
    async def handler(request: CapabilityRequest) -> Dict[str, Any]:
        log.requests.append(request)
        started.set()
        await (release or asyncio.Event()).wait()
        return {"released": True}
    return handler


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until a predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def capabilities() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
def handler_log() -> HandlerLog:
    return HandlerLog()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config() -> FlowgateConfig:
    return FlowgateConfig(
        engine=EngineConfig(max_workers=4),
        triggers=TriggerSettings(schedule_poll_interval_seconds=3600),
    )


@pytest_asyncio.fixture
async def service(config, capabilities, notifier):
    service = OrchestrationService(config=config, capabilities=capabilities, notifier=notifier)
    await service.initialize(start_scheduler=False)
    yield service
    await service.shutdown()
