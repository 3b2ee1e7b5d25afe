"""
Pytest configuration and fixtures
"""

import asyncio
import pytest
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from gogstash_dockerlog.config import InputConfig
from gogstash_dockerlog.runtime import (
    ContainerInfo,
    ContainerNotFound,
    ContainerRuntime,
    EventSubscription,
    LifecycleEvent,
    LogFrame,
)

SECOND = 1_000_000_000
T0 = 1_700_000_000 * SECOND


def ts(offset_seconds: float) -> int:
    return T0 + int(offset_seconds * SECOND)


@dataclass
class FakeContainer:
    id: str
    names: Tuple[str, ...]
    lines: List[Tuple[Optional[int], str]] = field(default_factory=list)
    running: bool = True
    # comportamento ao fim do stream
    stop_after_stream: bool = True
    remove_after_stream: bool = False
    block_after_stream: bool = False
    # falha transitória depois de N linhas entregues (uma vez)
    fail_after: Optional[int] = None


class FakeSubscription(EventSubscription):
    def __init__(self, queue: asyncio.Queue):
        self.queue = queue
        self.closed = False

    async def get(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


class FakeRuntime(ContainerRuntime):
    """Runtime em memória com a semântica de since inclusivo da API do Docker."""

    def __init__(self):
        self.containers: Dict[str, FakeContainer] = {}
        self.events: asyncio.Queue = asyncio.Queue()
        self.stream_opens: List[Tuple[str, int]] = []
        self.inspect_calls: List[str] = []
        self.inspect_errors: Dict[str, Exception] = {}
        self.subscribe_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.subscriptions: List[FakeSubscription] = []
        self.closed = False

    def add(self, cid: str, name: str, lines=(), **kwargs) -> FakeContainer:
        container = FakeContainer(cid, (f"/{name}",), list(lines), **kwargs)
        self.containers[cid] = container
        return container

    def emit(self, cid: str, status: str = "start"):
        self.events.put_nowait(LifecycleEvent(cid, status))

    async def ping(self):
        pass

    async def list_running(self):
        if self.list_error:
            raise self.list_error
        return [ContainerInfo(c.id, c.names, True) for c in self.containers.values() if c.running]

    async def inspect(self, container_id: str) -> ContainerInfo:
        self.inspect_calls.append(container_id)
        if container_id in self.inspect_errors:
            raise self.inspect_errors[container_id]
        c = self.containers.get(container_id)
        if c is None:
            raise ContainerNotFound(container_id)
        return ContainerInfo(c.id, c.names, c.running)

    async def log_stream(self, container_id: str, since: int = 0):
        self.stream_opens.append((container_id, since))
        c = self.containers.get(container_id)
        if c is None:
            raise ContainerNotFound(container_id)
        delivered = 0
        for timestamp, message in list(c.lines):
            if timestamp is not None and since and timestamp < since:
                continue
            if c.fail_after is not None and delivered == c.fail_after:
                c.fail_after = None
                raise ConnectionError("conexão com o daemon perdida")
            delivered += 1
            yield LogFrame(timestamp, message)
        if c.block_after_stream:
            await asyncio.Event().wait()
        if c.remove_after_stream:
            del self.containers[container_id]
        elif c.stop_after_stream:
            c.running = False

    async def subscribe_events(self, since=None):
        if self.subscribe_error:
            raise self.subscribe_error
        sub = FakeSubscription(self.events)
        self.subscriptions.append(sub)
        return sub

    async def close(self):
        self.closed = True


class LaggingInspectRuntime(FakeRuntime):
    """inspect devolve o estado lido antes de uma espera, como um daemon ainda atrasado"""

    async def inspect(self, container_id: str) -> ContainerInfo:
        info = await super().inspect(container_id)
        await asyncio.sleep(0.1)
        return info


async def wait_until(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condição não atingida dentro do timeout")
        await asyncio.sleep(0.01)


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def config(tmp_path):
    return InputConfig(
        checkpoint_path=str(tmp_path / "sincedb-%{HOSTNAME}"),
        retry_interval_seconds=1,
        metrics_port=0,
        api_port=0,
        output_path=str(tmp_path / "events.jsonl"),
    )
