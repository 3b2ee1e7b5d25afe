"""
runtime.py - Fronteira com o runtime de containers.
- ContainerRuntime: contrato usado pelo monitor e pelas tarefas de tail.
- DockerRuntime: implementação sobre aiodocker (listagem, inspect, stream de logs, eventos).
- Parsing das linhas com timestamp devolvidas pela API de logs.
"""

import re
import json
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional, Tuple

import aiodocker
from aiodocker.exceptions import DockerError

from .robustness import StructuredLogger

_TS_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:\d{2})$")


class ContainerNotFound(Exception):
    """O container não existe mais no runtime (removido)."""


class RuntimeUnavailable(Exception):
    """O runtime não respondeu na inicialização."""


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    names: Tuple[str, ...]
    running: bool = True

    @property
    def name(self) -> str:
        if self.names:
            return self.names[0].lstrip("/")
        return self.id[:12]


@dataclass(frozen=True)
class LogFrame:
    timestamp: Optional[int]  # ns desde epoch; None se a linha veio sem timestamp
    message: str


@dataclass(frozen=True)
class LifecycleEvent:
    container_id: str
    status: str
    time: Optional[int] = None


def parse_docker_timestamp(value: str) -> int:
    """RFC3339 com até 9 casas decimais -> ns desde epoch. ValueError se inválido."""
    m = _TS_RE.match(value)
    if not m:
        raise ValueError(f"timestamp inválido: {value!r}")
    offset = "+00:00" if m.group(3) == "Z" else m.group(3)
    base = datetime.fromisoformat(m.group(1) + offset)
    nanos = int((m.group(2) or "0").ljust(9, "0"))
    return int(base.timestamp()) * 1_000_000_000 + nanos


def parse_log_line(line: str) -> LogFrame:
    line = line.rstrip("\r\n")
    ts_str, sep, msg = line.partition(" ")
    if sep:
        try:
            return LogFrame(parse_docker_timestamp(ts_str), msg)
        except ValueError:
            pass
    return LogFrame(None, line)


def format_since(timestamp_ns: int) -> str:
    """Formato aceito pelo parâmetro since da API de logs ("segundos.nanossegundos")."""
    seconds, nanos = divmod(timestamp_ns, 1_000_000_000)
    return f"{seconds}.{nanos:09d}"


class EventSubscription:
    """Assinatura de eventos de ciclo de vida; get() devolve None quando o stream termina."""

    async def get(self) -> Optional[LifecycleEvent]:
        raise NotImplementedError

    async def close(self):
        pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> LifecycleEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ContainerRuntime:
    """Contrato mínimo exigido do runtime de containers."""

    async def ping(self):
        raise NotImplementedError

    async def list_running(self) -> list:
        raise NotImplementedError

    async def inspect(self, container_id: str) -> ContainerInfo:
        raise NotImplementedError

    def log_stream(self, container_id: str, since: int = 0) -> AsyncIterator[LogFrame]:
        raise NotImplementedError

    async def subscribe_events(self, since: Optional[int] = None) -> EventSubscription:
        raise NotImplementedError

    async def close(self):
        pass


class DockerEventSubscription(EventSubscription):
    def __init__(self, docker, subscriber):
        self.docker = docker
        self.subscriber = subscriber

    async def get(self) -> Optional[LifecycleEvent]:
        while True:
            event = await self.subscriber.get()
            if event is None:
                return None
            if event.get("Type", "container") != "container":
                continue
            actor_id = (event.get("Actor") or {}).get("ID") or event.get("id")
            if not actor_id:
                continue
            status = event.get("Action") or event.get("status") or ""
            ts = event.get("timeNano")
            return LifecycleEvent(actor_id, status, int(ts) if isinstance(ts, int) else None)

    async def close(self):
        await self.docker.events.stop()


class DockerRuntime(ContainerRuntime):
    def __init__(self, endpoint: str, timeout: int = 10):
        self.endpoint = endpoint
        self.timeout = timeout
        self.docker = aiodocker.Docker(url=endpoint)
        self.logger = StructuredLogger("docker_runtime")

    async def ping(self):
        try:
            info = await asyncio.wait_for(self.docker.system.info(), timeout=self.timeout)
        except (DockerError, OSError, asyncio.TimeoutError) as e:
            raise RuntimeUnavailable(f"runtime indisponível em {self.endpoint}: {e}") from e
        self.logger.info("Conectado ao Docker", endpoint=self.endpoint, server_version=info.get("ServerVersion"))

    async def list_running(self) -> list:
        containers = await self.docker.containers.list()
        result = []
        for c in containers:
            try:
                names = tuple(c["Names"] or ())
            except KeyError:
                names = ()
            result.append(ContainerInfo(c.id, names, True))
        return result

    async def inspect(self, container_id: str) -> ContainerInfo:
        try:
            container = await self.docker.containers.get(container_id)
        except DockerError as e:
            if e.status == 404:
                raise ContainerNotFound(container_id) from e
            raise
        name = container["Name"] or ""
        running = bool((container["State"] or {}).get("Running", False))
        return ContainerInfo(container.id, (name,) if name else (), running)

    async def log_stream(self, container_id: str, since: int = 0) -> AsyncIterator[LogFrame]:
        # cliente dedicado por stream para não esgotar o pool de conexões do cliente compartilhado
        client = aiodocker.Docker(url=self.endpoint)
        try:
            container = client.containers.container(container_id)
            stream = container.log(stdout=True, stderr=True, follow=True, timestamps=True, since=format_since(since))
            buffer = ""
            async for chunk in stream:
                buffer += chunk
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    if line:
                        yield parse_log_line(line)
            if buffer:
                yield parse_log_line(buffer)
        except DockerError as e:
            if e.status == 404:
                raise ContainerNotFound(container_id) from e
            raise
        finally:
            await client.close()

    async def subscribe_events(self, since: Optional[int] = None) -> EventSubscription:
        params = {"filters": json.dumps({"type": ["container"], "event": ["start"]})}
        if since is not None:
            params["since"] = str(int(since))
        subscriber = self.docker.events.subscribe(**params)
        return DockerEventSubscription(self.docker, subscriber)

    async def close(self):
        await self.docker.close()
