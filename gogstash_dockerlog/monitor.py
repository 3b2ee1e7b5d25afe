"""
monitor.py - Descoberta de containers e escuta de eventos do runtime.
- Assina os eventos de ciclo de vida ANTES da varredura inicial (com since), para não perder
  containers que sobem entre a varredura e a assinatura.
- Varredura inicial: cria uma tarefa de tail para cada container elegível em execução.
- Eventos "start": inspeciona, aplica o filtro de nomes e cria a tarefa de tail.
- Uma única tarefa por container; ids de containers removidos nunca são reativados.
"""

import time
import asyncio
from typing import Dict, Iterable, Optional

from .checkpoint import CheckpointStore
from .config import InputConfig
from .filters import NameFilter, normalize_name
from .metrics import metrics
from .robustness import StructuredLogger
from .runtime import ContainerRuntime
from .tailer import ContainerTailer, TailOutcome
from .task_manager import TaskManager

START_STATUSES = ("start",)
# ids de containers removidos só importam enquanto eventos atrasados ainda podem chegar
REMOVED_TTL_SECONDS = 300


class DiscoveryError(Exception):
    """Falha na listagem de containers ou na assinatura de eventos; fatal."""


def task_name_for(container_id: str) -> str:
    return f"container_{container_id[:12]}"


class ContainerMonitor:
    def __init__(self, runtime: ContainerRuntime, name_filter: NameFilter, checkpoints: CheckpointStore,
                 outbound: asyncio.Queue, config: InputConfig, task_manager: TaskManager, hostname: str = "",
                 health=None):
        self.runtime = runtime
        self.name_filter = name_filter
        self.checkpoints = checkpoints
        self.outbound = outbound
        self.config = config
        self.task_manager = task_manager
        self.hostname = hostname
        self.health = health
        self.tailers: Dict[str, ContainerTailer] = {}
        self.removed: Dict[str, float] = {}  # id -> instante (monotonic) da remoção
        self.removed_ttl_seconds = REMOVED_TTL_SECONDS
        self.ready = asyncio.Event()
        self.logger = StructuredLogger("container_monitor")

    async def run(self):
        """Varredura inicial + loop de eventos; só retorna por cancelamento ou DiscoveryError."""
        # since em segundos inteiros; um segundo de folga, duplicatas são descartadas no spawn
        since = int(time.time()) - 1
        try:
            subscription = await self.runtime.subscribe_events(since=since)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DiscoveryError(f"falha ao assinar eventos do runtime: {e}") from e
        try:
            self.logger.info("Varredura inicial de containers iniciada")
            started = await self._initial_container_scan()
            self.logger.info("Varredura inicial concluída", started_count=started)
            if self.health is not None:
                self.health.heartbeat()
            self.ready.set()
            self.logger.info("Escutando eventos do runtime...")
            await self._listen_for_events(subscription)
        finally:
            try:
                await subscription.close()
            except Exception as e:
                self.logger.warning("Falha ao encerrar assinatura de eventos", error=str(e))

    async def _initial_container_scan(self) -> int:
        try:
            containers = await self.runtime.list_running()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DiscoveryError(f"falha ao listar containers: {e}") from e
        started_count = 0
        for container in containers:
            if self.start_tailing(container.id, container.names):
                started_count += 1
        return started_count

    async def _listen_for_events(self, subscription):
        while True:
            try:
                event = await subscription.get()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise DiscoveryError(f"falha no stream de eventos: {e}") from e
            if event is None:
                raise DiscoveryError("stream de eventos do runtime terminou")
            if self.health is not None:
                self.health.heartbeat()
            metrics.LIFECYCLE_EVENTS.labels(status=event.status or "unknown").inc()
            if event.status not in START_STATUSES:
                continue
            self.logger.debug("Evento start recebido", container=event.container_id[:12])
            await self._handle_start(event.container_id)

    async def _handle_start(self, container_id: str):
        self._prune_removed()
        tailer = self.tailers.get(container_id)
        if tailer is not None and self.task_manager.is_active(task_name_for(container_id)):
            # a tarefa pode estar encerrando com o estado anterior ao restart
            tailer.request_restart()
            self.logger.debug("Container já monitorado; restart sinalizado à tarefa", container=container_id[:12])
            return
        if self._is_known(container_id):
            self.logger.debug("Container já monitorado ou removido; ignorando evento", container=container_id[:12])
            return
        try:
            info = await self.runtime.inspect(container_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning("Falha ao inspecionar container em evento start; evento descartado",
                                container=container_id[:12], error=str(e))
            return
        if not self.start_tailing(info.id or container_id, info.names):
            if not self.name_filter.is_eligible(info.names):
                self.logger.warning("Container iniciado com nome não elegível; evento descartado",
                                    container=container_id[:12], names=list(info.names))

    def _prune_removed(self):
        cutoff = time.monotonic() - self.removed_ttl_seconds
        for cid in [cid for cid, removed_at in self.removed.items() if removed_at < cutoff]:
            del self.removed[cid]

    def _is_known(self, container_id: str) -> bool:
        return container_id in self.removed or self.task_manager.is_active(task_name_for(container_id))

    def start_tailing(self, container_id: str, names: Iterable[str]) -> bool:
        """
        Caminho único de criação de tarefas (varredura e eventos).
        Retorna True apenas quando uma nova tarefa foi criada.
        """
        names = tuple(names)
        if self._is_known(container_id):
            return False
        if not self.name_filter.is_eligible(names):
            metrics.CONTAINERS_FILTERED.inc()
            self.logger.debug("Container filtrado por nome; ignorando", container=container_id[:12], names=list(names))
            return False
        task_name = task_name_for(container_id)
        name = normalize_name(names[0]) if names else container_id[:12]
        tailer = ContainerTailer(container_id, name, self.runtime, self.checkpoints, self.outbound,
                                 self.config, hostname=self.hostname, task_manager=self.task_manager,
                                 task_name=task_name)
        if not self.task_manager.spawn(task_name, self._tail, group="container_tails", tailer=tailer):
            return False
        self.tailers[container_id] = tailer
        self.task_manager.set_task_labels(task_name, {"container_name": name, "container_id": container_id[:12]})
        self.logger.info("Monitoramento de container iniciado", task_name=task_name, container=name,
                         since=tailer.position.timestamp)
        return True

    async def _tail(self, tailer: ContainerTailer) -> Optional[TailOutcome]:
        try:
            outcome = await tailer.run()
            if outcome is TailOutcome.REMOVED:
                self._prune_removed()
                self.removed[tailer.container_id] = time.monotonic()
            return outcome
        finally:
            if self.tailers.get(tailer.container_id) is tailer:
                del self.tailers[tailer.container_id]

    def get_status(self):
        return {
            cid: {
                "container_name": t.container_name,
                "state": t.state.value,
                "lines": t.lines,
                "retries": t.retries,
                "position": t.position.to_dict(),
            }
            for cid, t in self.tailers.items()
        }
