"""
task_manager.py - Pool de tarefas assíncronas indexado por identidade.
- Inserção protegida contra duplicidade (uma tarefa ativa por chave).
- Consulta de tarefas ativas, heartbeat e status para a API.
- Cancelamento cooperativo de todas as tarefas no shutdown.
"""

import time
import asyncio
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .metrics import metrics
from .robustness import StructuredLogger, CorrelationContext


@dataclass
class TaskInfo:
    """Metadados e estado de uma tarefa gerenciada."""
    task_id: str
    group: str
    state: str = "initialized"
    started_at: float = 0
    last_heartbeat: float = 0
    labels: Dict[str, str] = field(default_factory=dict)


class TaskManager:
    def __init__(self):
        self.tasks: Dict[str, asyncio.Task] = {}
        self.task_info: Dict[str, TaskInfo] = {}
        self.logger = StructuredLogger("task_manager")
        self._stopping = False

    def is_active(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        return task is not None and not task.done()

    def active_ids(self, group: Optional[str] = None) -> List[str]:
        return [
            task_id for task_id, task in self.tasks.items()
            if not task.done() and (group is None or self.task_info[task_id].group == group)
        ]

    def spawn(self, task_id: str, callback: Callable, group: str = "default", **kwargs) -> bool:
        """
        Cria a tarefa se não houver outra ativa com o mesmo id.
        Não há await entre a verificação e a inserção, então duas chamadas seguidas
        para o mesmo id nunca criam duas tarefas.
        """
        if self._stopping:
            self.logger.debug("TaskManager finalizando; tarefa não criada", task_id=task_id)
            return False
        if self.is_active(task_id):
            self.logger.debug("Tarefa já em execução", task_id=task_id)
            return False
        now = time.time()
        self.task_info[task_id] = TaskInfo(task_id=task_id, group=group, state="running", started_at=now, last_heartbeat=now)
        self.tasks[task_id] = asyncio.create_task(self._task_wrapper(task_id, callback, **kwargs), name=task_id)
        metrics.TASK_HEALTH.labels(task_name=task_id).set(1)
        self.logger.info("Tarefa iniciada", task_id=task_id, group=group)
        return True

    def set_task_labels(self, task_id: str, labels: Dict[str, str]):
        if task_id in self.task_info:
            self.task_info[task_id].labels = labels

    async def heartbeat(self, task_id: str) -> bool:
        """Atualiza o último heartbeat; usado no status para detectar tarefas travadas."""
        if task_id in self.task_info:
            self.task_info[task_id].last_heartbeat = time.time()
            return True
        return False

    async def cancel(self, task_id: str):
        task = self.tasks.get(task_id)
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self):
        """Cancela todas as tarefas gerenciadas e aguarda o término."""
        self.logger.info("TaskManager finalizando", active=len(self.active_ids()))
        self._stopping = True
        pending = []
        for task in list(self.tasks.values()):
            if not task.done():
                task.cancel()
                pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def get_task_status(self) -> Dict[str, Dict[str, Any]]:
        now = time.time()
        status = {}
        for task_id, info in self.task_info.items():
            status[task_id] = {
                "group": info.group,
                "status": info.state,
                "started_at": datetime.fromtimestamp(info.started_at, tz=timezone.utc).isoformat(),
                "seconds_since_heartbeat": round(now - info.last_heartbeat, 3),
                "labels": info.labels,
            }
        return status

    async def _task_wrapper(self, task_id: str, callback: Callable, **kwargs):
        CorrelationContext.set_correlation_id(CorrelationContext.generate_correlation_id())
        info = self.task_info[task_id]
        try:
            self.logger.debug("Iniciando wrapper da tarefa", task_id=task_id)
            result = await callback(**kwargs)
            info.state = "completed"
            self.logger.info("Tarefa concluída normalmente", task_id=task_id)
            return result
        except asyncio.CancelledError:
            info.state = "cancelled"
            self.logger.info("Tarefa cancelada", task_id=task_id)
            raise
        except Exception as e:
            info.state = "error"
            self.logger.error("Erro na execução da tarefa", task_id=task_id, error=str(e), traceback=traceback.format_exc())
        finally:
            CorrelationContext.clear()
            # a tarefa ainda não terminou aqui, então nenhum spawn pode ter substituído a entrada
            self.tasks.pop(task_id, None)
            self.task_info.pop(task_id, None)
            try:
                metrics.TASK_HEALTH.remove(task_id)
            except KeyError:
                pass
