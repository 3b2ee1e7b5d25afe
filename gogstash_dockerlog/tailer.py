"""
tailer.py - Tarefa de tail de um container.
- STARTING: lê o checkpoint e abre o stream de logs (stdout+stderr) a partir dele.
- STREAMING: entrega cada linha no canal de saída e grava o checkpoint da própria linha.
- RETRY_WAIT: stream caiu com o container ainda vivo; espera o intervalo e reabre.
- STOPPED: container parou ou foi removido; a tarefa termina sem retry.
"""

import asyncio
from enum import Enum
from typing import Optional

from .checkpoint import CheckpointError, CheckpointStore, Position
from .config import InputConfig
from .events import LogEvent
from .metrics import metrics
from .robustness import StructuredLogger
from .runtime import ContainerNotFound, ContainerRuntime


class TailState(Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    RETRY_WAIT = "retry_wait"
    STOPPED = "stopped"


class TailOutcome(Enum):
    EXITED = "exited"    # container parado; pode voltar com o mesmo id
    REMOVED = "removed"  # container removido; o id não volta


class ContainerTailer:
    def __init__(self, container_id: str, container_name: str, runtime: ContainerRuntime,
                 checkpoints: CheckpointStore, outbound: asyncio.Queue, config: InputConfig,
                 hostname: str = "", task_manager=None, task_name: Optional[str] = None):
        self.container_id = container_id
        self.container_name = container_name
        self.runtime = runtime
        self.checkpoints = checkpoints
        self.outbound = outbound
        self.config = config
        self.hostname = hostname
        self.task_manager = task_manager
        self.task_name = task_name or f"container_{container_id[:12]}"
        self.state = TailState.STARTING
        self.position: Position = checkpoints.get(container_id)
        self.retries = 0
        self.lines = 0
        # evento start recebido enquanto esta tarefa ainda estava ativa
        self.restart_requested = False
        self.logger = StructuredLogger("tailer")

    def _set_state(self, state: TailState):
        cid = self.container_id[:12]
        metrics.TAIL_STATE.labels(container_id=cid, state=self.state.value).set(0)
        self.state = state
        metrics.TAIL_STATE.labels(container_id=cid, state=state.value).set(1)

    def request_restart(self):
        """
        Marca que o container voltou a iniciar. Se o stream já terminou e o inspect ainda
        devolver o estado anterior (parado), a tarefa reabre o stream em vez de encerrar.
        """
        self.restart_requested = True

    async def _heartbeat(self):
        if self.task_manager is not None:
            await self.task_manager.heartbeat(self.task_name)

    async def run(self) -> TailOutcome:
        metrics.ACTIVE_TAILS.inc()
        try:
            while True:
                self._set_state(TailState.STARTING)
                self.restart_requested = False
                self.position = self.checkpoints.get(self.container_id)
                self.logger.info("Abrindo stream de logs", task_name=self.task_name, container=self.container_name,
                                 since=self.position.timestamp, seq=self.position.seq, retries=self.retries)
                reason = "stream encerrado"
                try:
                    await self._stream()
                except ContainerNotFound:
                    return self._stop(TailOutcome.REMOVED)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    reason = str(e) or e.__class__.__name__
                    self.logger.warning("Falha no stream de logs", task_name=self.task_name,
                                        container=self.container_name, error=reason)

                # O stream terminou: consulta o runtime para distinguir parada de falha transitória
                try:
                    info = await self.runtime.inspect(self.container_id)
                except ContainerNotFound:
                    return self._stop(TailOutcome.REMOVED)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.warning("Falha ao consultar estado do container; assumindo ativo",
                                        task_name=self.task_name, error=str(e))
                else:
                    if not info.running:
                        if not self.restart_requested:
                            return self._stop(TailOutcome.EXITED)
                        self.logger.info("Container reiniciado durante o encerramento do stream; reabrindo",
                                         task_name=self.task_name, container=self.container_name)
                        continue

                self._set_state(TailState.RETRY_WAIT)
                self.retries += 1
                metrics.TAIL_RETRIES.labels(container_id=self.container_id[:12]).inc()
                self.logger.info("Aguardando para reabrir stream", task_name=self.task_name, container=self.container_name,
                                 reason=reason, retry_in=self.config.retry_interval_seconds, retries=self.retries)
                await self._heartbeat()
                await asyncio.sleep(self.config.retry_interval_seconds)
        finally:
            metrics.ACTIVE_TAILS.dec()
            self._remove_series()

    def _remove_series(self):
        """Remove as séries rotuladas deste container ao fim da tarefa."""
        cid = self.container_id[:12]
        series = [(metrics.TAIL_STATE, (cid, state.value)) for state in TailState]
        series += [
            (metrics.LINES_PROCESSED, (cid, self.container_name)),
            (metrics.BYTES_PROCESSED, (cid, self.container_name)),
            (metrics.LINES_SKIPPED, (cid,)),
            (metrics.TAIL_RETRIES, (cid,)),
        ]
        for metric, labels in series:
            try:
                metric.remove(*labels)
            except KeyError:
                pass

    def _stop(self, outcome: TailOutcome) -> TailOutcome:
        self._set_state(TailState.STOPPED)
        self.logger.info("Container parou; finalizando tail", task_name=self.task_name,
                         container=self.container_name, outcome=outcome.value, lines=self.lines)
        return outcome

    async def _stream(self):
        resume = self.position
        # janela de retomada: descarta o que já foi entregue antes do checkpoint
        in_resume_window = resume.timestamp > 0
        to_skip = resume.seq
        sample_n = self.config.hotpath_debug_sample_n
        cid = self.container_id[:12]

        async for frame in self.runtime.log_stream(self.container_id, since=resume.timestamp):
            if self.state is not TailState.STREAMING:
                self._set_state(TailState.STREAMING)
            await self._heartbeat()

            if in_resume_window and frame.timestamp is not None:
                if frame.timestamp < resume.timestamp:
                    metrics.LINES_SKIPPED.labels(container_id=cid).inc()
                    continue
                if frame.timestamp == resume.timestamp and to_skip > 0:
                    to_skip -= 1
                    metrics.LINES_SKIPPED.labels(container_id=cid).inc()
                    continue
            in_resume_window = False

            event = LogEvent.from_frame(frame.timestamp, frame.message, self.container_id,
                                        container_name=self.container_name, host=self.hostname)
            # ponto de backpressure: nada novo é lido do stream até o envio concluir
            await self.outbound.put(event)
            metrics.OUTBOUND_QUEUE_SIZE.set(self.outbound.qsize())
            self.lines += 1
            metrics.LINES_PROCESSED.labels(container_id=cid, container_name=self.container_name).inc()
            metrics.BYTES_PROCESSED.labels(container_id=cid, container_name=self.container_name).inc(len(frame.message))
            if sample_n > 0 and self.lines % sample_n == 0:
                self.logger.debug("Linhas entregues (amostrado)", task_name=self.task_name, lines=self.lines)

            if frame.timestamp is None:
                continue
            new_position = self.position.advance(frame.timestamp)
            if new_position == self.position:
                continue
            self.position = new_position
            try:
                await self.checkpoints.set(self.container_id, new_position)
            except CheckpointError as e:
                # linha já entregue; o pior caso é reentrega após um restart
                self.logger.warning("Falha ao gravar checkpoint", task_name=self.task_name, error=str(e))
