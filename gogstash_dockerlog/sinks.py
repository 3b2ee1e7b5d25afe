"""
sinks.py - Consumidor do canal de saída.
- JsonLinesSink: lê LogEvents da fila e grava um JSON por linha (stdout ou arquivo).
- Agrupa em pequenos lotes para reduzir flushes; o drain no stop entrega o que restou na fila.
"""

import sys
import json
import asyncio
from pathlib import Path
from typing import List, Optional

import aiofiles

from .events import LogEvent
from .metrics import metrics
from .robustness import StructuredLogger


class JsonLinesSink:
    def __init__(self, queue: asyncio.Queue, output_path: Optional[str] = None, batch_size: int = 100):
        self.queue = queue
        self.output_path = Path(output_path) if output_path else None
        self.batch_size = batch_size
        self.logger = StructuredLogger("sink")
        self._task: Optional[asyncio.Task] = None
        self.written = 0
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None

    async def start(self):
        if self.output_path is not None:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._task = asyncio.create_task(self._worker_loop(), name="sink_worker")
        self.logger.info("Sink iniciado", output=str(self.output_path) if self.output_path else "stdout")

    async def stop(self, timeout: float = 5.0):
        if self._task:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Timeout aguardando esvaziamento da fila", pending=self.queue.qsize())
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        # o que já foi entregue à fila ainda sai antes do processo terminar
        remaining = []
        while not self.queue.empty():
            remaining.append(self.queue.get_nowait())
            self.queue.task_done()
        if remaining:
            await self.send_batch(remaining)
        self.logger.info("Sink parado", written=self.written)

    async def _worker_loop(self):
        while True:
            batch = [await self.queue.get()]
            while len(batch) < self.batch_size and not self.queue.empty():
                batch.append(self.queue.get_nowait())
            try:
                await self.send_batch(batch)
                self.consecutive_failures = 0
            except OSError as e:
                self.consecutive_failures += 1
                self.last_error = str(e)
                self.logger.error("Falha ao gravar lote de eventos", error=str(e), size=len(batch),
                                  consecutive_failures=self.consecutive_failures)
            finally:
                for _ in batch:
                    self.queue.task_done()
                metrics.OUTBOUND_QUEUE_SIZE.set(self.queue.qsize())

    async def send_batch(self, batch: List[LogEvent]):
        data = "".join(json.dumps(ev.to_dict(), ensure_ascii=False, default=str) + "\n" for ev in batch)
        if self.output_path is None:
            sys.stdout.write(data)
            sys.stdout.flush()
        else:
            async with aiofiles.open(self.output_path, 'a', encoding='utf-8') as f:
                await f.write(data)
        self.written += len(batch)
        metrics.SINK_WRITES.inc(len(batch))
