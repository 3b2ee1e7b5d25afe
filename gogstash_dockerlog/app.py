"""
app.py - Composição do input de logs de containers.
- Setup: valida a configuração, carrega o sincedb, conecta ao runtime e inicia sink/métricas/API.
- Run: executa a descoberta + escuta de eventos até o shutdown (erros de descoberta são fatais).
- Stop: cancela monitor e tarefas de tail, esvazia a fila no sink e fecha conexões.
"""

import time
import asyncio
from typing import Optional

from aiohttp import web
from prometheus_client import start_http_server

from .checkpoint import CheckpointStore
from .config import InputConfig, ConfigError, resolve_hostname
from .filters import NameFilter
from .metrics import metrics
from .monitor import ContainerMonitor
from .robustness import StructuredLogger, CorrelationContext, ConfigValidator, HealthMetrics
from .runtime import ContainerRuntime, DockerRuntime
from .sinks import JsonLinesSink
from .task_manager import TaskManager


class DockerLogInput:
    """
    Raiz de composição do engine.
    - É dona do canal de saída único compartilhado por todas as tarefas de tail.
    - runtime/hostname podem ser injetados (testes); por padrão usa aiodocker e o hostname da máquina.
    """
    def __init__(self, config: InputConfig, runtime: Optional[ContainerRuntime] = None,
                 hostname: Optional[str] = None, sink: Optional[JsonLinesSink] = None):
        self.config = config
        self.logger = StructuredLogger("app")
        self.runtime = runtime
        self.hostname = hostname
        self.outbound: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self.sink = sink
        self.task_manager = TaskManager()
        self.checkpoints: Optional[CheckpointStore] = None
        self.name_filter: Optional[NameFilter] = None
        self.monitor: Optional[ContainerMonitor] = None
        self.config_validator = ConfigValidator(config)
        self.health_metrics = HealthMetrics()
        self.health_metrics.register_component("monitor")
        self.health_metrics.register_component("sink")
        self.api_runner = None
        self.shutdown_event = asyncio.Event()
        self.startup_time = time.time()
        self._metrics_task: Optional[asyncio.Task] = None

    async def setup(self):
        """Erros aqui são fatais: ConfigError, CheckpointError ou RuntimeUnavailable."""
        CorrelationContext.set_correlation_id(CorrelationContext.generate_correlation_id())
        if not self.config_validator.validate_all():
            for err in self.config_validator.errors:
                self.logger.error("Configuração inválida", error=err)
            raise ConfigError("; ".join(self.config_validator.errors))
        for warn in self.config_validator.warnings:
            self.logger.warning("Aviso de configuração", warning=warn)

        self.name_filter = NameFilter.compile(self.config.include_patterns, self.config.exclude_patterns)
        if self.hostname is None:
            self.hostname = resolve_hostname()
        checkpoint_path = self.config.resolve_checkpoint_path(self.hostname)
        self.checkpoints = await CheckpointStore.load(checkpoint_path)

        if self.runtime is None:
            self.runtime = DockerRuntime(self.config.runtime_endpoint, self.config.connection_timeout_seconds)
        await self.runtime.ping()

        if self.sink is None:
            self.sink = JsonLinesSink(self.outbound, self.config.output_path)
        self.monitor = ContainerMonitor(self.runtime, self.name_filter, self.checkpoints, self.outbound,
                                        self.config, self.task_manager, hostname=self.hostname,
                                        health=self.health_metrics)
        self.logger.info("Input dockerlog configurado", endpoint=self.config.runtime_endpoint,
                         checkpoint_path=str(checkpoint_path), filter=repr(self.name_filter),
                         retry_interval=self.config.retry_interval_seconds)

    async def start(self):
        await self.sink.start()
        if self.config.metrics_port > 0:
            start_http_server(self.config.metrics_port)
            self._metrics_task = asyncio.create_task(metrics.start_system_metrics())
        if self.config.api_port > 0:
            await self._start_api()

    async def run(self):
        """Executa o monitor; DiscoveryError sobe para o chamador (fatal)."""
        try:
            await self.monitor.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.health_metrics.update_component("monitor", "failed")
            raise

    async def run_until_shutdown(self):
        monitor_task = asyncio.create_task(self.run(), name="container_monitor")
        shutdown_task = asyncio.create_task(self.shutdown_event.wait(), name="shutdown_wait")
        try:
            done, _ = await asyncio.wait({monitor_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
            if monitor_task in done:
                # o monitor só termina por erro; propaga para o entrypoint
                monitor_task.result()
        finally:
            for t in (monitor_task, shutdown_task):
                if not t.done():
                    t.cancel()
            await asyncio.gather(monitor_task, shutdown_task, return_exceptions=True)

    async def stop(self):
        # Ordem: parar produtores (tarefas de tail) antes do consumidor (sink) e das conexões
        try:
            await self.task_manager.stop()
        except Exception as e:
            self.logger.error("Erro ao parar tarefas", error=str(e))
        if self.sink:
            try:
                await self.sink.stop()
            except Exception as e:
                self.logger.error("Erro ao parar sink", error=str(e))
        if self.runtime:
            try:
                await self.runtime.close()
            except Exception as e:
                self.logger.error("Erro ao fechar conexão com o runtime", error=str(e))
        if self._metrics_task:
            self._metrics_task.cancel()
            try:
                await self._metrics_task
            except asyncio.CancelledError:
                pass
        if self.api_runner:
            await self.api_runner.cleanup()
            self.api_runner = None
        self.logger.info("Input dockerlog finalizado")

    # Handlers
    def _refresh_health(self):
        if self.sink is not None:
            self.health_metrics.update_component("sink", "failed" if self.sink.consecutive_failures else "healthy")

    async def handle_health(self, request):
        self._refresh_health()
        health = self.health_metrics.get_health_status()
        return web.json_response(health, status=200 if health["status"] == "healthy" else 503)

    async def handle_status(self, request):
        status = {
            "status": "running",
            "uptime_seconds": int(time.time() - self.startup_time),
            "hostname": self.hostname,
            "outbound_queue": {"size": self.outbound.qsize(), "capacity": self.outbound.maxsize},
            "active_tails": len(self.task_manager.active_ids("container_tails")),
            "tasks": self.task_manager.get_task_status(),
        }
        return web.json_response(status)

    async def handle_containers(self, request):
        containers = self.monitor.get_status() if self.monitor else {}
        return web.json_response(containers)

    def build_api(self) -> web.Application:
        api_app = web.Application()
        api_app.router.add_get("/health", self.handle_health)
        api_app.router.add_get("/status", self.handle_status)
        api_app.router.add_get("/containers", self.handle_containers)
        return api_app

    async def _start_api(self):
        self.api_runner = web.AppRunner(self.build_api())
        await self.api_runner.setup()
        site = web.TCPSite(self.api_runner, '0.0.0.0', self.config.api_port)
        await site.start()
        self.logger.info("API de status iniciada", port=self.config.api_port)
