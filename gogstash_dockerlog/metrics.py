"""
metrics.py - Métricas Prometheus do input de logs de containers.
- Contadores por container, estado das tarefas de tail, checkpoints e eventos do runtime.
- Coleta periódica de CPU/memória do processo e do sistema via psutil.
"""

import asyncio
import psutil
from prometheus_client import Counter, Gauge


class Metrics:
    def __init__(self):
        self.INFO = Gauge("gogstash_dockerlog_info", "Agent information", ["version"])
        self.LINES_PROCESSED = Counter("gogstash_dockerlog_lines_processed_total", "Total lines processed", ["container_id", "container_name"])
        self.BYTES_PROCESSED = Counter("gogstash_dockerlog_bytes_processed_total", "Total bytes processed", ["container_id", "container_name"])
        self.LINES_SKIPPED = Counter("gogstash_dockerlog_lines_skipped_total", "Lines skipped on resume (already delivered)", ["container_id"])
        self.OUTBOUND_QUEUE_SIZE = Gauge("gogstash_dockerlog_outbound_queue_size", "Outbound queue size")
        self.ACTIVE_TAILS = Gauge("gogstash_dockerlog_active_tails", "Active container tail tasks")
        self.TAIL_STATE = Gauge("gogstash_dockerlog_tail_state", "Tail task state (1 for current state)", ["container_id", "state"])
        self.TAIL_RETRIES = Counter("gogstash_dockerlog_tail_retries_total", "Tail retries after stream errors", ["container_id"])
        self.TASK_HEALTH = Gauge("gogstash_dockerlog_task_health", "Task health", ["task_name"])
        self.CHECKPOINT_UPDATES = Counter("gogstash_dockerlog_checkpoint_updates_total", "Checkpoint file writes")
        self.CHECKPOINT_ERRORS = Counter("gogstash_dockerlog_checkpoint_errors_total", "Checkpoint errors", ["operation"])
        self.LIFECYCLE_EVENTS = Counter("gogstash_dockerlog_lifecycle_events_total", "Lifecycle events received", ["status"])
        self.CONTAINERS_FILTERED = Counter("gogstash_dockerlog_containers_filtered_total", "Containers rejected by the name filter")
        self.SINK_WRITES = Counter("gogstash_dockerlog_sink_events_written_total", "Events written by the sink")
        self.CONFIG_VALIDATION_ERRORS = Counter("gogstash_dockerlog_config_validation_errors_total", "Config validation errors")
        self.STRUCTURED_LOGS_EMITTED = Counter("gogstash_dockerlog_structured_logs_emitted_total", "Structured logs", ["level"])
        self.SYSTEM_CPU = Gauge("gogstash_dockerlog_system_cpu_percent", "CPU usage")
        self.SYSTEM_MEM = Gauge("gogstash_dockerlog_system_mem_bytes", "Memory usage")
        self.PROCESS_RSS = Gauge("gogstash_dockerlog_process_rss_bytes", "Resident memory of the agent process")
        self.INFO.labels(version="1.0.0").set(1)
        self._process = None

    async def start_system_metrics(self, interval=10):
        """Coleta periódica de métricas do sistema"""
        if self._process is None:
            self._process = psutil.Process()
        while True:
            try:
                self.SYSTEM_CPU.set(psutil.cpu_percent(interval=None))
                self.SYSTEM_MEM.set(psutil.virtual_memory().used)
                self.PROCESS_RSS.set(self._process.memory_info().rss)
            except psutil.Error:
                pass
            await asyncio.sleep(interval)


metrics = Metrics()
