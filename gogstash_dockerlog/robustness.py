import json
import time
import uuid
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import InputConfig, ConfigError, resolve_hostname, normalize_endpoint


# helper para importar métricas de forma preguiçosa e evitar import circular
def _get_metrics():
    try:
        from .metrics import metrics  # import local evita ciclo na carga do módulo
        return metrics
    except Exception:
        return None


class CorrelationContext:
    # Dicionário com chaves baseadas no id da asyncio.Task corrente
    _context = {}

    @staticmethod
    def generate_correlation_id() -> str:
        return f"corr-{uuid.uuid4().hex[:16]}"

    @staticmethod
    def set_correlation_id(corr_id: str):
        try:
            task = asyncio.current_task()
        except RuntimeError:
            return
        if task:
            CorrelationContext._context[id(task)] = corr_id

    @staticmethod
    def get_correlation_id() -> Optional[str]:
        try:
            task = asyncio.current_task()
        except RuntimeError:
            return None
        if task:
            return CorrelationContext._context.get(id(task))
        return None

    @staticmethod
    def clear():
        try:
            task = asyncio.current_task()
        except RuntimeError:
            return
        if task:
            CorrelationContext._context.pop(id(task), None)


class StructuredLogger:
    LEVEL_NAMES = {10: "DEBUG", 20: "INFO", 30: "WARNING", 40: "ERROR", 50: "CRITICAL"}

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, context: dict):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = context.pop("exc_info", False)
        corr_id = CorrelationContext.get_correlation_id() or "N/A"
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": self.LEVEL_NAMES.get(level, "INFO"),
            "logger": self.logger.name,
            "message": message,
            "correlation_id": corr_id,
            **context
        }
        self.logger.log(level, json.dumps(entry, ensure_ascii=False, default=str), exc_info=exc_info)
        m = _get_metrics()
        if m:
            m.STRUCTURED_LOGS_EMITTED.labels(level=entry["level"]).inc()

    def debug(self, msg, **ctx): self._log(10, msg, ctx)
    def info(self, msg, **ctx): self._log(20, msg, ctx)
    def warning(self, msg, **ctx): self._log(30, msg, ctx)
    def error(self, msg, **ctx): self._log(40, msg, ctx)


class ConfigValidator:
    """Valida um InputConfig antes da ingestão começar; qualquer erro é fatal."""

    def __init__(self, config: InputConfig):
        self.config = config
        self.errors = []
        self.warnings = []

    def validate_all(self) -> bool:
        from .filters import NameFilter  # evita ciclo filters -> robustness -> filters

        self.errors.clear()
        self.warnings.clear()
        cfg = self.config
        if cfg.retry_interval_seconds <= 0:
            self.errors.append(f"retry_interval_seconds deve ser positivo: {cfg.retry_interval_seconds}")
        if cfg.connection_timeout_seconds <= 0:
            self.errors.append(f"connection_timeout_seconds deve ser positivo: {cfg.connection_timeout_seconds}")
        if cfg.queue_size <= 0:
            self.errors.append(f"queue_size deve ser positivo: {cfg.queue_size}")
        endpoint = normalize_endpoint(cfg.runtime_endpoint)
        if not endpoint.startswith(("unix://", "http://", "https://")):
            self.errors.append(f"runtime_endpoint com esquema não suportado: {cfg.runtime_endpoint!r}")
        try:
            NameFilter.compile(cfg.include_patterns, cfg.exclude_patterns)
        except ConfigError as e:
            self.errors.append(str(e))
        try:
            checkpoint = cfg.resolve_checkpoint_path(resolve_hostname())
            parent = checkpoint.parent if str(checkpoint.parent) else Path(".")
            if parent.exists() and not parent.is_dir():
                self.errors.append(f"diretório do checkpoint não é um diretório: {parent}")
        except ConfigError as e:
            self.errors.append(str(e))
        if not cfg.include_patterns:
            self.warnings.append("nenhum include_pattern configurado; todos os containers não excluídos serão lidos")
        if self.errors:
            m = _get_metrics()
            if m:
                m.CONFIG_VALIDATION_ERRORS.inc(len(self.errors))
        return len(self.errors) == 0


class HealthMetrics:
    def __init__(self):
        self.start_time = time.time()
        self.last_heartbeat = time.time()
        self.components = {}

    def register_component(self, name: str):
        self.components[name] = {"status": "healthy", "last_check": time.time()}

    def update_component(self, name: str, status: str):
        if name in self.components:
            self.components[name]["status"] = status
            self.components[name]["last_check"] = time.time()

    def heartbeat(self):
        self.last_heartbeat = time.time()

    def get_health_status(self):
        now = time.time()
        return {
            "uptime": now - self.start_time,
            "last_heartbeat": now - self.last_heartbeat,
            "components": self.components,
            "status": "healthy" if all(c["status"] == "healthy" for c in self.components.values()) else "degraded"
        }
