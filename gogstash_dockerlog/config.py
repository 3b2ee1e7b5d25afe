"""
config.py - Configuração do input de logs de containers.
- Monta um InputConfig imutável a partir de defaults, arquivo YAML opcional e variáveis de ambiente.
- Resolve o placeholder de hostname no caminho do sincedb.
- Centraliza o bootstrap do logging.
"""

import os
import socket
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

HOSTNAME_PLACEHOLDER = "%{HOSTNAME}"

DEFAULT_RUNTIME_ENDPOINT = "unix:///var/run/docker.sock"
# O próprio coletor roda num container "gogstash"; ler os próprios logs geraria realimentação
DEFAULT_EXCLUDE_PATTERNS = ("gogstash",)
DEFAULT_CHECKPOINT_PATH = f"sincedb-{HOSTNAME_PLACEHOLDER}"
DEFAULT_RETRY_INTERVAL_SECONDS = 10


class ConfigError(Exception):
    """Erro de configuração; fatal na inicialização."""


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _split_patterns(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(p.strip() for p in value.split(",") if p.strip())
    return tuple(str(p) for p in value)


def normalize_endpoint(endpoint: str) -> str:
    """aiodocker espera http:// no lugar de tcp://"""
    endpoint = (endpoint or "").strip()
    if endpoint.startswith("tcp://"):
        return endpoint.replace("tcp://", "http://", 1)
    return endpoint


@dataclass(frozen=True)
class InputConfig:
    runtime_endpoint: str = DEFAULT_RUNTIME_ENDPOINT
    include_patterns: Tuple[str, ...] = ()
    exclude_patterns: Tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH
    retry_interval_seconds: int = DEFAULT_RETRY_INTERVAL_SECONDS
    connection_timeout_seconds: int = 10
    queue_size: int = 1000
    output_path: Optional[str] = None
    metrics_port: int = 8001
    api_port: int = 8080
    debug_mode: bool = False
    hotpath_debug_sample_n: int = 100

    # Mapeamento env -> campo; a ordem define a prioridade entre chaves equivalentes
    ENV_KEYS = (
        ("RUNTIME_ENDPOINT", "runtime_endpoint"),
        ("DOCKER_HOST", "runtime_endpoint"),
        ("INCLUDE_PATTERNS", "include_patterns"),
        ("EXCLUDE_PATTERNS", "exclude_patterns"),
        ("CHECKPOINT_PATH", "checkpoint_path"),
        ("RETRY_INTERVAL_SECONDS", "retry_interval_seconds"),
        ("DOCKER_CONNECTION_TIMEOUT", "connection_timeout_seconds"),
        ("OUTBOUND_QUEUE_SIZE", "queue_size"),
        ("OUTPUT_PATH", "output_path"),
        ("METRICS_PORT", "metrics_port"),
        ("API_PORT", "api_port"),
        ("DEBUG_MODE", "debug_mode"),
        ("HOTPATH_DEBUG_SAMPLE_N", "hotpath_debug_sample_n"),
    )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "InputConfig":
        """
        Constrói a configuração a partir de um dicionário (chaves iguais aos campos).
        Chaves desconhecidas são erro: um typo como include_pattern não pode cair nos defaults.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(str(key) for key in (raw or {}) if key not in known)
        if unknown:
            raise ConfigError(f"chaves de configuração desconhecidas: {', '.join(unknown)}")
        return cls(**{key: cls._coerce(key, value) for key, value in (raw or {}).items()})

    @classmethod
    def _coerce(cls, key: str, value: Any) -> Any:
        try:
            if key in ("include_patterns", "exclude_patterns"):
                return _split_patterns(value)
            if key in ("retry_interval_seconds", "connection_timeout_seconds", "queue_size",
                       "metrics_port", "api_port", "hotpath_debug_sample_n"):
                return int(value)
            if key == "debug_mode":
                return value if isinstance(value, bool) else _env_bool(str(value))
            if key == "output_path":
                return str(value) if value else None
            if key == "runtime_endpoint":
                return normalize_endpoint(str(value))
            return str(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"valor inválido para {key}: {value!r}") from e

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> "InputConfig":
        """
        Carrega a configuração: defaults < arquivo YAML < variáveis de ambiente.
        - path: arquivo YAML; se None usa DOCKERLOG_CONFIG_FILE do ambiente.
        """
        environ = os.environ if environ is None else environ
        path = path or environ.get("DOCKERLOG_CONFIG_FILE")
        raw: Dict[str, Any] = {}
        if path:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"falha ao ler arquivo de configuração {path}: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError(f"arquivo de configuração {path} deve conter um mapeamento")
            raw.update(loaded)
        seen = set()
        for env_key, field_name in cls.ENV_KEYS:
            if field_name in seen:
                continue
            value = environ.get(env_key)
            if value is not None and value != "":
                raw[field_name] = value
                seen.add(field_name)
        return cls.from_mapping(raw)

    def with_overrides(self, **changes) -> "InputConfig":
        return replace(self, **changes)

    def resolve_checkpoint_path(self, hostname: Optional[str] = None) -> Path:
        """Substitui %{HOSTNAME} pelo nome da máquina; sem hostname resolvível a config é inválida."""
        template = self.checkpoint_path
        if HOSTNAME_PLACEHOLDER in template:
            if hostname is None:
                hostname = resolve_hostname()
            template = template.replace(HOSTNAME_PLACEHOLDER, hostname)
        return Path(template)


def resolve_hostname() -> str:
    try:
        hostname = socket.gethostname()
    except OSError as e:
        raise ConfigError("falha ao obter hostname") from e
    if not hostname:
        raise ConfigError("hostname vazio")
    return hostname


def configure_logging(debug: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
