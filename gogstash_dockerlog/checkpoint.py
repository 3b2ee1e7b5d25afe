"""
checkpoint.py - Persistência da posição de leitura (sincedb) por container.
- Um único arquivo JSON por host, carregado na inicialização.
- Escrita atômica: grava em .tmp, fsync e os.replace; nunca trunca o arquivo em uso.
- Um único escritor agrupa atualizações concorrentes de containers diferentes.
"""

import os
import json
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import aiofiles.os

from .metrics import metrics
from .robustness import StructuredLogger

FORMAT_VERSION = 1


class CheckpointError(Exception):
    """Falha ao ler ou gravar o arquivo de checkpoints."""


@dataclass(frozen=True, order=True)
class Position:
    """
    Marcador de retomada de um container.
    - timestamp: instante (ns desde epoch) da última linha entregue.
    - seq: quantas linhas com exatamente esse timestamp já foram entregues.
    """
    timestamp: int = 0
    seq: int = 0

    def advance(self, timestamp: int) -> "Position":
        if timestamp > self.timestamp:
            return Position(timestamp, 1)
        if timestamp == self.timestamp:
            return Position(timestamp, self.seq + 1)
        # timestamps fora de ordem não fazem o checkpoint regredir
        return self

    def to_dict(self) -> Dict[str, int]:
        return {"timestamp": self.timestamp, "seq": self.seq}

    @classmethod
    def from_dict(cls, data) -> "Position":
        return cls(int(data["timestamp"]), int(data.get("seq", 0)))


BEGINNING = Position(0, 0)


def _fsync_dir(directory: Path):
    # o rename só é durável depois do fsync do diretório que contém o arquivo
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


async def _atomic_write(path: Path, data: str):
    tmp_path = Path(f"{str(path)}.tmp")
    loop = asyncio.get_running_loop()
    async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
        await f.write(data)
        await f.flush()
        await loop.run_in_executor(None, os.fsync, f.fileno())
    await aiofiles.os.replace(str(tmp_path), str(path))
    await loop.run_in_executor(None, _fsync_dir, path.parent)


class CheckpointStore:
    def __init__(self, path: Path, positions: Optional[Dict[str, Position]] = None):
        self.path = Path(path)
        self._positions: Dict[str, Position] = dict(positions or {})
        self._version = 0
        self._flushed_version = 0
        self._flush_lock = asyncio.Lock()
        self.logger = StructuredLogger("checkpoint")

    @classmethod
    async def load(cls, path) -> "CheckpointStore":
        """
        Carrega o sincedb do disco e confirma que o diretório aceita escrita.
        Arquivo ilegível/corrompido ou diretório sem escrita -> CheckpointError.
        """
        path = Path(path)
        positions: Dict[str, Position] = {}
        try:
            if path.parent and not path.parent.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists():
                async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                    content = await f.read()
                if content.strip():
                    positions = cls._deserialize(content)
        except OSError as e:
            metrics.CHECKPOINT_ERRORS.labels(operation="read").inc()
            raise CheckpointError(f"falha ao ler checkpoints em {path}: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            metrics.CHECKPOINT_ERRORS.labels(operation="read").inc()
            raise CheckpointError(f"arquivo de checkpoints corrompido {path}: {e}") from e
        store = cls(path, positions)
        # grava o estado carregado para provar que o caminho é gravável antes de iniciar a ingestão
        await store._flush(force=True)
        store.logger.info("Checkpoints carregados", path=str(path), containers=len(positions))
        return store

    @staticmethod
    def _deserialize(content: str) -> Dict[str, Position]:
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("conteúdo raiz deve ser um objeto")
        containers = data.get("containers", {})
        if not isinstance(containers, dict):
            raise ValueError("'containers' deve ser um objeto")
        return {cid: Position.from_dict(pos) for cid, pos in containers.items()}

    def _serialize(self) -> str:
        return json.dumps({
            "version": FORMAT_VERSION,
            "containers": {cid: pos.to_dict() for cid, pos in sorted(self._positions.items())},
        }, indent=2)

    def get(self, container_id: str) -> Position:
        return self._positions.get(container_id, BEGINNING)

    def snapshot(self) -> Dict[str, Position]:
        return dict(self._positions)

    async def set(self, container_id: str, position: Position):
        """Registra a posição e só retorna depois de persistida (ou levanta CheckpointError)."""
        self._positions[container_id] = position
        self._version += 1
        await self._flush(self._version)

    async def _flush(self, version: int = 0, force: bool = False):
        async with self._flush_lock:
            # outra chamada já persistiu esta atualização enquanto esperávamos o lock
            if not force and self._flushed_version >= version:
                return
            target = self._version
            data = self._serialize()
            try:
                await _atomic_write(self.path, data)
            except OSError as e:
                metrics.CHECKPOINT_ERRORS.labels(operation="write").inc()
                raise CheckpointError(f"falha ao gravar checkpoints em {self.path}: {e}") from e
            self._flushed_version = target
            metrics.CHECKPOINT_UPDATES.inc()
