import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class LogEvent:
    """Evento estruturado entregue ao canal de saída."""
    timestamp: datetime
    message: str
    source: str
    container_name: str = ""
    host: str = ""
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_frame(cls, timestamp_ns: Optional[int], message: str, source: str, **kwargs) -> "LogEvent":
        if timestamp_ns is None:
            timestamp_ns = time.time_ns()
        ts = datetime.fromtimestamp(timestamp_ns / 1e9, tz=timezone.utc)
        return cls(timestamp=ts, message=message, source=source, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        record = {
            "@timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "type": "dockerlog",
            "containerid": self.source,
        }
        if self.container_name:
            record["containername"] = self.container_name
        if self.host:
            record["host"] = self.host
        record.update(self.fields)
        return record
