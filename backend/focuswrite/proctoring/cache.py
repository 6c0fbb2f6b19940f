"""Client-local record of the student's session.

The rule policy never lets a student read their own session back, so content
and strike count survive a reload only through this cache.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional

from ..models.enums import SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class CachedSession:
    content: str = ""
    strike_count: Optional[int] = 0  # None when the stored count is unknown
    status: str = SessionStatus.active.value


class SessionCache(ABC):
    @abstractmethod
    def load(self, session_id: str) -> Optional[CachedSession]:
        pass

    @abstractmethod
    def save(self, session_id: str, record: CachedSession) -> None:
        pass


class MemorySessionCache(SessionCache):
    def __init__(self):
        self._records: Dict[str, CachedSession] = {}

    def load(self, session_id: str) -> Optional[CachedSession]:
        record = self._records.get(session_id)
        return CachedSession(**asdict(record)) if record else None

    def save(self, session_id: str, record: CachedSession) -> None:
        self._records[session_id] = CachedSession(**asdict(record))


class FileSessionCache(SessionCache):
    """One JSON file per session under ``directory``."""

    def __init__(self, directory: str):
        self.directory = Path(directory).resolve()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.directory / (re.sub(r"[^A-Za-z0-9_.-]", "_", session_id) + ".json")

    def load(self, session_id: str) -> Optional[CachedSession]:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CachedSession(
                content=str(data.get("content", "")),
                strike_count=None if data.get("strike_count") is None else int(data["strike_count"]),
                status=str(data.get("status", SessionStatus.active.value)),
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session cache {path}: {e}")
            return None

    def save(self, session_id: str, record: CachedSession) -> None:
        path = self._path(session_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(record)), encoding="utf-8")
        tmp.replace(path)
