"""Record stores: key-value persistence keyed by user id and record kind."""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any

from homepulse.core.errors import PersistenceError

logger = logging.getLogger(__name__)


class RecordKind(str, Enum):
    USAGE_MODEL = "models:usage"
    BEHAVIOR_MODEL = "models:behavior"
    COST_MODEL = "models:cost"
    ANOMALY_MODEL = "models:anomaly"
    DEVICE_USAGE = "training_data:device_usage"
    USER_ACTIONS = "training_data:user_actions"
    SETTINGS = "settings"

    @classmethod
    def models(cls) -> tuple["RecordKind", ...]:
        return (cls.USAGE_MODEL, cls.BEHAVIOR_MODEL, cls.COST_MODEL, cls.ANOMALY_MODEL)


class RecordStore(ABC):
    """Async get/upsert/delete of JSON-compatible payloads.

    Implementations raise ``PersistenceError`` when the backend is
    unreachable or rejects a request. A missing record is ``None``.
    """

    @abstractmethod
    async def get(self, user_id: str, kind: RecordKind) -> dict[str, Any] | None: ...

    @abstractmethod
    async def upsert(self, user_id: str, kind: RecordKind, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, user_id: str, kind: RecordKind) -> None: ...

    async def delete_all(self, user_id: str):
        for kind in RecordKind:
            await self.delete(user_id, kind)


class MemoryRecordStore(RecordStore):
    """Keeps records in a dict; payloads are copied through JSON like a real backend."""

    def __init__(self):
        self._records: dict[tuple[str, str], str] = {}

    async def get(self, user_id: str, kind: RecordKind) -> dict[str, Any] | None:
        raw = self._records.get((user_id, RecordKind(kind).value))
        return json.loads(raw) if raw is not None else None

    async def upsert(self, user_id: str, kind: RecordKind, payload: dict[str, Any]) -> None:
        try:
            self._records[(user_id, RecordKind(kind).value)] = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Payload is not JSON serializable: {e}", kind=RecordKind(kind).value) from e

    async def delete(self, user_id: str, kind: RecordKind) -> None:
        self._records.pop((user_id, RecordKind(kind).value), None)

    def __len__(self) -> int:
        return len(self._records)


_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileRecordStore(RecordStore):
    """One JSON file per record under ``<root>/<user>/<kind>.json``.

    File I/O runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def path_for(self, user_id: str, kind: RecordKind) -> Path:
        kind_name = RecordKind(kind).value.replace(":", "__")
        return self.root / _UNSAFE.sub("_", user_id) / f"{kind_name}.json"

    async def get(self, user_id: str, kind: RecordKind) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read, self.path_for(user_id, kind), kind)

    async def upsert(self, user_id: str, kind: RecordKind, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self.path_for(user_id, kind), kind, payload)

    async def delete(self, user_id: str, kind: RecordKind) -> None:
        await asyncio.to_thread(self._remove, self.path_for(user_id, kind), kind)

    @staticmethod
    def _read(path: Path, kind: RecordKind) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not read {path}: {e}", kind=RecordKind(kind).value) from e

    @staticmethod
    def _write(path: Path, kind: RecordKind, payload: dict[str, Any]):
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not write {path}: {e}", kind=RecordKind(kind).value) from e

    @staticmethod
    def _remove(path: Path, kind: RecordKind):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Could not delete {path}: {e}", kind=RecordKind(kind).value) from e
