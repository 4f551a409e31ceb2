from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from models.booking import MyBookingSummary
from models.session import (
    AGENT_HEADERS_STORAGE_KEY,
    AGENT_STARTED_STORAGE_KEY,
    CART_STORAGE_KEY,
    CART_TTL_SECONDS,
    MAX_BOOKING_HISTORY,
    MY_BOOKINGS_STORAGE_KEY,
    PURCHASE_STORAGE_KEY,
    PURCHASE_TTL_SECONDS,
    CartSessionData,
    PurchaseSessionData,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


# ---------------------------------------------------------------------------
# Key/value backends
# ---------------------------------------------------------------------------


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStorage:
    """Process-local storage; the default when no storage path is configured."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    All keys in a single JSON document on disk, rewritten on every change.

    Good enough for a handful of short-lived sessions; not meant to be shared
    between processes.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError:
            logger.warning("[storage] %s is not valid JSON, starting empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


# ---------------------------------------------------------------------------
# Single-slot TTL records
# ---------------------------------------------------------------------------

RecordT = TypeVar("RecordT", bound=BaseModel)


class _SessionRecordStore(Generic[RecordT]):
    model: Type[RecordT]
    storage_key: str
    ttl_seconds: float
    tag: str

    def __init__(self, storage: KeyValueStorage, namespace: str = "", clock: Clock = time.time) -> None:
        self.storage = storage
        self.namespace = namespace
        self.clock = clock

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.storage_key}" if self.namespace else self.storage_key

    def load(self) -> Optional[RecordT]:
        raw = self.storage.get(self.key)
        if raw is None:
            return None
        try:
            record = self.model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("[%s] dropping unreadable session record: %s", self.tag, exc)
            self.clear()
            return None

        age = self.clock() - getattr(record, "timestamp", 0.0)
        if age > self.ttl_seconds:
            logger.info("[%s] session record expired (%.0fs old)", self.tag, age)
            self.clear()
            return None
        return record

    def save(self, record: RecordT) -> RecordT:
        """Replace the slot wholesale, stamping a fresh timestamp."""
        stamped = record.model_copy(update={"timestamp": self.clock()})
        self.storage.set(self.key, stamped.model_dump_json())
        logger.debug("[%s] saved %s", self.tag, stamped.model_dump())
        return stamped

    def merge(self, **changes: Any) -> RecordT:
        """Overlay `changes` on the current record (if any) and save."""
        current = self.load()
        base: Dict[str, Any] = current.model_dump() if current else {}
        base.update(changes)
        return self.save(self.model.model_validate(base))

    def clear(self) -> None:
        self.storage.delete(self.key)


class CartSessionStore(_SessionRecordStore[CartSessionData]):
    model = CartSessionData
    storage_key = CART_STORAGE_KEY
    ttl_seconds = CART_TTL_SECONDS
    tag = "cart"


class PurchaseSessionStore(_SessionRecordStore[PurchaseSessionData]):
    model = PurchaseSessionData
    storage_key = PURCHASE_STORAGE_KEY
    ttl_seconds = PURCHASE_TTL_SECONDS
    tag = "purchase"


# ---------------------------------------------------------------------------
# Booking history
# ---------------------------------------------------------------------------


class BookingHistoryStore:
    """
    Most-recent-first list of finished bookings, keyed by cart id.
    Not namespaced: history outlives individual booking sessions.
    """

    def __init__(self, storage: KeyValueStorage, max_entries: int = MAX_BOOKING_HISTORY) -> None:
        self.storage = storage
        self.max_entries = max_entries

    def list(self) -> List[MyBookingSummary]:
        raw = self.storage.get(MY_BOOKINGS_STORAGE_KEY)
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            logger.error("[history] stored bookings are not valid JSON")
            return []
        if not isinstance(items, list):
            return []

        entries: List[MyBookingSummary] = []
        for item in items:
            try:
                entries.append(MyBookingSummary.model_validate(item))
            except ValidationError:
                continue
        return entries

    def add(self, entry: MyBookingSummary) -> List[MyBookingSummary]:
        remaining = [b for b in self.list() if b.cart_id != entry.cart_id]
        updated = [entry, *remaining][: self.max_entries]
        self.storage.set(
            MY_BOOKINGS_STORAGE_KEY,
            json.dumps([b.model_dump() for b in updated]),
        )
        logger.info("[history] recorded booking %s (%s)", entry.cart_id, entry.status)
        return updated


# ---------------------------------------------------------------------------
# Agent headers
# ---------------------------------------------------------------------------


class AgentHeaderStore:
    def __init__(self, storage: KeyValueStorage, namespace: str = "") -> None:
        self.storage = storage
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def load_headers(self) -> Dict[str, str]:
        raw = self.storage.get(self._key(AGENT_HEADERS_STORAGE_KEY))
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def save_headers(self, headers: Dict[str, str]) -> None:
        self.storage.set(self._key(AGENT_HEADERS_STORAGE_KEY), json.dumps(headers))

    def clear_headers(self) -> None:
        self.storage.delete(self._key(AGENT_HEADERS_STORAGE_KEY))

    def session_started(self) -> bool:
        return self.storage.get(self._key(AGENT_STARTED_STORAGE_KEY)) == "true"

    def mark_started(self, started: bool) -> None:
        if started:
            self.storage.set(self._key(AGENT_STARTED_STORAGE_KEY), "true")
        else:
            self.storage.delete(self._key(AGENT_STARTED_STORAGE_KEY))
