#!/usr/bin/env python3
"""
Status stores

This module provides:
- StatusStore: the interface every backend implements (upsert, get, list,
  increment_error, count) with an explicit open/close lifecycle
- MemoryStatusStore: a thread-safe, dict-backed store for single-process use

The SQL backend lives in :mod:`svcstatus.registry.sql_store`.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from .errors import InvalidRecord, StoreUnavailable
from .models import RecordFilter, StatusRecord, merge_records


class StatusStore(ABC):
    """Durable, queryable persistence of status records keyed by ``id``."""

    @abstractmethod
    def upsert(self, record: StatusRecord, restart: bool = False) -> None:
        """Insert *record*, or update the stored record with the same id.

        ``restart=True`` signals a fresh instance epoch: ``started_at`` and
        ``error_count`` are taken from *record* instead of being preserved.
        """

    @abstractmethod
    def get(self, record_id: str) -> Optional[StatusRecord]:
        """Return the current record, or None if no record exists for *record_id*."""

    @abstractmethod
    def list(self, filter: Optional[RecordFilter] = None) -> List[StatusRecord]:
        """Return matching records ordered by id."""

    @abstractmethod
    def increment_error(self, record_id: str, message: str, at: datetime) -> bool:
        """Record a failure and bump ``error_count`` by one.

        Returns False when no record exists for *record_id*.
        """

    def count(self, filter: Optional[RecordFilter] = None) -> int:
        return len(self.list(filter))

    def ping(self) -> None:
        """Raise StoreUnavailable if the store cannot serve requests."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def check_error_args(record_id: str, message: str, at: datetime) -> None:
    if not isinstance(record_id, str) or not record_id:
        raise InvalidRecord("id must be a non-empty string")
    if not isinstance(message, str):
        raise InvalidRecord(f"{record_id}: error message must be a string")
    if not isinstance(at, datetime) or at.tzinfo is None or at.utcoffset() is None:
        raise InvalidRecord(f"{record_id}: error timestamp must be a timezone-aware datetime")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryStatusStore(StatusStore):
    """Thread-safe, dict-backed status store.

    Records are copied on the way in and on the way out, so readers never
    observe a record while it is being replaced.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, StatusRecord] = {}
        self._types: Dict[str, set[str]] = {}  # service_type -> ids
        self._sources: Dict[str, set[str]] = {}  # source_id -> ids
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("store is closed")

    def _unindex(self, record: StatusRecord) -> None:
        self._types.get(record.service_type, set()).discard(record.id)
        if record.source_id is not None:
            self._sources.get(record.source_id, set()).discard(record.id)

    def _index(self, record: StatusRecord) -> None:
        self._types.setdefault(record.service_type, set()).add(record.id)
        if record.source_id is not None:
            self._sources.setdefault(record.source_id, set()).add(record.id)

    def upsert(self, record: StatusRecord, restart: bool = False) -> None:
        record.validate()
        with self._lock:
            self._check_open()
            existing = self._records.get(record.id)
            merged = merge_records(existing, record, restart=restart)
            if merged is None:
                return
            if existing is not None:
                self._unindex(existing)
            self._records[record.id] = merged
            self._index(merged)

    def get(self, record_id: str) -> Optional[StatusRecord]:
        with self._lock:
            self._check_open()
            record = self._records.get(record_id)
            return record.copy() if record is not None else None

    def list(self, filter: Optional[RecordFilter] = None) -> List[StatusRecord]:
        filter = filter or RecordFilter()
        with self._lock:
            self._check_open()
            if filter.service_type is not None:
                ids = set(self._types.get(filter.service_type, set()))
            elif filter.source_id is not None:
                ids = set(self._sources.get(filter.source_id, set()))
            else:
                ids = set(self._records)
            results = []
            for rid in sorted(ids):
                record = self._records[rid]
                if filter.matches(record):
                    results.append(record.copy())
        return results

    def increment_error(self, record_id: str, message: str, at: datetime) -> bool:
        check_error_args(record_id, message, at)
        with self._lock:
            self._check_open()
            record = self._records.get(record_id)
            if record is None:
                return False
            record.last_error = message
            record.last_error_at = at
            record.error_count += 1
        return True

    def count(self, filter: Optional[RecordFilter] = None) -> int:
        if filter is None:
            with self._lock:
                self._check_open()
                return len(self._records)
        return len(self.list(filter))

    def ping(self) -> None:
        with self._lock:
            self._check_open()

    def close(self) -> None:
        with self._lock:
            self._closed = True
