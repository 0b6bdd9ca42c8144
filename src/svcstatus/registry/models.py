#!/usr/bin/env python3
"""
Status records and filters

This module provides:
- ServiceType / ServiceStatus: the known service types and the lifecycle states
- StatusRecord: the persisted shape of one service instance's current state
- RecordFilter: the recognised options for listing records
- merge_records: the update rules every store backend applies on upsert
"""

import copy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import InvalidRecord


# A stats document is an arbitrarily nested JSON-like value. The registry
# stores and returns it verbatim and never looks inside.
StatsValue = Union[None, bool, int, float, str, List["StatsValue"], Dict[str, "StatsValue"]]


class ServiceType(Enum):
    """Known service types. The set is open: any non-empty string is accepted."""
    SCRAPER = "scraper"
    OCR = "ocr"
    SERVER = "server"


class ServiceStatus(Enum):
    """Lifecycle state reported by a service instance"""
    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    STOPPED = "stopped"


_STATUS_VALUES = {s.value for s in ServiceStatus}
_TIMESTAMP_FIELDS = ("last_heartbeat", "last_activity", "started_at", "last_error_at")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_service_id(service_type: Union[str, ServiceType], discriminator: str) -> str:
    """Build the conventional record id, e.g. ``scraper:doj`` or ``ocr:worker-1``."""
    if isinstance(service_type, ServiceType):
        service_type = service_type.value
    return f"{service_type}:{discriminator}"


@dataclass
class StatusRecord:
    """Current state of one service instance, keyed by ``id``."""
    id: str
    service_type: str
    status: str
    last_heartbeat: datetime
    started_at: datetime
    source_id: Optional[str] = None
    last_activity: Optional[datetime] = None
    current_task: Optional[str] = None
    stats: Dict[str, StatsValue] = field(default_factory=dict)
    host: Optional[str] = None
    version: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    error_count: int = 0

    def __post_init__(self):
        if isinstance(self.service_type, ServiceType):
            self.service_type = self.service_type.value
        if isinstance(self.status, ServiceStatus):
            self.status = self.status.value

    def validate(self) -> None:
        """Raise InvalidRecord unless every field is present and well-formed."""
        if not isinstance(self.id, str) or not self.id:
            raise InvalidRecord("id must be a non-empty string")
        if not isinstance(self.service_type, str) or not self.service_type:
            raise InvalidRecord(f"{self.id}: service_type must be a non-empty string")
        if self.status not in _STATUS_VALUES:
            raise InvalidRecord(
                f"{self.id}: unknown status {self.status!r}"
                f" (expected one of {', '.join(sorted(_STATUS_VALUES))})"
            )
        if self.source_id is not None:
            if not isinstance(self.source_id, str) or not self.source_id:
                raise InvalidRecord(f"{self.id}: source_id must be a non-empty string when set")
            if self.service_type != ServiceType.SCRAPER.value:
                raise InvalidRecord(
                    f"{self.id}: source_id is only valid for scraper records,"
                    f" not {self.service_type!r}"
                )
        for name in _TIMESTAMP_FIELDS:
            value = getattr(self, name)
            if value is None:
                if name in ("last_heartbeat", "started_at"):
                    raise InvalidRecord(f"{self.id}: {name} is required")
                continue
            if not isinstance(value, datetime):
                raise InvalidRecord(f"{self.id}: {name} must be a datetime, got {type(value).__name__}")
            if value.tzinfo is None or value.utcoffset() is None:
                raise InvalidRecord(f"{self.id}: {name} must be timezone-aware")
        for name in ("current_task", "host", "version", "last_error"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise InvalidRecord(f"{self.id}: {name} must be a string")
        if isinstance(self.error_count, bool) or not isinstance(self.error_count, int):
            raise InvalidRecord(f"{self.id}: error_count must be an integer")
        if self.error_count < 0:
            raise InvalidRecord(f"{self.id}: error_count cannot be negative")
        if not isinstance(self.stats, dict):
            raise InvalidRecord(f"{self.id}: stats must be a mapping")
        _check_stats_value(self.stats, f"{self.id}: stats")

    def copy(self) -> "StatusRecord":
        return replace(self, stats=copy.deepcopy(self.stats))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary (ISO-8601 timestamps)."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif f.name == "stats":
                value = copy.deepcopy(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusRecord":
        """Create from dictionary, parsing ISO-8601 timestamps."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in _TIMESTAMP_FIELDS:
            if isinstance(values.get(name), str):
                values[name] = datetime.fromisoformat(values[name])
        if values.get("stats") is None:
            values["stats"] = {}
        return cls(**values)


def _check_stats_value(value: Any, path: str) -> None:
    if value is None or isinstance(value, (bool, int, float, str)):
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            _check_stats_value(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidRecord(f"{path}: keys must be strings, got {key!r}")
            _check_stats_value(item, f"{path}.{key}")
        return
    raise InvalidRecord(f"{path}: unsupported value of type {type(value).__name__}")


@dataclass
class RecordFilter:
    """Options for listing records. ``None`` matches anything.

    ``heartbeat_after`` is inclusive, ``heartbeat_before`` exclusive.
    """
    service_type: Optional[str] = None
    source_id: Optional[str] = None
    status: Optional[str] = None
    heartbeat_after: Optional[datetime] = None
    heartbeat_before: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.service_type, ServiceType):
            self.service_type = self.service_type.value
        if isinstance(self.status, ServiceStatus):
            self.status = self.status.value

    def matches(self, record: StatusRecord) -> bool:
        if self.service_type is not None and record.service_type != self.service_type:
            return False
        if self.source_id is not None and record.source_id != self.source_id:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.heartbeat_after is not None and record.last_heartbeat < self.heartbeat_after:
            return False
        if self.heartbeat_before is not None and record.last_heartbeat >= self.heartbeat_before:
            return False
        return True


def merge_records(
    existing: Optional[StatusRecord],
    incoming: StatusRecord,
    restart: bool = False,
) -> Optional[StatusRecord]:
    """Return the record that should be stored after upserting *incoming*.

    Returns None when the upsert must be ignored because *incoming* carries a
    heartbeat older than the stored one. On restart the incoming record is
    taken verbatim and starts a new epoch; otherwise ``started_at`` is kept,
    ``error_count`` never goes down and ``last_activity`` / ``last_error`` /
    ``last_error_at`` keep their stored value when the incoming one is null.
    """
    if existing is None:
        return incoming.copy()
    if incoming.last_heartbeat < existing.last_heartbeat:
        return None
    if restart:
        return incoming.copy()

    merged = incoming.copy()
    merged.started_at = existing.started_at
    merged.error_count = max(existing.error_count, incoming.error_count)
    if merged.last_activity is None:
        merged.last_activity = existing.last_activity
    if merged.last_error is None:
        merged.last_error = existing.last_error
    if merged.last_error_at is None:
        merged.last_error_at = existing.last_error_at
    return merged
