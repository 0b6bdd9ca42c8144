"""Staleness detection: map a status record and the current time to a liveness verdict.

The comparison trusts the clocks of the reporting hosts. A heartbeat stamped in
the future reads as ``alive``; guarding against clock skew is up to the
deployment.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Union

from .registry.models import ServiceStatus, StatusRecord


class Liveness(Enum):
    """Liveness verdict derived from heartbeat age"""
    ALIVE = "alive"
    STALE = "stale"
    STOPPED = "stopped"


def _as_timedelta(threshold: Union[timedelta, int, float]) -> timedelta:
    if isinstance(threshold, timedelta):
        return threshold
    return timedelta(seconds=threshold)


def heartbeat_age(record: StatusRecord, now: datetime) -> timedelta:
    """Time elapsed since the record's last heartbeat (negative if stamped in the future)."""
    return now - record.last_heartbeat


def classify(
    record: StatusRecord,
    now: datetime,
    threshold: Union[timedelta, int, float],
) -> Liveness:
    """Classify *record* as alive, stale or stopped at time *now*.

    An explicit ``stopped`` status wins over heartbeat age. Otherwise the
    record is alive iff its heartbeat is at most *threshold* old.
    """
    if record.status == ServiceStatus.STOPPED.value:
        return Liveness.STOPPED
    if heartbeat_age(record, now) <= _as_timedelta(threshold):
        return Liveness.ALIVE
    return Liveness.STALE
