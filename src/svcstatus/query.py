"""Read-only query surface: store lookups with a liveness verdict attached to each record."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from .detector import Liveness, classify, heartbeat_age
from .registry.models import RecordFilter, StatusRecord, utc_now
from .registry.store import StatusStore


@dataclass
class ClassifiedStatus:
    """A status record together with its liveness at query time."""
    record: StatusRecord
    liveness: Liveness
    age_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.to_dict()
        data["liveness"] = self.liveness.value
        data["age_seconds"] = round(self.age_seconds, 3)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassifiedStatus":
        data = dict(data)
        liveness = Liveness(data.pop("liveness"))
        age_seconds = float(data.pop("age_seconds"))
        return cls(record=StatusRecord.from_dict(data), liveness=liveness, age_seconds=age_seconds)


class StatusQuery:
    """Compose store reads with staleness classification. Never writes."""

    def __init__(
        self,
        store: StatusStore,
        threshold: Union[timedelta, int, float] = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not isinstance(threshold, timedelta):
            threshold = timedelta(seconds=threshold)
        if threshold <= timedelta(0):
            raise ValueError("staleness threshold must be positive")
        self._store = store
        self._threshold = threshold
        self._clock = clock or utc_now

    @property
    def threshold(self) -> timedelta:
        return self._threshold

    def _classify(self, record: StatusRecord, now: datetime) -> ClassifiedStatus:
        return ClassifiedStatus(
            record=record,
            liveness=classify(record, now, self._threshold),
            age_seconds=heartbeat_age(record, now).total_seconds(),
        )

    def get(self, record_id: str, now: Optional[datetime] = None) -> Optional[ClassifiedStatus]:
        record = self._store.get(record_id)
        if record is None:
            return None
        return self._classify(record, now or self._clock())

    def list(
        self,
        filter: Optional[RecordFilter] = None,
        now: Optional[datetime] = None,
        liveness: Optional[Liveness] = None,
    ) -> List[ClassifiedStatus]:
        now = now or self._clock()
        results = [self._classify(r, now) for r in self._store.list(filter)]
        if liveness is not None:
            results = [c for c in results if c.liveness == liveness]
        return results

    def summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Count records by liveness and by service type."""
        statuses = self.list(now=now)
        by_liveness = {v.value: 0 for v in Liveness}
        by_type: Dict[str, Dict[str, int]] = {}
        for c in statuses:
            by_liveness[c.liveness.value] += 1
            counts = by_type.setdefault(c.record.service_type, {v.value: 0 for v in Liveness})
            counts[c.liveness.value] += 1
        return {
            "total": len(statuses),
            "threshold_seconds": self._threshold.total_seconds(),
            "by_liveness": by_liveness,
            "by_type": by_type,
        }
