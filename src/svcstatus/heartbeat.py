"""Per-instance heartbeat client.

A service creates one HeartbeatClient for its own id, calls :meth:`report`
whenever its state changes and :meth:`report_error` when something fails, and
runs the background timer (:meth:`start`) so the record keeps getting fresh
heartbeats while the service is idle. Failing to reach the store is logged and
never raised: the service keeps working and simply looks stale until the store
comes back.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Union

from .registry.errors import RegistryError, StoreUnavailable
from .registry.models import ServiceStatus, ServiceType, StatsValue, StatusRecord, utc_now
from .registry.store import StatusStore

logger = logging.getLogger(__name__)


class HeartbeatClient:
    """Keeps one service instance's status record fresh."""

    def __init__(
        self,
        store: StatusStore,
        service_id: str,
        service_type: Union[str, ServiceType],
        source_id: Optional[str] = None,
        interval: float = 10.0,
        host: Optional[str] = None,
        version: Optional[str] = None,
        resume: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if interval <= 0:
            raise ValueError("heartbeat interval must be positive")
        if isinstance(service_type, ServiceType):
            service_type = service_type.value
        self.store = store
        self.service_id = service_id
        self.service_type = service_type
        self.source_id = source_id
        self.interval = interval
        self.host = host
        self.version = version
        self._clock = clock or utc_now

        # Reports and timer beats may come from different threads.
        self._lock = threading.Lock()
        self._status = ServiceStatus.STARTING.value
        self._current_task: Optional[str] = None
        self._stats: Dict[str, StatsValue] = {}
        self._stats_reported = False
        self._last_activity: Optional[datetime] = None
        self._started_at: Optional[datetime] = None
        # True until the first successful write of this client's epoch.
        self._pending_restart = True
        self._resume = resume

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def status(self) -> str:
        return self._status

    def _snapshot(self, now: datetime) -> StatusRecord:
        return StatusRecord(
            id=self.service_id,
            service_type=self.service_type,
            source_id=self.source_id,
            status=self._status,
            last_heartbeat=now,
            last_activity=self._last_activity,
            current_task=self._current_task,
            stats=copy.deepcopy(self._stats),
            started_at=self._started_at or now,
            host=self.host,
            version=self.version,
        )

    def _resume_epoch(self) -> None:
        """Adopt the stored record's epoch instead of starting a new one.

        Activity and stats this client has already reported win over the
        stored values.
        """
        existing = self.store.get(self.service_id)
        if existing is not None:
            self._started_at = existing.started_at
            if self._last_activity is None:
                self._last_activity = existing.last_activity
            if not self._stats_reported:
                self._stats = copy.deepcopy(existing.stats)
            self._pending_restart = False
        self._resume = False

    def _send(self, now: datetime) -> bool:
        """Write the current snapshot. Caller holds the lock."""
        try:
            if self._resume:
                self._resume_epoch()
            if self._started_at is None:
                self._started_at = now
            self.store.upsert(self._snapshot(now), restart=self._pending_restart)
        except StoreUnavailable as e:
            logger.warning("Heartbeat for %s not recorded: %s", self.service_id, e)
            return False
        self._pending_restart = False
        return True

    def report(
        self,
        status: Union[str, ServiceStatus],
        current_task: Optional[str] = None,
        stats: Optional[Dict[str, StatsValue]] = None,
        activity_occurred: bool = False,
    ) -> bool:
        """Report the instance's current state.

        ``stats=None`` keeps the previously reported stats. ``last_activity``
        only advances when *activity_occurred* is true. Returns False if the
        store could not be reached; InvalidRecord propagates.
        """
        if isinstance(status, ServiceStatus):
            status = status.value
        now = self._clock()
        with self._lock:
            if status != self._status:
                logger.info("%s: %s -> %s", self.service_id, self._status, status)
            self._status = status
            self._current_task = current_task
            if stats is not None:
                self._stats = copy.deepcopy(stats)
                self._stats_reported = True
            if activity_occurred:
                self._last_activity = now
            return self._send(now)

    def beat(self) -> bool:
        """Re-send the current state with a fresh heartbeat and no new activity."""
        now = self._clock()
        with self._lock:
            return self._send(now)

    def report_error(self, message: str) -> bool:
        """Record a failure against this instance's record.

        Before this client's first write the error opens its epoch: the record
        is (re)created in the ``error`` state with ``error_count=1``, so a
        later report does not wipe it. Returns False if the store could not
        be reached.
        """
        now = self._clock()
        with self._lock:
            try:
                if self._resume:
                    self._resume_epoch()
                if not self._pending_restart and self.store.increment_error(self.service_id, message, now):
                    return True
                logger.info("%s: starting a new epoch to hold the error", self.service_id)
                self._status = ServiceStatus.ERROR.value
                if self._started_at is None or self._pending_restart:
                    self._started_at = now
                record = self._snapshot(now)
                record.last_error = message
                record.last_error_at = now
                record.error_count = 1
                self.store.upsert(record, restart=True)
            except StoreUnavailable as e:
                logger.warning("Error report for %s not recorded: %s", self.service_id, e)
                return False
            self._pending_restart = False
            self._resume = False
            return True

    # -- background timer ----------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.beat()
            except RegistryError:
                logger.exception("Heartbeat for %s failed", self.service_id)

    def start(self) -> None:
        """Start sending heartbeats every ``interval`` seconds from a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"heartbeat-{self.service_id}",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Heartbeat timer for %s started (every %ss)", self.service_id, self.interval)

    def stop(self, final_status: Optional[Union[str, ServiceStatus]] = ServiceStatus.STOPPED) -> bool:
        """Stop the timer and, unless *final_status* is None, report it one last time."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if final_status is None:
            return True
        return self.report(final_status, current_task=None)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
