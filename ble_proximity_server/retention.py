from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config_manager import ConfigManager
from .data_store import SYSTEM_LOG_TYPE, DataStore
from .errors import InvalidInputError, ProximityError
from .models import LogRetentionPolicy


logger = logging.getLogger(__name__)

PROXIMITY_LOG_TYPE = "proximity"
MONITORING_LOG_TYPE = "monitoring"


@dataclass
class SweepSummary:
    deleted_by_policy: Dict[Tuple[str, str], int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    execution_time: float = 0.0

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted_by_policy.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_deleted": self.total_deleted,
            "results": [
                {"log_type": log_type, "severity": severity, "deleted": count}
                for (log_type, severity), count in self.deleted_by_policy.items()
            ],
            "errors": list(self.errors),
            "execution_time": round(self.execution_time, 3),
        }


class LogRetentionSweeper:
    """
    Deletes monitoring entries and proximity alerts older than their policy allows.

    Only active policies are applied. Records whose (type, severity) has no
    policy are kept. The cutoff of every policy derives from a single ``now``
    taken when the sweep starts, so records written during the sweep survive.
    """

    def __init__(self, data_store: DataStore, config_manager: Optional[ConfigManager] = None):
        self.data_store = data_store
        retention = (config_manager or ConfigManager()).get_retention_config()
        self.batch_size = max(1, int(retention.get("batch_size", 500)))
        self._sweep_lock = threading.Lock()

    def _batched(self, delete: Callable[[int], int]) -> int:
        # the store lock is taken once per batch
        total = 0
        while True:
            deleted = delete(self.batch_size)
            total += deleted
            if deleted < self.batch_size:
                return total

    def _apply(self, policy: LogRetentionPolicy, cutoff: datetime) -> int:
        if policy.log_type == PROXIMITY_LOG_TYPE:
            if policy.severity != "all":
                # alerts carry no severity
                logger.debug("Skipping proximity policy with severity %s", policy.severity)
                return 0
            return self._batched(lambda n: self.data_store.delete_alerts_before(cutoff, limit=n))
        if policy.log_type == SYSTEM_LOG_TYPE:
            return self._batched(
                lambda n: self.data_store.delete_logs_before(
                    cutoff, severity=policy.severity, log_type=SYSTEM_LOG_TYPE, limit=n
                )
            )
        if policy.log_type == MONITORING_LOG_TYPE:
            return self._batched(
                lambda n: self.data_store.delete_logs_before(
                    cutoff, severity=policy.severity, exclude_type=SYSTEM_LOG_TYPE, limit=n
                )
            )
        raise InvalidInputError(f"unsupported log type {policy.log_type!r}")

    def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        started = time.perf_counter()
        now = now or datetime.now()
        summary = SweepSummary()

        with self._sweep_lock:
            try:
                policies = self.data_store.list_retention_policies(active_only=True)
            except ProximityError as e:
                summary.errors.append(f"policies unavailable: {e}")
                summary.execution_time = time.perf_counter() - started
                return summary

            for policy in policies:
                key = (policy.log_type, policy.severity)
                cutoff = now - timedelta(days=policy.retention_days)
                try:
                    deleted = self._apply(policy, cutoff)
                    self.data_store.mark_policy_cleanup(policy.log_type, policy.severity, now)
                except ProximityError as e:
                    logger.error("Retention sweep for %s/%s failed: %s", policy.log_type, policy.severity, e)
                    summary.errors.append(f"{policy.log_type}/{policy.severity}: {e}")
                    continue
                summary.deleted_by_policy[key] = deleted
                if deleted:
                    logger.info(
                        "Retention: deleted %d %s/%s record(s) older than %s",
                        deleted,
                        policy.log_type,
                        policy.severity,
                        cutoff.isoformat(timespec="seconds"),
                    )

        summary.execution_time = time.perf_counter() - started
        logger.info(
            "Retention sweep finished: %d deleted, %d error(s) in %.2fs",
            summary.total_deleted,
            len(summary.errors),
            summary.execution_time,
        )
        return summary


class RetentionScheduler:
    """Runs the sweep once on start and then every ``interval_hours``."""

    def __init__(self, sweeper: LogRetentionSweeper):
        self.sweeper = sweeper
        self.interval_hours = 24.0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_summary: Optional[SweepSummary] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_hours: Optional[float] = None) -> None:
        if self.is_running:
            logger.warning("Retention scheduler already running")
            return
        if interval_hours is not None:
            if interval_hours <= 0:
                raise ValueError("interval_hours must be positive")
            self.interval_hours = float(interval_hours)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-sweep", daemon=True)
        self._thread.start()
        logger.info("Retention scheduler started (every %.1fh)", self.interval_hours)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            logger.info("Retention scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.last_summary = self.sweeper.sweep()
            except Exception as e:
                logger.exception("Scheduled retention sweep failed: %s", e)
            if self._stop_event.wait(self.interval_hours * 3600):
                break
