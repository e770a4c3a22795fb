from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .data_store import DataStore
from .errors import (
    DuplicateCalibrationPointError,
    InvalidInputError,
    NotFoundError,
    PersistenceError,
)
from .models import CalibrationPoint, CalibrationSet, PairKey


logger = logging.getLogger(__name__)


class _ReloadGate:
    """Mutations share the gate; a reload holds it exclusively."""

    def __init__(self):
        self._cond = threading.Condition()
        self._active = 0
        self._reloading = False

    @contextmanager
    def shared(self):
        with self._cond:
            while self._reloading:
                self._cond.wait()
            self._active += 1
        try:
            yield
        finally:
            with self._cond:
                self._active -= 1
                if self._active == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self):
        with self._cond:
            while self._reloading:
                self._cond.wait()
            self._reloading = True
            while self._active:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._reloading = False
                self._cond.notify_all()


class _AllSets:
    """Restartable view; each iteration walks a snapshot taken when it starts."""

    def __init__(self, store: "CalibrationStore"):
        self._store = store

    def __iter__(self) -> Iterator[CalibrationSet]:
        yield from list(self._store._sets.values())

    def __len__(self) -> int:
        return len(self._store._sets)


def _validate(beacon_id: str, gateway_id: str, distance: Optional[float] = None, rssi: Optional[float] = None):
    if not beacon_id or not gateway_id:
        raise InvalidInputError("beacon_id and gateway_id are required")
    if distance is not None and (not math.isfinite(distance) or distance <= 0):
        raise InvalidInputError("distance must be a positive number")
    if rssi is not None and not math.isfinite(rssi):
        raise InvalidInputError("rssi must be a finite number")


class CalibrationStore:
    """
    In-memory calibration sets keyed by (beacon_id, gateway_id), written
    through to the durable store.

    Sets are immutable and replaced whole, so readers take no lock and never
    see a half-built set. Mutations of one pair are serialised by a per-key
    lock; ``reload_from_durable_store`` excludes all mutations while it runs.
    """

    def __init__(self, data_store: DataStore):
        self.data_store = data_store
        self._sets: Dict[PairKey, CalibrationSet] = {}
        self._key_locks: Dict[PairKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._gate = _ReloadGate()

    def _lock_for(self, key: PairKey) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    # ---- Reads ----
    def get_set(self, beacon_id: str, gateway_id: str) -> Optional[CalibrationSet]:
        return self._sets.get((beacon_id, gateway_id))

    def list_all(self) -> _AllSets:
        return _AllSets(self)

    def __len__(self) -> int:
        return len(self._sets)

    # ---- Writes ----
    def add_point(self, beacon_id: str, gateway_id: str, distance: float, rssi: float) -> CalibrationSet:
        """
        Upsert the point at ``distance``.

        An existing point keeps its slot: the RSSI is overwritten and the
        sample count goes up by one. The cache is updated even when the
        durable write fails; the failure is then raised as PersistenceError.
        """
        _validate(beacon_id, gateway_id, distance, rssi)
        distance, rssi = float(distance), float(rssi)
        key = (beacon_id, gateway_id)
        with self._gate.shared(), self._lock_for(key):
            now = datetime.now()
            current = self._sets.get(key) or CalibrationSet(
                beacon_id=beacon_id, gateway_id=gateway_id, created_at=now, updated_at=now
            )
            existing = current.point_at(distance)
            point = CalibrationPoint(
                distance=distance,
                rssi=rssi,
                sample_count=existing.sample_count + 1 if existing else 1,
                last_updated=now,
            )
            return self._write(current, point, strict=False, now=now)

    def create_point(self, beacon_id: str, gateway_id: str, distance: float, rssi: float) -> CalibrationSet:
        """Strict create: DuplicateCalibrationPointError if the distance exists."""
        _validate(beacon_id, gateway_id, distance, rssi)
        distance, rssi = float(distance), float(rssi)
        key = (beacon_id, gateway_id)
        with self._gate.shared(), self._lock_for(key):
            now = datetime.now()
            current = self._sets.get(key) or CalibrationSet(
                beacon_id=beacon_id, gateway_id=gateway_id, created_at=now, updated_at=now
            )
            point = CalibrationPoint(distance=distance, rssi=rssi, sample_count=1, last_updated=now)
            return self._write(current, point, strict=True, now=now)

    def update_point(self, beacon_id: str, gateway_id: str, distance: float, rssi: float) -> CalibrationSet:
        """Overwrite the RSSI of an existing point; NotFoundError when there is none."""
        _validate(beacon_id, gateway_id, distance, rssi)
        distance, rssi = float(distance), float(rssi)
        key = (beacon_id, gateway_id)
        with self._gate.shared(), self._lock_for(key):
            current = self._sets.get(key)
            existing = current.point_at(distance) if current else None
            if current is None or existing is None:
                raise NotFoundError(f"no calibration point {beacon_id}/{gateway_id} at {distance}m")
            now = datetime.now()
            point = CalibrationPoint(
                distance=distance, rssi=rssi, sample_count=existing.sample_count, last_updated=now
            )
            return self._write(current, point, strict=False, now=now)

    def _write(self, current: CalibrationSet, point: CalibrationPoint, strict: bool, now: datetime) -> CalibrationSet:
        # caller holds the key lock
        if strict and current.point_at(point.distance) is not None:
            raise DuplicateCalibrationPointError(current.beacon_id, current.gateway_id, point.distance)

        error: Optional[PersistenceError] = None
        try:
            if strict:
                self.data_store.insert_calibration_point(current.beacon_id, current.gateway_id, point)
            else:
                self.data_store.upsert_calibration_point(current.beacon_id, current.gateway_id, point)
        except PersistenceError as e:
            logger.error(
                "Calibration point %s/%s %.2fm not persisted: %s",
                current.beacon_id,
                current.gateway_id,
                point.distance,
                e,
            )
            error = e

        updated = current.with_point(point, now)
        self._sets[current.key] = updated
        logger.info(
            "Calibration %s/%s: %.2fm = %.1fdBm (%d samples, %d points)",
            current.beacon_id,
            current.gateway_id,
            point.distance,
            point.rssi,
            point.sample_count,
            len(updated),
        )
        if error is not None:
            raise error
        return updated

    def remove_point(self, beacon_id: str, gateway_id: str) -> bool:
        """Remove the whole set of a pair; True when one existed."""
        key = (beacon_id, gateway_id)
        with self._gate.shared(), self._lock_for(key):
            existed = self._sets.pop(key, None) is not None
            removed = self.data_store.delete_calibration_pair(beacon_id, gateway_id)
            if existed or removed:
                logger.info("Calibration %s/%s removed", beacon_id, gateway_id)
            return existed or removed > 0

    # ---- Reload ----
    def reload_from_durable_store(self) -> int:
        """
        Replace the cache with what the durable store holds right now.

        The new map is built aside and swapped in with one assignment; on a
        read failure the previous cache stays untouched. Returns the number
        of pairs loaded.
        """
        with self._gate.exclusive():
            previous = len(self._sets)
            rows = self.data_store.load_calibration_points(refresh=True)

            grouped: Dict[PairKey, List[CalibrationPoint]] = {}
            for beacon_id, gateway_id, point in rows:
                bucket = grouped.setdefault((beacon_id, gateway_id), [])
                # unique by distance; last row wins
                bucket[:] = [p for p in bucket if p.distance != point.distance]
                bucket.append(point)

            fresh: Dict[PairKey, CalibrationSet] = {}
            for (beacon_id, gateway_id), points in grouped.items():
                points.sort(key=lambda p: p.distance)
                stamps = [p.last_updated for p in points]
                fresh[(beacon_id, gateway_id)] = CalibrationSet(
                    beacon_id=beacon_id,
                    gateway_id=gateway_id,
                    points=tuple(points),
                    created_at=min(stamps),
                    updated_at=max(stamps),
                )

            self._sets = fresh
            logger.info("Calibration reloaded: %d pairs (was %d)", len(fresh), previous)
            for s in fresh.values():
                logger.debug(
                    "  %s/%s: %s",
                    s.beacon_id,
                    s.gateway_id,
                    ", ".join(f"{p.distance}m={p.rssi}dBm x{p.sample_count}" for p in s.points),
                )
            return len(fresh)
