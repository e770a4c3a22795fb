from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, List, Optional

from .calibration_store import CalibrationStore
from .config_manager import ConfigManager
from .data_store import DataStore
from .dispatcher import CommandDispatcher
from .errors import InvalidInputError, NotFoundError, PersistenceError, ProximityError
from .estimator import DistanceEstimator
from .models import InboundEvent, PipelineResult, parse_transport_payload
from .pipeline import ProximityPipeline
from .quality import CalibrationQualityEvaluator
from .retention import LogRetentionSweeper, RetentionScheduler
from .transport import MqttTransport


logger = logging.getLogger(__name__)

_STOP = object()


class ShardedWorkers:
    """
    Worker threads fed by one queue each.

    Events are routed by their (beacon_id, gateway_id) key, so a pair's
    events run in arrival order while other pairs proceed in parallel.
    """

    def __init__(self, handler: Callable[[InboundEvent], None], count: int = 4):
        self.handler = handler
        self._queues: List[queue.Queue] = [queue.Queue() for _ in range(max(1, count))]
        self._threads: List[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return bool(self._threads)

    def start(self) -> None:
        if self._threads:
            return
        for i, q in enumerate(self._queues):
            t = threading.Thread(target=self._run, args=(q,), name=f"ingest-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def submit(self, event: InboundEvent) -> None:
        self._queues[hash(event.key) % len(self._queues)].put(event)

    def join(self) -> None:
        """Block until every submitted event has been handled."""
        for q in self._queues:
            q.join()

    def stop(self) -> None:
        for q in self._queues:
            q.put(_STOP)
        for t in self._threads:
            t.join()
        self._threads = []

    def _run(self, q: queue.Queue) -> None:
        while True:
            event = q.get()
            try:
                if event is _STOP:
                    return
                self.handler(event)
            except Exception as e:
                logger.exception("Error processing %s: %s", event, e)
            finally:
                q.task_done()


class MQTTIngestionService:
    """Wires the engine together and feeds MQTT sightings into the pipeline."""

    def __init__(self, config_manager: ConfigManager, transport: Optional[MqttTransport] = None):
        self.config_manager = config_manager

        self.data_store = DataStore(self.config_manager)
        self.calibration_store = CalibrationStore(self.data_store)
        self.estimator = DistanceEstimator(self.config_manager)
        self.quality = CalibrationQualityEvaluator(self.calibration_store, self.data_store, self.config_manager)

        self.transport = transport or MqttTransport(self.config_manager)
        self.transport.set_message_handler(self.on_payload)
        self.dispatcher = CommandDispatcher(self.transport, self.data_store, self.config_manager)
        self.pipeline = ProximityPipeline(
            self.config_manager,
            self.data_store,
            self.calibration_store,
            self.estimator,
            self.dispatcher,
        )

        self.sweeper = LogRetentionSweeper(self.data_store, self.config_manager)
        self.scheduler = RetentionScheduler(self.sweeper)

        workers = int(self.config_manager.get_proximity_config().get("ingestion_workers", 4))
        self.workers = ShardedWorkers(self.handle_event, workers)
        self._stopped = threading.Event()

    # ---------- Lifecycle ----------
    def load(self) -> None:
        self.data_store.load()
        self.data_store.seed_default_policies()
        try:
            self.calibration_store.reload_from_durable_store()
        except PersistenceError as e:
            logger.error("Calibration data not loaded: %s", e)

    def start(self) -> bool:
        self.load()
        self.workers.start()
        retention = self.config_manager.get_retention_config()
        if retention.get("enabled", True):
            self.scheduler.start(float(retention.get("interval_hours", 24.0)))
        connected = self.transport.connect()
        if not connected:
            logger.error("MQTT not connected; commands will not be delivered until reconnect")
        return connected

    def stop(self) -> None:
        self.scheduler.stop()
        self.transport.disconnect()
        self.workers.stop()
        self._stopped.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    # ---------- Core processing ----------
    def handle_event(self, event: InboundEvent) -> Optional[PipelineResult]:
        try:
            result = self.pipeline.process(event)
        except NotFoundError as e:
            logger.warning("Sighting %s/%s ignored: %s", event.beacon_id, event.gateway_id, e)
            return None
        except ProximityError as e:
            logger.error("Sighting %s/%s failed: %s", event.beacon_id, event.gateway_id, e)
            return None
        if result.degraded:
            logger.warning(
                "Alert for %s/%s recorded partially: %s",
                event.beacon_id,
                event.gateway_id,
                "; ".join(result.errors),
            )
        return result

    # ---------- MQTT handlers ----------
    def on_payload(self, topic: str, payload: bytes) -> None:
        try:
            events = parse_transport_payload(payload)
        except InvalidInputError as e:
            logger.warning("Rejected message on %s: %s", topic, e)
            return
        for event in events:
            self.workers.submit(event)
