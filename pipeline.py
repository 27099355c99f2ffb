# pipeline.py
import logging
import threading
from typing import Dict, Iterable, Optional

from catalog import records_for
from client import DeliveryStatus, RemoteLabTestClient
from config import load_config
from errors import DeliveryFailed
from models.lab_test import coerce_records
from sync_queue import LocalSyncQueue

logger = logging.getLogger(__name__)


def build_components(cfg: Dict, session=None, engine=None):
    """Client and queue wired from one config dict"""
    client = RemoteLabTestClient(cfg["remote"], session=session)
    queue = LocalSyncQueue(client, cfg["queue"], engine=engine)
    return client, queue


class LabOrderPipeline:
    """
    Save lab orders for a visit: deliver now, queue whatever could not be delivered.
    """

    def __init__(self, client: RemoteLabTestClient, queue: LocalSyncQueue):
        self.client = client
        self.queue = queue

    def save_lab_orders(self, visit_id, patient_id: Optional[str], records: Iterable) -> Dict:
        batch = coerce_records(visit_id, patient_id, records)
        vid = batch[0].visit_id

        try:
            result = self.client.submit_batch(vid, batch, patient_id)
        except DeliveryFailed as e:
            logger.error(f"Lab tests for visit {vid} not delivered, queuing for sync: {e}")
            entry = self.queue.enqueue(vid, patient_id, batch)
            outcomes = [o.as_dict() for o in e.result.outcomes] if e.result is not None else []
            return {
                "status": "queued",
                "visit_id": vid,
                "requested": len(batch),
                "delivered": 0,
                "queued": len(entry.records),
                "queue_key": entry.key,
                "outcomes": outcomes,
                "message": "Lab tests saved locally and will be synced when the server is reachable",
            }

        response = {
            "status": "saved",
            "visit_id": vid,
            "requested": len(batch),
            "delivered": len(result.accepted),
            "queued": 0,
            "queue_key": None,
            "outcomes": [o.as_dict() for o in result.outcomes],
            "message": f"Saved {len(result.accepted)} lab tests",
        }
        if result.status == DeliveryStatus.PARTIAL:
            rejected = [o.record for o in result.rejected]
            entry = self.queue.enqueue(vid, patient_id, rejected)
            response.update({
                "status": "partial",
                "queued": len(rejected),
                "queue_key": entry.key,
                "message": f"Saved {len(result.accepted)} of {len(batch)} lab tests; {len(rejected)} queued for sync",
            })
            logger.warning(response["message"])
        return response

    def order_from_catalog(self, visit_id, patient_id: str, test_ids: Iterable[str]) -> Dict:
        return self.save_lab_orders(visit_id, patient_id, records_for(visit_id, patient_id, test_ids))


class SyncScheduler:
    """Drains the queue every `interval` seconds on a background thread"""

    def __init__(self, queue: LocalSyncQueue, interval: float = 60):
        self.queue = queue
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="labsync-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Sync scheduler started, interval {self.interval}s")

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.queue.drain_pending()
            except Exception as e:
                # keep the timer alive; the next tick retries
                logger.error(f"Scheduled drain failed: {e}", exc_info=True)

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        self.queue.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Sync scheduler stopped")


def run_sync(config_path: Optional[str] = None) -> Dict[str, int]:
    """One drain of the pending queue, for cron jobs and the CLI"""
    cfg = load_config(config_path)
    _, queue = build_components(cfg)
    summary = queue.drain_pending()
    return summary.as_dict()
