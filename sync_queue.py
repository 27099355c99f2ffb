# sync_queue.py
import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

import db
from client import DeliveryStatus
from errors import DeliveryCancelled, DeliveryFailed, DrainInProgress, PersistenceFailed, ValidationFailed
from models.lab_test import coerce_records
from models.pending_sync import SCHEMA_VERSION, PendingSyncEntry, SyncState, entry_key, utcnow
from normalize.transformer import record_from_wire

logger = logging.getLogger(__name__)


@dataclass
class DrainSummary:
    synced: int = 0
    still_pending: int = 0
    abandoned: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class LocalSyncQueue:
    """
    Durable queue of lab-test batches that could not be delivered.

    One entry per (visit, patient) pair. Each drain makes one delivery attempt
    per pending entry and persists the outcome before moving on, so a crash
    mid-drain loses at most the attempt count of the entry in flight.
    """

    def __init__(self, client, cfg: Optional[Dict] = None, engine=None):
        cfg = cfg or {}
        self.client = client
        self.max_sync_attempts = cfg.get("maxSyncAttempts", 5)
        self.accept_partial = cfg.get("acceptPartial", False)
        self.on_conflict = cfg.get("onConflict", "overwrite")
        self.engine = engine or db.engine

        self._drain_lock = threading.Lock()
        self._cancel = threading.Event()
        # a key's lock lives only while someone holds or waits on it
        self._key_locks = weakref.WeakValueDictionary()
        self._key_locks_guard = threading.Lock()

        db.init_db(self.engine)

    @contextmanager
    def _key_lock(self, key: str):
        with self._key_locks_guard:
            lock = self._key_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def _commit(self, session, entry: PendingSyncEntry, action: str) -> PendingSyncEntry:
        try:
            session.add(entry)
            session.commit()
            session.refresh(entry)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to persist {action} for {entry.key}: {e}")
            raise PersistenceFailed(f"Could not persist {action} for {entry.key}: {e}") from e
        return entry

    def enqueue(self, visit_id, patient_id: Optional[str], records: Iterable) -> PendingSyncEntry:
        """
        Persist a batch that failed delivery.
        An existing entry for the same visit and patient is replaced, or
        extended when onConflict is 'merge'.
        """
        batch = coerce_records(visit_id, patient_id, records)
        vid = batch[0].visit_id
        pid = ("" if patient_id is None else str(patient_id).strip()) or batch[0].patient_id
        key = entry_key(vid, pid)
        payload = [r.as_dict() for r in batch]

        with self._key_lock(key):
            with db.get_session(self.engine) as session:
                entry = session.get(PendingSyncEntry, key)
                now = utcnow()

                if entry is None:
                    entry = PendingSyncEntry(key=key, visit_id=vid, patient_id=pid, records=payload)
                elif self.on_conflict == "merge" and entry.state == SyncState.CREATED:
                    self._migrate(entry)
                    pending_names = {r.get("test_name") for r in entry.records}
                    added = [r for r in payload if r["test_name"] not in pending_names]
                    entry.records = list(entry.records) + added
                    entry.sync_attempts = 0
                    entry.updated_at = now
                    logger.info(f"Merged {len(added)} lab tests into pending entry {key}")
                else:
                    if entry.state == SyncState.CREATED:
                        logger.warning(f"Overwriting pending entry {key} ({len(entry.records)} lab tests not yet delivered)")
                    entry.records = payload
                    entry.state = SyncState.CREATED
                    entry.sync_attempts = 0
                    entry.synced = False
                    entry.synced_at = None
                    entry.last_error = None
                    entry.created_at = now
                    entry.updated_at = now
                    entry.schema_version = SCHEMA_VERSION

                entry = self._commit(session, entry, "enqueue")

        logger.info(f"Queued {len(entry.records)} lab tests under {key}")
        return entry

    def drain_pending(self) -> DrainSummary:
        """
        Replay every pending entry once through the remote client.
        Raises DrainInProgress when another drain holds the queue.
        """
        if not self._drain_lock.acquire(blocking=False):
            raise DrainInProgress("A drain is already running")
        try:
            cancel = self._cancel = threading.Event()
            summary = DrainSummary()
            keys = [e.key for e in self.list_pending()]
            if not keys:
                logger.info("No pending lab tests to sync")
                return summary

            logger.info(f"Found {len(keys)} pending lab test sets to sync")
            for key in keys:
                if cancel.is_set():
                    logger.info("Drain cancelled; remaining entries wait for the next run")
                    break
                with self._key_lock(key):
                    state = self._drain_entry(key, cancel)
                if state == SyncState.SYNCED:
                    summary.synced += 1
                elif state == SyncState.ABANDONED:
                    summary.abandoned += 1
                elif state == SyncState.CREATED:
                    summary.still_pending += 1

            logger.info(
                f"Sync complete: {summary.synced} synced, {summary.still_pending} pending, "
                f"{summary.abandoned} abandoned"
            )
            return summary
        finally:
            self._drain_lock.release()

    def cancel(self):
        """Stop the running drain; the entry in flight keeps its attempt count"""
        self._cancel.set()

    def _drain_entry(self, key: str, cancel: threading.Event) -> Optional[SyncState]:
        with db.get_session(self.engine) as session:
            entry = session.get(PendingSyncEntry, key)
            # replaced or finished since the sweep started
            if entry is None or entry.state != SyncState.CREATED:
                return None

            self._migrate(entry)
            failure: Optional[Exception] = None
            try:
                result = self.client.submit_batch(entry.visit_id, entry.records, entry.patient_id, cancel=cancel)
            except DeliveryCancelled as e:
                # a cancelled submission does not count as an attempt
                logger.info(f"Sync of {key} cancelled: {e}")
                return SyncState.CREATED
            except (ValidationFailed, DeliveryFailed) as e:
                failure = e

            entry.sync_attempts += 1
            entry.updated_at = utcnow()

            if isinstance(failure, ValidationFailed):
                entry.state = SyncState.ABANDONED
                entry.last_error = f"invalid batch: {failure}"
                logger.error(f"Abandoning {key}: stored lab tests are invalid ({failure})")
            elif failure is not None:
                self._record_failure(entry, str(failure))
            elif result.status == DeliveryStatus.ALL or self.accept_partial:
                entry.state = SyncState.SYNCED
                entry.synced = True
                entry.synced_at = utcnow()
                entry.last_error = None
                logger.info(f"Synced {len(result.accepted)} lab tests for {key}")
            else:
                entry.records = [o.record.as_dict() for o in result.rejected]
                self._record_failure(
                    entry,
                    f"partial delivery: {len(result.rejected)} of {len(result.outcomes)} lab tests rejected",
                )

            entry = self._commit(session, entry, "sync attempt")
            return entry.state

    def _record_failure(self, entry: PendingSyncEntry, error: str):
        entry.last_error = error
        if entry.sync_attempts >= self.max_sync_attempts:
            entry.state = SyncState.ABANDONED
            logger.error(
                f"Abandoning {entry.key} after {entry.sync_attempts} attempts; "
                f"{len(entry.records)} lab tests need manual follow-up. Last error: {error}"
            )
        else:
            logger.warning(f"Sync attempt {entry.sync_attempts}/{self.max_sync_attempts} failed for {entry.key}: {error}")

    @staticmethod
    def _migrate(entry: PendingSyncEntry):
        if entry.schema_version >= SCHEMA_VERSION:
            return
        migrated = []
        for raw in entry.records:
            try:
                migrated.append(record_from_wire(raw, visit_id=entry.visit_id).as_dict())
            except ValueError as e:
                logger.warning(f"Could not migrate a record of {entry.key}: {e}")
                migrated.append(raw)
        entry.records = migrated
        entry.schema_version = SCHEMA_VERSION
        logger.info(f"Migrated {entry.key} to schema version {SCHEMA_VERSION}")

    def _list(self, state: SyncState) -> List[PendingSyncEntry]:
        with db.get_session(self.engine) as session:
            query = select(PendingSyncEntry).where(PendingSyncEntry.state == state)
            return list(session.exec(query.order_by(PendingSyncEntry.created_at)).all())

    def list_pending(self) -> List[PendingSyncEntry]:
        return self._list(SyncState.CREATED)

    def list_abandoned(self) -> List[PendingSyncEntry]:
        """Entries that exhausted their attempts and need manual intervention"""
        return self._list(SyncState.ABANDONED)

    def list_synced(self) -> List[PendingSyncEntry]:
        return self._list(SyncState.SYNCED)

    def get(self, key: str) -> Optional[PendingSyncEntry]:
        with db.get_session(self.engine) as session:
            return session.get(PendingSyncEntry, key)

    def requeue(self, key: str) -> PendingSyncEntry:
        """Give an abandoned entry a fresh set of attempts"""
        with self._key_lock(key):
            with db.get_session(self.engine) as session:
                entry = session.get(PendingSyncEntry, key)
                if entry is None:
                    raise KeyError(key)
                if entry.state != SyncState.ABANDONED:
                    raise ValidationFailed(f"{key} is {entry.state.value}, only abandoned entries can be requeued")
                entry.state = SyncState.CREATED
                entry.sync_attempts = 0
                entry.updated_at = utcnow()
                entry = self._commit(session, entry, "requeue")
        logger.info(f"Requeued abandoned entry {key}")
        return entry

    def purge_synced(self) -> int:
        """Delete synced audit rows; abandoned rows are kept"""
        with db.get_session(self.engine) as session:
            entries = session.exec(select(PendingSyncEntry).where(PendingSyncEntry.state == SyncState.SYNCED)).all()
            try:
                for entry in entries:
                    session.delete(entry)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to purge synced entries: {e}")
                raise PersistenceFailed(f"Could not purge synced entries: {e}") from e
        logger.info(f"Purged {len(entries)} synced entries")
        return len(entries)
