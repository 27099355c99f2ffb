# client.py
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

import requests

from errors import DeliveryCancelled, DeliveryFailed
from models.lab_test import LabTestRecord, coerce_records, parse_visit_id
from normalize.transformer import created_items, from_wire, record_from_wire, to_wire, wrap_batch

logger = logging.getLogger(__name__)

BATCH_SHAPES = ("list", "wrapped")
RECORD_SHAPES = ("record",)


@dataclass(frozen=True)
class DeliveryStrategy:
    """One (endpoint, payload shape) combination tried during delivery"""
    endpoint: str
    shape: str

    def url(self, base_url: str, visit_id: int) -> str:
        return f"{base_url}{self.endpoint.format(visit_id=visit_id)}"


class DeliveryStatus(str, Enum):
    ALL = "all"
    PARTIAL = "partial"
    NONE = "none"


@dataclass
class RecordOutcome:
    record: LabTestRecord
    accepted: bool = False
    remote_id: Optional[int] = None
    error: Optional[str] = None
    strategy: Optional[str] = None

    def as_dict(self) -> Dict:
        return {
            "test_name": self.record.test_name,
            "accepted": self.accepted,
            "remote_id": self.remote_id,
            "error": self.error,
            "strategy": self.strategy,
        }


@dataclass
class DeliveryResult:
    visit_id: int
    patient_id: str
    outcomes: List[RecordOutcome]

    @property
    def accepted(self) -> List[RecordOutcome]:
        return [o for o in self.outcomes if o.accepted]

    @property
    def rejected(self) -> List[RecordOutcome]:
        return [o for o in self.outcomes if not o.accepted]

    @property
    def status(self) -> DeliveryStatus:
        if not self.accepted:
            return DeliveryStatus.NONE
        if self.rejected:
            return DeliveryStatus.PARTIAL
        return DeliveryStatus.ALL

    @property
    def saved(self) -> bool:
        return self.status != DeliveryStatus.NONE


def _strategies(raw: Iterable[Dict], allowed: Sequence[str]) -> List[DeliveryStrategy]:
    strategies = []
    for item in raw:
        shape = item.get("shape")
        if shape not in allowed:
            raise ValueError(f"Unsupported payload shape {shape!r} for {item.get('endpoint')}, expected one of {allowed}")
        strategies.append(DeliveryStrategy(endpoint=item["endpoint"], shape=shape))
    return strategies


def _remote_id(payload: Dict) -> Optional[int]:
    value = from_wire(payload).get("remote_id")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class RemoteLabTestClient:
    """
    Delivers lab-test batches to the remote hospital service.

    Batch strategies are tried in order and the first success wins. Records the
    batch phase did not land are then retried one at a time through the
    per-record strategies, with a capped linear backoff between attempts.
    """

    def __init__(self, cfg: Dict, session: Optional[requests.Session] = None):
        self.base_url = cfg["baseUrl"].rstrip("/")
        self.headers = cfg.get("headers", {})
        self.timeout = cfg.get("timeout", 5)
        self.deadline = cfg.get("deadline", 15)
        self.batch_strategies = _strategies(cfg.get("batchStrategies", []), BATCH_SHAPES)
        self.record_strategies = _strategies(cfg.get("recordStrategies", []), RECORD_SHAPES)
        self.read_endpoints = list(cfg.get("readEndpoints", []))

        retry = cfg.get("retry", {})
        self.max_attempts = retry.get("maxAttempts", 5)
        self.base_delay = retry.get("baseDelay", 0.5)
        self.max_delay = retry.get("maxDelay", 2.0)

        self.session = session or requests.Session()

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * attempt, self.max_delay)

    def _post(self, url: str, body) -> requests.Response:
        headers = {"Content-Type": "application/json", **self.headers}
        return self.session.post(url, json=body, headers=headers, timeout=self.timeout)

    @staticmethod
    def _json(resp: requests.Response):
        try:
            return resp.json()
        except ValueError:
            return None

    def submit_batch(self, visit_id, records, patient_id: Optional[str] = None,
                     cancel: Optional[threading.Event] = None) -> DeliveryResult:
        """
        Deliver one batch of lab tests for a visit.

        Raises ValidationFailed before any network call when the input is
        malformed, and DeliveryFailed when no record could be delivered.
        """
        batch = coerce_records(visit_id, patient_id, records)
        vid = parse_visit_id(visit_id)
        pid = ("" if patient_id is None else str(patient_id).strip()) or batch[0].patient_id
        cancel = cancel or threading.Event()
        expires = time.monotonic() + self.deadline

        def stopped() -> bool:
            return cancel.is_set() or time.monotonic() >= expires

        outcomes = [RecordOutcome(record=r) for r in batch]
        last_error: Optional[BaseException] = None

        logger.info(f"Submitting {len(batch)} lab tests for visit {vid}, patient {pid or 'unknown'}")

        # Batch phase
        for strategy in self.batch_strategies:
            if stopped():
                break
            url = strategy.url(self.base_url, vid)
            body = [to_wire(r) for r in batch] if strategy.shape == "list" else wrap_batch(batch, vid, pid)
            try:
                resp = self._post(url, body)
            except requests.exceptions.RequestException as e:
                logger.warning(f"Network error posting batch to {url}: {e}")
                last_error = e
                continue

            if resp.status_code == 207:
                items = created_items(self._json(resp)) or []
                matched = self._match_created(batch, items, positional=False)
                for i, remote_id in matched.items():
                    outcomes[i].accepted = True
                    outcomes[i].remote_id = remote_id
                    outcomes[i].strategy = strategy.endpoint
                logger.warning(f"Batch POST {url} → 207, {len(matched)}/{len(batch)} accepted")
                last_error = requests.HTTPError(f"207 partial batch acceptance from {url}", response=resp)
                break
            if 200 <= resp.status_code < 300:
                items = created_items(self._json(resp)) or []
                matched = self._match_created(batch, items, positional=True)
                for i, outcome in enumerate(outcomes):
                    outcome.accepted = True
                    outcome.remote_id = matched.get(i)
                    outcome.strategy = strategy.endpoint
                logger.info(f"Batch POST {url} → {resp.status_code}")
                break

            logger.warning(f"Batch POST {url} failed: {resp.status_code} {resp.text[:200]}")
            last_error = requests.HTTPError(f"{resp.status_code} from {url}", response=resp)

        # Per-record phase
        for outcome in outcomes:
            if outcome.accepted:
                continue
            record_error = self._deliver_record(outcome, vid, expires, cancel)
            if record_error is not None:
                last_error = record_error
                outcome.error = str(record_error)

        result = DeliveryResult(visit_id=vid, patient_id=pid, outcomes=outcomes)
        logger.info(f"Delivered {len(result.accepted)}/{len(outcomes)} lab tests for visit {vid}")

        if result.status == DeliveryStatus.NONE:
            if cancel.is_set():
                raise DeliveryCancelled(
                    f"Delivery of {len(outcomes)} lab tests for visit {vid} cancelled",
                    last_error=last_error,
                    result=result,
                )
            if time.monotonic() >= expires:
                reason = f"deadline of {self.deadline}s exceeded"
            else:
                reason = "all strategies failed"
            raise DeliveryFailed(
                f"Failed to deliver {len(outcomes)} lab tests for visit {vid}: {reason}",
                last_error=last_error,
                result=result,
            )
        return result

    def _deliver_record(self, outcome: RecordOutcome, visit_id: int, expires: float,
                        cancel: threading.Event) -> Optional[BaseException]:
        """Retry one record; returns the last error, or None once accepted"""
        record = outcome.record
        last_error: Optional[BaseException] = None
        if not self.record_strategies:
            return DeliveryFailed(f"No per-record strategy configured for '{record.test_name}'")

        for attempt in range(1, self.max_attempts + 1):
            if cancel.is_set() or time.monotonic() >= expires:
                return last_error or DeliveryFailed(f"Delivery of '{record.test_name}' stopped before attempt {attempt}")

            for strategy in self.record_strategies:
                url = strategy.url(self.base_url, visit_id)
                try:
                    resp = self._post(url, to_wire(record))
                except requests.exceptions.RequestException as e:
                    logger.warning(f"Network error posting '{record.test_name}' to {url}: {e}")
                    last_error = e
                    continue
                if 200 <= resp.status_code < 300:
                    body = self._json(resp)
                    outcome.accepted = True
                    outcome.remote_id = _remote_id(body) if isinstance(body, dict) else None
                    outcome.strategy = strategy.endpoint
                    outcome.error = None
                    logger.info(f"Saved lab test '{record.test_name}' via {url} on attempt {attempt}")
                    return None
                logger.warning(f"POST {url} for '{record.test_name}' failed: {resp.status_code}")
                last_error = requests.HTTPError(f"{resp.status_code} from {url}", response=resp)

            if attempt < self.max_attempts:
                delay = min(self.backoff(attempt), max(0.0, expires - time.monotonic()))
                logger.info(f"Retrying '{record.test_name}' in {delay:.1f}s (attempt {attempt}/{self.max_attempts})")
                if cancel.wait(delay):
                    logger.info(f"Delivery of '{record.test_name}' cancelled after attempt {attempt}")
                    return last_error

        logger.error(f"Failed to save lab test '{record.test_name}' after {self.max_attempts} attempts")
        return last_error

    @staticmethod
    def _match_created(batch: Sequence[LabTestRecord], items: List[Dict], positional: bool) -> Dict[int, Optional[int]]:
        """
        Pair created items from a batch response with input indexes.
        Items are matched by test name; nameless items fall back to position.
        """
        matched: Dict[int, Optional[int]] = {}
        for pos, item in enumerate(items):
            name = from_wire(item).get("test_name")
            index = None
            if name is not None:
                for i, rec in enumerate(batch):
                    if i not in matched and rec.test_name == str(name).strip():
                        index = i
                        break
            elif positional and pos < len(batch) and pos not in matched:
                index = pos
            if index is not None:
                matched[index] = _remote_id(item)
        return matched

    def fetch_visit_tests(self, visit_id, patient_id: Optional[str] = None) -> List[LabTestRecord]:
        """Lab tests already stored remotely for a visit"""
        vid = parse_visit_id(visit_id)
        paths = [endpoint.format(visit_id=vid) for endpoint in self.read_endpoints]
        if patient_id:
            paths.append(f"/api/labtests/visit/{vid}/patient/{quote(str(patient_id), safe='')}")

        last_error: Optional[BaseException] = None
        for path in paths:
            url = f"{self.base_url}{path}"
            try:
                resp = self.session.get(url, headers=self.headers, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                logger.warning(f"Network error fetching {url}: {e}")
                last_error = e
                continue
            if resp.status_code != 200:
                logger.warning(f"GET {url} failed: {resp.status_code}")
                last_error = requests.HTTPError(f"{resp.status_code} from {url}", response=resp)
                continue

            body = self._json(resp)
            if not isinstance(body, list):
                last_error = ValueError(f"Expected a JSON array from {url}")
                continue
            tests = []
            for item in body:
                if not isinstance(item, dict):
                    continue
                try:
                    tests.append(record_from_wire(item, visit_id=vid))
                except ValueError as e:
                    logger.warning(f"Skipping malformed lab test from {url}: {e}")
            logger.info(f"Retrieved {len(tests)} lab tests for visit {vid} from {url}")
            return tests

        raise DeliveryFailed(f"Could not fetch lab tests for visit {vid}", last_error=last_error)

    def check_health(self) -> bool:
        url = f"{self.base_url}/api/health"
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"API health check error: {e}")
            return False
        if resp.status_code != 200:
            logger.error(f"API health check failed: {resp.status_code}")
            return False
        body = self._json(resp)
        return isinstance(body, dict) and body.get("status") == "UP"
