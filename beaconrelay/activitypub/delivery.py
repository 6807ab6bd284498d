# beaconrelay/activitypub/delivery.py
"""
Outgoing activity delivery.

Delivery is a collaborator: it owns signing and transport and reports one
outcome per recipient inbox. Two modes are supported:

- SYNC: deliver to every inbox before returning
- QUEUED: enqueue and return immediately; a worker thread delivers with
  bounded retries and exponential backoff
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..client import HttpClient
from ..errors import UpstreamError
from .actor import Relay
from .signatures import sign_envelope

logger = logging.getLogger(__name__)


class DeliveryMode(Enum):
    SYNC = "sync"
    QUEUED = "queued"


@dataclass
class DeliveryOutcome:
    """Result of delivering to one inbox."""
    inbox: str
    ok: bool
    queued: bool = False
    error: Optional[str] = None


class Delivery(ABC):
    """Signs and transports an envelope to a set of inboxes."""

    @abstractmethod
    def deliver(
        self,
        envelope: Dict[str, Any],
        sender: Relay,
        recipients: List[str],
        mode: DeliveryMode = DeliveryMode.SYNC,
    ) -> List[DeliveryOutcome]:
        """
        Deliver ``envelope`` from ``sender`` to each recipient inbox.

        Args:
            envelope: Unsigned activity JSON
            sender: Local relay whose keys sign the envelope
            recipients: Inbox URLs
            mode: SYNC or QUEUED

        Returns:
            One outcome per recipient; must not raise for per-recipient failures
        """
        pass

    def close(self):
        """Release worker resources."""


@dataclass
class _Job:
    envelope: Dict[str, Any]
    inbox: str
    attempt: int = 0


class HttpDelivery(Delivery):
    """
    Delivers linked-data-signed envelopes with HTTP POST.

    Args:
        client: HTTP client (defaults to a 10s timeout client)
        max_attempts: Attempts per inbox in queued mode
        backoff: Base delay in seconds, doubled after each failed attempt
    """

    def __init__(
        self,
        client: Optional[HttpClient] = None,
        max_attempts: int = 5,
        backoff: float = 1.0,
    ):
        self.client = client or HttpClient(timeout=10)
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._queue: "queue.Queue[Optional[_Job]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    def _post(self, envelope: Dict[str, Any], inbox: str) -> DeliveryOutcome:
        try:
            self.client.post_json(inbox, envelope)
            return DeliveryOutcome(inbox=inbox, ok=True)
        except UpstreamError as e:
            return DeliveryOutcome(inbox=inbox, ok=False, error=str(e))

    def deliver(
        self,
        envelope: Dict[str, Any],
        sender: Relay,
        recipients: List[str],
        mode: DeliveryMode = DeliveryMode.SYNC,
    ) -> List[DeliveryOutcome]:
        if not sender.private_key:
            raise ValueError(f"Relay {sender.identity} has no private key to sign with")
        signed = sign_envelope(envelope, sender.key_id, sender.private_key)

        if mode is DeliveryMode.QUEUED:
            self._ensure_worker()
            for inbox in recipients:
                self._queue.put(_Job(envelope=signed, inbox=inbox))
            return [DeliveryOutcome(inbox=inbox, ok=True, queued=True) for inbox in recipients]

        return [self._post(signed, inbox) for inbox in recipients]

    def _ensure_worker(self):
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name="delivery-worker")
                self._worker.daemon = True
                self._worker.start()

    def _run(self):
        """Worker loop: deliver queued jobs, re-enqueueing failures with backoff."""
        while True:
            job = self._queue.get()
            if job is None:
                return
            outcome = self._post(job.envelope, job.inbox)
            if outcome.ok:
                continue
            job.attempt += 1
            if job.attempt >= self.max_attempts:
                logger.warning(
                    f"Giving up on {job.inbox} after {job.attempt} attempts: {outcome.error}"
                )
                continue
            delay = self.backoff * (2 ** (job.attempt - 1))
            logger.info(f"Retrying {job.inbox} in {delay:.1f}s: {outcome.error}")
            timer = threading.Timer(delay, self._queue.put, args=(job,))
            timer.daemon = True
            timer.start()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self):
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                self._queue.put(None)
                self._worker.join(timeout=5)
            self._worker = None
