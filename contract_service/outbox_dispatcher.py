"""Background dispatcher for contract notifications and stuck contracts.

High-level loop:
    poll producer -> (every interval) republish stale notifications -> reconcile PENDING contracts

1) Outbox
Every COMPLETE contract carries a `notification` record. It is written in the
same document update that attaches the PDF, so "contract stored" and
"notification owed" can never disagree. The delivery callback flips it to
SENT. Anything still PENDING after OUTBOX_RETRY_AFTER_SECONDS is republished
with the same eventId; after OUTBOX_MAX_ATTEMPTS it is marked FAILED.
Consumers may see an event twice and should deduplicate on eventId.

2) Delivery callbacks
confluent-kafka only runs delivery callbacks inside `poll()` / `flush()`.
The HTTP path never blocks on them; this loop is what serves them.

3) Reconciliation
A contract whose render failed stays PENDING. After RECONCILE_AFTER_SECONDS
the workflow claims it, re-renders it and, on success, completes it like a
fresh one. A failed attempt waits another RECONCILE_AFTER_SECONDS; after
RECONCILE_MAX_ATTEMPTS the contract is marked FAILED and left alone.

The loop runs in a daemon thread started by the FastAPI app and exits when
`stop_event` is set.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta

from pymongo import errors

from . import mongo
from .audit import AuditLog
from .config import (
    OUTBOX_BATCH_SIZE,
    OUTBOX_MAX_ATTEMPTS,
    OUTBOX_POLL_INTERVAL_SECONDS,
    OUTBOX_RETRY_AFTER_SECONDS,
    RECONCILE_AFTER_SECONDS,
    RECONCILE_MAX_ATTEMPTS,
)
from .exceptions import NotificationError
from .kafka_producer import EVENT_TYPE, EventNotifier
from .models import now
from .workflow import ContractWorkflow

logger = logging.getLogger(__name__)

PUBLISH_OPERATION = "publish_contract_created"


class OutboxDispatcher:
    def __init__(
        self,
        collection,
        notifier: EventNotifier,
        workflow: ContractWorkflow,
        audit: AuditLog | None = None,
        poll_interval: float = OUTBOX_POLL_INTERVAL_SECONDS,
        retry_after: float = OUTBOX_RETRY_AFTER_SECONDS,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
        batch_size: int = OUTBOX_BATCH_SIZE,
        reconcile_after: float = RECONCILE_AFTER_SECONDS,
        reconcile_max_attempts: int = RECONCILE_MAX_ATTEMPTS,
    ):
        self.collection = collection
        self.notifier = notifier
        self.workflow = workflow
        self.audit = audit or AuditLog()
        self.poll_interval = poll_interval
        self.retry_after = timedelta(seconds=retry_after)
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.reconcile_after = timedelta(seconds=reconcile_after)
        self.reconcile_max_attempts = reconcile_max_attempts

    def on_delivery(self, contract_id: str, event_id: str, err) -> None:
        """Delivery hook for EventNotifier: record the outcome on the outbox record."""
        if err is None:
            mongo.mark_notification_sent(self.collection, contract_id, event_id)
        else:
            mongo.record_notification_attempt(self.collection, contract_id, event_id, error=str(err))

    def dispatch_pending(self, current: datetime | None = None) -> int:
        """Republish stale notifications; return how many were handed to the producer."""
        cutoff = (current or now()) - self.retry_after
        republished = 0

        for contract in mongo.find_pending_notifications(self.collection, cutoff, self.batch_size):
            notification = contract.notification
            attempt = notification.attempts + 1

            if attempt > self.max_attempts:
                logger.error(
                    "[Outbox] Giving up on %s for %s after %d attempts",
                    EVENT_TYPE,
                    contract.contractId,
                    notification.attempts,
                )
                mongo.record_notification_attempt(
                    self.collection,
                    contract.contractId,
                    notification.eventId,
                    error=notification.lastError or "max attempts exceeded",
                    failed=True,
                )
                self.audit.log_event_publishing_failed(
                    EVENT_TYPE, contract.contractId, self.notifier.topic, "max attempts exceeded"
                )
                continue

            self.audit.log_retry_attempt(PUBLISH_OPERATION, contract.contractId, attempt, self.max_attempts)
            mongo.record_notification_attempt(
                self.collection, contract.contractId, notification.eventId, attempts=attempt
            )
            try:
                self.notifier.publish_contract_created(contract)
            except NotificationError as e:
                mongo.record_notification_attempt(
                    self.collection, contract.contractId, notification.eventId, error=str(e)
                )
                continue
            republished += 1

        return republished

    def reconcile(self, current: datetime | None = None) -> int:
        cutoff = (current or now()) - self.reconcile_after
        return self.workflow.complete_pending_contracts(cutoff, self.batch_size, self.reconcile_max_attempts)

    def run_once(self, current: datetime | None = None) -> tuple[int, int]:
        return self.dispatch_pending(current), self.reconcile(current)

    def run(self, stop_event) -> None:
        """Run until `stop_event.is_set()` becomes True.

        Args:
            stop_event: A threading.Event (or compatible object) used to stop the loop.
        """
        logger.info("[Outbox] Starting dispatcher")
        last_run = 0.0
        try:
            while not stop_event.is_set():
                # Wait up to 1 second for delivery callbacks.
                self.notifier.poll(1.0)

                if time.monotonic() - last_run < self.poll_interval:
                    continue
                last_run = time.monotonic()

                try:
                    republished, reconciled = self.run_once()
                except errors.PyMongoError as e:
                    logger.error("[Outbox] MongoDB error, will retry next cycle: %s", e)
                    continue

                if republished or reconciled:
                    logger.info("[Outbox] Republished %d notifications, reconciled %d contracts", republished, reconciled)
        finally:
            remaining = self.notifier.flush(5.0)
            if remaining:
                logger.warning("[Outbox] %d messages still undelivered at shutdown", remaining)
            logger.info("[Outbox] Stopped")
