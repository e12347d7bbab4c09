"""Kafka publishing of CONTRACT_CREATED events.

Key points:

1) Producer is created once and reused
Creating a producer is relatively heavy; the app does it once at startup.

2) Publishing never blocks the HTTP request
`produce()` only queues the message locally. We call `poll(0)` to serve any
callbacks that are already due and return; we never `flush()` per message.
The background dispatcher keeps calling `poll()` so delivery reports arrive.

3) Delivery reports only log
The delivery callback writes the audit record and tells the outbox whether
the event made it. It does not retry by itself: undelivered notifications stay
PENDING on the contract and the dispatcher republishes them.

4) Message key is the contractId
Same key => same partition => events for one contract stay ordered.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from confluent_kafka import KafkaException, Producer

from .audit import AuditLog
from .config import KAFKA_BOOTSTRAP_SERVERS, KAFKA_TOPIC
from .exceptions import NotificationError
from .models import Contract, ContractCreatedEvent, ContractEventData

logger = logging.getLogger(__name__)

EVENT_TYPE = "CONTRACT_CREATED"

# on_delivery(contract_id, event_id, error) where error is None on success.
DeliveryHook = Callable[[str, str, Any], None]


def create_producer() -> Producer:
    """Create and configure a Confluent Kafka Producer."""
    conf: dict[str, Any] = {
        "bootstrap.servers": KAFKA_BOOTSTRAP_SERVERS,
        # Broker-side dedup of internal producer retries.
        "enable.idempotence": True,
    }
    return Producer(conf)


class EventNotifier:
    def __init__(
        self,
        producer: Producer,
        topic: str = KAFKA_TOPIC,
        audit: AuditLog | None = None,
        on_delivery: DeliveryHook | None = None,
    ):
        self.producer = producer
        self.topic = topic
        self.audit = audit or AuditLog()
        self.on_delivery = on_delivery

    def build_event(self, contract: Contract) -> ContractCreatedEvent:
        """Build the event payload. The event id comes from the contract's outbox record."""
        event_id = contract.notification.eventId if contract.notification else str(uuid4())
        return ContractCreatedEvent(
            eventId=event_id,
            eventTimestamp=datetime.now().isoformat(),
            data=ContractEventData(
                contractId=contract.contractId,
                purchaseRequestId=contract.purchaseRequestId,
                dealId=contract.dealId,
                contractPdfLocation=contract.pdfStorageLocation,
            ),
        )

    def _delivery_report(self, contract_id: str, event_id: str, trace_id: str | None):
        def report(err, msg) -> None:
            if err is not None:
                logger.error("[Producer] Delivery failed for %s: %s", contract_id, err)
                self.audit.log_event_publishing_failed(EVENT_TYPE, contract_id, self.topic, str(err), trace_id)
            else:
                logger.info(
                    "[Producer] Delivered %s to %s [%s] @ offset %s",
                    contract_id,
                    msg.topic(),
                    msg.partition(),
                    msg.offset(),
                )
                self.audit.log_event_published(EVENT_TYPE, contract_id, self.topic, trace_id)

            if self.on_delivery is not None:
                # Exceptions raised here would surface from whichever poll() served the callback.
                try:
                    self.on_delivery(contract_id, event_id, err)
                except Exception:
                    logger.exception("[Producer] Delivery hook failed for %s", contract_id)

        return report

    def publish_contract_created(self, contract: Contract, trace_id: str | None = None) -> str:
        """Queue the CONTRACT_CREATED event and return its event id.

        Raises:
            NotificationError: the event could not be serialized or queued.
        """
        logger.info("[Producer] Publishing %s for %s", EVENT_TYPE, contract.contractId)
        try:
            event = self.build_event(contract)
            payload: bytes = event.model_dump_json().encode("utf-8")
            self.producer.produce(
                topic=self.topic,
                key=contract.contractId.encode("utf-8"),
                value=payload,
                callback=self._delivery_report(contract.contractId, event.eventId, trace_id),
            )
            # Serve callbacks that are already due without waiting.
            self.producer.poll(0)
        except (BufferError, KafkaException, TypeError, ValueError) as e:
            logger.error("[Producer] Could not queue %s for %s: %s", EVENT_TYPE, contract.contractId, e)
            self.audit.log_event_publishing_failed(EVENT_TYPE, contract.contractId, self.topic, str(e), trace_id)
            raise NotificationError(contract.contractId, e) from e
        return event.eventId

    def poll(self, timeout: float = 0.0) -> int:
        """Serve pending delivery callbacks."""
        return self.producer.poll(timeout)

    def flush(self, timeout: float = 5.0) -> int:
        """Wait for queued messages; returns how many are still undelivered."""
        return self.producer.flush(timeout)
