import json
import logging
import threading
from datetime import timedelta

import pytest
from confluent_kafka import KafkaError

from contract_service import mongo
from contract_service.audit import AUDIT_LOGGER_NAME
from contract_service.models import Contract, now
from contract_service.outbox_dispatcher import OutboxDispatcher


@pytest.fixture
def dispatcher(collection, notifier, workflow, audit):
    dispatcher = OutboxDispatcher(
        collection,
        notifier,
        workflow,
        audit,
        poll_interval=0,
        retry_after=30,
        max_attempts=3,
        reconcile_after=300,
    )
    notifier.on_delivery = dispatcher.on_delivery
    return dispatcher


def test_delivery_marks_notification_sent(dispatcher, workflow, collection, contract_request):
    response = workflow.create_contract(contract_request)

    stored = mongo.find_contract_by_id(collection, response.contractId)
    assert stored.notification.status == "SENT"


def test_delivery_failure_keeps_notification_pending(dispatcher, workflow, collection, producer, contract_request):
    producer.delivery_error = KafkaError(KafkaError._MSG_TIMED_OUT)

    response = workflow.create_contract(contract_request)

    notification = mongo.find_contract_by_id(collection, response.contractId).notification
    assert notification.status == "PENDING"
    assert notification.lastError


def test_stale_notification_is_republished_with_same_event_id(
    dispatcher, workflow, collection, producer, contract_request, caplog
):
    producer.hold = True
    response = workflow.create_contract(contract_request)
    event_id = mongo.find_contract_by_id(collection, response.contractId).notification.eventId

    # Nothing is stale yet.
    assert dispatcher.dispatch_pending() == 0

    with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER_NAME):
        assert dispatcher.dispatch_pending(now() + timedelta(minutes=1)) == 1

    assert [json.loads(m.value())["eventId"] for m in producer.messages] == [event_id, event_id]
    assert mongo.find_contract_by_id(collection, response.contractId).notification.attempts == 2
    assert any(
        line.startswith("RETRY_ATTEMPT") and "attempt=2/3" in line
        for line in (r.getMessage() for r in caplog.records)
    )

    producer.hold = False
    producer.poll()
    assert mongo.find_contract_by_id(collection, response.contractId).notification.status == "SENT"


def test_notification_fails_after_max_attempts(dispatcher, workflow, collection, producer, contract_request):
    producer.hold = True
    response = workflow.create_contract(contract_request)

    later = now()
    for _ in range(2):
        later += timedelta(minutes=1)
        assert dispatcher.dispatch_pending(later + timedelta(minutes=1)) == 1

    later += timedelta(minutes=1)
    assert dispatcher.dispatch_pending(later + timedelta(minutes=1)) == 0

    notification = mongo.find_contract_by_id(collection, response.contractId).notification
    assert notification.status == "FAILED"
    assert notification.attempts == 3
    assert len(producer.messages) == 3


def test_reconcile_completes_stuck_contracts(dispatcher, collection):
    stuck = Contract(
        contractId="CONTRACT-00000001",
        purchaseRequestId="PR-9",
        dealId="DEAL-9",
        createdAt=now() - timedelta(minutes=10),
    )
    mongo.insert_contract(collection, stuck)

    assert dispatcher.run_once() == (0, 1)
    stored = mongo.find_contract_by_id(collection, "CONTRACT-00000001")
    assert stored.status == "COMPLETE"
    assert stored.notification.status == "SENT"


def test_run_stops_and_flushes(dispatcher, producer):
    stop_event = threading.Event()
    stop_event.set()

    dispatcher.run(stop_event)

    assert producer.flushed
