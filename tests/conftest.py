from __future__ import annotations

import mongomock
import pytest

from contract_service import mongo
from contract_service.audit import AuditLog
from contract_service.kafka_producer import EventNotifier
from contract_service.models import ContractRequest
from contract_service.pdf_renderer import DocumentRenderer
from contract_service.storage import LocalStorage
from contract_service.workflow import ContractWorkflow

TOPIC = "contract-events-test"


class FakeMessage:
    def __init__(self, topic, key, value, offset):
        self._topic = topic
        self._key = key
        self._value = value
        self._offset = offset

    def topic(self):
        return self._topic

    def key(self):
        return self._key

    def value(self):
        return self._value

    def partition(self):
        return 0

    def offset(self):
        return self._offset


class FakeProducer:
    """Stands in for confluent_kafka.Producer.

    Delivery callbacks fire on `poll()`/`flush()` like the real client.
    `hold=True` keeps them queued; `delivery_error` makes them report failure;
    `produce_error` is raised synchronously from `produce()`.
    """

    def __init__(self):
        self.messages: list[FakeMessage] = []
        self.pending: list = []
        self.hold = False
        self.delivery_error = None
        self.produce_error: Exception | None = None
        self.flushed = False

    def produce(self, topic, key, value, callback):
        if self.produce_error is not None:
            raise self.produce_error
        msg = FakeMessage(topic, key, value, len(self.messages))
        self.messages.append(msg)
        self.pending.append((callback, msg))

    def poll(self, timeout=0):
        if self.hold:
            return 0
        fired, self.pending = self.pending, []
        for callback, msg in fired:
            callback(self.delivery_error, msg)
        return len(fired)

    def flush(self, timeout=0):
        self.flushed = True
        self.poll()
        return len(self.pending)


@pytest.fixture
def collection():
    coll = mongomock.MongoClient().contracts_db.contracts
    mongo.ensure_indexes(coll)
    return coll


@pytest.fixture
def audit():
    return AuditLog()


@pytest.fixture
def producer():
    return FakeProducer()


@pytest.fixture
def notifier(producer, audit):
    return EventNotifier(producer, TOPIC, audit)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "pdfs")


@pytest.fixture
def renderer(storage, audit):
    return DocumentRenderer(storage, audit)


@pytest.fixture
def workflow(collection, renderer, notifier, audit):
    return ContractWorkflow(collection, renderer, notifier, audit)


@pytest.fixture
def request_payload():
    return {
        "purchaseRequestId": "PR-2024-000123",
        "dealId": "DEAL-778899",
        "dealData": {
            "dealId": "DEAL-778899",
            "customer": {
                "customerName": "Jane Doe",
                "customerCompany": "Doe Logistics GmbH",
                "customerType": "BUSINESS",
                "customerEmail": "jane.doe@example.com",
                "customerPhone": "+49 711 123456",
                "customerAddress": "Main Street 1, 70173 Stuttgart",
                "customerTaxId": "DE123456789",
            },
            "customerFinanceDetails": {
                "type": "LEASING",
                "provider": "Example Bank",
                "approvalStatus": "APPROVED",
                "referenceNumber": "FIN-4711",
                "termsInMonths": 36,
                "interestRate": 3.5,
            },
            "retailerInfo": {"dealerName": "Downtown Motors", "dealerCode": "DM001"},
            "massOrders": [
                {"vehicleModel": "C-Class", "quantity": 2, "color": "Black", "options": ["AMG Line"]},
                {"vehicleModel": "E-Class", "quantity": 1, "color": "Silver", "options": []},
            ],
        },
    }


@pytest.fixture
def contract_request(request_payload):
    return ContractRequest.model_validate(request_payload)
