from datetime import timedelta

import pytest

from contract_service import mongo
from contract_service.exceptions import DuplicateContractError
from contract_service.models import Contract, now


def make_contract(contract_id="CONTRACT-00000001", purchase_request_id="PR-1", deal_id="DEAL-1", **kwargs):
    return Contract(
        contractId=contract_id,
        purchaseRequestId=purchase_request_id,
        dealId=deal_id,
        customerDetails={"customerName": "Jane", "score": 7, "active": True, "extra": None},
        financeDetails={"termsInMonths": 36, "interestRate": 3.5, "schedule": [{"month": 1, "amount": 100.0}]},
        massOrders=[{"vehicleModel": "C-Class", "quantity": 2}],
        **kwargs,
    )


def test_insert_and_find_by_id_round_trip(collection):
    contract = make_contract()
    mongo.insert_contract(collection, contract)

    found = mongo.find_contract_by_id(collection, contract.contractId)
    assert found == contract


def test_find_by_id_miss_returns_none(collection):
    assert mongo.find_contract_by_id(collection, "CONTRACT-FFFFFFFF") is None


def test_lookups_by_purchase_request_and_deal(collection):
    first = make_contract("CONTRACT-00000001", "PR-1", "DEAL-1")
    second = make_contract("CONTRACT-00000002", "PR-2", "DEAL-1")
    mongo.insert_contract(collection, first)
    mongo.insert_contract(collection, second)

    assert mongo.exists_by_purchase_request_id(collection, "PR-2")
    assert not mongo.exists_by_purchase_request_id(collection, "PR-3")
    assert mongo.find_contract_by_purchase_request_id(collection, "PR-2").contractId == "CONTRACT-00000002"
    assert mongo.find_contract_by_purchase_request_id(collection, "PR-3") is None

    # dealId is not unique; the oldest contract wins.
    assert mongo.exists_by_deal_id(collection, "DEAL-1")
    assert not mongo.exists_by_deal_id(collection, "DEAL-2")
    assert mongo.find_contract_by_deal_id(collection, "DEAL-1").contractId == "CONTRACT-00000001"


def test_purchase_request_id_is_unique(collection):
    mongo.insert_contract(collection, make_contract("CONTRACT-00000001", "PR-1"))

    with pytest.raises(DuplicateContractError) as exc:
        mongo.insert_contract(collection, make_contract("CONTRACT-00000002", "PR-1"))

    assert exc.value.purchase_request_id == "PR-1"
    assert collection.count_documents({}) == 1


def test_save_upserts_by_contract_id(collection):
    contract = make_contract()
    mongo.save_contract(collection, contract)
    contract.attach_document("/data/contract-00000001.pdf")
    mongo.save_contract(collection, contract)

    assert collection.count_documents({}) == 1
    stored = mongo.find_contract_by_id(collection, contract.contractId)
    assert stored.pdfStorageLocation == "/data/contract-00000001.pdf"
    assert stored.updatedAt >= stored.createdAt


def test_find_with_pdf_location(collection):
    mongo.insert_contract(collection, make_contract("CONTRACT-00000001", "PR-1"))
    assert mongo.find_contract_with_pdf_location(collection) is None

    done = make_contract("CONTRACT-00000002", "PR-2")
    done.attach_document("/data/contract-00000002.pdf")
    mongo.insert_contract(collection, done)

    assert mongo.find_contract_with_pdf_location(collection).contractId == "CONTRACT-00000002"


def test_delete_contract(collection):
    mongo.insert_contract(collection, make_contract())
    assert mongo.delete_contract(collection, "CONTRACT-00000001")
    assert not mongo.delete_contract(collection, "CONTRACT-00000001")
    assert mongo.find_contract_by_id(collection, "CONTRACT-00000001") is None


def test_find_pending_contracts_respects_cutoff(collection):
    old = make_contract("CONTRACT-00000001", "PR-1", createdAt=now() - timedelta(minutes=10))
    fresh = make_contract("CONTRACT-00000002", "PR-2")
    complete = make_contract("CONTRACT-00000003", "PR-3", createdAt=now() - timedelta(minutes=10))
    complete.attach_document("/data/x.pdf")
    for contract in (old, fresh, complete):
        mongo.insert_contract(collection, contract)

    pending = mongo.find_pending_contracts(collection, now() - timedelta(minutes=5))
    assert [c.contractId for c in pending] == ["CONTRACT-00000001"]


def test_notification_bookkeeping(collection):
    contract = make_contract()
    contract.attach_document("/data/x.pdf")
    contract.notification.begin_attempt()
    contract.notification.lastAttemptAt = now() - timedelta(minutes=5)
    mongo.insert_contract(collection, contract)
    event_id = contract.notification.eventId

    stale = mongo.find_pending_notifications(collection, now() - timedelta(minutes=1))
    assert [c.contractId for c in stale] == [contract.contractId]

    assert mongo.record_notification_attempt(collection, contract.contractId, event_id, attempts=2, error="down")
    stored = mongo.find_contract_by_id(collection, contract.contractId)
    assert stored.notification.attempts == 2
    assert stored.notification.lastError == "down"
    # The attempt just happened, so it is no longer stale.
    assert mongo.find_pending_notifications(collection, now() - timedelta(minutes=1)) == []

    assert not mongo.mark_notification_sent(collection, contract.contractId, "some-other-event")
    assert mongo.mark_notification_sent(collection, contract.contractId, event_id)
    stored = mongo.find_contract_by_id(collection, contract.contractId)
    assert stored.notification.status == "SENT"
    assert stored.notification.lastError is None

    # SENT records are not touched by late attempt reports.
    assert not mongo.record_notification_attempt(collection, contract.contractId, event_id, error="late")


def test_complete_contract_only_replaces_pending(collection):
    contract = make_contract()
    mongo.insert_contract(collection, contract)

    first = contract.model_copy(deep=True)
    first.attach_document("/data/first.pdf")
    second = contract.model_copy(deep=True)
    second.attach_document("/data/second.pdf")

    assert mongo.complete_contract(collection, first)
    assert not mongo.complete_contract(collection, second)
    stored = mongo.find_contract_by_id(collection, contract.contractId)
    assert stored.pdfStorageLocation == "/data/first.pdf"
    assert stored.notification.eventId == first.notification.eventId


def test_claim_pending_contract_is_exclusive(collection):
    mongo.insert_contract(collection, make_contract())

    claimed = mongo.claim_pending_contract(collection, "CONTRACT-00000001", 0)
    assert claimed.renderAttempts == 1
    assert claimed.lastRenderAttemptAt is not None
    # A second worker that read the same attempt count loses.
    assert mongo.claim_pending_contract(collection, "CONTRACT-00000001", 0) is None


def test_render_failure_backs_off_and_can_give_up(collection):
    mongo.insert_contract(collection, make_contract(createdAt=now() - timedelta(minutes=10)))
    cutoff = now() - timedelta(minutes=5)

    mongo.claim_pending_contract(collection, "CONTRACT-00000001", 0)
    assert mongo.record_render_failure(collection, "CONTRACT-00000001", "row too tall")
    # Just tried, so not due again yet.
    assert mongo.find_pending_contracts(collection, cutoff) == []
    assert len(mongo.find_pending_contracts(collection, now() + timedelta(minutes=1))) == 1

    assert mongo.record_render_failure(collection, "CONTRACT-00000001", "row too tall", failed=True)
    stored = mongo.find_contract_by_id(collection, "CONTRACT-00000001")
    assert stored.status == "FAILED"
    assert stored.lastRenderError == "row too tall"
    assert mongo.find_pending_contracts(collection, now() + timedelta(minutes=1)) == []
