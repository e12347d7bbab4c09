"""MongoDB persistence for contracts.

One document per contract, with `contractId` stored as `_id`.

Duplicate protection:
- `purchaseRequestId` has a unique index. The workflow still checks for an
  existing contract first (cheap, gives a clean error), but two requests racing
  past that check cannot both insert: the loser gets DuplicateKeyError, which
  is reported as DuplicateContractError.

Completion is conditional: `complete_contract` only replaces a contract that is
still PENDING, so when a request and a reconciliation pass render the same
contract, exactly one of them completes and announces it.

The functions take the collection handle explicitly so tests can pass a
mongomock collection.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pymongo import ASCENDING, MongoClient, ReturnDocument, errors

from .config import MONGO_COLLECTION, MONGO_DB, MONGO_URI
from .exceptions import DuplicateContractError
from .models import Contract, now

logger = logging.getLogger(__name__)

# Deterministic pick when a lookup matches more than one document.
_OLDEST_FIRST = [("createdAt", ASCENDING), ("_id", ASCENDING)]


def get_collection():
    """Connect to MongoDB and return the contracts collection with its indexes."""
    client = MongoClient(MONGO_URI)
    collection = client[MONGO_DB][MONGO_COLLECTION]
    ensure_indexes(collection)
    return collection


def ensure_indexes(collection) -> None:
    collection.create_index([("purchaseRequestId", ASCENDING)], unique=True, name="uniq_purchase_request_id")
    collection.create_index([("dealId", ASCENDING)], name="deal_id")
    # Reconciliation scans for contracts stuck without a PDF.
    collection.create_index(
        [("status", ASCENDING), ("createdAt", ASCENDING), ("lastRenderAttemptAt", ASCENDING)],
        name="pending_render_schedule",
    )
    # Outbox dispatcher scans for undelivered notifications.
    collection.create_index(
        [("notification.status", ASCENDING), ("notification.lastAttemptAt", ASCENDING)],
        name="notification_status",
    )


def ping(collection) -> bool:
    """Return True when the server answers a ping."""
    try:
        collection.database.command("ping")
        return True
    except errors.PyMongoError as e:
        logger.warning("[Mongo] Ping failed: %s", e)
        return False


def _to_contract(doc: dict[str, Any] | None) -> Contract | None:
    if doc is None:
        return None
    return Contract.from_document(doc)


def insert_contract(collection, contract: Contract) -> Contract:
    """Insert a new contract.

    Raises:
        DuplicateContractError: a contract with the same `contractId` or
            `purchaseRequestId` already exists.
    """
    try:
        collection.insert_one(contract.to_document())
    except errors.DuplicateKeyError:
        logger.warning("[Mongo] Duplicate contract rejected: %s", contract.contractId)
        raise DuplicateContractError(contract.purchaseRequestId) from None
    logger.info("[Mongo] Inserted contract %s", contract.contractId)
    return contract


def save_contract(collection, contract: Contract) -> Contract:
    """Upsert a contract by `contractId`. Timestamps are the caller's job."""
    try:
        collection.replace_one({"_id": contract.contractId}, contract.to_document(), upsert=True)
    except errors.DuplicateKeyError:
        raise DuplicateContractError(contract.purchaseRequestId) from None
    logger.info("[Mongo] Saved contract %s", contract.contractId)
    return contract


def find_contract_by_id(collection, contract_id: str) -> Contract | None:
    return _to_contract(collection.find_one({"_id": contract_id}))


def find_contract_by_purchase_request_id(collection, purchase_request_id: str) -> Contract | None:
    return _to_contract(collection.find_one({"purchaseRequestId": purchase_request_id}, sort=_OLDEST_FIRST))


def exists_by_purchase_request_id(collection, purchase_request_id: str) -> bool:
    return collection.count_documents({"purchaseRequestId": purchase_request_id}, limit=1) > 0


def find_contract_by_deal_id(collection, deal_id: str) -> Contract | None:
    return _to_contract(collection.find_one({"dealId": deal_id}, sort=_OLDEST_FIRST))


def exists_by_deal_id(collection, deal_id: str) -> bool:
    return collection.count_documents({"dealId": deal_id}, limit=1) > 0


def find_contract_with_pdf_location(collection) -> Contract | None:
    """Return any one contract that has a stored PDF."""
    return _to_contract(collection.find_one({"pdfStorageLocation": {"$ne": None}}, sort=_OLDEST_FIRST))


def delete_contract(collection, contract_id: str) -> bool:
    """Remove a contract. Not exposed over HTTP."""
    result = collection.delete_one({"_id": contract_id})
    return result.deleted_count > 0


def complete_contract(collection, contract: Contract) -> bool:
    """Replace a PENDING contract with its completed version.

    Returns False when the stored contract is no longer PENDING, i.e. another
    worker completed (or gave up on) it first. The caller must not announce it then.
    """
    result = collection.replace_one({"_id": contract.contractId, "status": "PENDING"}, contract.to_document())
    if result.matched_count == 0:
        logger.info("[Mongo] Contract %s was already completed elsewhere", contract.contractId)
        return False
    logger.info("[Mongo] Completed contract %s", contract.contractId)
    return True


def find_pending_contracts(collection, older_than: datetime, limit: int = 50) -> list[Contract]:
    """Contracts saved without a PDF before `older_than` and not tried since, oldest first."""
    query = {
        "status": "PENDING",
        "createdAt": {"$lt": older_than},
        "$or": [{"lastRenderAttemptAt": None}, {"lastRenderAttemptAt": {"$lt": older_than}}],
    }
    cursor = collection.find(query).sort(_OLDEST_FIRST).limit(limit)
    return [Contract.from_document(doc) for doc in cursor]


def claim_pending_contract(collection, contract_id: str, seen_attempts: int) -> Contract | None:
    """Count a render attempt on a PENDING contract, if nobody else did since it was read.

    `seen_attempts` is the `renderAttempts` value the caller read. Returns the
    updated contract, or None when another worker claimed or completed it first.
    """
    doc = collection.find_one_and_update(
        {"_id": contract_id, "status": "PENDING", "renderAttempts": seen_attempts},
        {"$inc": {"renderAttempts": 1}, "$set": {"lastRenderAttemptAt": now(), "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return _to_contract(doc)


def record_render_failure(collection, contract_id: str, error: str, failed: bool = False) -> bool:
    """Store why a render attempt failed. `failed=True` gives up on the contract (status FAILED)."""
    fields: dict[str, Any] = {"lastRenderError": error, "updatedAt": now()}
    if failed:
        fields["status"] = "FAILED"
    result = collection.update_one({"_id": contract_id, "status": "PENDING"}, {"$set": fields})
    return result.modified_count > 0


def find_pending_notifications(collection, older_than: datetime, limit: int = 50) -> list[Contract]:
    """Complete contracts whose notification is undelivered and was last tried before `older_than`."""
    query = {
        "status": "COMPLETE",
        "notification.status": "PENDING",
        "notification.lastAttemptAt": {"$lt": older_than},
    }
    cursor = collection.find(query).sort(_OLDEST_FIRST).limit(limit)
    return [Contract.from_document(doc) for doc in cursor]


def mark_notification_sent(collection, contract_id: str, event_id: str) -> bool:
    """Flag the outbox record as delivered. Ignores a stale `event_id`."""
    result = collection.update_one(
        {"_id": contract_id, "notification.eventId": event_id},
        {"$set": {"notification.status": "SENT", "notification.lastError": None, "updatedAt": now()}},
    )
    return result.modified_count > 0


def record_notification_attempt(
    collection,
    contract_id: str,
    event_id: str,
    attempts: int | None = None,
    error: str | None = None,
    failed: bool = False,
) -> bool:
    """Store the outcome of a publish attempt on the outbox record.

    `attempts=None` keeps the stored counter. `failed=True` gives up on the
    notification (status FAILED). Records no longer PENDING are left alone.
    """
    fields: dict[str, Any] = {
        "notification.lastAttemptAt": now(),
        "notification.lastError": error,
        "updatedAt": now(),
    }
    if attempts is not None:
        fields["notification.attempts"] = attempts
    if failed:
        fields["notification.status"] = "FAILED"
    result = collection.update_one(
        {"_id": contract_id, "notification.eventId": event_id, "notification.status": "PENDING"},
        {"$set": fields},
    )
    return result.modified_count > 0
