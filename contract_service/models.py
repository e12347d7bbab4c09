"""Pydantic models for contract-service.

Three groups live here:
- the `Contract` document persisted in MongoDB
- request/response bodies of the HTTP API
- the CONTRACT_CREATED Kafka event

Customer, finance and order data are opaque JSON documents: any JSON value is
accepted and round-trips unchanged. Only the renderer looks inside them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

CONTRACT_ID_PREFIX = "CONTRACT-"


def now() -> datetime:
    """Current local time truncated to milliseconds.

    MongoDB stores datetimes with millisecond precision; truncating up front
    keeps a saved contract equal to the one read back.
    """
    current = datetime.now()
    return current.replace(microsecond=current.microsecond // 1000 * 1000)


def generate_contract_id() -> str:
    """Return `CONTRACT-` + the first 8 hex characters of a random UUID, uppercased."""
    return CONTRACT_ID_PREFIX + uuid4().hex[:8].upper()


# --- Persistence -------------------------------------------------------------


class Notification(BaseModel):
    """Outbox record embedded in a contract.

    It is written in the same document update that attaches the PDF, so a
    complete contract always carries a notification still to deliver (PENDING)
    or already delivered (SENT). FAILED means retries ran out.
    """

    eventId: str = Field(default_factory=lambda: str(uuid4()))
    status: Literal["PENDING", "SENT", "FAILED"] = "PENDING"
    attempts: int = 0
    lastAttemptAt: datetime | None = None
    lastError: str | None = None

    def begin_attempt(self) -> int:
        self.attempts += 1
        self.lastAttemptAt = now()
        return self.attempts


class Contract(BaseModel):
    """A vehicle purchase contract.

    Lifecycle: PENDING (saved, no PDF) -> COMPLETE (PDF attached), or
    PENDING -> FAILED once reconciliation gives up on rendering it.
    """

    contractId: str
    purchaseRequestId: str
    dealId: str
    customerDetails: dict[str, Any] = Field(default_factory=dict)
    financeDetails: dict[str, Any] = Field(default_factory=dict)
    massOrders: list[dict[str, Any]] = Field(default_factory=list)
    pdfStorageLocation: str | None = None
    status: Literal["PENDING", "COMPLETE", "FAILED"] = "PENDING"
    renderAttempts: int = 0
    lastRenderAttemptAt: datetime | None = None
    lastRenderError: str | None = None
    notification: Notification | None = None
    createdAt: datetime = Field(default_factory=now)
    updatedAt: datetime | None = None

    def touch(self) -> None:
        self.updatedAt = max(now(), self.createdAt)

    def begin_render(self) -> int:
        self.renderAttempts += 1
        self.lastRenderAttemptAt = now()
        return self.renderAttempts

    def attach_document(self, location: str) -> None:
        """Record the rendered PDF and queue the creation notification."""
        self.pdfStorageLocation = location
        self.status = "COMPLETE"
        self.lastRenderError = None
        if self.notification is None:
            self.notification = Notification()
        self.touch()

    def to_document(self) -> dict[str, Any]:
        """Mongo representation: `contractId` becomes the primary key `_id`."""
        doc = self.model_dump()
        doc["_id"] = doc.pop("contractId")
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Contract":
        data = dict(doc)
        data["contractId"] = data.pop("_id")
        return cls.model_validate(data)


# --- HTTP --------------------------------------------------------------------


def _require_text(value: str, label: str) -> str:
    if not value.strip():
        raise ValueError(f"{label} is required")
    return value


class DealData(BaseModel):
    """Deal payload forwarded by the purchase-request system."""

    dealId: str | None = None
    customer: dict[str, Any]
    customerFinanceDetails: dict[str, Any]
    retailerInfo: dict[str, Any]
    massOrders: list[dict[str, Any]]

    @field_validator("massOrders", mode="before")
    @classmethod
    def _wrap_single_order(cls, value: Any) -> Any:
        # Some callers send one order as a bare object.
        if isinstance(value, dict):
            return [value]
        return value


class ContractRequest(BaseModel):
    """Request body for `POST /contracts`."""

    purchaseRequestId: str = Field(max_length=100)
    dealId: str = Field(max_length=100)
    dealData: DealData

    @field_validator("purchaseRequestId")
    @classmethod
    def _purchase_request_id_not_blank(cls, value: str) -> str:
        return _require_text(value, "Purchase request ID")

    @field_validator("dealId")
    @classmethod
    def _deal_id_not_blank(cls, value: str) -> str:
        return _require_text(value, "Deal ID")


class ContractResponse(BaseModel):
    """Response body for a created contract."""

    contractId: str
    contractUrl: str
    contractStatus: str = "SIGNED"
    signedAt: datetime


class ContractDetailsResponse(BaseModel):
    """Response body for `GET /contracts/{contractId}`."""

    contractId: str
    purchaseRequestId: str
    dealId: str
    customerDetails: dict[str, Any]
    financeDetails: dict[str, Any]
    massOrders: list[dict[str, Any]]
    pdfStorageLocation: str | None = None
    createdAt: datetime
    updatedAt: datetime | None = None

    @classmethod
    def from_contract(cls, contract: Contract) -> "ContractDetailsResponse":
        return cls(
            contractId=contract.contractId,
            purchaseRequestId=contract.purchaseRequestId,
            dealId=contract.dealId,
            customerDetails=contract.customerDetails,
            financeDetails=contract.financeDetails,
            massOrders=contract.massOrders,
            pdfStorageLocation=contract.pdfStorageLocation,
            createdAt=contract.createdAt,
            updatedAt=contract.updatedAt,
        )


class ErrorResponse(BaseModel):
    """Uniform error body. `traceId` echoes the request's X-Trace-Id."""

    errorCode: str
    message: str
    timestamp: datetime = Field(default_factory=now)
    traceId: str | None = None


# --- Kafka -------------------------------------------------------------------


class ContractEventData(BaseModel):
    contractId: str
    purchaseRequestId: str
    dealId: str
    contractPdfLocation: str | None = None


class ContractCreatedEvent(BaseModel):
    """Kafka event published once a contract and its PDF are stored.

    Fields:
        eventId: Stable per contract; redeliveries reuse it so consumers can
            deduplicate on it.
        eventType: Constant discriminator.
        eventTimestamp: ISO-8601 local timestamp of this publish attempt.
        data: Identifiers a downstream consumer needs to fetch the contract.
    """

    eventId: str
    eventType: Literal["CONTRACT_CREATED"] = "CONTRACT_CREATED"
    eventTimestamp: str
    data: ContractEventData
