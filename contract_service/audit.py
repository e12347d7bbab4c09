"""Audit log for business events.

The audit stream is separate from operational logging: it goes to the `audit`
logger, one line per event, in the form

    CONTRACT_CREATED | timestamp=... | contractId=CONT**** | ... | traceId=... | status=SUCCESS

Identifiers are masked before they are written. An audit call never raises:
a broken log line must not abort the business operation that produced it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

AUDIT_LOGGER_NAME = "audit"
MASK = "****"

logger = logging.getLogger(__name__)


def mask(value: Any) -> str:
    """Keep the first four characters of `value` and replace the rest with `****`.

    Values of four characters or fewer (and None) are fully masked.
    """
    if value is None:
        return MASK
    text = str(value)
    if len(text) <= 4:
        return MASK
    return text[:4] + MASK


class _Masked:
    """Defers masking until the record is formatted inside `_emit`."""

    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __format__(self, spec: str) -> str:
        return mask(self.value)


class AuditLog:
    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self._logger = logging.getLogger(logger_name)

    def _emit(self, level: int, event: str, status: str, trace_id: str | None, **fields: Any) -> None:
        try:
            parts = [event, f"timestamp={datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]}"]
            parts.extend(f"{key}={value}" for key, value in fields.items())
            parts.append(f"traceId={trace_id}")
            parts.append(f"status={status}")
            self._logger.log(
                level, " | ".join(parts), extra={"traceId": trace_id, "auditEvent": event, "auditStatus": status}
            )
        except Exception:
            logger.exception("[Audit] Failed to write %s audit record", event)

    def log_contract_created(
        self, contract_id: str, purchase_request_id: str, deal_id: str, trace_id: str | None = None
    ) -> None:
        self._emit(
            logging.INFO,
            "CONTRACT_CREATED",
            "SUCCESS",
            trace_id,
            contractId=_Masked(contract_id),
            purchaseRequestId=_Masked(purchase_request_id),
            dealId=_Masked(deal_id),
        )

    def log_contract_creation_failed(
        self, purchase_request_id: str, deal_id: str, reason: str | None, trace_id: str | None = None
    ) -> None:
        self._emit(
            logging.ERROR,
            "CONTRACT_CREATION_FAILED",
            "FAILURE",
            trace_id,
            purchaseRequestId=_Masked(purchase_request_id),
            dealId=_Masked(deal_id),
            reason=reason,
        )

    def log_contract_retrieved(self, contract_id: str, trace_id: str | None = None) -> None:
        self._emit(logging.INFO, "CONTRACT_RETRIEVED", "SUCCESS", trace_id, contractId=_Masked(contract_id))

    def log_contract_retrieval_failed(
        self, contract_id: str, reason: str | None, trace_id: str | None = None
    ) -> None:
        self._emit(
            logging.WARNING,
            "CONTRACT_RETRIEVAL_FAILED",
            "FAILURE",
            trace_id,
            contractId=_Masked(contract_id),
            reason=reason,
        )

    def log_pdf_generated(self, contract_id: str, storage_location: str, trace_id: str | None = None) -> None:
        self._emit(
            logging.INFO,
            "PDF_GENERATED",
            "SUCCESS",
            trace_id,
            contractId=_Masked(contract_id),
            storageLocation=_Masked(storage_location),
        )

    def log_pdf_generation_failed(self, contract_id: str, reason: str | None, trace_id: str | None = None) -> None:
        self._emit(
            logging.ERROR,
            "PDF_GENERATION_FAILED",
            "FAILURE",
            trace_id,
            contractId=_Masked(contract_id),
            reason=reason,
        )

    def log_event_published(
        self, event_type: str, contract_id: str, topic: str, trace_id: str | None = None
    ) -> None:
        self._emit(
            logging.INFO,
            "EVENT_PUBLISHED",
            "SUCCESS",
            trace_id,
            eventType=event_type,
            contractId=_Masked(contract_id),
            topic=topic,
        )

    def log_event_publishing_failed(
        self, event_type: str, contract_id: str, topic: str, reason: str | None, trace_id: str | None = None
    ) -> None:
        self._emit(
            logging.ERROR,
            "EVENT_PUBLISHING_FAILED",
            "FAILURE",
            trace_id,
            eventType=event_type,
            contractId=_Masked(contract_id),
            topic=topic,
            reason=reason,
        )

    def log_retry_attempt(
        self, operation: str, identifier: str, attempt: int, max_attempts: int, trace_id: str | None = None
    ) -> None:
        self._emit(
            logging.WARNING,
            "RETRY_ATTEMPT",
            "RETRY",
            trace_id,
            operation=operation,
            identifier=_Masked(identifier),
            attempt=f"{attempt}/{max_attempts}",
        )
