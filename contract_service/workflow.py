"""Contract workflow: the business logic behind the HTTP routes.

Creating a contract runs these steps, strictly in order:

    duplicate check -> new id -> insert (PENDING) -> render PDF
        -> attach PDF + queue notification (COMPLETE) -> publish -> audit

Failure semantics:
- A duplicate purchase request is rejected before anything is written. If two
  requests race past the check, the unique index on `purchaseRequestId` rejects
  the second insert with the same DuplicateContractError.
- A render failure leaves the contract PENDING. Nothing is rolled back; the
  dispatcher's reconciliation pass re-renders it later, counting attempts on
  the contract, and marks it FAILED once the attempts run out.
- Completion only succeeds on a contract that is still PENDING. When a request
  and a reconciliation pass both render the same contract, the first to finish
  completes and announces it; the other one stands down.
- Publishing is not part of success. Once the contract is COMPLETE its
  notification sits in the embedded outbox; if the immediate publish cannot
  even be queued, the request still succeeds and the dispatcher retries.
"""

from __future__ import annotations

import logging
from datetime import datetime

from . import mongo
from .audit import AuditLog
from .config import RECONCILE_MAX_ATTEMPTS
from .exceptions import (
    ContractGenerationError,
    ContractNotFoundError,
    DocumentGenerationError,
    DuplicateContractError,
    NotificationError,
)
from .kafka_producer import EventNotifier
from .models import (
    Contract,
    ContractDetailsResponse,
    ContractRequest,
    ContractResponse,
    generate_contract_id,
    now,
)
from .pdf_renderer import DocumentRenderer

logger = logging.getLogger(__name__)

CONTRACT_STATUS_SIGNED = "SIGNED"

# Contract ids only carry 32 random bits, so an id collision is possible.
MAX_ID_ATTEMPTS = 3

RENDER_OPERATION = "generate_contract_pdf"


class ContractWorkflow:
    def __init__(
        self,
        collection,
        renderer: DocumentRenderer,
        notifier: EventNotifier,
        audit: AuditLog | None = None,
    ):
        self.collection = collection
        self.renderer = renderer
        self.notifier = notifier
        self.audit = audit or AuditLog()

    # --- create ----------------------------------------------------------------

    def create_contract(self, request: ContractRequest, trace_id: str | None = None) -> ContractResponse:
        """Create, render and announce a contract for a purchase request.

        Raises:
            DuplicateContractError: a contract already exists for the purchase request.
            ContractGenerationError: any other failure; `cause` holds the original error.
        """
        purchase_request_id = request.purchaseRequestId
        logger.info(
            "[Workflow] Starting contract generation for purchaseRequestId=%s",
            purchase_request_id,
            extra={"traceId": trace_id},
        )

        try:
            if mongo.exists_by_purchase_request_id(self.collection, purchase_request_id):
                raise DuplicateContractError(purchase_request_id)

            contract = self._insert_new_contract(request, trace_id)
            location = self.renderer.generate_document(contract, trace_id)
            if self._complete(contract, location, trace_id):
                self.audit.log_contract_created(contract.contractId, purchase_request_id, request.dealId, trace_id)
            else:
                location = self._location_completed_elsewhere(contract.contractId)
        except DuplicateContractError as e:
            self.audit.log_contract_creation_failed(purchase_request_id, request.dealId, str(e), trace_id)
            raise
        except Exception as e:
            self.audit.log_contract_creation_failed(purchase_request_id, request.dealId, str(e), trace_id)
            raise ContractGenerationError(purchase_request_id, e) from e

        logger.info(
            "[Workflow] Contract generation completed for contractId=%s",
            contract.contractId,
            extra={"traceId": trace_id, "contractId": contract.contractId},
        )
        return ContractResponse(
            contractId=contract.contractId,
            contractUrl=location,
            contractStatus=CONTRACT_STATUS_SIGNED,
            signedAt=now(),
        )

    def _insert_new_contract(self, request: ContractRequest, trace_id: str | None) -> Contract:
        attempt = 1
        while True:
            contract = Contract(
                contractId=generate_contract_id(),
                purchaseRequestId=request.purchaseRequestId,
                dealId=request.dealId,
                customerDetails=request.dealData.customer,
                financeDetails=request.dealData.customerFinanceDetails,
                massOrders=request.dealData.massOrders,
            )
            # The request's own render is the first attempt.
            contract.begin_render()
            try:
                return mongo.insert_contract(self.collection, contract)
            except DuplicateContractError as e:
                # Either another request won the race for this purchase request,
                # or the generated id is taken.
                if mongo.exists_by_purchase_request_id(self.collection, request.purchaseRequestId):
                    raise
                if attempt >= MAX_ID_ATTEMPTS:
                    raise RuntimeError(f"No free contract id after {MAX_ID_ATTEMPTS} attempts") from e
            attempt += 1
            self.audit.log_retry_attempt("contract_id_generation", contract.contractId, attempt, MAX_ID_ATTEMPTS, trace_id)

    def _complete(self, contract: Contract, location: str, trace_id: str | None) -> bool:
        """Attach the PDF, persist it together with the outbox record, then publish.

        Returns False, without publishing, when the contract was completed elsewhere.
        """
        contract.attach_document(location)
        contract.notification.begin_attempt()
        if not mongo.complete_contract(self.collection, contract):
            return False

        try:
            self.notifier.publish_contract_created(contract, trace_id)
        except NotificationError as e:
            logger.warning(
                "[Workflow] Notification for %s not queued, left for the dispatcher: %s", contract.contractId, e
            )
        return True

    def _location_completed_elsewhere(self, contract_id: str) -> str:
        stored = mongo.find_contract_by_id(self.collection, contract_id)
        if stored is None or stored.status != "COMPLETE" or stored.pdfStorageLocation is None:
            raise RuntimeError(f"Contract {contract_id} left incomplete by a concurrent render")
        logger.info("[Workflow] Contract %s was completed by reconciliation", contract_id)
        return stored.pdfStorageLocation

    # --- read ------------------------------------------------------------------

    def get_contract(self, contract_id: str, trace_id: str | None = None) -> ContractDetailsResponse:
        logger.info("[Workflow] Retrieving contract details for contractId=%s", contract_id)
        try:
            contract = mongo.find_contract_by_id(self.collection, contract_id)
        except Exception as e:
            self.audit.log_contract_retrieval_failed(contract_id, str(e), trace_id)
            raise

        if contract is None:
            self.audit.log_contract_retrieval_failed(contract_id, "Contract not found", trace_id)
            raise ContractNotFoundError(contract_id)

        self.audit.log_contract_retrieved(contract_id, trace_id)
        return ContractDetailsResponse.from_contract(contract)

    def get_pdf_location(self, contract_id: str, trace_id: str | None = None) -> str:
        """Return where the contract PDF is stored.

        Raises:
            ContractNotFoundError: no such contract, or it has no PDF yet.
        """
        logger.info("[Workflow] Retrieving PDF location for contractId=%s", contract_id)
        contract = mongo.find_contract_by_id(self.collection, contract_id)
        if contract is None:
            self.audit.log_contract_retrieval_failed(contract_id, "Contract not found", trace_id)
            raise ContractNotFoundError(contract_id)
        if contract.pdfStorageLocation is None:
            self.audit.log_contract_retrieval_failed(contract_id, "PDF not found for contract", trace_id)
            raise ContractNotFoundError(contract_id, "PDF not found for contract")
        return contract.pdfStorageLocation

    def load_pdf(self, contract_id: str, trace_id: str | None = None) -> bytes:
        """Return the stored PDF bytes.

        Raises:
            ContractNotFoundError: see `get_pdf_location`.
            DocumentNotFoundError: the location is recorded but the file/object is gone.
        """
        location = self.get_pdf_location(contract_id, trace_id)
        data = self.renderer.load_document(contract_id, location)
        self.audit.log_contract_retrieved(contract_id, trace_id)
        return data

    # --- reconciliation ----------------------------------------------------------

    def complete_pending_contracts(
        self, older_than: datetime, limit: int = 50, max_attempts: int = RECONCILE_MAX_ATTEMPTS
    ) -> int:
        """Render contracts left PENDING by a failed request; return how many were completed.

        Only contracts created and last tried before `older_than` are picked up.
        Each one is claimed first, so concurrent dispatchers never render the
        same contract twice. After `max_attempts` renders it is marked FAILED.
        """
        completed = 0
        for contract in mongo.find_pending_contracts(self.collection, older_than, limit):
            if contract.renderAttempts >= max_attempts:
                self._give_up(contract, contract.lastRenderError or "render attempts exhausted")
                continue

            claimed = mongo.claim_pending_contract(self.collection, contract.contractId, contract.renderAttempts)
            if claimed is None:
                logger.info("[Workflow] Contract %s claimed elsewhere, skipping", contract.contractId)
                continue

            logger.info("[Workflow] Reconciling pending contract %s", claimed.contractId)
            self.audit.log_retry_attempt(RENDER_OPERATION, claimed.contractId, claimed.renderAttempts, max_attempts)
            try:
                location = self.renderer.generate_document(claimed)
            except DocumentGenerationError as e:
                logger.warning("[Workflow] Reconciliation of %s failed: %s", claimed.contractId, e)
                if claimed.renderAttempts >= max_attempts:
                    self._give_up(claimed, str(e))
                else:
                    mongo.record_render_failure(self.collection, claimed.contractId, str(e))
                continue

            if self._complete(claimed, location, None):
                self.audit.log_contract_created(claimed.contractId, claimed.purchaseRequestId, claimed.dealId)
                completed += 1
        return completed

    def _give_up(self, contract: Contract, reason: str) -> None:
        logger.error(
            "[Workflow] Giving up on contract %s after %d render attempts", contract.contractId, contract.renderAttempts
        )
        if mongo.record_render_failure(self.collection, contract.contractId, reason, failed=True):
            self.audit.log_contract_creation_failed(contract.purchaseRequestId, contract.dealId, reason)
