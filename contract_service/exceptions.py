"""Domain errors for contract-service.

Each error carries the identifier needed to correlate it with the audit log.
The HTTP layer (`main.py`) translates them into the uniform error response.
"""

from __future__ import annotations


class ContractServiceError(Exception):
    """Base class for every error raised by the contract workflow."""


class DuplicateContractError(ContractServiceError):
    """A contract already exists for the purchase request."""

    def __init__(self, purchase_request_id: str):
        super().__init__("Contract already exists for this purchase request")
        self.purchase_request_id = purchase_request_id


class ContractNotFoundError(ContractServiceError):
    def __init__(self, contract_id: str, message: str = "Contract not found"):
        super().__init__(message)
        self.contract_id = contract_id
        self.message = message


class DocumentNotFoundError(ContractNotFoundError):
    """The contract has a PDF location but nothing is stored there."""

    def __init__(self, contract_id: str, location: str):
        super().__init__(contract_id, "PDF not found for contract")
        self.location = location


class RenderError(ContractServiceError):
    """The PDF engine rejected the markup."""


class DocumentGenerationError(ContractServiceError):
    """Rendering or storing the contract PDF failed."""

    def __init__(self, contract_id: str, cause: BaseException):
        super().__init__(f"Failed to generate PDF: {cause}")
        self.contract_id = contract_id
        self.cause = cause


class NotificationError(ContractServiceError):
    """The CONTRACT_CREATED event could not be handed to the producer."""

    def __init__(self, contract_id: str, cause: BaseException):
        super().__init__(f"Failed to publish contract created event: {cause}")
        self.contract_id = contract_id
        self.cause = cause


class ContractGenerationError(ContractServiceError):
    """Contract creation failed after the duplicate check passed."""

    def __init__(self, purchase_request_id: str, cause: BaseException):
        super().__init__(f"Failed to generate contract: {cause}")
        self.purchase_request_id = purchase_request_id
        self.cause = cause

    @property
    def is_document_failure(self) -> bool:
        return isinstance(self.cause, DocumentGenerationError)
