"""contract-service FastAPI application.

Responsibilities:
- `POST /contracts`: create a contract, render its PDF, publish CONTRACT_CREATED
- `GET /contracts/{contractId}`: contract details
- `GET /contracts/{contractId}/pdf`: PDF download
- health probes
- start the outbox dispatcher thread (delivery callbacks, retries, reconciliation)

Every request gets a trace id (from `X-Trace-Id` or freshly generated). It is
passed explicitly to the workflow so audit records carry it, and it is echoed
on every response, errors included.
"""

from __future__ import annotations

import logging
import time
from threading import Event, Thread
from uuid import uuid4

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import mongo
from .audit import AuditLog, mask
from .config import KAFKA_TOPIC, OUTBOX_ENABLED, RENDER_ORDER_DETAILS
from .exceptions import (
    ContractGenerationError,
    ContractNotFoundError,
    DocumentGenerationError,
    DuplicateContractError,
)
from .kafka_producer import EventNotifier, create_producer
from .logging_config import configure_logging
from .models import ContractDetailsResponse, ContractRequest, ContractResponse, ErrorResponse
from .outbox_dispatcher import OutboxDispatcher
from .pdf_renderer import DocumentRenderer
from .storage import create_storage
from .workflow import ContractWorkflow

logger = logging.getLogger(__name__)

TRACE_ID_HEADER = "X-Trace-Id"

app = FastAPI(title="Contract Service")

# Used to signal the dispatcher thread to stop on shutdown.
stop_event = Event()

dispatcher_thread: Thread | None = None

# Set on startup.
collection = None
workflow: ContractWorkflow | None = None


@app.on_event("startup")
def on_startup() -> None:
    """Startup hook.

    - Connect to MongoDB and build the workflow.
    - Start the outbox dispatcher thread.
    """
    global collection, workflow, dispatcher_thread

    configure_logging()
    audit = AuditLog()

    collection = mongo.get_collection()
    notifier = EventNotifier(create_producer(), KAFKA_TOPIC, audit)
    renderer = DocumentRenderer(create_storage(), audit, render_order_details=RENDER_ORDER_DETAILS)
    workflow = ContractWorkflow(collection, renderer, notifier, audit)

    dispatcher = OutboxDispatcher(collection, notifier, workflow, audit)
    notifier.on_delivery = dispatcher.on_delivery

    if OUTBOX_ENABLED:
        dispatcher_thread = Thread(target=dispatcher.run, args=(stop_event,), daemon=True)
        dispatcher_thread.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    """Stop the dispatcher; it flushes the producer on its way out."""
    stop_event.set()
    if dispatcher_thread is not None:
        dispatcher_thread.join(timeout=10)


def get_workflow() -> ContractWorkflow:
    if workflow is None:
        raise RuntimeError("Contract workflow is not initialised")
    return workflow


def get_store():
    return collection


def _trace_id(request: Request) -> str | None:
    return getattr(request.state, "trace_id", None)


def _error_response(status_code: int, error_code: str, message: str, trace_id: str | None) -> JSONResponse:
    body = ErrorResponse(errorCode=error_code, message=message, traceId=trace_id)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# --- Middleware & error handlers ----------------------------------------------


@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    trace_id = request.headers.get(TRACE_ID_HEADER, "").strip() or str(uuid4())
    request.state.trace_id = trace_id

    try:
        response = await call_next(request)
    except Exception:
        # Unexpected errors never leak their text to the caller.
        logger.exception("Unexpected error occurred", extra={"traceId": trace_id})
        response = _error_response(500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred", trace_id)

    response.headers[TRACE_ID_HEADER] = trace_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"][1:])
        details.append(f"{field}: {error['msg']}" if field else error["msg"])
    message = ", ".join(details)

    logger.error("Validation failed: %s", message)
    return _error_response(400, "VALIDATION_FAILED", f"Invalid request: {message}", _trace_id(request))


@app.exception_handler(DuplicateContractError)
async def duplicate_contract_handler(request: Request, exc: DuplicateContractError):
    logger.warning("Duplicate contract - purchaseRequestId: %s", mask(exc.purchase_request_id))
    return _error_response(409, "CONTRACT_GENERATION_FAILED", str(exc), _trace_id(request))


@app.exception_handler(ContractGenerationError)
async def contract_generation_handler(request: Request, exc: ContractGenerationError):
    logger.error(
        "Contract generation failed - purchaseRequestId: %s", mask(exc.purchase_request_id), exc_info=exc
    )
    if exc.is_document_failure:
        return _error_response(500, "PDF_GENERATION_FAILED", "Failed to generate PDF document", _trace_id(request))
    return _error_response(500, "CONTRACT_GENERATION_FAILED", "Failed to generate contract", _trace_id(request))


@app.exception_handler(DocumentGenerationError)
async def document_generation_handler(request: Request, exc: DocumentGenerationError):
    logger.error("PDF generation failed - contractId: %s", mask(exc.contract_id), exc_info=exc)
    return _error_response(500, "PDF_GENERATION_FAILED", "Failed to generate PDF document", _trace_id(request))


@app.exception_handler(ContractNotFoundError)
async def contract_not_found_handler(request: Request, exc: ContractNotFoundError):
    logger.warning("%s - contractId: %s", exc.message, mask(exc.contract_id))
    return _error_response(404, "CONTRACT_NOT_FOUND", exc.message, _trace_id(request))


# --- Routes --------------------------------------------------------------------


@app.get("/health/live")
def liveness() -> dict:
    """Liveness probe: the process is up."""
    return {"status": "UP", "message": "Service is alive", "timestamp": int(time.time() * 1000)}


@app.get("/health/ready")
def readiness(store=Depends(get_store)):
    """Readiness probe: MongoDB answers a ping."""
    if store is not None and mongo.ping(store):
        return {"status": "UP", "database": "UP", "message": "Service is ready"}
    return JSONResponse(
        status_code=503,
        content={"status": "DOWN", "database": "DOWN", "message": "Database connection failed"},
    )


@app.post("/contracts", status_code=201, response_model=ContractResponse)
def create_contract(
    req: ContractRequest,
    request: Request,
    response: Response,
    workflow: ContractWorkflow = Depends(get_workflow),
):
    """Create a contract from a purchase request.

    Returns 201 with a `Location` header once the contract and its PDF are
    stored. The CONTRACT_CREATED event is delivered asynchronously.
    """
    result = workflow.create_contract(req, _trace_id(request))
    response.headers["Location"] = f"/contracts/{result.contractId}"
    return result


@app.get("/contracts/{contract_id}", response_model=ContractDetailsResponse)
def get_contract(contract_id: str, request: Request, workflow: ContractWorkflow = Depends(get_workflow)):
    return workflow.get_contract(contract_id, _trace_id(request))


@app.get("/contracts/{contract_id}/pdf")
def download_contract_pdf(contract_id: str, request: Request, workflow: ContractWorkflow = Depends(get_workflow)):
    """Stream the contract PDF as an attachment."""
    data = workflow.load_pdf(contract_id, _trace_id(request))
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{contract_id}.pdf"'},
    )
