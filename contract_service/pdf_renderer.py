"""Contract PDF rendering.

Rendering happens in two steps:

1) `build_markup()` turns a Contract into a flat list of MarkupBlocks. Text
   blocks carry reportlab paragraph markup (a small HTML-like subset: <b>, <i>,
   <br/>). Contract values are XML-escaped before they are embedded.
2) `render()` lays the blocks out with reportlab's platypus engine and returns
   the PDF bytes.

`generate_document()` runs both and hands the bytes to a storage backend.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Any, Literal
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from reportlab.platypus.doctemplate import LayoutError

from .audit import AuditLog
from .exceptions import DocumentGenerationError, DocumentNotFoundError, RenderError
from .models import Contract
from .storage import DocumentStorage

logger = logging.getLogger(__name__)

DOCUMENT_TITLE = "VEHICLE PURCHASE CONTRACT"

# (label, key) pairs read from the opaque customer / finance documents.
CUSTOMER_FIELDS = [
    ("Customer Name", "customerName"),
    ("Customer Company", "customerCompany"),
    ("Customer Type", "customerType"),
    ("Email", "customerEmail"),
    ("Phone", "customerPhone"),
    ("Address", "customerAddress"),
    ("Tax ID", "customerTaxId"),
]

FINANCE_FIELDS = [
    ("Finance Type", "type"),
    ("Provider", "provider"),
    ("Approval Status", "approvalStatus"),
    ("Reference Number", "referenceNumber"),
    ("Terms (Months)", "termsInMonths"),
    ("Interest Rate", "interestRate"),
]

BlockKind = Literal["title", "subtitle", "heading", "paragraph", "field", "table"]

# Longest piece of an order value placed in one table cell.
CELL_CHUNK_CHARS = 300


@dataclass
class MarkupBlock:
    """One element of the intermediate document.

    `text` holds paragraph markup; `rows` is only used by "table" blocks and
    holds one paragraph markup string per cell.
    """

    kind: BlockKind
    text: str = ""
    rows: list[list[str]] = field(default_factory=list)


def _display(value: Any) -> str | None:
    """Text for a document value, or None when it should be left out."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    text = str(value)
    if not text.strip():
        return None
    return text


def _field_blocks(source: dict[str, Any] | None, fields: list[tuple[str, str]]) -> list[MarkupBlock]:
    blocks = []
    for label, key in fields:
        value = _display((source or {}).get(key))
        if value is not None:
            blocks.append(MarkupBlock("field", f"<b>{escape(label)}:</b> {escape(value)}"))
    return blocks


def _order_rows(key: str, text: str) -> list[list[str]]:
    """Escaped table rows for one order value.

    A table row cannot break across pages, so a long value is spread over one
    row per line (long lines are cut into CELL_CHUNK_CHARS pieces). Only the
    first row carries the key.
    """
    pieces = []
    for line in text.splitlines() or [""]:
        pieces.extend(line[i : i + CELL_CHUNK_CHARS] for i in range(0, max(len(line), 1), CELL_CHUNK_CHARS))
    return [[escape(key) if i == 0 else "", escape(piece)] for i, piece in enumerate(pieces)]


def _styles() -> dict[str, ParagraphStyle]:
    sample = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("ContractTitle", parent=sample["Title"], alignment=TA_CENTER),
        "subtitle": ParagraphStyle("ContractSubtitle", parent=sample["Normal"], alignment=TA_CENTER),
        "heading": sample["Heading2"],
        "paragraph": sample["Normal"],
        "field": ParagraphStyle("ContractField", parent=sample["Normal"], spaceAfter=4),
        "cell": ParagraphStyle("ContractCell", parent=sample["Normal"], fontSize=9, leading=11),
    }


class DocumentRenderer:
    def __init__(self, storage: DocumentStorage, audit: AuditLog | None = None, render_order_details: bool = False):
        self.storage = storage
        self.audit = audit or AuditLog()
        self.render_order_details = render_order_details

    def build_markup(self, contract: Contract, generated_at: datetime | None = None) -> list[MarkupBlock]:
        generated_at = generated_at or datetime.now()
        contract_id = escape(contract.contractId)

        blocks = [
            MarkupBlock("title", DOCUMENT_TITLE),
            MarkupBlock("subtitle", f"Contract ID: {contract_id}"),
            MarkupBlock("subtitle", f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}"),
            MarkupBlock("heading", "Customer Information"),
        ]
        blocks.extend(_field_blocks(contract.customerDetails, CUSTOMER_FIELDS))

        blocks.append(MarkupBlock("heading", "Finance Details"))
        blocks.extend(_field_blocks(contract.financeDetails, FINANCE_FIELDS))

        blocks.append(MarkupBlock("heading", "Vehicle Orders"))
        blocks.extend(self._order_blocks(contract.massOrders))

        blocks.append(MarkupBlock("heading", "Contract Terms"))
        blocks.append(
            MarkupBlock(
                "paragraph",
                "This contract represents the agreement between the customer and the retailer "
                "for the purchase of the specified vehicles.",
            )
        )
        blocks.append(MarkupBlock("field", f"<b>Deal ID:</b> {escape(contract.dealId)}"))
        blocks.append(MarkupBlock("field", f"<b>Purchase Request ID:</b> {escape(contract.purchaseRequestId)}"))
        return blocks

    def _order_blocks(self, orders: list[dict[str, Any]]) -> list[MarkupBlock]:
        if not orders:
            return [MarkupBlock("paragraph", "No vehicle orders specified.")]

        blocks = [
            MarkupBlock("paragraph", "Vehicle configuration and pricing details as specified in the order."),
            MarkupBlock("paragraph", f"Number of mass orders: {len(orders)}"),
        ]
        if not self.render_order_details:
            return blocks

        for index, order in enumerate(orders, start=1):
            blocks.append(MarkupBlock("paragraph", f"<b>Order {index}</b>"))
            rows = []
            for key, value in order.items():
                rows.extend(_order_rows(str(key), _display(value) or ""))
            if rows:
                blocks.append(MarkupBlock("table", rows=rows))
        return blocks

    def render(self, markup: list[MarkupBlock]) -> bytes:
        """Lay out `markup` as an A4 PDF.

        Raises:
            RenderError: the markup could not be parsed or laid out.
        """
        styles = _styles()
        story: list[Any] = []
        try:
            for block in markup:
                if block.kind == "table":
                    cells = [[Paragraph(text, styles["cell"]) for text in row] for row in block.rows]
                    table = Table(cells, colWidths=[5 * cm, 11 * cm], splitByRow=1)
                    table.setStyle(
                        TableStyle(
                            [
                                ("BOX", (0, 0), (-1, -1), 0.5, colors.grey),
                                ("LINEAFTER", (0, 0), (0, -1), 0.5, colors.grey),
                                ("BACKGROUND", (0, 0), (0, -1), colors.whitesmoke),
                                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                            ]
                        )
                    )
                    story.append(table)
                    story.append(Spacer(1, 8))
                else:
                    story.append(Paragraph(block.text, styles[block.kind]))
                    if block.kind in ("title", "heading"):
                        story.append(Spacer(1, 6))

            buffer = BytesIO()
            doc = SimpleDocTemplate(
                buffer,
                pagesize=A4,
                leftMargin=2 * cm,
                rightMargin=2 * cm,
                topMargin=2 * cm,
                bottomMargin=2 * cm,
            )
            doc.build(story)
        except (ValueError, LayoutError) as e:
            raise RenderError(str(e)) from e
        return buffer.getvalue()

    def generate_document(self, contract: Contract, trace_id: str | None = None) -> str:
        """Render the contract PDF, store it and return its location.

        Raises:
            DocumentGenerationError: any step failed. The contract itself is not modified.
        """
        logger.info("[Renderer] Generating PDF for %s", contract.contractId)
        try:
            data = self.render(self.build_markup(contract))
            location = self.storage.store(contract.contractId, data)
        except Exception as e:
            self.audit.log_pdf_generation_failed(contract.contractId, str(e), trace_id)
            raise DocumentGenerationError(contract.contractId, e) from e

        self.audit.log_pdf_generated(contract.contractId, location, trace_id)
        logger.info("[Renderer] PDF for %s stored at %s", contract.contractId, location)
        return location

    def load_document(self, contract_id: str, location: str) -> bytes:
        """Read a stored PDF back.

        Raises:
            DocumentNotFoundError: nothing is stored at `location`.
        """
        try:
            return self.storage.load(location)
        except FileNotFoundError:
            logger.error("[Renderer] PDF for %s missing at %s", contract_id, location)
            raise DocumentNotFoundError(contract_id, location) from None
