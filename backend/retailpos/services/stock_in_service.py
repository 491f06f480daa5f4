# Overview: Stock-in (purchase receiving) documents and their posting to the stock ledger.

"""
Stock-In Document Service

WHY: Goods arriving from suppliers are recorded document-first. A draft can
be built up line by line; completing it posts one 'purchase' ledger entry
per line, referencing the document number, in a single transaction.

LIFECYCLE:
1. draft: created, lines being added
2. completed: posted to the stock ledger

IMMUTABLE: Once completed, a document cannot be modified or completed again.
"""

from __future__ import annotations

import logging

from ..errors import (
    ProductNotFoundError,
    StockInNotFoundError,
    StockInStateError,
    ValidationError,
)
from ..extensions import db
from ..models import Product, StockInDocument, StockInLine, Supplier
from ..models.inventory import ENTRY_PURCHASE
from ..pagination import paginate
from retailpos.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import DOC_STOCK_IN, next_document_number
from .ledger_service import apply_movement, get_product_for_update

logger = logging.getLogger("retailpos.stock_in")

STATUS_DRAFT = "draft"
STATUS_COMPLETED = "completed"
STOCK_IN_STATUSES = (STATUS_DRAFT, STATUS_COMPLETED)


def _check_line(product_id, quantity, unit_cost_cents) -> None:
    if isinstance(product_id, bool) or not isinstance(product_id, int):
        raise ValidationError("product_id must be an integer")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(
            "quantity must be a positive integer",
            details={"product_id": product_id, "quantity": quantity},
        )
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents < 0:
        raise ValidationError(
            "unit_cost_cents must be a non-negative integer",
            details={"product_id": product_id},
        )


def _ensure_product(product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def _get_document_for_update(document_id: int) -> StockInDocument:
    doc = lock_for_update(db.session.query(StockInDocument).filter_by(id=document_id)).first()
    if doc is None:
        raise StockInNotFoundError(
            f"Stock-in document {document_id} not found",
            details={"document_id": document_id},
        )
    return doc


def _add_line(doc: StockInDocument, product_id: int, quantity: int, unit_cost_cents: int) -> StockInLine:
    _ensure_product(product_id)
    line = StockInLine(
        product_id=product_id,
        quantity=quantity,
        unit_cost_cents=unit_cost_cents,
    )
    doc.lines.append(line)
    return line


def create_document(
    *,
    supplier_id: int | None = None,
    items: list[dict] | None = None,
    note: str | None = None,
    actor: str | None = None,
    complete: bool = False,
) -> StockInDocument:
    """
    Create a stock-in document, optionally with lines.

    items: [{"product_id", "quantity", "unit_cost_cents"}]
    complete=True posts the document in the same transaction.
    """
    items = list(items or [])
    for item in items:
        _check_line(item.get("product_id"), item.get("quantity"), item.get("unit_cost_cents", 0))
    if complete and not items:
        raise ValidationError("Cannot complete a stock-in document without lines")

    def _op():
        begin_write()
        if supplier_id is not None and db.session.query(Supplier).filter_by(id=supplier_id).first() is None:
            raise ValidationError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})

        doc = StockInDocument(
            document_number=next_document_number(document_type=DOC_STOCK_IN),
            supplier_id=supplier_id,
            status=STATUS_DRAFT,
            note=note,
            created_by=actor,
            created_at=utcnow(),
        )
        db.session.add(doc)
        db.session.flush()

        for item in items:
            _add_line(doc, item["product_id"], item["quantity"], item.get("unit_cost_cents", 0))
        db.session.flush()

        if complete:
            _post(doc, actor)

        db.session.commit()
        return doc

    doc = run_with_retry(_op)
    logger.info("Stock-in %s created with %d lines (status=%s)", doc.document_number, len(items), doc.status)
    return doc


def add_line(
    document_id: int,
    *,
    product_id: int,
    quantity: int,
    unit_cost_cents: int = 0,
) -> StockInLine:
    """Append a line to a draft document."""
    _check_line(product_id, quantity, unit_cost_cents)

    def _op():
        begin_write()
        doc = _get_document_for_update(document_id)
        if doc.status != STATUS_DRAFT:
            raise StockInStateError(
                f"Cannot add lines to a {doc.status} document",
                details={"document_id": doc.id, "status": doc.status},
            )
        line = _add_line(doc, product_id, quantity, unit_cost_cents)
        db.session.commit()
        return line

    return run_with_retry(_op)


def _post(doc: StockInDocument, actor: str | None) -> None:
    if not doc.lines:
        raise StockInStateError(
            "Cannot complete a stock-in document without lines",
            details={"document_id": doc.id},
        )
    now = utcnow()
    # Lock products in id order, same as the sale engine
    for line in sorted(doc.lines, key=lambda ln: (ln.product_id, ln.id)):
        product = get_product_for_update(line.product_id)
        entry = apply_movement(
            product,
            entry_type=ENTRY_PURCHASE,
            quantity=line.quantity,
            reference=doc.document_number,
            actor=actor,
            note=f"Stock-in {doc.document_number}",
            occurred_at=now,
        )
        line.ledger_entry_id = entry.id

    doc.status = STATUS_COMPLETED
    doc.completed_by = actor
    doc.completed_at = now
    db.session.flush()


def complete_document(document_id: int, *, actor: str | None = None) -> StockInDocument:
    """
    Post every line to the stock ledger and mark the document completed.

    Completing twice raises StockInStateError; stock is never booked twice.
    """
    def _op():
        begin_write()
        doc = _get_document_for_update(document_id)
        if doc.status != STATUS_DRAFT:
            raise StockInStateError(
                f"Stock-in document is already {doc.status}",
                details={"document_id": doc.id, "status": doc.status},
            )
        _post(doc, actor)
        db.session.commit()
        return doc

    doc = run_with_retry(_op)
    logger.info("Stock-in %s completed by %s", doc.document_number, actor)
    return doc


def get_document(document_id: int) -> StockInDocument:
    doc = db.session.query(StockInDocument).filter_by(id=document_id).first()
    if doc is None:
        raise StockInNotFoundError(
            f"Stock-in document {document_id} not found",
            details={"document_id": document_id},
        )
    return doc


def list_documents(
    *,
    status: str | None = None,
    supplier_id: int | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    q = db.session.query(StockInDocument)
    if status is not None:
        if status not in STOCK_IN_STATUSES:
            raise ValidationError(f"Invalid status: {status}", details={"allowed": list(STOCK_IN_STATUSES)})
        q = q.filter(StockInDocument.status == status)
    if supplier_id is not None:
        q = q.filter(StockInDocument.supplier_id == supplier_id)
    q = q.order_by(StockInDocument.created_at.desc(), StockInDocument.id.desc())
    return paginate(q, page=page, per_page=per_page)
