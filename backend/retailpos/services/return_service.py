# Overview: Returns against committed sales; restores stock through the ledger.

"""
Sale Returns

WHY: Committed sales are immutable. Goods coming back are a separate
document whose lines post 'return' stock ledger entries referencing the
original sale id.

RULES:
- A product can only be returned if it was on the sale
- Cumulative returned quantity per product never exceeds the sold quantity
- Refund is computed from the unit price snapshot on the sale, not the
  current catalog price
- Member points are not reversed
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..errors import ReturnQuantityError, SaleNotFoundError, ValidationError
from ..extensions import db
from ..models import Sale, SaleReturn, SaleReturnLine
from ..models.inventory import ENTRY_RETURN
from retailpos.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import DOC_RETURN, next_document_number
from .ledger_service import apply_movement, get_product_for_update

logger = logging.getLogger("retailpos.returns")


def _merge_lines(lines: list[dict]) -> dict[int, int]:
    if not lines:
        raise ValidationError("At least one return line is required")
    merged: dict[int, int] = {}
    for line in lines:
        product_id = line.get("product_id")
        quantity = line.get("quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                details={"product_id": product_id, "quantity": quantity},
            )
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def returned_quantities(sale_id: str) -> dict[int, int]:
    """Quantity already returned per product for a sale."""
    rows = (
        db.session.query(SaleReturnLine.product_id, func.sum(SaleReturnLine.quantity))
        .join(SaleReturn, SaleReturn.id == SaleReturnLine.return_id)
        .filter(SaleReturn.sale_id == sale_id)
        .group_by(SaleReturnLine.product_id)
        .all()
    )
    return {product_id: int(qty or 0) for product_id, qty in rows}


def return_items(
    sale_id: str,
    lines: list[dict],
    *,
    reason: str | None = None,
    actor: str | None = None,
) -> SaleReturn:
    """
    Record a return against a committed sale and put the goods back in stock.

    lines: [{"product_id", "quantity"}]
    """
    requested = _merge_lines(lines)

    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise SaleNotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})

        sold = {}
        prices = {}
        for item in sale.items:
            sold[item.product_id] = sold.get(item.product_id, 0) + item.quantity
            prices[item.product_id] = item.unit_price_cents
        already = returned_quantities(sale.id)

        for product_id, quantity in requested.items():
            if product_id not in sold:
                raise ReturnQuantityError(
                    f"Product {product_id} was not part of sale {sale.id}",
                    details={"sale_id": sale.id, "product_id": product_id},
                )
            remaining = sold[product_id] - already.get(product_id, 0)
            if quantity > remaining:
                raise ReturnQuantityError(
                    "Return quantity exceeds quantity sold",
                    details={
                        "sale_id": sale.id,
                        "product_id": product_id,
                        "requested_quantity": quantity,
                        "returnable_quantity": remaining,
                    },
                )

        now = utcnow()
        sale_return = SaleReturn(
            document_number=next_document_number(document_type=DOC_RETURN),
            sale_id=sale.id,
            reason=reason,
            created_by=actor,
            created_at=now,
        )
        db.session.add(sale_return)

        refund = 0
        for product_id in sorted(requested):
            quantity = requested[product_id]
            product = get_product_for_update(product_id)
            entry = apply_movement(
                product,
                entry_type=ENTRY_RETURN,
                quantity=quantity,
                reference=sale_return.document_number,
                actor=actor,
                note=f"Return {sale_return.document_number} for {sale.receipt_number}",
                occurred_at=now,
            )
            sale_return.lines.append(SaleReturnLine(
                product_id=product_id,
                quantity=quantity,
                unit_price_cents=prices[product_id],
                ledger_entry_id=entry.id,
            ))
            refund += quantity * prices[product_id]

        sale_return.refund_cents = refund
        db.session.commit()
        return sale_return

    sale_return = run_with_retry(_op)
    logger.info(
        "Return %s recorded for sale %s: refund_cents=%s",
        sale_return.document_number, sale_id, sale_return.refund_cents,
    )
    return sale_return


def list_returns(sale_id: str) -> list[SaleReturn]:
    if db.session.get(Sale, sale_id) is None:
        raise SaleNotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return (
        db.session.query(SaleReturn)
        .filter_by(sale_id=sale_id)
        .order_by(SaleReturn.created_at.asc(), SaleReturn.id.asc())
        .all()
    )
