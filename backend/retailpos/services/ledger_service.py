# Overview: Stock ledger; the only code path that changes Product.stock.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func

from ..errors import (
    LedgerInconsistencyError,
    OutOfStockError,
    ProductNotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Product, StockLedgerEntry
from ..models.inventory import (
    ENTRY_ADJUSTMENT,
    ENTRY_DAMAGE,
    ENTRY_PURCHASE,
    ENTRY_RETURN,
    ENTRY_SALE,
    ENTRY_TYPES,
)
from retailpos.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Stock Ledger Invariants (authoritative)

- Append-only: entries are never updated or deleted.
- Product.stock is a cache; the ledger is the audit trail.
- Every stock change writes exactly one entry in the same DB transaction.
- entry.balance == product.stock immediately after the entry.
- SUM(quantity) over a product's entries == product.stock at all times.
- Stock may never go negative; offending movements are rejected before
  anything is written.
- Ordering is (created_at, id), ascending unless the caller asks otherwise.
"""

logger = logging.getLogger("retailpos.ledger")

# Entry type -> required sign of quantity (0 = either, but non-zero)
_SIGN_RULES = {
    ENTRY_SALE: -1,
    ENTRY_DAMAGE: -1,
    ENTRY_PURCHASE: 1,
    ENTRY_RETURN: 1,
    ENTRY_ADJUSTMENT: 0,
}


@dataclass(frozen=True)
class ReconciliationResult:
    product_id: int
    stock: int
    ledger_balance: int
    last_entry_balance: int | None
    entry_count: int
    running_balance_ok: bool

    @property
    def consistent(self) -> bool:
        tail_ok = self.last_entry_balance is None or self.last_entry_balance == self.stock
        return self.stock == self.ledger_balance and tail_ok and self.running_balance_ok

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "stock": self.stock,
            "ledger_balance": self.ledger_balance,
            "last_entry_balance": self.last_entry_balance,
            "entry_count": self.entry_count,
            "consistent": self.consistent,
        }


def low_stock_crossed(previous: int, current: int, threshold: int) -> bool:
    """Edge trigger: true only on the transition from above threshold to at-or-below."""
    return previous > threshold >= current


def _validate_movement(entry_type: str, quantity: int) -> None:
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(
            f"Invalid stock movement type: {entry_type}",
            details={"allowed": list(ENTRY_TYPES)},
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity == 0:
        raise ValidationError("quantity must be non-zero")
    sign = _SIGN_RULES[entry_type]
    if sign > 0 and quantity < 0:
        raise ValidationError(f"{entry_type} movements must increase stock")
    if sign < 0 and quantity > 0:
        raise ValidationError(f"{entry_type} movements must decrease stock")


def last_entry(product_id: int) -> StockLedgerEntry | None:
    return (
        db.session.query(StockLedgerEntry)
        .filter(StockLedgerEntry.product_id == product_id)
        .order_by(StockLedgerEntry.id.desc())
        .first()
    )


def get_product_for_update(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def assert_tail_consistent(product: Product) -> None:
    """
    Cheap per-write check: the newest entry's balance must match the cached stock.

    A product with no entries must have zero stock.
    """
    last = last_entry(product.id)
    expected = last.balance if last is not None else 0
    if expected != product.stock:
        logger.error(
            "Ledger divergence on product %s: stock=%s ledger_tail=%s",
            product.id, product.stock, expected,
        )
        raise LedgerInconsistencyError(
            f"Stock ledger does not match stock for product {product.id}",
            details={"product_id": product.id, "stock": product.stock, "ledger_balance": expected},
        )


def apply_movement(
    product: Product,
    *,
    entry_type: str,
    quantity: int,
    reference: str | None,
    actor: str | None,
    note: str | None = None,
    occurred_at: datetime | None = None,
) -> StockLedgerEntry:
    """
    Core record logic for an already locked product, without commit.

    Called by record() and by the sale engine inside its own transaction.
    """
    _validate_movement(entry_type, quantity)
    assert_tail_consistent(product)

    new_stock = product.stock + quantity
    if new_stock < 0:
        raise OutOfStockError(
            f"Insufficient stock for product {product.id}",
            details={
                "product_id": product.id,
                "requested_quantity": -quantity,
                "on_hand": product.stock,
            },
        )

    product.stock = new_stock
    entry = StockLedgerEntry(
        product_id=product.id,
        type=entry_type,
        quantity=quantity,
        balance=new_stock,
        reference=reference,
        actor=actor,
        note=note,
        created_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()  # assigns entry.id and bumps product.version_id
    return entry


def record(
    product_id: int,
    entry_type: str,
    quantity: int,
    reference: str | None = None,
    actor: str | None = None,
    *,
    note: str | None = None,
    commit: bool = True,
) -> StockLedgerEntry:
    """
    Record one stock movement and update the product's stock.

    commit=True runs in its own serialized transaction with retry.
    commit=False joins the caller's transaction (the caller must already
    hold the write lock and is responsible for commit/rollback).
    """
    _validate_movement(entry_type, quantity)

    if not commit:
        product = get_product_for_update(product_id)
        return apply_movement(
            product,
            entry_type=entry_type,
            quantity=quantity,
            reference=reference,
            actor=actor,
            note=note,
        )

    def _op():
        begin_write()
        product = get_product_for_update(product_id)
        entry = apply_movement(
            product,
            entry_type=entry_type,
            quantity=quantity,
            reference=reference,
            actor=actor,
            note=note,
        )
        db.session.commit()
        return entry

    entry = run_with_retry(_op)
    logger.info(
        "Stock %s recorded for product %s: %+d -> %d (ref=%s)",
        entry.type, entry.product_id, entry.quantity, entry.balance, entry.reference,
    )
    return entry


def balance_of(product_id: int) -> int:
    """Ledger-derived stock: sum of all entry quantities for the product."""
    total = (
        db.session.query(func.coalesce(func.sum(StockLedgerEntry.quantity), 0))
        .filter(StockLedgerEntry.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def history(
    product_id: int | None = None,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    entry_type: str | None = None,
    reference: str | None = None,
    descending: bool = False,
):
    """
    Ledger entries as a lazy query.

    Iterating the result executes it; iterating again re-runs it, so the
    sequence is restartable. Bounds are inclusive on created_at.
    """
    q = db.session.query(StockLedgerEntry)
    if product_id is not None:
        q = q.filter(StockLedgerEntry.product_id == product_id)
    if start is not None:
        q = q.filter(StockLedgerEntry.created_at >= start)
    if end is not None:
        q = q.filter(StockLedgerEntry.created_at <= end)
    if entry_type is not None:
        if entry_type not in ENTRY_TYPES:
            raise ValidationError(f"Invalid stock movement type: {entry_type}")
        q = q.filter(StockLedgerEntry.type == entry_type)
    if reference is not None:
        q = q.filter(StockLedgerEntry.reference == reference)

    if descending:
        return q.order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
    return q.order_by(StockLedgerEntry.created_at.asc(), StockLedgerEntry.id.asc())


def replay(product_id: int) -> ReconciliationResult:
    """Replay a product's entries from the beginning and compare with its stock."""
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found", details={"product_id": product_id})

    running = 0
    count = 0
    running_ok = True
    last_balance = None
    for entry in history(product_id).yield_per(500):
        running += entry.quantity
        count += 1
        if entry.balance != running or running < 0:
            running_ok = False
        last_balance = entry.balance

    return ReconciliationResult(
        product_id=product.id,
        stock=product.stock,
        ledger_balance=running,
        last_entry_balance=last_balance,
        entry_count=count,
        running_balance_ok=running_ok,
    )


def verify_product(product_id: int) -> ReconciliationResult:
    """Replay and raise LedgerInconsistencyError on divergence."""
    result = replay(product_id)
    if not result.consistent:
        logger.error("Ledger replay mismatch: %s", result.to_dict())
        raise LedgerInconsistencyError(
            f"Stock ledger replay does not match stock for product {product_id}",
            details=result.to_dict(),
        )
    return result


def reconcile_all() -> list[ReconciliationResult]:
    """Replay every product; returns only the inconsistent ones."""
    product_ids = [row[0] for row in db.session.query(Product.id).order_by(Product.id).all()]
    mismatches = []
    for product_id in product_ids:
        result = replay(product_id)
        if not result.consistent:
            mismatches.append(result)
    if mismatches:
        logger.error("Ledger reconciliation found %d inconsistent products", len(mismatches))
    return mismatches
