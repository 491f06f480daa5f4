# Overview: Manual stock adjustments and per-product stock summaries.

"""
Inventory Adjustments

WHY: Counting corrections and write-offs (breakage, expiry) change stock
outside of sales and stock-in. They go through the same stock ledger path
so the audit trail stays complete.

- adjustment: signed, non-zero; count corrections
- damage: negative only; goods written off
"""

from __future__ import annotations

import logging

from flask import current_app

from ..errors import ValidationError
from ..events import LOW_STOCK_ALERT
from ..extensions import db, get_event_bus
from ..models.inventory import ENTRY_ADJUSTMENT, ENTRY_DAMAGE
from .concurrency import begin_write, run_with_retry
from .ledger_service import apply_movement, balance_of, get_product_for_update, last_entry, low_stock_crossed
from .catalog_service import get_product

logger = logging.getLogger("retailpos.inventory")

ADJUSTMENT_TYPES = (ENTRY_ADJUSTMENT, ENTRY_DAMAGE)


def adjust_stock(
    *,
    product_id: int,
    quantity_delta: int,
    entry_type: str = ENTRY_ADJUSTMENT,
    reference: str | None = None,
    actor: str | None = None,
    note: str | None = None,
    event_bus=None,
):
    """
    Post an adjustment or damage entry and return it.

    Stock may not go below zero (OutOfStockError). A movement that takes the
    product from above the low-stock threshold to at-or-below it publishes
    a low-stock alert after commit.
    """
    if entry_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"Invalid adjustment type: {entry_type}",
            details={"allowed": list(ADJUSTMENT_TYPES)},
        )
    threshold = int(current_app.config.get("LOW_STOCK_THRESHOLD", 5))

    def _op():
        begin_write()
        product = get_product_for_update(product_id)
        previous = product.stock
        entry = apply_movement(
            product,
            entry_type=entry_type,
            quantity=quantity_delta,
            reference=reference,
            actor=actor,
            note=note,
        )
        alert = None
        if low_stock_crossed(previous, product.stock, threshold):
            alert = {
                "product_id": product.id,
                "name": product.name,
                "stock": product.stock,
                "previous_stock": previous,
                "threshold": threshold,
                "reference": reference,
            }
        db.session.commit()
        return entry, alert

    entry, alert = run_with_retry(_op)
    logger.info(
        "Stock %s for product %s: %+d -> %d (actor=%s)",
        entry.type, entry.product_id, entry.quantity, entry.balance, actor,
    )
    if alert is not None:
        logger.warning("Low stock for product %s: %s remaining", alert["product_id"], alert["stock"])
        (event_bus or get_event_bus()).publish(LOW_STOCK_ALERT, alert)
    return entry


def stock_summary(product_id: int) -> dict:
    """Cached stock next to the ledger-derived balance."""
    product = get_product(product_id)
    ledger_balance = balance_of(product.id)
    last = last_entry(product.id)
    threshold = int(current_app.config.get("LOW_STOCK_THRESHOLD", 5))
    return {
        "product_id": product.id,
        "name": product.name,
        "stock": product.stock,
        "ledger_balance": ledger_balance,
        "last_movement_at": last.to_dict()["created_at"] if last else None,
        "consistent": ledger_balance == product.stock,
        "low_stock": product.stock <= threshold,
        "threshold": threshold,
    }
