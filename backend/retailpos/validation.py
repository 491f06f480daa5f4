from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ValidationError
from .models.inventory import ENTRY_ADJUSTMENT
from .services.sales_service import CartLine, SaleRequest


# Maximum amount: 9,999,999.99 (999,999,999 cents)
# Keeps arithmetic far from database integer overflow
MAX_AMOUNT_CENTS = 999_999_999


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion for JSON and query-string input.

    Accepts ints and plain-digit strings; rejects bools, floats, decimals and
    scientific notation ("1e3") so a typo never turns into a quantity.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} cannot exceed {maximum}")
    return result


def optional_int(payload: dict, field: str, **bounds) -> int | None:
    value = payload.get(field)
    if value is None or value == "":
        return None
    return coerce_int(value, field, **bounds)


def optional_str(payload: dict, field: str, *, max_length: int = 255) -> str | None:
    value = payload.get(field)
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if len(value) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return value


def require_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _require_list(payload: dict, field: str) -> list:
    value = payload.get(field)
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{field} must be a non-empty list")
    for entry in value:
        if not isinstance(entry, dict):
            raise ValidationError(f"Each entry in {field} must be an object")
    return value


def _reject_unknown(payload: dict, allowed: set[str]) -> None:
    for key in payload:
        if key not in allowed:
            raise ValidationError(f"Field not allowed: {key}")


# =============================================================================
# SALES
# =============================================================================

SALE_FIELDS = {
    "items",
    "payment_method",
    "member_id",
    "member_phone",
    "points_to_use",
    "discount_cents",
    "tendered_cash_cents",
    "cashier_id",
    "cashier_name",
    "sale_id",
}


def parse_sale_request(payload: Any) -> SaleRequest:
    """
    POST /api/sales body -> SaleRequest.

    {
      "items": [{"product_id": 1, "quantity": 2}],
      "payment_method": "cash",
      "tendered_cash_cents": 50000,
      "member_phone": "0812345678",
      "points_to_use": 0,
      "discount_cents": 0,
      "cashier_id": "c-1",
      "sale_id": "<uuid>"        # optional idempotency key
    }
    """
    payload = require_object(payload)
    _reject_unknown(payload, SALE_FIELDS)

    lines = tuple(
        CartLine(
            product_id=coerce_int(item.get("product_id"), "product_id", minimum=1),
            quantity=coerce_int(item.get("quantity"), "quantity", minimum=1),
        )
        for item in _require_list(payload, "items")
    )

    payment_method = optional_str(payload, "payment_method", max_length=32)
    if payment_method is None:
        raise ValidationError("payment_method is required")

    return SaleRequest(
        lines=lines,
        payment_method=payment_method.lower(),
        member_id=optional_int(payload, "member_id", minimum=1),
        member_phone=optional_str(payload, "member_phone", max_length=32),
        points_to_use=optional_int(payload, "points_to_use", minimum=0) or 0,
        discount_cents=optional_int(payload, "discount_cents", maximum=MAX_AMOUNT_CENTS) or 0,
        tendered_cash_cents=optional_int(payload, "tendered_cash_cents", minimum=0, maximum=MAX_AMOUNT_CENTS),
        cashier_id=optional_str(payload, "cashier_id", max_length=64),
        cashier_name=optional_str(payload, "cashier_name"),
        sale_id=optional_str(payload, "sale_id", max_length=36),
    )


# =============================================================================
# INVENTORY
# =============================================================================

@dataclass(frozen=True)
class AdjustmentRequest:
    product_id: int
    quantity_delta: int
    entry_type: str = ENTRY_ADJUSTMENT
    reference: str | None = None
    actor: str | None = None
    note: str | None = None


def parse_adjustment(payload: Any) -> AdjustmentRequest:
    payload = require_object(payload)
    _reject_unknown(payload, {"product_id", "quantity_delta", "type", "reference", "actor", "note"})

    quantity_delta = coerce_int(payload.get("quantity_delta"), "quantity_delta")
    if quantity_delta == 0:
        raise ValidationError("quantity_delta must be non-zero")

    return AdjustmentRequest(
        product_id=coerce_int(payload.get("product_id"), "product_id", minimum=1),
        quantity_delta=quantity_delta,
        entry_type=(optional_str(payload, "type", max_length=16) or ENTRY_ADJUSTMENT).lower(),
        reference=optional_str(payload, "reference", max_length=64),
        actor=optional_str(payload, "actor", max_length=64),
        note=optional_str(payload, "note"),
    )


def parse_stock_in_line(payload: Any) -> dict:
    payload = require_object(payload)
    return {
        "product_id": coerce_int(payload.get("product_id"), "product_id", minimum=1),
        "quantity": coerce_int(payload.get("quantity"), "quantity", minimum=1),
        "unit_cost_cents": optional_int(payload, "unit_cost_cents", minimum=0, maximum=MAX_AMOUNT_CENTS) or 0,
    }


def parse_stock_in(payload: Any) -> dict:
    payload = require_object(payload)
    _reject_unknown(payload, {"supplier_id", "items", "note", "actor", "complete"})

    items = [parse_stock_in_line(item) for item in payload.get("items") or []]
    complete = payload.get("complete", False)
    if not isinstance(complete, bool):
        raise ValidationError("complete must be a boolean")

    return {
        "supplier_id": optional_int(payload, "supplier_id", minimum=1),
        "items": items,
        "note": optional_str(payload, "note", max_length=2000),
        "actor": optional_str(payload, "actor", max_length=64),
        "complete": complete,
    }


def parse_return(payload: Any) -> dict:
    payload = require_object(payload)
    _reject_unknown(payload, {"items", "reason", "actor"})
    return {
        "lines": [
            {
                "product_id": coerce_int(item.get("product_id"), "product_id", minimum=1),
                "quantity": coerce_int(item.get("quantity"), "quantity", minimum=1),
            }
            for item in _require_list(payload, "items")
        ],
        "reason": optional_str(payload, "reason"),
        "actor": optional_str(payload, "actor", max_length=64),
    }


def parse_member(payload: Any) -> dict:
    payload = require_object(payload)
    _reject_unknown(payload, {"phone", "name"})
    phone = optional_str(payload, "phone", max_length=32)
    if phone is None:
        raise ValidationError("phone is required")
    return {"phone": phone, "name": optional_str(payload, "name")}


def parse_page_args(args) -> tuple[int | None, int | None]:
    """?page=&per_page= from a request.args mapping."""
    page = optional_int(args, "page", minimum=1)
    per_page = optional_int(args, "per_page", minimum=1)
    return page, per_page
