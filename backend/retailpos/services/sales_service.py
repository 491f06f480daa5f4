"""
Sales Service - sale commit transaction and Sale Store queries

WHY: A sale touches four stores at once (products, stock ledger, member,
sales). All of them share one database, so the apply phase is a single
transaction: either every effect exists or none does.

COMMIT PHASES:
1. Precheck (read-only): shape, products, stock, member, discount, points,
   cash. Fails fast before any payment is attempted.
2. Payment: delegated methods must be approved by the collaborator, outside
   any database lock and bounded by a timeout.
3. Apply (one write transaction, writers serialized): re-read stock and
   points under lock, re-validate, decrement stock + ledger entries, move
   member points, persist the sale. Any failure rolls everything back and
   cancels an approved payment.
4. Publish: events go to the sink only after the commit succeeded.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CartChangedError,
    DuplicateSaleError,
    InsufficientCashError,
    InsufficientPointsError,
    InvalidDiscountError,
    MemberNotFoundError,
    OutOfStockError,
    PaymentDeclinedError,
    PaymentTimeoutError,
    ProductNotFoundError,
    SaleNotFoundError,
    ValidationError,
)
from ..events import HIGH_VALUE_SALE, LOW_STOCK_ALERT, MEMBER_POINTS_CHANGED, NEW_SALE
from ..extensions import db, get_event_bus, get_payment_gateway
from ..models import Member, Product, Sale, SaleItem
from ..models.inventory import ENTRY_SALE
from ..models.sales import DELEGATED_PAYMENT_METHODS, PAYMENT_CASH, PAYMENT_METHODS
from retailpos.time_utils import utcnow
from . import member_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import DOC_SALE, next_document_number
from .ledger_service import apply_movement, low_stock_crossed
from .payment_service import PaymentRequest, PaymentResult, authorize_payment, cancel_payment

logger = logging.getLogger("retailpos.sales")


# =============================================================================
# REQUEST / RULES
# =============================================================================

@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class SaleRequest:
    lines: tuple[CartLine, ...]
    payment_method: str
    member_id: int | None = None
    member_phone: str | None = None
    points_to_use: int = 0
    discount_cents: int = 0
    tendered_cash_cents: int | None = None
    cashier_id: str | None = None
    cashier_name: str | None = None
    sale_id: str | None = None


@dataclass(frozen=True)
class PricingRules:
    point_value_cents: int = 100
    points_earn_unit_cents: int = 2000
    low_stock_threshold: int = 5
    high_value_threshold_cents: int = 5_000_000

    @classmethod
    def from_config(cls, config) -> "PricingRules":
        return cls(
            point_value_cents=int(config.get("POINT_VALUE_CENTS", 100)),
            points_earn_unit_cents=int(config.get("POINTS_EARN_UNIT_CENTS", 2000)),
            low_stock_threshold=int(config.get("LOW_STOCK_THRESHOLD", 5)),
            high_value_threshold_cents=int(config.get("HIGH_VALUE_SALE_THRESHOLD_CENTS", 5_000_000)),
        )


@dataclass(frozen=True)
class SaleTotals:
    subtotal_cents: int
    discount_cents: int
    points_used: int
    points_discount_cents: int
    total_cents: int
    points_earned: int
    cash_tendered_cents: int | None
    change_cents: int | None


@dataclass
class _Plan:
    lines: list[tuple[Product, int]]
    member: Member | None
    totals: SaleTotals
    previous_stock: dict[int, int] = field(default_factory=dict)


def calculate_points_earned(total_cents: int, earn_unit_cents: int) -> int:
    """One point per full earn unit of the final total (floor)."""
    if earn_unit_cents <= 0 or total_cents <= 0:
        return 0
    return total_cents // earn_unit_cents


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_lines(lines) -> list[CartLine]:
    """Validate quantities and merge repeated products, keeping first-seen order."""
    if not lines:
        raise ValidationError("Cart is empty")

    merged: dict[int, int] = {}
    for line in lines:
        if not _is_int(line.product_id):
            raise ValidationError("product_id must be an integer")
        if not _is_int(line.quantity) or line.quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                details={"product_id": line.product_id, "quantity": line.quantity},
            )
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return [CartLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def _validate_shape(request: SaleRequest) -> None:
    if request.payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {request.payment_method}",
            details={"allowed": list(PAYMENT_METHODS)},
        )
    if not _is_int(request.points_to_use) or request.points_to_use < 0:
        raise ValidationError("points_to_use must be a non-negative integer")
    if not _is_int(request.discount_cents):
        raise ValidationError("discount_cents must be an integer")
    if request.discount_cents < 0:
        raise InvalidDiscountError("Discount cannot be negative", details={"discount_cents": request.discount_cents})
    if request.tendered_cash_cents is not None and (
        not _is_int(request.tendered_cash_cents) or request.tendered_cash_cents < 0
    ):
        raise ValidationError("tendered_cash_cents must be a non-negative integer")
    if request.points_to_use and request.member_id is None and not request.member_phone:
        raise ValidationError("Points can only be redeemed by a member")
    if request.sale_id is not None and (not isinstance(request.sale_id, str) or not 0 < len(request.sale_id) <= 36):
        raise ValidationError("sale_id must be a string of at most 36 characters")


def compute_totals(
    priced_lines: list[tuple[int, int]],
    request: SaleRequest,
    rules: PricingRules,
    *,
    member_points: int | None,
) -> SaleTotals:
    """
    Pure pricing for a cart.

    priced_lines: (unit_price_cents, quantity) per line.
    member_points: the member's balance, or None when there is no member.
    """
    subtotal = sum(price * qty for price, qty in priced_lines)
    discount = request.discount_cents

    if discount < 0 or discount > subtotal:
        raise InvalidDiscountError(
            "Discount must be between zero and the subtotal",
            details={"discount_cents": discount, "subtotal_cents": subtotal},
        )

    points_used = request.points_to_use
    if points_used and member_points is None:
        raise ValidationError("Points can only be redeemed by a member")
    if member_points is not None and points_used > member_points:
        raise InsufficientPointsError(
            "Not enough points",
            details={"requested": points_used, "available": member_points},
        )

    points_discount = points_used * rules.point_value_cents
    payable = subtotal - discount
    if points_discount > payable:
        raise InvalidDiscountError(
            "Points redeemed exceed the payable amount",
            details={"points_discount_cents": points_discount, "payable_cents": payable},
        )

    total = payable - points_discount
    points_earned = calculate_points_earned(total, rules.points_earn_unit_cents) if member_points is not None else 0

    tendered = request.tendered_cash_cents
    change = None
    if request.payment_method == PAYMENT_CASH:
        if tendered is None:
            if total > 0:
                raise ValidationError("tendered_cash_cents is required for cash payments")
            tendered = 0
        if tendered < total:
            raise InsufficientCashError(
                "Cash tendered is less than the total",
                details={"tendered_cash_cents": tendered, "total_cents": total},
            )
        change = tendered - total
    else:
        tendered = None

    return SaleTotals(
        subtotal_cents=subtotal,
        discount_cents=discount,
        points_used=points_used,
        points_discount_cents=points_discount,
        total_cents=total,
        points_earned=points_earned,
        cash_tendered_cents=tendered,
        change_cents=change,
    )


# =============================================================================
# EVALUATION (shared by precheck and apply)
# =============================================================================

def _load_products(lines: list[CartLine], *, lock: bool) -> dict[int, Product]:
    ids = sorted(line.product_id for line in lines)
    # Lock in id order so concurrent commits cannot deadlock
    q = db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id.asc())
    if lock:
        q = lock_for_update(q)
    products = {p.id: p for p in q.all()}
    missing = [pid for pid in ids if pid not in products]
    if missing:
        raise ProductNotFoundError(
            f"Product {missing[0]} not found",
            details={"product_ids": missing},
        )
    inactive = [pid for pid in ids if not products[pid].is_active]
    if inactive:
        raise ProductNotFoundError(
            f"Product {inactive[0]} is not available for sale",
            details={"product_ids": inactive},
        )
    return products


def _resolve_member(request: SaleRequest, *, lock: bool) -> Member | None:
    if request.member_id is None and not request.member_phone:
        return None

    q = db.session.query(Member)
    if request.member_id is not None:
        q = q.filter(Member.id == request.member_id)
    else:
        q = q.filter(Member.phone == member_service.normalize_phone(request.member_phone))
    if lock:
        q = lock_for_update(q)
    member = q.first()
    if member is None:
        raise MemberNotFoundError(
            "Member not found",
            details={"member_id": request.member_id, "member_phone": request.member_phone},
        )
    if request.member_id is not None and request.member_phone:
        if member.phone != member_service.normalize_phone(request.member_phone):
            raise ValidationError("member_id and member_phone refer to different members")
    return member


def _evaluate(request: SaleRequest, lines: list[CartLine], rules: PricingRules, *, lock: bool) -> _Plan:
    products = _load_products(lines, lock=lock)

    insufficient = []
    for line in lines:
        product = products[line.product_id]
        if line.quantity > product.stock:
            insufficient.append({
                "product_id": product.id,
                "name": product.name,
                "requested_quantity": line.quantity,
                "on_hand": product.stock,
            })
    if insufficient:
        raise OutOfStockError(
            "Insufficient stock to complete sale",
            details={"items": insufficient},
        )

    member = _resolve_member(request, lock=lock)
    priced = [(products[line.product_id].price_cents, line.quantity) for line in lines]
    totals = compute_totals(
        priced,
        request,
        rules,
        member_points=member.points if member is not None else None,
    )

    return _Plan(
        lines=[(products[line.product_id], line.quantity) for line in lines],
        member=member,
        totals=totals,
        previous_stock={pid: p.stock for pid, p in products.items()},
    )


# =============================================================================
# COMMIT
# =============================================================================

def commit_sale(
    request: SaleRequest,
    *,
    gateway=None,
    event_bus=None,
    rules: PricingRules | None = None,
    payment_timeout: float | None = None,
) -> Sale:
    """
    Turn a cart plus payment choice into a committed Sale.

    Raises a PosError subclass on any failure; in that case no stock,
    ledger, member or sale change is visible.
    """
    config = current_app.config
    rules = rules or PricingRules.from_config(config)
    if payment_timeout is None:
        payment_timeout = float(config.get("PAYMENT_TIMEOUT_SECONDS", 15.0))

    _validate_shape(request)
    lines = normalize_lines(request.lines)
    sale_id = request.sale_id or str(uuid.uuid4())

    # Phase 1: precheck without locks
    try:
        if db.session.get(Sale, sale_id) is not None:
            raise DuplicateSaleError("Sale already committed", details={"sale_id": sale_id})
        plan = _evaluate(request, lines, rules, lock=False)
        expected_total = plan.totals.total_cents
    finally:
        db.session.rollback()

    # Phase 2: payment approval for delegated methods
    payment_request = None
    payment_result = None
    if request.payment_method in DELEGATED_PAYMENT_METHODS and expected_total > 0:
        gateway = gateway or get_payment_gateway()
        payment_request = PaymentRequest(
            reference=sale_id,
            method=request.payment_method,
            amount_cents=expected_total,
            cashier_id=request.cashier_id,
        )
        try:
            payment_result = authorize_payment(gateway, payment_request, timeout=payment_timeout)
        except PaymentTimeoutError:
            # A late approval may still land at the provider under this reference
            cancel_payment(gateway, payment_request, PaymentResult(approved=False, message="timed out"))
            raise
        if not payment_result.approved:
            logger.info("Payment declined for sale %s: %s", sale_id, payment_result.message)
            raise PaymentDeclinedError(
                payment_result.message or "Payment declined",
                details={"sale_id": sale_id, "payment_method": request.payment_method},
            )

    # Phase 3: apply atomically
    try:
        sale, events = run_with_retry(
            lambda: _apply(sale_id, request, lines, rules, payment_result, expected_total)
        )
    except DuplicateSaleError:
        # The authorization is shared with the sale that won under this id
        raise
    except Exception:
        if payment_result is not None and payment_result.approved:
            cancel_payment(gateway, payment_request, payment_result)
        raise

    logger.info(
        "Sale %s committed: receipt=%s total_cents=%s items=%d method=%s",
        sale.id, sale.receipt_number, sale.total_cents, len(lines), sale.payment_method,
    )

    # Phase 4: fire-and-forget notifications
    bus = event_bus or get_event_bus()
    for name, payload in events:
        bus.publish(name, payload)

    return sale


def _apply(
    sale_id: str,
    request: SaleRequest,
    lines: list[CartLine],
    rules: PricingRules,
    payment_result: PaymentResult | None,
    expected_total: int,
) -> tuple[Sale, list[tuple[str, dict]]]:
    begin_write()

    if db.session.get(Sale, sale_id) is not None:
        raise DuplicateSaleError("Sale already committed", details={"sale_id": sale_id})

    plan = _evaluate(request, lines, rules, lock=True)
    totals = plan.totals
    if payment_result is not None and totals.total_cents != expected_total:
        raise CartChangedError(
            "Total changed after payment approval",
            details={"approved_cents": expected_total, "total_cents": totals.total_cents},
        )

    now = utcnow()
    member = plan.member
    sale = Sale(
        id=sale_id,
        receipt_number=next_document_number(document_type=DOC_SALE),
        subtotal_cents=totals.subtotal_cents,
        discount_cents=totals.discount_cents,
        points_used=totals.points_used,
        points_discount_cents=totals.points_discount_cents,
        total_cents=totals.total_cents,
        points_earned=totals.points_earned,
        payment_method=request.payment_method,
        payment_reference=payment_result.authorization if payment_result else None,
        cash_tendered_cents=totals.cash_tendered_cents,
        change_cents=totals.change_cents,
        cashier_id=request.cashier_id,
        cashier_name=request.cashier_name,
        member_id=member.id if member else None,
        member_phone=member.phone if member else None,
        created_at=now,
    )
    for number, (product, quantity) in enumerate(plan.lines, start=1):
        sale.items.append(SaleItem(
            line_number=number,
            product_id=product.id,
            name=product.name,
            quantity=quantity,
            unit_price_cents=product.price_cents,
            line_total_cents=product.price_cents * quantity,
        ))
    db.session.add(sale)
    db.session.flush()

    events: list[tuple[str, dict]] = []

    for product, quantity in plan.lines:
        previous = product.stock
        apply_movement(
            product,
            entry_type=ENTRY_SALE,
            quantity=-quantity,
            reference=sale_id,
            actor=request.cashier_id,
            note=f"Sale {sale.receipt_number}",
            occurred_at=now,
        )
        if low_stock_crossed(previous, product.stock, rules.low_stock_threshold):
            logger.warning("Low stock for %s (id=%s): %s remaining", product.name, product.id, product.stock)
            events.append((LOW_STOCK_ALERT, {
                "product_id": product.id,
                "name": product.name,
                "stock": product.stock,
                "previous_stock": previous,
                "threshold": rules.low_stock_threshold,
                "sale_id": sale_id,
            }))

    if member is not None:
        points_before = member.points
        if totals.points_used:
            member_service.debit(member.id, totals.points_used, sale_id=sale_id, commit=False)
        member_service.credit(
            member.id,
            totals.points_earned,
            totals.total_cents,
            sale_id=sale_id,
            commit=False,
        )
        if totals.points_used or totals.points_earned:
            events.append((MEMBER_POINTS_CHANGED, {
                "member_id": member.id,
                "phone": member.phone,
                "previous_points": points_before,
                "points": member.points,
                "points_used": totals.points_used,
                "points_earned": totals.points_earned,
                "sale_id": sale_id,
            }))

    sale_payload = sale.to_dict()
    events.insert(0, (NEW_SALE, sale_payload))
    if totals.total_cents > rules.high_value_threshold_cents:
        events.insert(1, (HIGH_VALUE_SALE, {
            "sale_id": sale_id,
            "receipt_number": sale.receipt_number,
            "total_cents": totals.total_cents,
            "threshold_cents": rules.high_value_threshold_cents,
            "cashier_id": request.cashier_id,
        }))

    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if db.session.get(Sale, sale_id) is not None:
            raise DuplicateSaleError("Sale already committed", details={"sale_id": sale_id}) from exc
        raise

    return sale, events


# =============================================================================
# SALE STORE QUERIES
# =============================================================================

def get_sale(sale_id: str) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise SaleNotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def query_sales(
    *,
    start=None,
    end=None,
    descending: bool = False,
    payment_method: str | None = None,
    member_id: int | None = None,
    cashier_id: str | None = None,
):
    """
    Committed sales ordered by created_at, inclusive bounds.

    Returns a lazy query; iterating re-executes it.
    """
    q = db.session.query(Sale)
    if start is not None:
        q = q.filter(Sale.created_at >= start)
    if end is not None:
        q = q.filter(Sale.created_at <= end)
    if payment_method is not None:
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Invalid payment method: {payment_method}")
        q = q.filter(Sale.payment_method == payment_method)
    if member_id is not None:
        q = q.filter(Sale.member_id == member_id)
    if cashier_id is not None:
        q = q.filter(Sale.cashier_id == cashier_id)

    if descending:
        return q.order_by(Sale.created_at.desc(), Sale.id.desc())
    return q.order_by(Sale.created_at.asc(), Sale.id.asc())


def sales_summary(*, start=None, end=None) -> dict:
    """Raw aggregation over committed sales in the range."""
    base = db.session.query(Sale)
    if start is not None:
        base = base.filter(Sale.created_at >= start)
    if end is not None:
        base = base.filter(Sale.created_at <= end)

    totals = base.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.subtotal_cents), 0),
        func.coalesce(func.sum(Sale.discount_cents), 0),
        func.coalesce(func.sum(Sale.points_used), 0),
        func.coalesce(func.sum(Sale.points_earned), 0),
        func.coalesce(func.sum(Sale.total_cents), 0),
    ).one()

    by_method = base.with_entities(
        Sale.payment_method,
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
    ).group_by(Sale.payment_method).all()

    count = int(totals[0] or 0)
    revenue = int(totals[5] or 0)
    return {
        "sales_count": count,
        "subtotal_cents": int(totals[1] or 0),
        "discount_cents": int(totals[2] or 0),
        "points_used": int(totals[3] or 0),
        "points_earned": int(totals[4] or 0),
        "revenue_cents": revenue,
        "average_sale_cents": (revenue // count) if count else 0,
        "by_payment_method": {
            method: {"sales_count": int(n), "revenue_cents": int(amount)}
            for method, n, amount in by_method
        },
    }
