"""
Sale commit tests: happy paths, every rejection path, and the guarantee
that a failed commit leaves no trace in stock, ledger, members or sales.
"""

import pytest

from retailpos.errors import (
    CartChangedError,
    DuplicateSaleError,
    InsufficientCashError,
    InsufficientPointsError,
    InvalidDiscountError,
    MemberNotFoundError,
    OutOfStockError,
    PaymentDeclinedError,
    PaymentTimeoutError,
    PaymentUnavailableError,
    ProductNotFoundError,
    SaleNotFoundError,
    ValidationError,
)
from retailpos.events import HIGH_VALUE_SALE, LOW_STOCK_ALERT, MEMBER_POINTS_CHANGED, NEW_SALE
from retailpos.models import Member, MemberPointsEntry, Product, Sale, StockLedgerEntry
from retailpos.models.inventory import ENTRY_SALE
from retailpos.services import ledger_service, member_service, sales_service
from retailpos.services.payment_service import PaymentResult
from retailpos.services.sales_service import (
    CartLine,
    PricingRules,
    SaleRequest,
    calculate_points_earned,
    commit_sale,
    compute_totals,
)

from conftest import FakeGateway


def cash_sale(*lines, tendered=None, **kwargs):
    return SaleRequest(
        lines=tuple(CartLine(product_id=pid, quantity=qty) for pid, qty in lines),
        payment_method="cash",
        tendered_cash_cents=tendered,
        **kwargs,
    )


def card_sale(*lines, **kwargs):
    return SaleRequest(
        lines=tuple(CartLine(product_id=pid, quantity=qty) for pid, qty in lines),
        payment_method="card",
        **kwargs,
    )


def sale_entries(product_id):
    return ledger_service.history(product_id, entry_type=ENTRY_SALE).all()


def assert_nothing_committed(db_session, product_ids, stocks):
    assert db_session.query(Sale).count() == 0
    for product_id, stock in zip(product_ids, stocks):
        assert db_session.get(Product, product_id).stock == stock
        assert sale_entries(product_id) == []
        ledger_service.verify_product(product_id)


# =============================================================================
# PRICING (pure)
# =============================================================================

class TestPricing:
    rules = PricingRules()

    def test_points_earned_is_floored(self):
        assert calculate_points_earned(43300, 2000) == 21
        assert calculate_points_earned(1999, 2000) == 0
        assert calculate_points_earned(4000, 2000) == 2
        assert calculate_points_earned(0, 2000) == 0

    def test_totals_with_discount_and_points(self):
        request = cash_sale((1, 1), tendered=5000, discount_cents=500, points_to_use=10)
        totals = compute_totals([(2500, 2)], request, self.rules, member_points=50)

        assert totals.subtotal_cents == 5000
        assert totals.points_discount_cents == 1000
        assert totals.total_cents == 3500
        assert totals.points_earned == 1
        assert totals.change_cents == 1500

    def test_no_member_earns_nothing(self):
        request = cash_sale((1, 1), tendered=100000)
        totals = compute_totals([(100000, 1)], request, self.rules, member_points=None)
        assert totals.points_earned == 0

    def test_points_beyond_payable_rejected(self):
        request = cash_sale((1, 1), tendered=0, points_to_use=20)
        with pytest.raises(InvalidDiscountError):
            compute_totals([(1000, 1)], request, self.rules, member_points=100)

    def test_card_ignores_tendered_cash(self):
        request = card_sale((1, 1), tendered_cash_cents=999)
        totals = compute_totals([(1000, 1)], request, self.rules, member_points=None)
        assert totals.cash_tendered_cents is None
        assert totals.change_cents is None


# =============================================================================
# COMMIT: HAPPY PATHS
# =============================================================================

def test_sale_decrements_stock_and_writes_ledger(db_session, make_product):
    product = make_product(stock=5, price_cents=1000)

    sale = commit_sale(cash_sale((product.id, 3), tendered=3000))

    assert db_session.get(Product, product.id).stock == 2
    entries = sale_entries(product.id)
    assert len(entries) == 1
    assert entries[0].quantity == -3
    assert entries[0].balance == 2
    assert entries[0].reference == sale.id
    assert sale.total_cents == 3000
    assert sale.receipt_number.startswith("S-")


def test_out_of_stock_rejects_without_side_effects(db_session, make_product):
    product = make_product(stock=2)

    with pytest.raises(OutOfStockError) as exc:
        commit_sale(cash_sale((product.id, 3), tendered=100000))

    item = exc.value.details["items"][0]
    assert item["product_id"] == product.id
    assert item["requested_quantity"] == 3
    assert item["on_hand"] == 2
    assert_nothing_committed(db_session, [product.id], [2])


def test_insufficient_points_rejected(db_session, make_product, make_member):
    product = make_product(price_cents=50000)
    member = make_member(points=100)

    with pytest.raises(InsufficientPointsError):
        commit_sale(cash_sale((product.id, 1), tendered=50000, member_id=member.id, points_to_use=150))

    assert db_session.get(Member, member.id).points == 100
    assert_nothing_committed(db_session, [product.id], [10])


def test_cash_change(db_session, make_product):
    product = make_product(price_cents=43300)

    sale = commit_sale(cash_sale((product.id, 1), tendered=50000))

    assert sale.total_cents == 43300
    assert sale.cash_tendered_cents == 50000
    assert sale.change_cents == 6700


def test_exact_stock_can_be_sold_out(db_session, make_product):
    product = make_product(stock=3)
    commit_sale(cash_sale((product.id, 3), tendered=3000))
    assert db_session.get(Product, product.id).stock == 0


def test_multi_line_sale_snapshots_items(db_session, make_product):
    rice = make_product(name="Rice", price_cents=18500, stock=10)
    water = make_product(name="Water", price_cents=1400, stock=10)

    sale = commit_sale(cash_sale((water.id, 2), (rice.id, 1), tendered=30000))

    assert [i.product_id for i in sale.items] == [water.id, rice.id]
    assert [i.line_number for i in sale.items] == [1, 2]
    assert sale.subtotal_cents == 18500 + 2 * 1400
    assert sale.items[0].name == "Water"
    assert sale.items[0].line_total_cents == 2800


def test_repeated_product_lines_are_merged(db_session, make_product):
    product = make_product(stock=10)

    sale = commit_sale(cash_sale((product.id, 1), (product.id, 2), tendered=3000))

    assert len(sale.items) == 1
    assert sale.items[0].quantity == 3
    assert db_session.get(Product, product.id).stock == 7
    assert len(sale_entries(product.id)) == 1


def test_member_redeems_and_earns_points(db_session, make_product, make_member):
    product = make_product(price_cents=2500)
    member = make_member(points=50)

    sale = commit_sale(cash_sale(
        (product.id, 2), tendered=4000, member_id=member.id, points_to_use=10,
    ))

    assert sale.points_used == 10
    assert sale.points_discount_cents == 1000
    assert sale.total_cents == 4000
    assert sale.points_earned == 2

    member = db_session.get(Member, member.id)
    assert member.points == 50 - 10 + 2
    assert member.total_spent_cents == 4000
    assert member.last_visit_at is not None

    entries = (
        db_session.query(MemberPointsEntry)
        .filter_by(member_id=member.id)
        .order_by(MemberPointsEntry.id)
        .all()
    )
    assert [(e.type, e.points, e.balance) for e in entries] == [("redeem", -10, 40), ("earn", 2, 42)]
    assert all(e.sale_id == sale.id for e in entries)


def test_member_resolved_by_phone(db_session, make_product, make_member):
    product = make_product(price_cents=43300)
    member = make_member(phone="0812345678")

    sale = commit_sale(cash_sale((product.id, 1), tendered=50000, member_phone="081-234-5678"))

    assert sale.member_id == member.id
    assert sale.points_earned == 21
    assert db_session.get(Member, member.id).points == 21


def test_card_sale_records_authorization(db_session, make_product, gateway):
    product = make_product(price_cents=1500)

    sale = commit_sale(card_sale((product.id, 2), cashier_id="c-1"), gateway=gateway)

    assert len(gateway.authorized) == 1
    request = gateway.authorized[0]
    assert request.reference == sale.id
    assert request.amount_cents == 3000
    assert sale.payment_reference == "AUTH-1"
    assert sale.cash_tendered_cents is None


def test_zero_total_skips_payment(db_session, make_product, make_member, gateway):
    product = make_product(price_cents=1000)
    member = make_member(points=10)

    sale = commit_sale(card_sale((product.id, 1), member_id=member.id, points_to_use=10), gateway=gateway)

    assert sale.total_cents == 0
    assert gateway.authorized == []


def test_client_supplied_sale_id_is_kept(db_session, make_product):
    product = make_product()
    sale = commit_sale(cash_sale((product.id, 1), tendered=1000, sale_id="till-7-0001"))
    assert sale.id == "till-7-0001"
    assert sales_service.get_sale("till-7-0001").receipt_number == sale.receipt_number


# =============================================================================
# COMMIT: REJECTIONS
# =============================================================================

def test_duplicate_sale_id_rejected(db_session, make_product):
    product = make_product(stock=10)
    commit_sale(cash_sale((product.id, 1), tendered=1000, sale_id="dup-1"))

    with pytest.raises(DuplicateSaleError):
        commit_sale(cash_sale((product.id, 1), tendered=1000, sale_id="dup-1"))

    assert db_session.get(Product, product.id).stock == 9
    assert db_session.query(Sale).count() == 1


def test_insufficient_cash(db_session, make_product):
    product = make_product(price_cents=43300)
    with pytest.raises(InsufficientCashError) as exc:
        commit_sale(cash_sale((product.id, 1), tendered=40000))
    assert exc.value.details == {"tendered_cash_cents": 40000, "total_cents": 43300}
    assert_nothing_committed(db_session, [product.id], [10])


def test_cash_without_tendered_amount(db_session, make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        commit_sale(cash_sale((product.id, 1)))


@pytest.mark.parametrize("discount", [-1, 1001])
def test_discount_out_of_range(db_session, make_product, discount):
    product = make_product(price_cents=1000)
    with pytest.raises(InvalidDiscountError):
        commit_sale(cash_sale((product.id, 1), tendered=1000, discount_cents=discount))
    assert_nothing_committed(db_session, [product.id], [10])


def test_unknown_product(db_session, make_product):
    product = make_product()
    with pytest.raises(ProductNotFoundError):
        commit_sale(cash_sale((product.id, 1), (999999, 1), tendered=100000))
    assert_nothing_committed(db_session, [product.id], [10])


def test_inactive_product_cannot_be_sold(db_session, make_product):
    product = make_product()
    product.is_active = False
    db_session.commit()
    with pytest.raises(ProductNotFoundError):
        commit_sale(cash_sale((product.id, 1), tendered=1000))


def test_unknown_member(db_session, make_product):
    product = make_product()
    with pytest.raises(MemberNotFoundError):
        commit_sale(cash_sale((product.id, 1), tendered=1000, member_phone="0899999999"))


@pytest.mark.parametrize("request_kwargs", [
    {"lines": ()},
    {"lines": (CartLine(product_id=1, quantity=0),)},
    {"lines": (CartLine(product_id=1, quantity=-2),)},
    {"lines": (CartLine(product_id=1, quantity=1),), "payment_method": "crypto"},
    {"lines": (CartLine(product_id=1, quantity=1),), "points_to_use": 5},
])
def test_malformed_requests(db_session, request_kwargs):
    kwargs = {"payment_method": "cash", "tendered_cash_cents": 1000}
    kwargs.update(request_kwargs)
    with pytest.raises(ValidationError):
        commit_sale(SaleRequest(**kwargs))


def test_payment_declined(db_session, make_product, events):
    product = make_product()
    gateway = FakeGateway(approve=False, message="Do not honor")

    with pytest.raises(PaymentDeclinedError) as exc:
        commit_sale(card_sale((product.id, 1)), gateway=gateway)

    assert exc.value.message == "Do not honor"
    assert gateway.cancelled == []
    assert events.events == []
    assert_nothing_committed(db_session, [product.id], [10])


def test_payment_timeout(db_session, make_product):
    product = make_product()
    gateway = FakeGateway(delay=1.0)

    with pytest.raises(PaymentTimeoutError):
        commit_sale(card_sale((product.id, 1)), gateway=gateway, payment_timeout=0.1)

    assert len(gateway.cancelled) == 1
    voided_request, voided_result = gateway.cancelled[0]
    assert voided_request.reference == gateway.authorized[0].reference
    assert voided_result.authorization is None
    assert_nothing_committed(db_session, [product.id], [10])


def test_payment_provider_failure(db_session, make_product):
    product = make_product()
    gateway = FakeGateway(error=RuntimeError("socket closed"))

    with pytest.raises(PaymentUnavailableError):
        commit_sale(card_sale((product.id, 1)), gateway=gateway)

    assert_nothing_committed(db_session, [product.id], [10])


def test_price_change_after_approval_cancels_payment(db_session, make_product, gateway, monkeypatch):
    product = make_product(price_cents=1000)
    product_id = product.id

    def approve_then_reprice(gw, request, *, timeout):
        db_session.get(Product, product_id).price_cents = 1200
        db_session.commit()
        return gw.authorize(request)

    monkeypatch.setattr(sales_service, "authorize_payment", approve_then_reprice)

    with pytest.raises(CartChangedError):
        commit_sale(card_sale((product_id, 1)), gateway=gateway)

    assert len(gateway.cancelled) == 1
    assert_nothing_committed(db_session, [product_id], [10])


def test_resubmitted_sale_keeps_winning_payment(db_session, make_product, gateway, monkeypatch):
    product = make_product(price_cents=1000, stock=10)
    product_id = product.id

    def approve_after_twin_commits(gw, request, *, timeout):
        commit_sale(cash_sale((product_id, 1), tendered=1000, sale_id=request.reference))
        return gw.authorize(request)

    monkeypatch.setattr(sales_service, "authorize_payment", approve_after_twin_commits)

    with pytest.raises(DuplicateSaleError):
        commit_sale(card_sale((product_id, 1), sale_id="S1"), gateway=gateway)

    assert db_session.get(Sale, "S1") is not None
    assert gateway.cancelled == []
    assert db_session.get(Product, product_id).stock == 9


# =============================================================================
# ATOMICITY
# =============================================================================

def test_failure_mid_apply_rolls_back_everything(db_session, make_product, make_member, gateway, events, monkeypatch):
    rice = make_product(price_cents=2000, stock=10)
    water = make_product(price_cents=1000, stock=10)
    member = make_member(points=30)

    def broken_credit(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(member_service, "credit", broken_credit)

    with pytest.raises(RuntimeError):
        commit_sale(
            card_sale((rice.id, 2), (water.id, 1), member_id=member.id, points_to_use=5),
            gateway=gateway,
        )

    assert_nothing_committed(db_session, [rice.id, water.id], [10, 10])
    member = db_session.get(Member, member.id)
    assert member.points == 30
    assert db_session.query(MemberPointsEntry).count() == 0
    assert len(gateway.cancelled) == 1
    assert events.events == []


def test_failed_commit_does_not_consume_receipt_number(db_session, make_product):
    product = make_product(price_cents=1000, stock=10)
    with pytest.raises(InsufficientCashError):
        commit_sale(cash_sale((product.id, 1), tendered=10))

    sale = commit_sale(cash_sale((product.id, 1), tendered=1000))
    assert sale.receipt_number == "S-000001"


def test_ledger_sums_match_stock_after_sales(db_session, make_product):
    product = make_product(stock=20)
    for qty in (3, 1, 4):
        commit_sale(cash_sale((product.id, qty), tendered=10000))

    result = ledger_service.verify_product(product.id)
    assert result.stock == 12
    assert result.ledger_balance == 12
    assert db_session.query(StockLedgerEntry).filter_by(product_id=product.id).count() == 4


# =============================================================================
# EVENTS
# =============================================================================

def test_new_sale_event_published_after_commit(db_session, make_product, events):
    product = make_product(stock=20)

    sale = commit_sale(cash_sale((product.id, 1), tendered=1000))

    assert events.names() == [NEW_SALE]
    payload = events.of(NEW_SALE)[0]
    assert payload["id"] == sale.id
    assert payload["total_cents"] == 1000


def test_low_stock_alert_fires_on_crossing_only(db_session, make_product, events):
    product = make_product(stock=8)

    commit_sale(cash_sale((product.id, 2), tendered=10000))  # 8 -> 6
    assert events.of(LOW_STOCK_ALERT) == []

    commit_sale(cash_sale((product.id, 2), tendered=10000))  # 6 -> 4
    alerts = events.of(LOW_STOCK_ALERT)
    assert len(alerts) == 1
    assert alerts[0]["product_id"] == product.id
    assert alerts[0]["stock"] == 4

    commit_sale(cash_sale((product.id, 1), tendered=10000))  # 4 -> 3
    assert len(events.of(LOW_STOCK_ALERT)) == 1


def test_high_value_sale_event(db_session, make_product, events):
    product = make_product(price_cents=5_000_001, stock=2)

    commit_sale(cash_sale((product.id, 1), tendered=5_000_001))

    assert events.names()[:2] == [NEW_SALE, HIGH_VALUE_SALE]
    assert events.of(HIGH_VALUE_SALE)[0]["total_cents"] == 5_000_001


def test_threshold_total_is_not_high_value(db_session, make_product, events):
    product = make_product(price_cents=5_000_000, stock=2)
    commit_sale(cash_sale((product.id, 1), tendered=5_000_000))
    assert events.of(HIGH_VALUE_SALE) == []


def test_member_points_event(db_session, make_product, make_member, events):
    product = make_product(price_cents=4000)
    member = make_member(points=0)

    commit_sale(cash_sale((product.id, 1), tendered=4000, member_id=member.id))

    payload = events.of(MEMBER_POINTS_CHANGED)[0]
    assert payload["member_id"] == member.id
    assert payload["previous_points"] == 0
    assert payload["points"] == 2


def test_failing_subscriber_does_not_break_commit(app, db_session, make_product):
    product = make_product()
    bus = app.extensions["retailpos.event_bus"]

    def explode(event):
        raise RuntimeError("subscriber down")

    unsubscribe = bus.subscribe(NEW_SALE, explode)
    try:
        sale = commit_sale(cash_sale((product.id, 1), tendered=1000))
    finally:
        unsubscribe()

    assert db_session.get(Sale, sale.id) is not None


# =============================================================================
# SALE STORE QUERIES
# =============================================================================

def test_get_sale_not_found(db_session):
    with pytest.raises(SaleNotFoundError):
        sales_service.get_sale("missing")


def test_query_sales_range_is_inclusive_and_ordered(db_session, make_product):
    product = make_product(stock=10)
    first = commit_sale(cash_sale((product.id, 1), tendered=1000))
    second = commit_sale(cash_sale((product.id, 2), tendered=2000))

    first_at = db_session.get(Sale, first.id).created_at
    second_at = db_session.get(Sale, second.id).created_at

    ids = [s.id for s in sales_service.query_sales(start=first_at, end=second_at)]
    assert ids == [first.id, second.id]

    ids_desc = [s.id for s in sales_service.query_sales(descending=True)]
    assert ids_desc == [second.id, first.id]

    only_first = [s.id for s in sales_service.query_sales(start=first_at, end=first_at)]
    assert first.id in only_first


def test_query_is_restartable(db_session, make_product):
    product = make_product(stock=10)
    commit_sale(cash_sale((product.id, 1), tendered=1000))

    q = sales_service.query_sales()
    assert [s.id for s in q] == [s.id for s in q]


def test_sales_summary(db_session, make_product, make_member, gateway):
    product = make_product(price_cents=2000, stock=20)
    member = make_member(points=5)

    commit_sale(cash_sale((product.id, 1), tendered=2000))
    commit_sale(card_sale((product.id, 2), member_id=member.id, points_to_use=5), gateway=gateway)

    summary = sales_service.sales_summary()
    assert summary["sales_count"] == 2
    assert summary["revenue_cents"] == 2000 + 3500
    assert summary["points_used"] == 5
    assert summary["points_earned"] == 1
    assert summary["by_payment_method"]["cash"] == {"sales_count": 1, "revenue_cents": 2000}
    assert summary["by_payment_method"]["card"] == {"sales_count": 1, "revenue_cents": 3500}


def test_sales_summary_empty(db_session):
    summary = sales_service.sales_summary()
    assert summary["sales_count"] == 0
    assert summary["average_sale_cents"] == 0
    assert summary["by_payment_method"] == {}
