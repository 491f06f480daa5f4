import pytest

from retailpos.errors import ValidationError
from retailpos.validation import (
    coerce_int,
    parse_adjustment,
    parse_member,
    parse_return,
    parse_sale_request,
    parse_stock_in,
)


@pytest.mark.parametrize("value,expected", [(3, 3), ("42", 42), (" -7 ", -7)])
def test_coerce_int_accepts(value, expected):
    assert coerce_int(value, "quantity") == expected


@pytest.mark.parametrize("value", [True, 1.0, "1.5", "1e3", "", "abc", None, [1]])
def test_coerce_int_rejects(value):
    with pytest.raises(ValidationError):
        coerce_int(value, "quantity")


def test_coerce_int_bounds():
    with pytest.raises(ValidationError):
        coerce_int(0, "quantity", minimum=1)
    with pytest.raises(ValidationError):
        coerce_int(11, "quantity", maximum=10)


def test_parse_sale_request():
    request = parse_sale_request({
        "items": [{"product_id": "1", "quantity": 2}, {"product_id": 2, "quantity": "1"}],
        "payment_method": "PromptPay",
        "member_phone": " 0812345678 ",
        "points_to_use": 5,
        "sale_id": "abc",
    })

    assert [(l.product_id, l.quantity) for l in request.lines] == [(1, 2), (2, 1)]
    assert request.payment_method == "promptpay"
    assert request.member_phone == "0812345678"
    assert request.points_to_use == 5
    assert request.discount_cents == 0
    assert request.tendered_cash_cents is None
    assert request.sale_id == "abc"


@pytest.mark.parametrize("payload", [
    None,
    [],
    {"payment_method": "cash"},
    {"items": "nope", "payment_method": "cash"},
    {"items": [1], "payment_method": "cash"},
    {"items": [{"product_id": 1, "quantity": 1}]},
    {"items": [{"product_id": 1, "quantity": 1}], "payment_method": "cash", "points_to_use": -1},
    {"items": [{"product_id": 1, "quantity": 1}], "payment_method": "cash", "total_cents": 1},
    {"items": [{"product_id": 1, "quantity": 1}], "payment_method": "cash", "sale_id": "x" * 37},
])
def test_parse_sale_request_rejects(payload):
    with pytest.raises(ValidationError):
        parse_sale_request(payload)


def test_parse_adjustment_defaults():
    adj = parse_adjustment({"product_id": 3, "quantity_delta": "-2"})
    assert adj.entry_type == "adjustment"
    assert adj.quantity_delta == -2


def test_parse_stock_in():
    data = parse_stock_in({"supplier_id": 1, "items": [{"product_id": 2, "quantity": 5}], "complete": True})
    assert data["items"] == [{"product_id": 2, "quantity": 5, "unit_cost_cents": 0}]
    assert data["complete"] is True

    with pytest.raises(ValidationError):
        parse_stock_in({"complete": "yes"})


def test_parse_return_and_member():
    assert parse_return({"items": [{"product_id": 1, "quantity": 1}]})["lines"] == [{"product_id": 1, "quantity": 1}]
    assert parse_member({"phone": "0812345678"}) == {"phone": "0812345678", "name": None}
    with pytest.raises(ValidationError):
        parse_member({"name": "No Phone"})
