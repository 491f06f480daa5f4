from __future__ import annotations

from ..extensions import db
from retailpos.time_utils import to_utc_z


PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_BANK_TRANSFER = "bank_transfer"
PAYMENT_PROMPTPAY = "promptpay"

PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_CARD, PAYMENT_BANK_TRANSFER, PAYMENT_PROMPTPAY)

# Settled by the external payment collaborator
DELEGATED_PAYMENT_METHODS = (PAYMENT_CARD, PAYMENT_BANK_TRANSFER, PAYMENT_PROMPTPAY)


class Sale(db.Model):
    """
    Committed sale (immutable).

    WHY: A sale row only exists once the whole commit succeeded: stock
    decremented, ledger written, member updated. There is no draft state and
    no update/delete path; corrections are returns or stock adjustments.

    Item names and prices are snapshots so later catalog edits never
    rewrite history.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.CheckConstraint("total_cents >= 0", name="ck_sales_total_non_negative"),
        db.Index("ix_sales_created_at", "created_at"),
        db.Index("ix_sales_member_created", "member_id", "created_at"),
    )

    # Opaque UUID; doubles as the client's idempotency key
    id = db.Column(db.String(36), primary_key=True)

    # Human-readable receipt number (e.g., "S-000123")
    receipt_number = db.Column(db.String(64), nullable=False, unique=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    points_used = db.Column(db.Integer, nullable=False, default=0)
    points_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    points_earned = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False, index=True)
    payment_reference = db.Column(db.String(128), nullable=True)
    cash_tendered_cents = db.Column(db.Integer, nullable=True)
    change_cents = db.Column(db.Integer, nullable=True)

    cashier_id = db.Column(db.String(64), nullable=True, index=True)
    cashier_name = db.Column(db.String(255), nullable=True)

    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=True)
    member_phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        order_by="SaleItem.line_number",
    )
    member = db.relationship("Member")

    def __repr__(self) -> str:
        return f"<Sale id={self.id} receipt={self.receipt_number} total_cents={self.total_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "items": [item.to_dict() for item in self.items],
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "points_used": self.points_used,
            "points_discount_cents": self.points_discount_cents,
            "total_cents": self.total_cents,
            "points_earned": self.points_earned,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "cash_tendered_cents": self.cash_tendered_cents,
            "change_cents": self.change_cents,
            "cashier_id": self.cashier_id,
            "cashier_name": self.cashier_name,
            "member_id": self.member_id,
            "member_phone": self.member_phone,
            "created_at": to_utc_z(self.created_at),
        }


class SaleItem(db.Model):
    """Snapshot of one cart line at commit time."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_items_sale_line"),
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.String(36), db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class SaleReturn(db.Model):
    """
    Compensating document for goods brought back against a committed sale.

    Each line posts a 'return' stock ledger entry referencing the sale id.
    """
    __tablename__ = "sale_returns"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False, unique=True)
    sale_id = db.Column(db.String(36), db.ForeignKey("sales.id"), nullable=False, index=True)

    reason = db.Column(db.String(255), nullable=True)
    refund_cents = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    lines = db.relationship("SaleReturnLine", backref="sale_return", lazy=True, order_by="SaleReturnLine.id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "sale_id": self.sale_id,
            "reason": self.reason,
            "refund_cents": self.refund_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleReturnLine(db.Model):
    __tablename__ = "sale_return_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_return_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("sale_returns.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey("stock_ledger_entries.id"), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_refund_cents": self.quantity * self.unit_price_cents,
            "ledger_entry_id": self.ledger_entry_id,
        }
