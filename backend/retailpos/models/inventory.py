from __future__ import annotations

from ..extensions import db
from retailpos.time_utils import to_utc_z


ENTRY_SALE = "sale"
ENTRY_PURCHASE = "purchase"
ENTRY_ADJUSTMENT = "adjustment"
ENTRY_RETURN = "return"
ENTRY_DAMAGE = "damage"

ENTRY_TYPES = (ENTRY_SALE, ENTRY_PURCHASE, ENTRY_ADJUSTMENT, ENTRY_RETURN, ENTRY_DAMAGE)


class StockLedgerEntry(db.Model):
    """
    Append-only stock movement.

    INVARIANTS:
    - quantity is signed (negative = decrease)
    - balance is the product's stock immediately after this entry
    - SUM(quantity) over a product's entries == products.stock
    - rows are never updated or deleted; corrections are new entries

    Ordering is (created_at, id); id breaks ties inside one transaction.
    """
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_stock_ledger_balance_non_negative"),
        db.CheckConstraint("quantity <> 0", name="ck_stock_ledger_quantity_non_zero"),
        db.Index("ix_stock_ledger_product_created", "product_id", "created_at", "id"),
        db.Index("ix_stock_ledger_reference", "reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # sale, purchase, adjustment, return, damage
    type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    balance = db.Column(db.Integer, nullable=False)

    # Causing document: sale id, stock-in document number, adjustment reference
    reference = db.Column(db.String(64), nullable=True)
    actor = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("ledger_entries", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<StockLedgerEntry id={self.id} product_id={self.product_id} "
            f"type={self.type} quantity={self.quantity} balance={self.balance}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity": self.quantity,
            "balance": self.balance,
            "reference": self.reference,
            "actor": self.actor,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


class StockInDocument(db.Model):
    """
    Stock-in (purchase receiving) document.

    LIFECYCLE:
    1. draft: created, lines being added; never affects stock
    2. completed: every line posted to the stock ledger exactly once

    One-way: completed documents cannot return to draft or be edited.
    """
    __tablename__ = "stock_in_documents"
    __table_args__ = (
        db.Index("ix_stock_in_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "SI-000042")
    document_number = db.Column(db.String(64), nullable=False, unique=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="draft")
    note = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    supplier = db.relationship("Supplier")
    lines = db.relationship(
        "StockInLine",
        backref="document",
        lazy=True,
        order_by="StockInLine.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total_cost_cents(self) -> int:
        return sum(line.quantity * line.unit_cost_cents for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "note": self.note,
            "created_by": self.created_by,
            "completed_by": self.completed_by,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "total_cost_cents": self.total_cost_cents,
            "lines": [line.to_dict() for line in self.lines],
        }


class StockInLine(db.Model):
    __tablename__ = "stock_in_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_in_lines_quantity_positive"),
        db.CheckConstraint("unit_cost_cents >= 0", name="ck_stock_in_lines_cost_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("stock_in_documents.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    # Set when the document is completed
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey("stock_ledger_entries.id"), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "line_cost_cents": self.quantity * self.unit_cost_cents,
            "ledger_entry_id": self.ledger_entry_id,
        }


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    WHY: Prevent race conditions when generating document numbers
    (receipts, stock-in documents, returns).
    """
    __tablename__ = "document_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
