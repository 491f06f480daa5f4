from __future__ import annotations

from ..extensions import db
from retailpos.time_utils import to_utc_z


class Member(db.Model):
    """
    Loyalty member, keyed naturally by phone number.

    WHY: Points balance and lifetime spend drive the loyalty program.
    Profile fields (name) belong to member management; the sale engine
    only moves points, total_spent_cents and last_visit_at.
    """
    __tablename__ = "members"
    __table_args__ = (
        db.CheckConstraint("points >= 0", name="ck_members_points_non_negative"),
        db.CheckConstraint("total_spent_cents >= 0", name="ck_members_total_spent_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    phone = db.Column(db.String(32), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=True)

    points = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    last_visit_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "name": self.name,
            "points": self.points,
            "total_spent_cents": self.total_spent_cents,
            "last_visit_at": to_utc_z(self.last_visit_at) if self.last_visit_at else None,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class MemberPointsEntry(db.Model):
    """
    Append-only ledger of point movements.

    TRANSACTION TYPES:
    - earn: points credited from a sale
    - redeem: points debited against a sale

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "member_points_entries"
    __table_args__ = (
        db.Index("ix_member_points_member_created", "member_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)  # earn, redeem
    points = db.Column(db.Integer, nullable=False)  # Positive for earn, negative for redeem
    balance = db.Column(db.Integer, nullable=False)
    amount_spent_cents = db.Column(db.Integer, nullable=False, default=0)

    sale_id = db.Column(db.String(36), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    member = db.relationship("Member", backref=db.backref("points_entries", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "type": self.type,
            "points": self.points,
            "balance": self.balance,
            "amount_spent_cents": self.amount_spent_cents,
            "sale_id": self.sale_id,
            "created_at": to_utc_z(self.created_at),
        }
