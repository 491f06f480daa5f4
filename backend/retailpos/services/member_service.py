# Overview: Member Ledger; points credit/debit and lookups used by the sale engine.

"""
Member Ledger

WHY: Loyalty points are money-like. Every change is written to
member_points_entries in the same transaction as the balance update, and a
debit that would take the balance below zero is refused.

The sale engine calls credit()/debit() with commit=False inside its own
transaction. Profile edits (name, address) are not part of this module.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..errors import (
    DuplicateMemberError,
    InsufficientPointsError,
    MemberNotFoundError,
    ValidationError,
)
from ..extensions import db, get_event_bus
from ..events import MEMBER_JOINED
from ..models import Member, MemberPointsEntry
from retailpos.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry

logger = logging.getLogger("retailpos.members")

POINTS_EARN = "earn"
POINTS_REDEEM = "redeem"


def normalize_phone(phone: str | None) -> str:
    cleaned = "".join(ch for ch in (phone or "") if ch.isdigit() or ch == "+")
    if not cleaned:
        raise ValidationError("phone is required")
    return cleaned


def find_by_phone(phone: str) -> Member | None:
    return db.session.query(Member).filter_by(phone=normalize_phone(phone)).first()


def get_member(member_id: int) -> Member:
    member = db.session.query(Member).filter_by(id=member_id).first()
    if member is None:
        raise MemberNotFoundError(f"Member {member_id} not found", details={"member_id": member_id})
    return member


def get_member_for_update(member_id: int) -> Member:
    member = lock_for_update(db.session.query(Member).filter_by(id=member_id)).first()
    if member is None:
        raise MemberNotFoundError(f"Member {member_id} not found", details={"member_id": member_id})
    return member


def register_member(phone: str, name: str | None = None, *, event_bus=None) -> Member:
    """Create a member with zero points; phone must be unused."""
    phone = normalize_phone(phone)

    def _op():
        begin_write()
        if db.session.query(Member).filter_by(phone=phone).first() is not None:
            raise DuplicateMemberError("Member already exists", details={"phone": phone})
        member = Member(phone=phone, name=(name or "").strip() or None, points=0, total_spent_cents=0)
        db.session.add(member)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise DuplicateMemberError("Member already exists", details={"phone": phone}) from exc
        return member

    member = run_with_retry(_op)
    logger.info("Member %s joined (phone=%s)", member.id, member.phone)
    (event_bus or get_event_bus()).publish(MEMBER_JOINED, {
        "member_id": member.id,
        "phone": member.phone,
        "name": member.name,
    })
    return member


def _check_points(points: int) -> None:
    if isinstance(points, bool) or not isinstance(points, int) or points < 0:
        raise ValidationError("points must be a non-negative integer")


def debit(member_id: int, points: int, *, sale_id: str | None = None, commit: bool = True) -> Member:
    """Remove points; refuses to take the balance below zero."""
    _check_points(points)

    def _apply():
        member = get_member_for_update(member_id)
        if points > member.points:
            raise InsufficientPointsError(
                "Not enough points",
                details={"member_id": member.id, "requested": points, "available": member.points},
            )
        if points:
            member.points -= points
            db.session.add(MemberPointsEntry(
                member_id=member.id,
                type=POINTS_REDEEM,
                points=-points,
                balance=member.points,
                sale_id=sale_id,
                created_at=utcnow(),
            ))
        db.session.flush()
        return member

    if not commit:
        return _apply()

    def _op():
        begin_write()
        member = _apply()
        db.session.commit()
        return member

    return run_with_retry(_op)


def credit(
    member_id: int,
    points: int,
    amount_spent_cents: int,
    *,
    sale_id: str | None = None,
    commit: bool = True,
) -> Member:
    """Add earned points and spend; stamps last visit."""
    _check_points(points)
    if isinstance(amount_spent_cents, bool) or not isinstance(amount_spent_cents, int) or amount_spent_cents < 0:
        raise ValidationError("amount_spent_cents must be a non-negative integer")

    def _apply():
        member = get_member_for_update(member_id)
        member.points += points
        member.total_spent_cents += amount_spent_cents
        member.last_visit_at = utcnow()
        db.session.add(MemberPointsEntry(
            member_id=member.id,
            type=POINTS_EARN,
            points=points,
            balance=member.points,
            amount_spent_cents=amount_spent_cents,
            sale_id=sale_id,
            created_at=utcnow(),
        ))
        db.session.flush()
        return member

    if not commit:
        return _apply()

    def _op():
        begin_write()
        member = _apply()
        db.session.commit()
        return member

    return run_with_retry(_op)


def points_history(member_id: int, *, limit: int = 100) -> list[MemberPointsEntry]:
    get_member(member_id)
    return (
        db.session.query(MemberPointsEntry)
        .filter_by(member_id=member_id)
        .order_by(MemberPointsEntry.created_at.desc(), MemberPointsEntry.id.desc())
        .limit(limit)
        .all()
    )
