# Overview: Document numbering for receipts, stock-in documents and returns.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence

DOC_SALE = "SALE"
DOC_STOCK_IN = "STOCK_IN"
DOC_RETURN = "RETURN"

DOCUMENT_PREFIXES = {
    DOC_SALE: "S",
    DOC_STOCK_IN: "SI",
    DOC_RETURN: "R",
}


def next_document_number(*, document_type: str, pad: int = 6) -> str:
    """
    Allocate the next document number for a type, inside the caller's transaction.

    The UPDATE ... SET next_number = next_number + 1 takes the row lock, so two
    concurrent writers can never receive the same number. Numbers consumed by
    a transaction that later rolls back are released with it.
    """
    prefix = DOCUMENT_PREFIXES.get(document_type)
    if prefix is None:
        raise ValidationError(f"Unknown document type: {document_type}")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(document_type=document_type, next_number=2)
        try:
            with db.session.begin_nested():
                db.session.add(seq)
            next_num = 1
        except IntegrityError:
            # Another writer created the row first
            db.session.execute(stmt)
            current = (
                db.session.query(DocumentSequence.next_number)
                .filter_by(document_type=document_type)
                .scalar()
            )
            next_num = current - 1

    return f"{prefix}-{next_num:0{pad}d}"
