from __future__ import annotations

from typing import Callable

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100


def paginate(query, *, page: int | None, per_page: int | None, serialize: Callable = lambda obj: obj.to_dict()) -> dict:
    """
    Page through a query.

    page=None returns everything (read-only lists are small in tests and CLI use).
    """
    if page is None:
        rows = query.all()
        return {"items": [serialize(r) for r in rows], "count": len(rows)}

    per_page = min(per_page or DEFAULT_PER_PAGE, MAX_PER_PAGE)  # Default 20, max 100
    per_page = max(per_page, 1)
    page = max(page, 1)  # Ensure page >= 1

    total = query.order_by(None).count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    rows = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [serialize(r) for r in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
