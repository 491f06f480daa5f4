# Overview: Flask API routes for the stock ledger; read-only history and balances.

from flask import Blueprint, current_app, jsonify, request

from ..errors import PosError, ValidationError
from ..pagination import paginate
from ..services import inventory_service, ledger_service
from ..time_utils import parse_date_range
from ..validation import parse_page_args

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- from/to filtering is inclusive on created_at; a date-only "to" covers the whole day.
- Ordering is (created_at, id), ascending unless order=desc.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/stock-ledger")


@ledger_bp.get("")
def list_ledger_entries_route():
    try:
        try:
            start, end = parse_date_range(request.args.get("from"), request.args.get("to"))
        except ValueError as e:
            raise ValidationError(str(e))

        order = (request.args.get("order") or "asc").lower()
        if order not in ("asc", "desc"):
            raise ValidationError("order must be asc or desc")
        page, per_page = parse_page_args(request.args)

        q = ledger_service.history(
            request.args.get("product_id", type=int),
            start=start,
            end=end,
            entry_type=request.args.get("type"),
            reference=request.args.get("reference"),
            descending=order == "desc",
        )
        return jsonify(paginate(q, page=page, per_page=per_page)), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list stock ledger")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/products/<int:product_id>/balance")
def product_balance_route(product_id: int):
    """Cached stock, ledger-derived balance and whether they agree."""
    try:
        return jsonify(inventory_service.stock_summary(product_id)), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to compute ledger balance")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/products/<int:product_id>/verify")
def verify_product_route(product_id: int):
    """Full replay of a product's entries against its stock."""
    try:
        result = ledger_service.replay(product_id)
        return jsonify(result.to_dict()), 200 if result.consistent else 409

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to verify ledger")
        return jsonify({"error": "Internal server error"}), 500
