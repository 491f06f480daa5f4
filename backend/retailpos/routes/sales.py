# Overview: Flask API routes for sales; parses input and returns JSON responses.

# backend/retailpos/routes/sales.py
"""Sales API routes: commit, lookup, range queries, returns"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import PosError, ValidationError
from ..pagination import paginate
from ..services import return_service, sales_service
from ..time_utils import parse_date_range
from ..validation import parse_page_args, parse_return, parse_sale_request


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _range_args():
    try:
        return parse_date_range(request.args.get("from"), request.args.get("to"))
    except ValueError as e:
        raise ValidationError(str(e))


@sales_bp.post("")
def commit_sale_route():
    """
    Commit a sale: cart, payment, optional member.

    Returns 201 with the committed sale. Failures return the error envelope
    {error, code, category, details}; nothing is persisted in that case.
    """
    try:
        sale_request = parse_sale_request(request.get_json(silent=True))
        sale = sales_service.commit_sale(sale_request)
        return jsonify({"sale": sale.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to commit sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
def list_sales_route():
    """
    Sales in a time range.

    Query params: from, to (ISO-8601, inclusive), payment_method, member_id,
    cashier_id, order=asc|desc, page, per_page.
    """
    try:
        start, end = _range_args()
        page, per_page = parse_page_args(request.args)
        order = (request.args.get("order") or "asc").lower()
        if order not in ("asc", "desc"):
            raise ValidationError("order must be asc or desc")

        member_id = request.args.get("member_id", type=int)
        q = sales_service.query_sales(
            start=start,
            end=end,
            descending=order == "desc",
            payment_method=request.args.get("payment_method"),
            member_id=member_id,
            cashier_id=request.args.get("cashier_id"),
        )
        return jsonify(paginate(q, page=page, per_page=per_page)), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/summary")
def sales_summary_route():
    try:
        start, end = _range_args()
        summary = sales_service.sales_summary(start=start, end=end)
        return jsonify({"summary": summary}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to summarize sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<sale_id>")
def get_sale_route(sale_id: str):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"sale": sale.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<sale_id>/returns")
def create_return_route(sale_id: str):
    """Return goods from a committed sale; stock comes back through the ledger."""
    try:
        data = parse_return(request.get_json(silent=True))
        sale_return = return_service.return_items(
            sale_id,
            data["lines"],
            reason=data["reason"],
            actor=data["actor"],
        )
        return jsonify({"return": sale_return.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record return")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<sale_id>/returns")
def list_returns_route(sale_id: str):
    try:
        returns = return_service.list_returns(sale_id)
        return jsonify({"returns": [r.to_dict() for r in returns]}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list returns")
        return jsonify({"error": "Internal server error"}), 500
