# Overview: Flask API routes for stock adjustments and stock-in documents.

from flask import Blueprint, current_app, jsonify, request

from ..errors import PosError
from ..services import inventory_service, stock_in_service
from ..validation import parse_adjustment, parse_page_args, parse_stock_in, parse_stock_in_line

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api")


@inventory_bp.post("/inventory/adjustments")
def adjust_inventory_route():
    """
    Post an adjustment (signed) or damage (negative) entry.

    Body: {"product_id", "quantity_delta", "type": "adjustment"|"damage",
           "reference", "actor", "note"}
    """
    try:
        adj = parse_adjustment(request.get_json(silent=True))
        entry = inventory_service.adjust_stock(
            product_id=adj.product_id,
            quantity_delta=adj.quantity_delta,
            entry_type=adj.entry_type,
            reference=adj.reference,
            actor=adj.actor,
            note=adj.note,
        )
        return jsonify({"entry": entry.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/stock-in")
def list_stock_in_route():
    try:
        page, per_page = parse_page_args(request.args)
        result = stock_in_service.list_documents(
            status=request.args.get("status"),
            supplier_id=request.args.get("supplier_id", type=int),
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list stock-in documents")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/stock-in")
def create_stock_in_route():
    """Create a draft (or, with complete=true, a completed) stock-in document."""
    try:
        data = parse_stock_in(request.get_json(silent=True))
        doc = stock_in_service.create_document(**data)
        return jsonify({"document": doc.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create stock-in document")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/stock-in/<int:document_id>")
def get_stock_in_route(document_id: int):
    try:
        doc = stock_in_service.get_document(document_id)
        return jsonify({"document": doc.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to get stock-in document")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/stock-in/<int:document_id>/lines")
def add_stock_in_line_route(document_id: int):
    try:
        data = parse_stock_in_line(request.get_json(silent=True))
        line = stock_in_service.add_line(document_id, **data)
        return jsonify({"line": line.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to add stock-in line")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/stock-in/<int:document_id>/complete")
def complete_stock_in_route(document_id: int):
    try:
        data = request.get_json(silent=True) or {}
        actor = data.get("actor") if isinstance(data, dict) else None
        doc = stock_in_service.complete_document(document_id, actor=actor)
        return jsonify({"document": doc.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete stock-in document")
        return jsonify({"error": "Internal server error"}), 500
