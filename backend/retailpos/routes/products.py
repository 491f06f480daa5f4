# Overview: Flask API routes for the catalog as seen by the till; read-only.

# backend/retailpos/routes/products.py
"""
Product lookup routes.

Catalog editing is not part of the POS core; the till only searches,
scans barcodes and watches low stock.
"""
from flask import Blueprint, current_app, jsonify, request

from ..errors import PosError, ProductNotFoundError
from ..services import catalog_service
from ..validation import parse_page_args

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    """
    Query params: search (name or barcode), category_id,
    include_inactive=true, page, per_page.
    """
    try:
        page, per_page = parse_page_args(request.args)
        include_inactive = (request.args.get("include_inactive") or "").lower() in ("1", "true", "yes")
        result = catalog_service.list_products(
            search=request.args.get("search"),
            category_id=request.args.get("category_id", type=int),
            include_inactive=include_inactive,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/low-stock")
def low_stock_route():
    try:
        threshold = request.args.get("threshold", type=int)
        if threshold is None:
            threshold = int(current_app.config.get("LOW_STOCK_THRESHOLD", 5))
        products = catalog_service.low_stock_products(threshold)
        return jsonify({
            "threshold": threshold,
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list low-stock products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/barcode/<barcode>")
def product_by_barcode_route(barcode: str):
    try:
        product = catalog_service.find_by_barcode(barcode)
        if product is None:
            raise ProductNotFoundError("Product not found", details={"barcode": barcode})
        return jsonify({"product": product.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to look up barcode")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = catalog_service.get_product(product_id)
        return jsonify({"product": product.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to get product")
        return jsonify({"error": "Internal server error"}), 500
