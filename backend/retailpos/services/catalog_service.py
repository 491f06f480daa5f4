# backend/retailpos/services/catalog_service.py
"""
Catalog Store access used by the POS core.

Product/category/supplier editing screens live outside the core; this module
only offers what the core and its tooling need: lookups, listing, and
creating a product together with its opening stock entry so the stock
ledger and the stock field agree from the first moment.
"""
from __future__ import annotations

from sqlalchemy import or_

from ..errors import ProductNotFoundError, ValidationError
from ..extensions import db
from ..models import Category, Product, Supplier
from ..models.inventory import ENTRY_ADJUSTMENT
from ..pagination import paginate
from .concurrency import begin_write, run_with_retry
from .ledger_service import apply_movement

OPENING_STOCK_REFERENCE = "OPENING"


def create_category(name: str, description: str | None = None) -> Category:
    category = Category(name=name.strip(), description=description)
    db.session.add(category)
    db.session.commit()
    return category


def create_supplier(name: str, contact: str | None = None, phone: str | None = None) -> Supplier:
    supplier = Supplier(name=name.strip(), contact=contact, phone=phone)
    db.session.add(supplier)
    db.session.commit()
    return supplier


def create_product(
    *,
    name: str,
    price_cents: int,
    initial_stock: int = 0,
    barcode: str | None = None,
    category_id: int | None = None,
    supplier_id: int | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
    rating: float | None = None,
    actor: str | None = None,
) -> Product:
    """Create a product; non-zero opening stock is booked as an adjustment entry."""
    if not name or not name.strip():
        raise ValidationError("name is required")
    if isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents < 0:
        raise ValidationError("price_cents must be a non-negative integer")
    if isinstance(initial_stock, bool) or not isinstance(initial_stock, int) or initial_stock < 0:
        raise ValidationError("initial_stock must be a non-negative integer")

    def _op():
        begin_write()
        product = Product(
            name=name.strip(),
            price_cents=price_cents,
            stock=0,
            barcode=barcode,
            category_id=category_id,
            supplier_id=supplier_id,
            description=description,
            tags=list(tags or []),
            rating=rating,
        )
        db.session.add(product)
        db.session.flush()

        if initial_stock:
            apply_movement(
                product,
                entry_type=ENTRY_ADJUSTMENT,
                quantity=initial_stock,
                reference=OPENING_STOCK_REFERENCE,
                actor=actor,
                note="Opening stock",
            )

        db.session.commit()
        return product

    return run_with_retry(_op)


def get_product(product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def find_by_barcode(barcode: str) -> Product | None:
    return db.session.query(Product).filter_by(barcode=barcode).first()


def list_products(
    *,
    search: str | None = None,
    category_id: int | None = None,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Name/barcode search with optional pagination."""
    q = db.session.query(Product)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    if category_id is not None:
        q = q.filter(Product.category_id == category_id)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Product.name.ilike(pattern), Product.barcode.ilike(pattern)))
    q = q.order_by(Product.name.asc(), Product.id.asc())
    return paginate(q, page=page, per_page=per_page)


def low_stock_products(threshold: int) -> list[Product]:
    """Active products at or below the threshold, emptiest first."""
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock <= threshold)
        .order_by(Product.stock.asc(), Product.name.asc())
        .all()
    )
