# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/retailpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system wipe --yes
#   Clear sales, ledger, members and documents; products are kept with stock zeroed.
#
# Catalog:
# - python -m flask catalog seed
#   Create a small demo catalog with opening stock (skips if products exist).
# - python -m flask catalog low-stock [--threshold 5]
#   List active products at or below the threshold.
#
# Members:
# - python -m flask members register --phone 0812345678 --name "Somchai"
#
# Stock ledger:
# - python -m flask ledger verify [--product-id 1]
#   Replay ledger entries and compare with cached stock; exits 1 on mismatch.
# - python -m flask ledger history --product-id 1 [--limit 20]
#
# Sales:
# - python -m flask sales summary [--from 2024-05-01] [--to 2024-05-31]

import sys

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import PosError
from .extensions import db
from .models import (
    DocumentSequence,
    Member,
    MemberPointsEntry,
    Product,
    Sale,
    SaleItem,
    SaleReturn,
    SaleReturnLine,
    StockInDocument,
    StockInLine,
    StockLedgerEntry,
)
from .services import catalog_service, ledger_service, member_service, sales_service
from .time_utils import parse_date_range, to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask catalog seed' for demo data.")


@system_group.command('wipe')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def wipe_data(yes):
    """
    Clear all transactional data while keeping the catalog.

    Removes sales, returns, stock-in documents, ledger entries, members and
    document sequences. Product stock is reset to zero so the empty ledger
    and the stock field still agree.
    """
    if not yes:
        click.confirm("WARN This will DELETE all transactional data. Are you sure?", abort=True)

    # Children first
    for model in (
        SaleReturnLine, SaleReturn, SaleItem, Sale,
        StockInLine, StockInDocument,
        MemberPointsEntry, Member,
        StockLedgerEntry, DocumentSequence,
    ):
        deleted = db.session.query(model).delete(synchronize_session=False)
        click.echo(f"DELETE  {model.__tablename__}: {deleted}")
    db.session.query(Product).update({Product.stock: 0}, synchronize_session=False)
    db.session.commit()
    click.echo("PASS Transactional data wiped.")


# =============================================================================
# CATALOG
# =============================================================================

DEMO_CATALOG = [
    # name, barcode, price_cents, opening stock
    ("Jasmine Rice 5kg", "8850000000011", 18500, 40),
    ("Fish Sauce 700ml", "8850000000028", 4500, 60),
    ("Instant Noodles (pack of 5)", "8850000000035", 3000, 120),
    ("Drinking Water 1.5L", "8850000000042", 1400, 200),
    ("Coconut Milk 250ml", "8850000000059", 2800, 8),
    ("Green Curry Paste", "8850000000066", 3500, 6),
]


@click.group('catalog')
def catalog_group():
    """Catalog bootstrap and inspection."""


@catalog_group.command('seed')
@click.option('--force', is_flag=True, help='Seed even if products already exist')
@with_appcontext
def seed_catalog(force):
    """Create a small demo catalog; opening stock goes through the ledger."""
    if db.session.query(Product).count() and not force:
        click.echo("WARN  Products already exist, skipping (use --force to add anyway).")
        return

    category = catalog_service.create_category("Grocery")
    supplier = catalog_service.create_supplier("Demo Wholesale", contact="Sales desk")
    for name, barcode, price_cents, stock in DEMO_CATALOG:
        try:
            product = catalog_service.create_product(
                name=name,
                barcode=barcode,
                price_cents=price_cents,
                initial_stock=stock,
                category_id=category.id,
                supplier_id=supplier.id,
                actor="cli",
            )
            click.echo(f"PASS Created {product.name} (ID: {product.id}, stock: {product.stock})")
        except PosError as e:
            db.session.rollback()
            click.echo(f"FAIL {name}: {e.message}")
        except Exception as e:
            db.session.rollback()
            click.echo(f"FAIL {name}: {e}")


@catalog_group.command('low-stock')
@click.option('--threshold', type=int, default=None, help='Defaults to LOW_STOCK_THRESHOLD')
@with_appcontext
def low_stock(threshold):
    """List active products at or below the threshold."""
    if threshold is None:
        threshold = int(current_app.config.get("LOW_STOCK_THRESHOLD", 5))
    products = catalog_service.low_stock_products(threshold)
    if not products:
        click.echo(f"PASS No products at or below {threshold}.")
        return
    for p in products:
        click.echo(f"{p.id:>6}  {p.stock:>6}  {p.name}")


# =============================================================================
# MEMBERS
# =============================================================================

@click.group('members')
def members_group():
    """Loyalty member management."""


@members_group.command('register')
@click.option('--phone', prompt=True, help='Phone number')
@click.option('--name', default=None, help='Display name')
@with_appcontext
def register_member_cli(phone, name):
    try:
        member = member_service.register_member(phone, name)
        click.echo(f"PASS Registered member {member.phone} (ID: {member.id})")
    except PosError as e:
        click.echo(f"FAIL {e.message}")
        sys.exit(1)


# =============================================================================
# STOCK LEDGER
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Stock ledger inspection and verification."""


@ledger_group.command('verify')
@click.option('--product-id', type=int, default=None, help='Verify one product only')
@with_appcontext
def verify_ledger(product_id):
    """Replay ledger entries and compare with each product's stock."""
    if product_id is not None:
        result = ledger_service.replay(product_id)
        status = "PASS" if result.consistent else "FAIL"
        click.echo(
            f"{status} product {result.product_id}: stock={result.stock} "
            f"ledger={result.ledger_balance} entries={result.entry_count}"
        )
        if not result.consistent:
            sys.exit(1)
        return

    mismatches = ledger_service.reconcile_all()
    if not mismatches:
        click.echo("PASS Stock ledger consistent for all products.")
        return
    for result in mismatches:
        click.echo(
            f"FAIL product {result.product_id}: stock={result.stock} "
            f"ledger={result.ledger_balance} last_balance={result.last_entry_balance}"
        )
    sys.exit(1)


@ledger_group.command('history')
@click.option('--product-id', type=int, required=True)
@click.option('--limit', type=int, default=20)
@with_appcontext
def ledger_history(product_id, limit):
    """Newest entries first."""
    entries = ledger_service.history(product_id, descending=True).limit(limit).all()
    for e in entries:
        click.echo(
            f"{to_utc_z(e.created_at)}  {e.type:<10} {e.quantity:>+6}  bal={e.balance:<6} ref={e.reference or '-'}"
        )


# =============================================================================
# SALES
# =============================================================================

@click.group('sales')
def sales_group():
    """Sales reporting."""


@sales_group.command('summary')
@click.option('--from', 'start', default=None, help='ISO-8601 start (inclusive)')
@click.option('--to', 'end', default=None, help='ISO-8601 end (inclusive; date-only covers the day)')
@with_appcontext
def sales_summary_cli(start, end):
    try:
        start_dt, end_dt = parse_date_range(start, end)
    except ValueError as e:
        raise click.BadParameter(str(e))
    summary = sales_service.sales_summary(start=start_dt, end=end_dt)
    click.echo(f"Sales:    {summary['sales_count']}")
    click.echo(f"Revenue:  {summary['revenue_cents'] / 100:,.2f}")
    click.echo(f"Discount: {summary['discount_cents'] / 100:,.2f}")
    click.echo(f"Points:   used {summary['points_used']}, earned {summary['points_earned']}")
    for method, row in sorted(summary["by_payment_method"].items()):
        click.echo(f"  {method:<14} {row['sales_count']:>5}  {row['revenue_cents'] / 100:>12,.2f}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(members_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(sales_group)
