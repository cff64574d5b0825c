# Overview: Flask CLI command groups for bootstrap and maintenance.

# backend/pharmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create any missing tables (idempotent; use flask db upgrade for migrations).
#
# Credit maintenance:
# - python -m flask credit sweep-overdue [--tenant-id 1] [--as-of 2025-01-31]
#   Move ACTIVE credit accounts past their expected payment date to OVERDUE.
#
# Inventory maintenance:
# - python -m flask inventory reconcile --tenant-id 1
#   Re-check audit log arithmetic and batch quantities against the ledger.
#
# M-Pesa maintenance:
# - python -m flask mpesa expire-pending [--tenant-id 1] [--older-than 600]
#   Fail STK pushes still PENDING with no callback so they can be retried.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import audit_service, credit_service, mpesa_service
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401

    db.create_all()
    click.echo("PASS Database tables are in place")


@click.group('credit')
def credit_group():
    """Credit account maintenance."""


@credit_group.command('sweep-overdue')
@click.option('--tenant-id', type=int, default=None, help='Limit the sweep to one tenant')
@click.option('--as-of', 'as_of', default=None, help='Business date (YYYY-MM-DD), default today')
@with_appcontext
def sweep_overdue(tenant_id, as_of):
    """Mark overdue credit accounts."""
    try:
        today = parse_iso_date(as_of) if as_of else None
    except ValueError:
        raise click.BadParameter("must be YYYY-MM-DD", param_hint="--as-of")
    moved = credit_service.update_overdue_accounts(tenant_id=tenant_id, today=today)
    click.echo(f"PASS {moved} account(s) moved to OVERDUE")


@click.group('inventory')
def inventory_group():
    """Inventory ledger maintenance."""


@inventory_group.command('reconcile')
@click.option('--tenant-id', type=int, required=True, help='Tenant to reconcile')
@with_appcontext
def reconcile(tenant_id):
    """Verify audit log arithmetic and batch balances."""
    report = audit_service.reconcile(tenant_id)
    click.echo(f"Checked {report['entries_checked']} audit entries for tenant {tenant_id}")

    for entry_id in report["arithmetic_violations"]:
        click.echo(f"FAIL Audit entry {entry_id}: before/changed/after do not add up")
    for batch_id in report["negative_batches"]:
        click.echo(f"FAIL Batch {batch_id} has negative quantity")
    for row in report["batch_mismatches"]:
        click.echo(
            f"FAIL Batch {row['batch_id']}: quantity {row['quantity']} "
            f"but last audit entry says {row['last_audit_quantity']}"
        )

    if report["ok"]:
        click.echo("PASS Ledger is consistent")
    else:
        raise SystemExit(1)


@click.group('mpesa')
def mpesa_group():
    """M-Pesa bridge maintenance."""


@mpesa_group.command('expire-pending')
@click.option('--tenant-id', type=int, default=None, help='Limit to one tenant')
@click.option('--older-than', 'older_than', type=click.IntRange(min=0), default=None,
              help='Seconds without a callback, default MPESA_PENDING_TIMEOUT_SECONDS')
@with_appcontext
def expire_pending(tenant_id, older_than):
    """Fail STK pushes that never received a callback."""
    expired = mpesa_service.expire_stale_transactions(tenant_id=tenant_id, older_than_seconds=older_than)
    click.echo(f"PASS {expired} STK push(es) expired")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(credit_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(mpesa_group)
