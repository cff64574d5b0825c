# Overview: Flask API routes for the inventory ledger; parses input and returns JSON responses.

# backend/pharmapos/routes/inventory.py
"""
Inventory ledger routes.

Every quantity change goes through the ledger and appends an audit entry.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import audit_service, inventory_service
from ..time_utils import parse_iso_datetime
from ..validation import (
    optional_bool,
    optional_date,
    optional_int,
    optional_str,
    require_int,
    require_str,
)
from ..decorators import require_tenant


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/adjust")
@require_tenant
def adjust_inventory_route():
    """
    Apply one audited quantity change.

    Request body:
    {
        "product_id": 5, "branch_id": 1, "delta": -2,
        "batch_id": 9, "batch_number": null,
        "transaction_type": "DAMAGE_WRITE_OFF",
        "source_reference": "WO-2025-001", "source_type": "DAMAGE_WRITE_OFF",
        "notes": "Broken bottles"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = require_int(data, "product_id")
        branch_id = require_int(data, "branch_id")
        quantity = inventory_service.adjust(
            g.tenant_id,
            product_id,
            branch_id,
            require_int(data, "delta"),
            batch_id=optional_int(data, "batch_id"),
            batch_number=optional_str(data, "batch_number", max_length=64),
            transaction_type=require_str(data, "transaction_type"),
            source_reference=require_str(data, "source_reference", max_length=64),
            source_type=data.get("source_type") or "INVENTORY_ADJUSTMENT",
            performed_by=g.user_id,
            notes=optional_str(data, "notes"),
        )
        return jsonify({"product_id": product_id, "branch_id": branch_id, "quantity": quantity}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/transfer")
@require_tenant
def transfer_inventory_route():
    """
    Move stock between branches.

    Request body: {"product_id", "from_branch_id", "to_branch_id", "quantity", "batch_number", "notes"}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = inventory_service.transfer(
            g.tenant_id,
            require_int(data, "product_id"),
            require_int(data, "from_branch_id"),
            require_int(data, "to_branch_id"),
            require_int(data, "quantity"),
            batch_number=optional_str(data, "batch_number", max_length=64),
            performed_by=g.user_id,
            notes=optional_str(data, "notes"),
        )
        return jsonify(result), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transfer inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/receive")
@require_tenant
def receive_inventory_route():
    """
    Receive stock into a batch (created when the batch number is new).

    Request body:
    {
        "product_id": 5, "branch_id": 1, "quantity": 100,
        "batch_number": "LOT-42", "expiry_date": "2026-06-30",
        "unit_cost_cents": 5000, "selling_price_cents": 7500,
        "transaction_type": "PURCHASE", "source_reference": "PO-0012"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        batch = inventory_service.receive_stock(
            g.tenant_id,
            require_int(data, "product_id"),
            require_int(data, "branch_id"),
            require_int(data, "quantity"),
            batch_number=optional_str(data, "batch_number", max_length=64),
            expiry_date=optional_date(data, "expiry_date"),
            unit_cost_cents=optional_int(data, "unit_cost_cents", minimum=0),
            selling_price_cents=optional_int(data, "selling_price_cents", minimum=0),
            transaction_type=data.get("transaction_type") or "PURCHASE",
            source_reference=optional_str(data, "source_reference", max_length=64),
            performed_by=g.user_id,
            notes=optional_str(data, "notes"),
        )
        return jsonify({"batch": batch}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/batches")
@require_tenant
def list_batches_route():
    """Query params: branch_id (required), product_id, include_inactive."""
    try:
        branch_id = optional_int(request.args, "branch_id")
        if branch_id is None:
            return jsonify({"error": "branch_id is required"}), 400
        batches = inventory_service.list_batches(
            g.tenant_id,
            branch_id,
            product_id=optional_int(request.args, "product_id"),
            include_inactive=optional_bool(request.args, "include_inactive", False),
        )
        return jsonify({"batches": [batch.to_dict() for batch in batches]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list batches")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/batches/<int:batch_id>")
@require_tenant
def get_batch_route(batch_id: int):
    try:
        return jsonify({"batch": inventory_service.get_batch(g.tenant_id, batch_id).to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get batch")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/batches/<int:batch_id>/deactivate")
@require_tenant
def deactivate_batch_route(batch_id: int):
    try:
        batch = inventory_service.deactivate_batch(g.tenant_id, batch_id, performed_by=g.user_id)
        return jsonify({"batch": batch}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to deactivate batch")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/audit-log")
@require_tenant
def audit_log_route():
    """
    Query params: product_id, branch_id, transaction_type, source_reference,
    source_type, start, end (ISO-8601), include_duplicates, limit.
    """
    try:
        args = request.args
        try:
            start = parse_iso_datetime(args.get("start"))
            end = parse_iso_datetime(args.get("end"))
        except ValueError:
            return jsonify({"error": "start and end must be ISO-8601 datetimes"}), 400

        entries = audit_service.query_entries(
            g.tenant_id,
            product_id=optional_int(args, "product_id"),
            branch_id=optional_int(args, "branch_id"),
            transaction_type=args.get("transaction_type"),
            source_reference=args.get("source_reference"),
            source_type=args.get("source_type"),
            start=start,
            end=end,
            include_duplicates=optional_bool(args, "include_duplicates", True),
            limit=optional_int(args, "limit", minimum=1, maximum=5000, default=500),
        )
        return jsonify({"entries": [entry.to_dict() for entry in entries]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to query audit log")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/reconcile")
@require_tenant
def reconcile_route():
    try:
        report = audit_service.reconcile(g.tenant_id)
        return jsonify(report), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reconcile inventory")
        return jsonify({"error": "Internal server error"}), 500
