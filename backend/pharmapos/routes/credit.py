# Overview: Flask API routes for customer credit accounts; parses input and returns JSON responses.

# backend/pharmapos/routes/credit.py
"""
Credit account routes: listing, repayments, administrative status changes,
the overdue sweep and the dashboard summary.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import credit_service
from ..validation import optional_date, optional_int, optional_str, require_int, require_str
from ..decorators import require_tenant


credit_bp = Blueprint("credit", __name__, url_prefix="/api/credit")


@credit_bp.post("/accounts")
@require_tenant
def open_account_route():
    """
    Open a credit account for an existing sale.

    Request body:
    {
        "sale_id": 10, "customer_id": 3,
        "total_amount_cents": 100000, "paid_amount_cents": 40000,
        "expected_payment_date": "2025-03-01", "notes": null
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        result = credit_service.open_credit_account(
            g.tenant_id,
            require_int(data, "sale_id"),
            require_int(data, "customer_id"),
            require_int(data, "total_amount_cents"),
            optional_int(data, "paid_amount_cents", default=0),
            expected_payment_date=optional_date(data, "expected_payment_date"),
            created_by=g.user_id,
            notes=optional_str(data, "notes", max_length=2000),
        )
        return jsonify({"account": result}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to open credit account")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.get("/accounts")
@require_tenant
def list_accounts_route():
    """Query params: status, customer_id, branch_id, page, size."""
    try:
        args = request.args
        result = credit_service.list_credit_accounts(
            g.tenant_id,
            status=args.get("status"),
            customer_id=optional_int(args, "customer_id"),
            branch_id=optional_int(args, "branch_id"),
            page=optional_int(args, "page", minimum=1, default=1),
            size=optional_int(args, "size", minimum=1, maximum=200, default=20),
        )
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list credit accounts")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.get("/accounts/<int:account_id>")
@require_tenant
def get_account_route(account_id: int):
    try:
        return jsonify({"account": credit_service.get_credit_account(g.tenant_id, account_id)}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get credit account")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.post("/accounts/<int:account_id>/payments")
@require_tenant
def make_payment_route(account_id: int):
    """
    Record a repayment.

    Request body: {"amount_cents": 60000, "payment_method": "MPESA", "reference_number": "QAB12CD34", "notes": null}

    Returns:
        201: updated account with payments
        400: amount <= 0 or greater than the remaining balance
        409: account is PAID, CLOSED or SUSPENDED
    """
    try:
        data = request.get_json(silent=True) or {}
        result = credit_service.make_payment(
            g.tenant_id,
            account_id,
            require_int(data, "amount_cents"),
            data.get("payment_method"),
            reference_number=optional_str(data, "reference_number", max_length=64),
            received_by=g.user_id,
            notes=optional_str(data, "notes"),
        )
        return jsonify({"account": result}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record credit payment")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.post("/accounts/<int:account_id>/status")
@require_tenant
def update_status_route(account_id: int):
    """Request body: {"status": "SUSPENDED", "notes": "Disputed"}"""
    try:
        data = request.get_json(silent=True) or {}
        result = credit_service.update_account_status(
            g.tenant_id,
            account_id,
            require_str(data, "status"),
            performed_by=g.user_id,
            notes=optional_str(data, "notes"),
        )
        return jsonify({"account": result}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update credit account status")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.post("/sweep-overdue")
@require_tenant
def sweep_overdue_route():
    """Move this tenant's ACTIVE accounts past their expected payment date to OVERDUE."""
    try:
        moved = credit_service.update_overdue_accounts(tenant_id=g.tenant_id)
        return jsonify({"updated": moved}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to sweep overdue credit accounts")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.get("/summary")
@require_tenant
def summary_route():
    try:
        result = credit_service.get_credit_summary(g.tenant_id, branch_id=optional_int(request.args, "branch_id"))
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build credit summary")
        return jsonify({"error": "Internal server error"}), 500
