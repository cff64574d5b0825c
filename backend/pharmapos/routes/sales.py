# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/pharmapos/routes/sales.py
"""
Sales API routes.

Tenant context comes from the X-Tenant-Id / X-User-Id headers set by the
upstream auth gateway. All amounts are integer cents.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import sales_service
from ..time_utils import parse_iso_datetime
from ..validation import optional_bool, optional_date, optional_int, optional_list, optional_str, require_str
from ..decorators import require_tenant


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/")
@require_tenant
def create_sale_route():
    """
    Create a sale (completed immediately, or held when "hold": true).

    Request body:
    {
        "branch_id": 1,
        "lines": [{"product_id": 5, "inventory_id": 9, "quantity": 2, "unit_price_cents": 15000}],
        "payments": [{"payment_method": "CASH", "amount_cents": 30000}],
        "is_credit_sale": false,
        "customer_id": null
    }

    Returns:
        201: {"sale", "lines", "payments", "credit_account"}
        400/404/409: business rule rejection
    """
    try:
        data = request.get_json(silent=True) or {}
        result = sales_service.create_sale(g.tenant_id, data, cashier_id=g.user_id)
        return jsonify(result), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
@require_tenant
def search_sales_route():
    """
    Search sales, newest first.

    Query params: branch_id, status, payment_status, cashier_id, customer_id,
    sale_number, payment_method, start, end (ISO-8601), page, size,
    include_commission.
    """
    try:
        args = request.args
        try:
            start = parse_iso_datetime(args.get("start"))
            end = parse_iso_datetime(args.get("end"))
        except ValueError:
            return jsonify({"error": "start and end must be ISO-8601 datetimes"}), 400

        filters = {
            "branch_id": optional_int(args, "branch_id"),
            "status": args.get("status"),
            "payment_status": args.get("payment_status"),
            "cashier_id": optional_int(args, "cashier_id"),
            "customer_id": optional_int(args, "customer_id"),
            "sale_number": args.get("sale_number"),
            "payment_method": args.get("payment_method"),
            "start": start,
            "end": end,
        }
        result = sales_service.search_sales(
            g.tenant_id,
            filters,
            page=optional_int(args, "page", minimum=1, default=1),
            size=optional_int(args, "size", minimum=1, maximum=200, default=20),
            include_commission=optional_bool(args, "include_commission", False),
        )
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to search sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/scan")
@require_tenant
def scan_barcode_route():
    """Look up a product by barcode with its sellable batches at a branch."""
    try:
        branch_id = optional_int(request.args, "branch_id")
        if branch_id is None:
            return jsonify({"error": "branch_id is required"}), 400
        result = sales_service.scan_barcode(g.tenant_id, request.args.get("barcode"), branch_id)
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to scan barcode")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_tenant
def get_sale_route(sale_id: int):
    try:
        return jsonify(sales_service.get_sale(g.tenant_id, sale_id)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/complete")
@require_tenant
def complete_sale_route(sale_id: int):
    """
    Complete a held sale.

    Request body:
    {
        "payments": [{"payment_method": "MPESA", "amount_cents": 30000}],
        "is_credit_sale": false,
        "customer_id": null,
        "expected_payment_date": "2025-02-28"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        is_credit_sale = None
        if data.get("is_credit_sale") is not None:
            is_credit_sale = optional_bool(data, "is_credit_sale")
        result = sales_service.complete_sale(
            g.tenant_id,
            sale_id,
            optional_list(data, "payments"),
            is_credit_sale=is_credit_sale,
            customer_id=optional_int(data, "customer_id"),
            expected_payment_date=optional_date(data, "expected_payment_date"),
            performed_by=g.user_id,
        )
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/suspend")
@require_tenant
def suspend_sale_route(sale_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = sales_service.suspend_sale(
            g.tenant_id, sale_id, performed_by=g.user_id, reason=optional_str(data, "reason"),
        )
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to suspend sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/resume")
@require_tenant
def resume_sale_route(sale_id: int):
    try:
        return jsonify(sales_service.resume_sale(g.tenant_id, sale_id, performed_by=g.user_id)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resume sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/cancel")
@require_tenant
def cancel_sale_route(sale_id: int):
    """
    Cancel a sale. Request body: {"reason": "Customer changed mind"}

    Cancelling a COMPLETED sale restores stock and voids its payments.
    """
    try:
        data = request.get_json(silent=True) or {}
        result = sales_service.cancel_sale(
            g.tenant_id, sale_id, require_str(data, "reason"), performed_by=g.user_id,
        )
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/payments/<int:payment_id>/replace")
@require_tenant
def replace_payment_route(sale_id: int, payment_id: int):
    """
    Re-tender a FAILED payment or settle an outstanding adjustment.

    Request body: {"payment_method": "CASH", "reference_number": null}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = sales_service.replace_failed_payment(
            g.tenant_id,
            sale_id,
            payment_id,
            data.get("payment_method"),
            reference_number=optional_str(data, "reference_number", max_length=64),
            performed_by=g.user_id,
        )
        return jsonify(result), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to replace payment")
        return jsonify({"error": "Internal server error"}), 500
