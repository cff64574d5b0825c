# Overview: Flask API routes for M-Pesa STK payments; parses input and returns JSON responses.

# backend/pharmapos/routes/mpesa.py
"""
M-Pesa routes.

SECURITY: /callback is called by Safaricom and carries no tenant headers.
It always answers {"ResultCode": "0", ...} so Daraja does not retry
callbacks that were deliberately ignored.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import mpesa_service
from ..validation import optional_int, require_int
from ..decorators import require_tenant


mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/api/mpesa")


@mpesa_bp.post("/stk-push")
@require_tenant
def stk_push_route():
    """
    Prompt the customer's phone for payment.

    Request body: {"sale_id": 10, "phone_number": "0712345678", "sale_payment_id": 44, "amount_cents": null}

    Returns:
        201: PENDING transaction (awaiting callback)
        502: gateway failure; the transaction is recorded as FAILED
    """
    try:
        data = request.get_json(silent=True) or {}
        result = mpesa_service.initiate_stk_push(
            g.tenant_id,
            require_int(data, "sale_id"),
            data.get("phone_number"),
            amount_cents=optional_int(data, "amount_cents"),
            sale_payment_id=optional_int(data, "sale_payment_id"),
            requested_by=g.user_id,
        )
        return jsonify({"transaction": result}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate STK push")
        return jsonify({"error": "Internal server error"}), 500


@mpesa_bp.post("/callback")
def stk_callback_route():
    try:
        payload = request.get_json(silent=True)
        return jsonify(mpesa_service.handle_stk_callback(payload)), 200
    except Exception:
        # Still acknowledge; the transaction stays PENDING and can be inspected
        current_app.logger.exception("Failed to apply M-Pesa callback")
        return jsonify({"ResultCode": "0", "ResultDesc": "Accepted"}), 200


@mpesa_bp.get("/transactions")
@require_tenant
def list_transactions_route():
    """Query params: sale_id, status, limit."""
    try:
        transactions = mpesa_service.list_transactions(
            g.tenant_id,
            sale_id=optional_int(request.args, "sale_id"),
            status=request.args.get("status"),
            limit=optional_int(request.args, "limit", minimum=1, maximum=500, default=100),
        )
        return jsonify({"transactions": transactions}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list M-Pesa transactions")
        return jsonify({"error": "Internal server error"}), 500


@mpesa_bp.get("/transactions/<int:transaction_id>")
@require_tenant
def transaction_status_route(transaction_id: int):
    try:
        return jsonify({"transaction": mpesa_service.get_transaction_status(g.tenant_id, transaction_id)}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get M-Pesa transaction")
        return jsonify({"error": "Internal server error"}), 500
