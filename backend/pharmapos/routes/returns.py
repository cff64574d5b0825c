# Overview: Flask API routes for returns operations; parses input and returns JSON responses.

# backend/pharmapos/routes/returns.py
"""
Return Processing API Routes

DESIGN:
- Create returns referencing the original sale and its lines
- Processed immediately, or PENDING when manager approval is required
- Approve / process / reject for the approval workflow
- Refunds always use the original sale price
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import return_service
from ..validation import optional_int, optional_str, require_int, require_str
from ..decorators import require_tenant


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("/")
@require_tenant
def create_return_route():
    """
    Create a return.

    Request body:
    {
        "original_sale_id": 123,
        "reason": "Wrong strength dispensed",
        "lines": [{"sale_line_item_id": 456, "quantity_returned": 1, "restore_to_inventory": true}],
        "auto_process": true  (optional; default from RETURNS_REQUIRE_APPROVAL)
    }

    Returns:
        201: Return created (PROCESSED or PENDING)
        400: Invalid input or quantity exceeds what can still be returned
    """
    try:
        data = request.get_json(silent=True) or {}
        auto_process = data.get("auto_process")
        if auto_process is not None and not isinstance(auto_process, bool):
            return jsonify({"error": "auto_process must be a boolean"}), 400

        lines = data.get("lines")
        if not isinstance(lines, list):
            return jsonify({"error": "lines must be a list"}), 400

        result = return_service.create_return(
            g.tenant_id,
            require_int(data, "original_sale_id"),
            require_str(data, "reason"),
            lines,
            processed_by=g.user_id,
            notes=optional_str(data, "notes", max_length=2000),
            auto_process=auto_process,
        )
        return jsonify({"return": result}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/")
@require_tenant
def list_returns_route():
    """Query params: sale_id, status, limit."""
    try:
        returns = return_service.list_sale_returns(
            g.tenant_id,
            sale_id=optional_int(request.args, "sale_id"),
            status=request.args.get("status"),
            limit=optional_int(request.args, "limit", minimum=1, maximum=500, default=100),
        )
        return jsonify({"returns": returns}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list returns")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/<int:return_id>")
@require_tenant
def get_return_route(return_id: int):
    try:
        return jsonify({"return": return_service.get_return(g.tenant_id, return_id)}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/approve")
@require_tenant
def approve_return_route(return_id: int):
    try:
        result = return_service.approve_return(g.tenant_id, return_id, approved_by=g.user_id)
        return jsonify({"return": result}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to approve return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/process")
@require_tenant
def process_return_route(return_id: int):
    """Restore stock and mark the return PROCESSED (must be APPROVED)."""
    try:
        result = return_service.process_return(g.tenant_id, return_id, processed_by=g.user_id)
        return jsonify({"return": result}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/reject")
@require_tenant
def reject_return_route(return_id: int):
    """Request body: {"reason": "Item opened"}"""
    try:
        data = request.get_json(silent=True) or {}
        result = return_service.reject_return(
            g.tenant_id, return_id, rejected_by=g.user_id, reason=optional_str(data, "reason"),
        )
        return jsonify({"return": result}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reject return")
        return jsonify({"error": "Internal server error"}), 500
