# Overview: Flask API routes for sale edit requests; parses input and returns JSON responses.

# backend/pharmapos/routes/sale_edits.py
"""
Sale edit (maker-checker) routes.

The requester is the X-User-Id of the create call; the decider is the
X-User-Id of the decide call and must be a different user.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import sale_edit_service
from ..validation import optional_bool, optional_int, optional_str, require_int
from ..decorators import require_tenant


sale_edits_bp = Blueprint("sale_edits", __name__, url_prefix="/api/sale-edits")


@sale_edits_bp.post("/")
@require_tenant
def create_edit_request_route():
    """
    Request a change to a completed sale line.

    Request body:
    {
        "sale_id": 10,
        "sale_line_item_id": 31,
        "request_type": "PRICE_CHANGE",   (or "LINE_DELETE")
        "new_unit_price_cents": 9000,
        "reason": "Price tag mismatch"
    }
    """
    try:
        if g.user_id is None:
            return jsonify({"error": "X-User-Id is required to request an edit"}), 400
        data = request.get_json(silent=True) or {}
        result = sale_edit_service.create_edit_request(
            g.tenant_id,
            require_int(data, "sale_id"),
            require_int(data, "sale_line_item_id"),
            data.get("request_type"),
            requested_by=g.user_id,
            new_unit_price_cents=optional_int(data, "new_unit_price_cents"),
            reason=optional_str(data, "reason"),
        )
        return jsonify({"request": result}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create edit request")
        return jsonify({"error": "Internal server error"}), 500


@sale_edits_bp.get("/pending")
@require_tenant
def list_pending_route():
    try:
        requests = sale_edit_service.list_pending_requests(
            g.tenant_id, branch_id=optional_int(request.args, "branch_id"),
        )
        return jsonify({"requests": requests}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list pending edit requests")
        return jsonify({"error": "Internal server error"}), 500


@sale_edits_bp.get("/pending/count")
@require_tenant
def pending_count_route():
    try:
        count = sale_edit_service.pending_count(g.tenant_id, branch_id=optional_int(request.args, "branch_id"))
        return jsonify({"count": count}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to count pending edit requests")
        return jsonify({"error": "Internal server error"}), 500


@sale_edits_bp.get("/<int:request_id>")
@require_tenant
def get_edit_request_route(request_id: int):
    try:
        return jsonify({"request": sale_edit_service.get_edit_request(g.tenant_id, request_id)}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get edit request")
        return jsonify({"error": "Internal server error"}), 500


@sale_edits_bp.post("/<int:request_id>/decide")
@require_tenant
def decide_edit_request_route(request_id: int):
    """
    Approve or reject a pending request.

    Request body: {"approved": true, "rejection_reason": null}
    """
    try:
        if g.user_id is None:
            return jsonify({"error": "X-User-Id is required to decide an edit"}), 400
        data = request.get_json(silent=True) or {}
        if data.get("approved") is None:
            return jsonify({"error": "approved is required"}), 400
        result = sale_edit_service.approve_or_reject(
            g.tenant_id,
            request_id,
            approved=optional_bool(data, "approved"),
            decided_by=g.user_id,
            rejection_reason=optional_str(data, "rejection_reason"),
        )
        return jsonify({"request": result}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to decide edit request")
        return jsonify({"error": "Internal server error"}), 500
