# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


def _header_int(name: str):
    raw = request.headers.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return False


def require_tenant(f):
    """
    Establish tenant context from the upstream auth gateway.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.tenant_id: from X-Tenant-Id - REQUIRED
    - g.user_id: from X-User-Id (may be None for service calls)

    Returns 401 if X-Tenant-Id is missing and 400 if either header is not an integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        tenant_id = _header_int("X-Tenant-Id")
        if tenant_id is None:
            return jsonify({"error": "Tenant context required"}), 401
        user_id = _header_int("X-User-Id")
        if tenant_id is False or user_id is False:
            return jsonify({"error": "X-Tenant-Id and X-User-Id must be integers"}), 400

        g.tenant_id = tenant_id
        g.user_id = user_id
        return f(*args, **kwargs)

    return decorated_function
