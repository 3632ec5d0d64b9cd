"""
Custom route decorators for access control.

- internal_api_key_required: the caller must send
  `Authorization: Bearer <INTERNAL_API_KEY>`. Used on the /api/* routes,
  which are called by the storefront backend and back-office tools,
  never directly by browsers.
"""

import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)


def internal_api_key_required(f):
    """Require a Bearer token matching INTERNAL_API_KEY."""

    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return jsonify({"error": "unauthorized", "message": "Missing API key"}), 401

        token = auth_header[7:]
        expected = current_app.config.get("INTERNAL_API_KEY") or ""
        if not expected or not hmac.compare_digest(token, expected):
            logger.warning(f"Rejected API call to {request.path}: invalid API key")
            return jsonify({"error": "unauthorized", "message": "Invalid API key"}), 401

        return f(*args, **kwargs)

    return decorated
