# Overview: Maps domain exceptions to JSON error responses shared by the API blueprints.

from flask import jsonify

from ..services.billing_group_service import DeletionBlockedError
from ..services.voiding_service import CannotVoidError
from ..validation import ConflictError, ForbiddenError, NotFoundError, ValidationError


DOMAIN_ERRORS = (ValidationError, NotFoundError, ConflictError, ForbiddenError)


def error_response(exc: Exception):
    """
    400 ValidationError  -> {"error", "details"}
    404 NotFoundError    -> {"error"}
    409 blocked by a safety check -> {"error", "blockers", "warnings", <subject>}
    409 ConflictError    -> {"error", "details"}
    403 ForbiddenError   -> {"error"}
    """
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc), "details": exc.details}), 400
    if isinstance(exc, NotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (DeletionBlockedError, CannotVoidError)):
        body = {"error": str(exc)}
        body.update(exc.details)
        return jsonify(body), 409
    if isinstance(exc, ConflictError):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, ForbiddenError):
        return jsonify({"error": str(exc)}), 403
    raise exc
