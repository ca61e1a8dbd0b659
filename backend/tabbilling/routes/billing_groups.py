# Overview: Flask API routes for single billing groups; read, update, guarded deletion and rules.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import is_privileged, require_actor
from ..services import billing_group_service, rule_service
from ..validation import ValidationError, optional_uuid
from .responses import DOMAIN_ERRORS, error_response


billing_groups_bp = Blueprint("billing_groups", __name__, url_prefix="/api/billing-groups")


def _flag(value, field: str = "force") -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("", "0", "false", "no"):
        return False
    raise ValidationError(f"{field} must be a boolean", {field: "must be a boolean"})


def _deletion_params() -> dict:
    """Deletion options may arrive as query args or as a JSON body."""
    params = dict(request.args)
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        params.update(body)
    return params


@billing_groups_bp.get("/<group_id>")
@require_actor
def get_billing_group_route(group_id: str):
    try:
        group = billing_group_service.get_billing_group(group_id, g.org_id)
        data = group.to_dict()
        data["line_items"] = [item.to_dict() for item in group.line_items]
        data["invoice"] = group.invoice.to_dict() if group.invoice else None
        return jsonify(data), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load billing group %s", group_id)
        return jsonify({"error": "Internal server error"}), 500


@billing_groups_bp.put("/<group_id>")
@require_actor
def update_billing_group_route(group_id: str):
    """
    Request body (all optional):
    {
        "name": "...", "status": "active" | "closed" | "suspended",
        "credit_limit_cents": int, "deposit_amount_cents": int,
        "payer_email": "...", "po_number": "..."
    }
    """
    try:
        payload = request.get_json(silent=True)
        group = billing_group_service.update_billing_group(group_id, g.org_id, g.actor_id, payload)
        return jsonify(group.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update billing group %s", group_id)
        return jsonify({"error": "Internal server error"}), 500


@billing_groups_bp.get("/<group_id>/validate-deletion")
@require_actor
def validate_deletion_route(group_id: str):
    try:
        check = billing_group_service.validate_deletion(
            group_id,
            g.org_id,
            move_line_items_to_group_id=optional_uuid(request.args, "move_line_items_to_group_id"),
        )
        return jsonify(check.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to validate deletion of billing group %s", group_id)
        return jsonify({"error": "Internal server error"}), 500


@billing_groups_bp.delete("/<group_id>")
@require_actor
def delete_billing_group_route(group_id: str):
    """
    Delete a billing group.

    Params (query string or JSON body):
        move_line_items_to_group_id: group on the same tab to receive the items
        force: bypass blockers (privileged roles only)

    Returns:
        204: deleted
        403: force requested without a privileged role
        409: {error, blockers, warnings, billing_group}
    """
    try:
        params = _deletion_params()
        billing_group_service.delete_billing_group(
            group_id,
            g.org_id,
            g.actor_id,
            move_line_items_to_group_id=optional_uuid(params, "move_line_items_to_group_id"),
            force=_flag(params.get("force")),
            privileged=is_privileged(),
        )
        return "", 204
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete billing group %s", group_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RULES
# =============================================================================

@billing_groups_bp.get("/<group_id>/rules")
@require_actor
def list_rules_route(group_id: str):
    try:
        include_inactive = _flag(request.args.get("include_inactive", "true"), "include_inactive")
        rules = rule_service.list_rules(group_id, g.org_id, include_inactive=include_inactive)
        return jsonify({"rules": [r.to_dict() for r in rules]}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list rules for billing group %s", group_id)
        return jsonify({"error": "Internal server error"}), 500


@billing_groups_bp.post("/<group_id>/rules")
@require_actor
def create_rule_route(group_id: str):
    """
    Request body:
    {
        "name": "Corporate meals",
        "priority": 10,
        "action": "auto_assign" | "require_approval" | "notify" | "reject",
        "is_active": true,
        "conditions": {
            "categories": ["food"],
            "amount": {"min_cents": 0, "max_cents": 5000},
            "time": {"start": "09:00", "end": "17:00"},
            "days_of_week": [1, 2, 3, 4, 5]
        }
    }
    """
    try:
        payload = request.get_json(silent=True)
        rule = rule_service.create_rule(group_id, g.org_id, g.actor_id, payload)
        return jsonify(rule.to_dict()), 201
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create rule for billing group %s", group_id)
        return jsonify({"error": "Internal server error"}), 500


@billing_groups_bp.put("/<group_id>/rules/<rule_id>")
@require_actor
def update_rule_route(group_id: str, rule_id: str):
    try:
        payload = request.get_json(silent=True)
        rule = rule_service.update_rule(group_id, rule_id, g.org_id, g.actor_id, payload)
        return jsonify(rule.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update rule %s", rule_id)
        return jsonify({"error": "Internal server error"}), 500


@billing_groups_bp.delete("/<group_id>/rules/<rule_id>")
@require_actor
def delete_rule_route(group_id: str, rule_id: str):
    try:
        rule_service.delete_rule(group_id, rule_id, g.org_id, g.actor_id)
        return "", 204
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete rule %s", rule_id)
        return jsonify({"error": "Internal server error"}), 500
