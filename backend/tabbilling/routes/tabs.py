# Overview: Flask API routes for tabs; splitting, billing group listing, line item assignment and voiding.

"""
Tab API Routes

SPLITTING:
- POST /api/tabs/<id>/split          create groups and assign every line item
- POST /api/tabs/<id>/split/preview  same plan, nothing persisted

RULES:
- POST /api/tabs/<id>/line-items/auto-assign          move items by their groups' rules
- POST /api/tabs/<id>/line-items/auto-assign/preview  same evaluation, nothing persisted

VOIDING:
- GET  /api/tabs/<id>/validate-voiding  blockers + warnings, no changes
- POST /api/tabs/<id>/void              void (409 with the check when blocked)
- PUT  /api/tabs/<id>/void              restore to the previous status
- GET  /api/tabs/<id>/void              void/restore history
- GET  /api/tabs/voided                 voided tabs, newest void first
- POST /api/tabs/bulk-void              up to BULK_VOID_MAX_TABS tabs, one transaction each

All lookups are scoped to the caller's organization (X-Org-Id).
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import billing_group_service, rule_service, voiding_service
from ..services.allocation_service import parse_split_request
from ..validation import (
    ValidationError,
    optional_bool,
    optional_datetime,
    optional_int,
    require_reason,
)
from .responses import DOMAIN_ERRORS, error_response


tabs_bp = Blueprint("tabs", __name__, url_prefix="/api/tabs")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def _void_options(data: dict) -> dict:
    return {
        "skip_validation": optional_bool(data, "skip_validation", False),
        "close_active_billing_groups": optional_bool(data, "close_active_billing_groups", True),
        "void_draft_invoices": optional_bool(data, "void_draft_invoices", True),
    }


# =============================================================================
# SPLITTING
# =============================================================================

@tabs_bp.post("/<tab_id>/split")
@require_actor
def split_tab_route(tab_id: str):
    """
    Split a tab into new billing groups.

    Request body:
    {
        "split_type": "even" | "corporate_personal" | "by_category",
        "number_of_groups": 3,                      (even only, 2..10)
        "rules": {                                  (corporate_personal only)
            "corporate": {"categories": [...], "time_range": {"start": "09:00", "end": "17:00"},
                          "weekdays_only": true},
            "personal": {"categories": [...]}
        }
    }

    Returns:
        200: {message, split_type, groups_created, items_assigned, groups}
        400: invalid strategy, or the tab has no line items
        404: tab not found
        409: tab is void
    """
    try:
        strategy = parse_split_request(_json_body())
        result = billing_group_service.apply_split(tab_id, g.org_id, g.actor_id, strategy)
        return jsonify(result), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to split tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/split/preview")
@require_actor
def preview_split_route(tab_id: str):
    try:
        strategy = parse_split_request(_json_body())
        plan = billing_group_service.preview_split(tab_id, g.org_id, strategy)
        return jsonify(plan.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to preview split for tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BILLING GROUPS ON A TAB
# =============================================================================

@tabs_bp.get("/<tab_id>/billing-groups")
@require_actor
def list_billing_groups_route(tab_id: str):
    try:
        groups = billing_group_service.list_billing_groups(tab_id, g.org_id)
        return jsonify({"billing_groups": [grp.to_dict() for grp in groups]}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list billing groups for tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/billing-groups")
@require_actor
def create_billing_group_route(tab_id: str):
    """
    Create a billing group.

    Request body:
    {
        "name": "Acme Corp",
        "group_type": "standard" | "corporate" | "deposit" | "credit",
        "credit_limit_cents": 500000,     (required for credit)
        "deposit_amount_cents": 20000,    (required for deposit)
        "payer_email": "ap@acme.test",
        "po_number": "PO-1001"
    }
    """
    try:
        group = billing_group_service.create_billing_group(tab_id, g.org_id, g.actor_id, _json_body())
        return jsonify(group.to_dict()), 201
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create billing group for tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.get("/<tab_id>/billing-summary")
@require_actor
def billing_summary_route(tab_id: str):
    try:
        return jsonify(billing_group_service.get_tab_billing_summary(tab_id, g.org_id)), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load billing summary for tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/line-items/assign")
@require_actor
def assign_line_items_route(tab_id: str):
    """
    Request body:
    {
        "assignments": [{"line_item_id": "...", "billing_group_id": "..." | null}]
    }
    """
    try:
        data = _json_body()
        changed = billing_group_service.assign_line_items(tab_id, g.org_id, g.actor_id, data.get("assignments"))
        return jsonify({
            "message": "Line items assigned",
            "items_changed": len(changed),
            "line_items": [item.to_dict() for item in changed],
        }), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign line items on tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/line-items/auto-assign")
@require_actor
def auto_assign_line_items_route(tab_id: str):
    """
    Request body (optional):
    {
        "only_unassigned": true
    }

    Returns:
        200: {message, items_assigned, assignments, held, unmatched}
        409: tab is void
    """
    try:
        data = _json_body()
        result = rule_service.auto_assign_line_items(
            tab_id,
            g.org_id,
            g.actor_id,
            only_unassigned=optional_bool(data, "only_unassigned", True),
        )
        return jsonify(result), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to auto-assign line items on tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/line-items/auto-assign/preview")
@require_actor
def preview_auto_assign_route(tab_id: str):
    try:
        data = _json_body()
        result = rule_service.preview_auto_assign(
            tab_id, g.org_id, only_unassigned=optional_bool(data, "only_unassigned", True)
        )
        return jsonify(result), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to preview auto-assignment on tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# VOIDING
# =============================================================================

@tabs_bp.get("/<tab_id>/validate-voiding")
@require_actor
def validate_voiding_route(tab_id: str):
    try:
        check = voiding_service.validate_voiding(tab_id, g.org_id)
        return jsonify(check.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to validate voiding for tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/void")
@require_actor
def void_tab_route(tab_id: str):
    """
    Void a tab.

    Request body:
    {
        "reason": "Duplicate tab",              (required, 1..500 chars)
        "close_active_billing_groups": true,
        "void_draft_invoices": true,
        "skip_validation": false
    }

    Returns:
        200: {message, audit_entry}
        409: {error, blockers, warnings, tab} when blocked, or already void
    """
    try:
        data = _json_body()
        reason = require_reason(data)
        entry = voiding_service.void_tab(tab_id, g.org_id, g.actor_id, reason, **_void_options(data))
        return jsonify({"message": "Tab voided successfully", "audit_entry": entry.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.put("/<tab_id>/void")
@require_actor
def restore_tab_route(tab_id: str):
    try:
        reason = require_reason(_json_body())
        entry = voiding_service.restore_tab(tab_id, g.org_id, g.actor_id, reason)
        return jsonify({"message": "Tab restored successfully", "audit_entry": entry.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to restore tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.get("/<tab_id>/void")
@require_actor
def voiding_history_route(tab_id: str):
    try:
        return jsonify(voiding_service.get_voiding_history(tab_id, g.org_id)), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load voiding history for tab %s", tab_id)
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.get("/voided")
@require_actor
def list_voided_tabs_route():
    """
    Query params: limit (1..200, default 50), offset, date_from, date_to (ISO-8601, on void time)
    """
    try:
        result = voiding_service.list_voided_tabs(
            g.org_id,
            limit=optional_int(request.args.get("limit"), "limit", 50, minimum=1, maximum=200),
            offset=optional_int(request.args.get("offset"), "offset", 0),
            date_from=optional_datetime(request.args.get("date_from"), "date_from"),
            date_to=optional_datetime(request.args.get("date_to"), "date_to"),
        )
        return jsonify(result), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list voided tabs")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/bulk-void")
@require_actor
def bulk_void_route():
    """
    Request body:
    {
        "tab_ids": ["...", "..."],      (1..BULK_VOID_MAX_TABS)
        "reason": "End of event cleanup",
        ...void options as for a single void
    }

    Returns 200 even when some tabs fail; see summary.
    """
    try:
        data = _json_body()
        reason = require_reason(data)
        result = voiding_service.bulk_void_tabs(
            data.get("tab_ids"),
            g.org_id,
            g.actor_id,
            reason,
            **_void_options(data),
        )
        return jsonify(result), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk void tabs")
        return jsonify({"error": "Internal server error"}), 500
