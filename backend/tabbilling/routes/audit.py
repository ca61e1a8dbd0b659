# Overview: Flask API routes for the audit trail; filtered reads, CSV export and statistics.

"""
Audit Trail API Routes

Read-only. Entries are written by the services inside the transaction they
describe; nothing here updates or deletes them.

Common filters (query string):
    entity_type, entity_id, action, actor_id, date_from, date_to, search
"""

from flask import Blueprint, Response, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import audit_service
from ..validation import optional_datetime, optional_int
from .responses import DOMAIN_ERRORS, error_response
from tabbilling.time_utils import utcnow


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")

MAX_PAGE_SIZE = 500


def _filters() -> dict:
    args = request.args
    return {
        "entity_type": args.get("entity_type") or None,
        "entity_id": args.get("entity_id") or None,
        "action": args.get("action") or None,
        "actor_id": args.get("actor_id") or None,
        "date_from": optional_datetime(args.get("date_from"), "date_from"),
        "date_to": optional_datetime(args.get("date_to"), "date_to"),
        "search": args.get("search") or None,
    }


@audit_bp.get("")
@require_actor
def list_audit_route():
    try:
        trail = audit_service.query_audit_trail(
            g.org_id,
            limit=optional_int(
                request.args.get("limit"),
                "limit",
                current_app.config.get("AUDIT_PAGE_SIZE", 50),
                minimum=1,
                maximum=MAX_PAGE_SIZE,
            ),
            offset=optional_int(request.args.get("offset"), "offset", 0),
            **_filters(),
        )
        return jsonify(trail.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to query audit trail")
        return jsonify({"error": "Internal server error"}), 500


@audit_bp.get("/export")
@require_actor
def export_audit_route():
    try:
        csv_text = audit_service.export_audit_trail(g.org_id, **_filters())
        filename = f"audit-trail-{utcnow().strftime('%Y%m%d-%H%M%S')}.csv"
        return Response(
            csv_text,
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to export audit trail")
        return jsonify({"error": "Internal server error"}), 500


@audit_bp.get("/stats")
@require_actor
def audit_stats_route():
    try:
        stats = audit_service.get_audit_statistics(
            g.org_id,
            date_from=optional_datetime(request.args.get("date_from"), "date_from"),
            date_to=optional_datetime(request.args.get("date_to"), "date_to"),
            entity_type=request.args.get("entity_type") or None,
        )
        return jsonify(stats), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute audit statistics")
        return jsonify({"error": "Internal server error"}), 500
