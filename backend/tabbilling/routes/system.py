# backend/tabbilling/routes/system.py
"""
System health endpoint.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import AuditEntry, BillingGroup, Tab
from ..models.tabs import TAB_STATUS_VOID
from tabbilling.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and that the core tables answer queries.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        tab_count = db.session.query(Tab).count()
        void_count = db.session.query(Tab).filter(Tab.status == TAB_STATUS_VOID).count()
        group_count = db.session.query(BillingGroup).count()
        audit_count = db.session.query(AuditEntry).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "tabs": tab_count,
                "void_tabs": void_count,
                "billing_groups": group_count,
                "audit_entries": audit_count,
            }
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()

    healthy = database_health["status"] == "healthy"
    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
        }
    }

    return response, 200 if healthy else 503
