# Overview: Service-layer operations for the audit trail; append-only writes and filtered reads.

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from flask import current_app, has_request_context, request

from ..extensions import db
from ..models import AuditEntry
from ..models.audit import AUDIT_ACTIONS, ENTITY_TYPES
from ..validation import ValidationError
from tabbilling.time_utils import to_utc_z, utcnow
"""
Audit trail invariants

- Append-only: there is no update or delete path, and the model refuses both.
- Entries are written inside the same DB transaction as the change they record,
  so a rolled-back change leaves no entry behind.
- Reads are newest-first (id DESC; ids are autoincrement and never reused).
"""


EXPORT_HEADERS = [
    "Timestamp",
    "Entity Type",
    "Entity ID",
    "Action",
    "Actor",
    "Changes",
    "Metadata",
    "IP Address",
]


@dataclass
class AuditTrail:
    entries: list[AuditEntry]
    total_count: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "events": [e.to_dict() for e in self.entries],
            "total_count": self.total_count,
            "has_more": self.has_more,
        }


def diff(before: dict, after: dict) -> dict:
    """Build a {field: {"from": x, "to": y}} map of the keys whose values differ."""
    changes = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if old != new:
            changes[key] = {"from": old, "to": new}
    return changes


def record_event(
    *,
    org_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: str,
    changes: Optional[dict] = None,
    metadata: Optional[dict] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> AuditEntry:
    """
    Append one audit entry to the current transaction.

    Flushes (so the entry gets its id) but never commits; the caller owns the
    transaction boundary. Inside a request, client IP and user agent default
    to the current request.
    """
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    if not actor_id:
        raise ValueError("Audit entries require an actor")

    if has_request_context():
        ip_address = ip_address or request.remote_addr
        user_agent = user_agent or (request.headers.get("User-Agent") or "")[:512] or None

    entry = AuditEntry(
        org_id=org_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=str(actor_id),
        changes=changes or {},
        meta=metadata or {},
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()

    current_app.logger.debug(
        "Recorded audit entry %s: %s %s %s by %s",
        entry.id, entity_type, entity_id, action, actor_id,
    )
    return entry


def _filtered_query(
    org_id: str,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    actor_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    search: str | None = None,
):
    if entity_type is not None and entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Invalid entity_type '{entity_type}'", {"entity_type": "unknown entity type"})
    if action is not None and action not in AUDIT_ACTIONS:
        raise ValidationError(f"Invalid action '{action}'", {"action": "unknown action"})

    q = db.session.query(AuditEntry).filter(AuditEntry.org_id == org_id)

    if entity_type:
        q = q.filter(AuditEntry.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEntry.entity_id == entity_id)
    if action:
        q = q.filter(AuditEntry.action == action)
    if actor_id:
        q = q.filter(AuditEntry.actor_id == actor_id)
    if date_from is not None:
        q = q.filter(AuditEntry.occurred_at >= date_from)
    if date_to is not None:
        q = q.filter(AuditEntry.occurred_at <= date_to)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(
            db.or_(
                AuditEntry.entity_id.ilike(pattern),
                AuditEntry.actor_id.ilike(pattern),
                db.cast(AuditEntry.meta, db.Text).ilike(pattern),
            )
        )

    return q


def query_audit_trail(
    org_id: str,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    actor_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    search: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> AuditTrail:
    """
    Filtered, paginated, newest-first view of the audit trail.

    All filters are optional and combined with AND. search is a
    case-insensitive substring match on entity id, actor id and metadata.
    """
    if limit is None:
        limit = current_app.config.get("AUDIT_PAGE_SIZE", 50)

    q = _filtered_query(
        org_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
    )

    total = q.count()
    entries = q.order_by(AuditEntry.id.desc()).offset(offset).limit(limit).all()

    return AuditTrail(
        entries=entries,
        total_count=total,
        has_more=offset + limit < total,
    )


def get_entity_history(org_id: str, entity_type: str, entity_id: str) -> list[AuditEntry]:
    """Every entry for one entity, newest first."""
    return query_audit_trail(
        org_id,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=current_app.config.get("AUDIT_EXPORT_LIMIT", 10000),
    ).entries


def _csv_cell(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return "" if value is None else str(value)


def export_audit_trail(org_id: str, **filters) -> str:
    """
    Export the filtered trail as CSV text (header row + one row per entry).

    WHY: Auditors pull the trail into spreadsheets; the export is capped at
    AUDIT_EXPORT_LIMIT rows.
    """
    filters.pop("limit", None)
    filters.pop("offset", None)
    trail = query_audit_trail(
        org_id,
        limit=current_app.config.get("AUDIT_EXPORT_LIMIT", 10000),
        **filters,
    )

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for e in trail.entries:
        writer.writerow([
            to_utc_z(e.occurred_at),
            e.entity_type,
            e.entity_id,
            e.action,
            e.actor_id,
            _csv_cell(e.changes),
            _csv_cell(e.meta),
            _csv_cell(e.ip_address),
        ])
    return buf.getvalue()


def get_audit_statistics(
    org_id: str,
    *,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    entity_type: str | None = None,
) -> dict:
    """Aggregate counts over the (optionally filtered) trail."""
    q = _filtered_query(org_id, entity_type=entity_type, date_from=date_from, date_to=date_to)

    total = q.count()
    unique_actors = q.with_entities(db.func.count(db.distinct(AuditEntry.actor_id))).scalar() or 0
    unique_entities = q.with_entities(
        db.func.count(db.distinct(AuditEntry.entity_type + ":" + AuditEntry.entity_id))
    ).scalar() or 0

    action_counts = dict(
        q.with_entities(AuditEntry.action, db.func.count(AuditEntry.id))
        .group_by(AuditEntry.action)
        .all()
    )
    entity_type_counts = dict(
        q.with_entities(AuditEntry.entity_type, db.func.count(AuditEntry.id))
        .group_by(AuditEntry.entity_type)
        .all()
    )

    recent = q.order_by(AuditEntry.id.desc()).limit(10).all()

    return {
        "total_events": total,
        "unique_actors": unique_actors,
        "unique_entities": unique_entities,
        "action_counts": action_counts,
        "entity_type_counts": entity_type_counts,
        "recent_activity": [
            {
                "id": e.id,
                "action": e.action,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "actor_id": e.actor_id,
                "occurred_at": to_utc_z(e.occurred_at),
            }
            for e in recent
        ],
    }
