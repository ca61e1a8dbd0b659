from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from tabbilling.time_utils import parse_iso_datetime


# Maximum amount: $9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

REASON_MAX_LENGTH = 500


class ValidationError(ValueError):
    """400-level input problem (InvalidArgument)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(LookupError):
    """404-level: entity missing or owned by another organization."""


class ConflictError(ValueError):
    """409-level business rule conflict (safety check failed, terminal state)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ForbiddenError(PermissionError):
    """403-level: actor lacks privilege for an override path."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer", {col.key: "must be an integer"})
            if 'e' in stripped.lower() or '.' in stripped:
                raise ValidationError(f"{col.key} must be a plain integer", {col.key: "must be a plain integer"})
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer", {col.key: "must be an integer"})
        raise ValidationError(f"{col.key} must be an integer", {col.key: "must be an integer"})

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean", {col.key: "must be a boolean"})

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                dt = None
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", {col.key: "must be an ISO-8601 datetime"})
            return dt
        raise ValidationError(f"{col.key} must be a datetime", {col.key: "must be a datetime"})

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                {f: "is required" for f in missing},
            )

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields or k not in cols:
            raise ValidationError(f"Field not allowed: {k}", {k: "not allowed"})

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", {k: "cannot be null"})
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", {k: "cannot be blank"})

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(
                    f"{k} exceeds max length {col.type.length}",
                    {k: f"exceeds max length {col.type.length}"},
                )

        patch[k] = val

    return patch


def enforce_amount_range(patch: dict, *fields: str, allow_zero: bool = False) -> None:
    for field in fields:
        value = patch.get(field)
        if value is None:
            continue
        if value < 0 or (value == 0 and not allow_zero):
            raise ValidationError(f"{field} must be positive", {field: "must be positive"})
        if value > MAX_AMOUNT_CENTS:
            raise ValidationError(
                f"{field} cannot exceed {MAX_AMOUNT_CENTS}",
                {field: f"cannot exceed {MAX_AMOUNT_CENTS}"},
            )


# =============================================================================
# REQUEST FIELD HELPERS
# =============================================================================

def require_reason(payload: dict, field: str = "reason") -> str:
    """Reason strings are 1..500 characters after trimming."""
    raw = payload.get(field)
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError(f"{field} is required", {field: "is required"})
    reason = raw.strip()
    if len(reason) > REASON_MAX_LENGTH:
        raise ValidationError(
            f"{field} exceeds max length {REASON_MAX_LENGTH}",
            {field: f"exceeds max length {REASON_MAX_LENGTH}"},
        )
    return reason


def optional_bool(payload: dict, field: str, default: bool) -> bool:
    raw = payload.get(field)
    if raw is None:
        return default
    if not isinstance(raw, bool):
        raise ValidationError(f"{field} must be a boolean", {field: "must be a boolean"})
    return raw


def optional_uuid(payload: dict, field: str) -> str | None:
    raw = payload.get(field)
    if raw is None or raw == "":
        return None
    try:
        return str(uuid.UUID(str(raw)))
    except ValueError:
        raise ValidationError(f"{field} must be a UUID", {field: "must be a UUID"})


def optional_int(value: Any, field: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", {field: "must be an integer"})
    if number < minimum or (maximum is not None and number > maximum):
        raise ValidationError(f"{field} is out of range", {field: "out of range"})
    return number


def optional_datetime(value: Any, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", {field: "must be an ISO-8601 datetime"})
