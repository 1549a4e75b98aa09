"""Audit logging service — records award decisions and lifecycle changes."""

from typing import Optional
from datetime import datetime
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from sourcing.models.audit_log import AuditLog

logger = structlog.get_logger()


def _to_uuid(value, field_name: str, required: bool = False) -> Optional[uuid.UUID]:
    if value is None:
        if required:
            raise ValueError(f"{field_name} is required")
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        if required:
            raise ValueError(f"{field_name} must be a valid UUID")
        logger.warning("audit_invalid_uuid", field=field_name, value=str(value))
        return None


def _jsonable(details: Optional[dict]) -> dict:
    """Stringify UUIDs and datetimes so the details fit a JSON column."""
    if not details:
        return {}
    out = {}
    for key, value in details.items():
        if isinstance(value, (uuid.UUID, datetime)):
            value = str(value)
        elif isinstance(value, (list, tuple, set)):
            value = [str(v) if isinstance(v, (uuid.UUID, datetime)) else v for v in value]
        out[key] = value
    return out


async def record_audit(
    session: AsyncSession,
    action: str,
    resource_type: str,
    resource_id,
    actor_id=None,
    details: Optional[dict] = None,
) -> Optional[AuditLog]:
    """
    Write an audit log entry inside a savepoint of the caller's transaction.

    Audit is best-effort: a failure is logged and swallowed, and the savepoint
    keeps it from disturbing the caller's own changes.
    """
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    try:
        async with session.begin_nested():
            audit = AuditLog(
                actor_id=_to_uuid(actor_id, "actor_id"),
                action=action,
                resource_type=resource_type,
                resource_id=_to_uuid(resource_id, "resource_id", required=True),
                request_id=request_id,
                details=_jsonable(details),
                created_at=datetime.utcnow(),
            )
            session.add(audit)
            await session.flush()
    except Exception as exc:
        logger.warning(
            "audit_log_failed",
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            error=str(exc),
        )
        return None

    logger.info(
        "audit_log_created",
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        actor_id=str(actor_id) if actor_id else None,
    )
    return audit
