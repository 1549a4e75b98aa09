# sourcing/jobs/scheduled.py
"""
Scheduled background jobs triggered by an external scheduler -> API endpoints.

Jobs:
  - close-expired-solicitations: Every 5 minutes
"""

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy import select
import structlog

from sourcing import database
from sourcing.models.solicitation import Solicitation
from sourcing.services import evaluation_service
from sourcing.services.notification_service import dispatch_notifications

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """
    Verify request comes from the scheduler or an internal service.
    Validates X-Internal-Secret header against INTERNAL_JOB_SECRET from settings.
    """
    from sourcing.config import settings
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # In development (DEBUG=True), allow unauthenticated internal calls
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/close-expired-solicitations")
async def close_expired_solicitations(
    background_tasks: BackgroundTasks,
    _auth: None = Depends(_require_internal_auth),
):
    """
    Close every PUBLISHED solicitation whose deadline has passed and evaluate it.

    Each solicitation gets its own session so one failure cannot roll back
    another; a close is committed even when its evaluation fails.
    """
    now = datetime.utcnow()
    async with database.AsyncSessionLocal() as session:
        result = await session.execute(
            select(Solicitation.id).where(
                Solicitation.status == "PUBLISHED",
                Solicitation.deadline <= now,
            )
        )
        due = [row[0] for row in result.all()]

    summary = {"due": len(due), "closed": 0, "awarded_items": 0, "failed_items": 0, "errors": 0}
    for solicitation_id in due:
        async with database.AsyncSessionLocal() as session:
            try:
                evaluation = await evaluation_service.close_and_evaluate(session, solicitation_id)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                summary["errors"] += 1
                logger.error(
                    "scheduled_close_failed",
                    solicitation_id=str(solicitation_id),
                    error=str(exc),
                )
                continue
        summary["closed"] += 1
        summary["awarded_items"] += evaluation.success_count
        summary["failed_items"] += evaluation.failure_count
        if evaluation.notifications:
            background_tasks.add_task(dispatch_notifications, evaluation.notifications)

    logger.info("close_expired_solicitations_complete", **summary)
    return summary
