"""
Scheduled action endpoints: inspect and cancel delayed actions.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.rule_schemas import ScheduledActionResponse
from app.models.scheduled_action import ScheduledAction, ScheduledActionStatus
from app.modules.scheduled_actions.scheduler import cancel_scheduled_action

logger = logging.getLogger(__name__)

router = APIRouter(tags=["scheduled-actions"])


@router.get("", response_model=List[ScheduledActionResponse])
async def list_scheduled_actions(
    email_account_id: UUID,
    status: Optional[ScheduledActionStatus] = None,
    db: AsyncSession = Depends(get_db),
):
    """List an account's scheduled actions, soonest first."""
    query = select(ScheduledAction).where(ScheduledAction.email_account_id == email_account_id)
    if status is not None:
        query = query.where(ScheduledAction.status == status.value)

    result = await db.execute(query.order_by(ScheduledAction.scheduled_for))
    return result.scalars().all()


@router.post("/{scheduled_action_id}/cancel", response_model=ScheduledActionResponse)
async def cancel_action(scheduled_action_id: UUID, db: AsyncSession = Depends(get_db)):
    """
    Cancel a pending scheduled action.

    Raises:
        HTTPException 404: Unknown scheduled action
        HTTPException 409: The action is no longer PENDING
    """
    scheduled_action = await db.get(ScheduledAction, scheduled_action_id)
    if not scheduled_action:
        raise HTTPException(status_code=404, detail="Scheduled action not found")

    if not await cancel_scheduled_action(db, scheduled_action_id):
        raise HTTPException(
            status_code=409,
            detail=f"Scheduled action is {scheduled_action.status}, not PENDING",
        )

    logger.info(
        "Scheduled action cancelled by user",
        extra={"scheduled_action_id": str(scheduled_action_id)}
    )
    await db.refresh(scheduled_action)
    return scheduled_action
