"""
Celery tasks for delayed actions.

Tasks:
- process_due_scheduled_actions: Claim due rows and fan out (every minute)
- execute_scheduled_action_task: Execute one claimed row
"""

import logging
from uuid import UUID

from app.core.celery_app import celery_app
from app.core.celery_utils import run_async_task
from app.core.config import settings
from app.core.database import get_async_session
from app.models.scheduled_action import ScheduledAction, ScheduledActionStatus
from app.modules.scheduled_actions.executor import execute_scheduled_action
from app.modules.scheduled_actions.scheduler import get_due_scheduled_actions, mark_executing

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.scheduled.process_due_scheduled_actions")
def process_due_scheduled_actions():
    """
    Claim due PENDING actions and enqueue one execution task per row.

    Claiming (PENDING -> EXECUTING) is a conditional UPDATE, so overlapping
    sweeps never enqueue the same row twice.

    Returns:
        Dict with sweep stats
    """
    async def _sweep():
        claimed = []
        async with get_async_session() as session:
            due = await get_due_scheduled_actions(session, settings.SCHEDULED_ACTION_BATCH_SIZE)
            for scheduled_action in due:
                if await mark_executing(session, scheduled_action.id):
                    claimed.append(str(scheduled_action.id))

        for scheduled_action_id in claimed:
            execute_scheduled_action_task.delay(scheduled_action_id)

        if claimed:
            logger.info(f"Claimed {len(claimed)} of {len(due)} due scheduled actions")
        return {"due": len(due), "claimed": len(claimed)}

    return run_async_task(_sweep())


@celery_app.task(
    name="app.tasks.scheduled.execute_scheduled_action_task",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def execute_scheduled_action_task(self, scheduled_action_id: str):
    """
    Execute one scheduled action claimed by the sweep.

    Action failures are recorded on the row by the executor (retry or
    FAILED); only infrastructure errors reach Celery's retry.
    """
    async def _execute():
        async with get_async_session() as session:
            scheduled_action = await session.get(ScheduledAction, UUID(scheduled_action_id))
            if scheduled_action is None:
                return {"status": "skipped", "reason": "not_found"}
            if scheduled_action.status != ScheduledActionStatus.EXECUTING.value:
                logger.info(
                    f"Scheduled action is {scheduled_action.status}, skipping",
                    extra={"scheduled_action_id": scheduled_action_id}
                )
                return {"status": "skipped", "reason": scheduled_action.status}

            return await execute_scheduled_action(scheduled_action, session)

    try:
        return run_async_task(_execute())
    except Exception as e:
        logger.error(
            f"Error executing scheduled action {scheduled_action_id}: {e}",
            extra={"scheduled_action_id": scheduled_action_id},
            exc_info=True
        )
        raise self.retry(exc=e, countdown=30 * (2 ** self.request.retries))
