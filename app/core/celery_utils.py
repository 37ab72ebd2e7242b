"""
Helpers for running the async engine inside Celery tasks.

CRITICAL: Celery's prefork workers are synchronous. asyncio.run() closes the
loop after each call, which breaks the asyncpg connection pool shared by the
module-level engine, so tasks reuse one loop per worker process.
"""

import asyncio


def run_async_task(coro):
    """
    Run a coroutine on the worker's persistent event loop.

    Usage:
        @celery_app.task(bind=True)
        def run_rules_for_message(self, email_account_id, message_id):
            async def _run():
                ...

            return run_async_task(_run())
    """
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    # The loop stays open for the next task in this process
    return loop.run_until_complete(coro)
