"""
Gmail Push Notifications (watch) management.

Handles:
- Registering Gmail watch requests (push notifications via Pub/Sub)
- Renewing watches that expire within a day

CRITICAL: Gmail watches expire after 7 days and must be renewed.

References:
- https://developers.google.com/gmail/api/guides/push
"""

import logging
from typing import Dict, List

import sentry_sdk
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.email_account import EmailAccount, EmailProviderType
from app.modules.email.factory import get_email_provider
from app.modules.email.gmail_provider import GmailProvider

logger = logging.getLogger(__name__)


async def register_gmail_watch(account: EmailAccount, session: AsyncSession) -> Dict:
    """
    Register (or renew) the Gmail watch for an account.

    Stores the new expiration, and the watch historyId when the account has
    no history cursor yet.

    Raises:
        ValueError: If GOOGLE_PUBSUB_TOPIC is not configured
        ProviderError: If the Gmail API call fails
    """
    if not settings.GOOGLE_PUBSUB_TOPIC:
        raise ValueError(
            "GOOGLE_PUBSUB_TOPIC not configured. "
            "Please set environment variable before registering watches."
        )

    provider = await get_email_provider(account, session)
    response = await provider.watch(settings.GOOGLE_PUBSUB_TOPIC)

    expiration = GmailProvider.watch_expiration_to_datetime(response["expiration"])
    account.watch_expiration = expiration
    if not account.last_history_id:
        account.last_history_id = str(response.get("historyId"))
    await session.flush()

    logger.info(
        f"Gmail watch registered for account {account.id} (expires: {expiration.isoformat()})",
        extra={"email_account_id": str(account.id)}
    )
    return {"history_id": response.get("historyId"), "expiration": expiration}


async def renew_expiring_watches(session: AsyncSession) -> List[str]:
    """
    Renew every active Gmail watch that expires within 24 hours.

    Failures are logged and reported; the next daily run retries them.

    Returns:
        Ids of renewed accounts
    """
    result = await session.execute(
        select(EmailAccount).where(
            EmailAccount.provider == EmailProviderType.GOOGLE.value,
            EmailAccount.is_active.is_(True),
        )
    )
    renewed = []

    for account in result.scalars().all():
        if not account.needs_watch_renewal:
            continue
        try:
            await register_gmail_watch(account, session)
            renewed.append(str(account.id))
        except Exception as e:
            logger.error(
                f"Failed to renew watch for account {account.id}: {e}",
                extra={"email_account_id": str(account.id)}
            )
            sentry_sdk.capture_exception(e)

    return renewed
