"""
Outgoing webhooks for CALL_WEBHOOK actions.
"""

import logging

import httpx

from app.core.config import settings
from app.models.webhook import OutgoingWebhookPayload

logger = logging.getLogger(__name__)


WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


class WebhookError(Exception):
    """Raised when the webhook endpoint can't be reached or answers non-2xx."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


async def call_webhook(url: str, payload: OutgoingWebhookPayload, client: httpx.AsyncClient = None) -> None:
    """
    POST the payload as JSON.

    Raises:
        WebhookError: Network failure, timeout or non-2xx response
    """
    headers = {"Content-Type": "application/json"}
    if settings.WEBHOOK_SECRET:
        headers[WEBHOOK_SECRET_HEADER] = settings.WEBHOOK_SECRET

    body = payload.model_dump(mode="json", by_alias=True)
    own_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)

    try:
        response = await client.post(url, json=body, headers=headers)
    except httpx.HTTPError as e:
        logger.error(
            f"Webhook call failed: {type(e).__name__}",
            extra={"executed_rule_id": payload.executedRule.id}
        )
        raise WebhookError(f"Webhook call failed: {e}") from e
    finally:
        if own_client:
            await client.aclose()

    if response.status_code >= 400:
        logger.error(
            f"Webhook returned {response.status_code}",
            extra={"executed_rule_id": payload.executedRule.id}
        )
        raise WebhookError(f"Webhook returned {response.status_code}", status_code=response.status_code)

    logger.info(
        f"Webhook delivered ({response.status_code})",
        extra={"executed_rule_id": payload.executedRule.id}
    )
