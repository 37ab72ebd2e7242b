"""
Pydantic models for webhook requests and responses.

Validates Google Cloud Pub/Sub push requests carrying Gmail notifications,
and describes the payload we POST for CALL_WEBHOOK actions.
"""

import base64
import binascii
import json
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class PubSubMessage(BaseModel):
    """
    Google Cloud Pub/Sub message format.

    Reference: https://cloud.google.com/pubsub/docs/push
    """
    data: str = Field(..., description="Base64-encoded message data")
    messageId: str = Field(..., description="Unique message ID from Pub/Sub")
    publishTime: Optional[str] = Field(None, description="RFC3339 timestamp when message was published")
    attributes: Optional[Dict[str, str]] = Field(default_factory=dict, description="Message attributes")

    def decode_data(self) -> Dict[str, Any]:
        """
        Decode base64 data and parse as JSON.

        Raises:
            ValueError: If data is not valid base64 or JSON
        """
        try:
            decoded_str = base64.b64decode(self.data).decode("utf-8")
            return json.loads(decoded_str)
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to decode Pub/Sub message data: {e}")


class PubSubRequest(BaseModel):
    """Top-level request body sent by Pub/Sub to the push endpoint."""
    message: PubSubMessage = Field(..., description="Pub/Sub message")
    subscription: str = Field(..., description="Subscription name that delivered this message")


class GmailWebhookPayload(BaseModel):
    """
    Decoded Gmail push notification payload.

    Reference: https://developers.google.com/gmail/api/guides/push
    """
    model_config = ConfigDict(populate_by_name=True)

    email_address: str = Field(..., alias="emailAddress")
    history_id: str = Field(..., alias="historyId")


class WebhookResponse(BaseModel):
    """
    Standard webhook response.

    CRITICAL: Webhooks must return 200 OK quickly to prevent Pub/Sub retries.
    All processing happens in Celery.
    """
    status: str = Field("success", description="Response status")
    message: Optional[str] = Field(None, description="Optional message")
    task_id: Optional[str] = Field(None, description="Celery task ID if task was enqueued")


class WebhookEmailInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    threadId: str
    messageId: str
    subject: str = ""
    from_: str = Field("", alias="from")
    cc: Optional[str] = None
    bcc: Optional[str] = None
    headerMessageId: Optional[str] = None


class WebhookExecutedRuleInfo(BaseModel):
    id: str
    ruleId: Optional[str] = None
    reason: Optional[str] = None
    automated: bool = True
    createdAt: datetime


class OutgoingWebhookPayload(BaseModel):
    """Body POSTed to a rule's CALL_WEBHOOK url."""
    email: WebhookEmailInfo
    executedRule: WebhookExecutedRuleInfo
