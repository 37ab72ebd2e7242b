"""
Action dispatch: one provider operation per ActionType.

Every function takes the same arguments and returns an optional result
dict (DRAFT_EMAIL returns {"draft_id": ...}).
"""

import logging
from typing import Dict, Optional

from app.models.email_message import ParsedMessage, SendEmailBody
from app.models.executed_rule import ExecutedRule
from app.models.matching import ActionItem
from app.models.rule import ActionType
from app.models.webhook import OutgoingWebhookPayload, WebhookEmailInfo, WebhookExecutedRuleInfo
from app.modules.email.provider import EmailProvider
from app.modules.rules.draft_management import handle_previous_draft_deletion
from app.modules.rules.reply_tracking import coordinate_reply_process
from app.modules.rules.webhook_caller import call_webhook

logger = logging.getLogger(__name__)


async def archive(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    await provider.archive_thread(message.thread_id)


async def label(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    if not action.label:
        return
    created = await provider.get_or_create_label(action.label)
    if not created or not created.get("id"):
        raise ValueError("Label not found and unable to create label")
    await provider.label_message(message.id, created["id"])


async def draft(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session) -> Dict:
    draft_id = await provider.draft_email(
        message,
        content=action.content or "",
        to=action.to,
        cc=action.cc,
        bcc=action.bcc,
        subject=action.subject,
    )
    await handle_previous_draft_deletion(provider, executed_rule, session)
    return {"draft_id": draft_id}


async def reply(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    if not action.content:
        return
    await provider.reply_to_email(message, action.content)
    await coordinate_reply_process(session, executed_rule.email_account_id, message)


async def send_email(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    if not action.to or not action.subject or not action.content:
        return
    await provider.send_email(SendEmailBody(
        to=action.to,
        cc=action.cc,
        bcc=action.bcc,
        subject=action.subject,
        content=action.content,
    ))


async def forward(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    if not action.to:
        return
    await provider.forward_email(message, to=action.to, cc=action.cc, bcc=action.bcc, content=action.content)


async def mark_spam(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    await provider.mark_spam(message.thread_id)


def build_webhook_payload(message: ParsedMessage, executed_rule: ExecutedRule) -> OutgoingWebhookPayload:
    headers = message.headers
    return OutgoingWebhookPayload(
        email=WebhookEmailInfo(
            threadId=message.thread_id,
            messageId=message.id,
            subject=headers.subject or "",
            from_=headers.from_ or "",
            cc=headers.cc,
            bcc=headers.bcc,
            headerMessageId=headers.message_id or "",
        ),
        executedRule=WebhookExecutedRuleInfo(
            id=str(executed_rule.id),
            ruleId=str(executed_rule.rule_id) if executed_rule.rule_id else None,
            reason=executed_rule.reason,
            automated=bool(executed_rule.automated),
            createdAt=executed_rule.created_at,
        ),
    )


async def call_webhook_action(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    if not action.url:
        return
    await call_webhook(action.url, build_webhook_payload(message, executed_rule))


async def mark_read(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    await provider.mark_read_thread(message.thread_id, read=True)


async def track_thread(provider: EmailProvider, message: ParsedMessage, action: ActionItem, executed_rule, session):
    await coordinate_reply_process(session, executed_rule.email_account_id, message)


ACTION_FUNCTIONS = {
    ActionType.ARCHIVE: archive,
    ActionType.LABEL: label,
    ActionType.DRAFT_EMAIL: draft,
    ActionType.REPLY: reply,
    ActionType.SEND_EMAIL: send_email,
    ActionType.FORWARD: forward,
    ActionType.MARK_SPAM: mark_spam,
    ActionType.CALL_WEBHOOK: call_webhook_action,
    ActionType.MARK_READ: mark_read,
    ActionType.TRACK_THREAD: track_thread,
}


async def run_action_function(
    provider: EmailProvider,
    message: ParsedMessage,
    action: ActionItem,
    executed_rule: ExecutedRule,
    session,
) -> Optional[Dict]:
    """
    Run a single action against the mailbox.

    Raises:
        ValueError: Unknown action type
        ProviderError: The provider call failed
        WebhookError: CALL_WEBHOOK delivery failed
    """
    function = ACTION_FUNCTIONS.get(action.type)
    if function is None:
        raise ValueError(f"Unknown action: {action.type}")

    logger.info(
        f"Running action {action.type.value}",
        extra={
            "email_account_id": str(executed_rule.email_account_id),
            "message_id": message.id,
            "action_id": action.id,
        }
    )
    return await function(provider, message, action, executed_rule, session)
