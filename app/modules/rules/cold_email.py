"""
Cold email detection.

Order of checks:
1. Sender already labeled cold by AI -> cold
2. Any earlier mail exchanged with the sender -> not cold
3. Ask the LLM
"""

import logging
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from app.models.cold_email import ColdEmail, ColdEmailStatus
from app.models.email_message import ParsedMessage
from app.modules.email.parse import extract_email_address, get_email_for_llm, stringify_email
from app.modules.email.provider import EmailProvider
from app.modules.llm.openai_client import get_llm_client

logger = logging.getLogger(__name__)


DEFAULT_COLD_EMAIL_PROMPT = """Examples of cold emails:
- Sales pitches for products or services the user never asked about
- Recruiters, agencies and freelancers offering their services
- Link building, SEO and guest post requests
- Fundraising or investment outreach from strangers

These are NOT cold emails:
- Newsletters and notifications the user subscribed to
- Receipts, invoices and account emails from services the user uses
- Emails from people the user already knows or is working with
- Replies to something the user sent"""

REASON_KNOWN_SENDER = "ai-already-labeled"
REASON_PREVIOUS_EMAIL = "hasPreviousEmail"
REASON_AI = "ai"


class ColdEmailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cold_email: bool = Field(..., alias="coldEmail")
    reason: str


class ColdEmailResult(NamedTuple):
    is_cold_email: bool
    reason: str
    ai_reason: Optional[str] = None


def build_system_prompt(cold_email_prompt: Optional[str]) -> str:
    return f"""You are an assistant that decides if an email is a cold email or not.

<instructions>
{cold_email_prompt or DEFAULT_COLD_EMAIL_PROMPT}
</instructions>

Return a JSON object with a "reason" and "coldEmail" field.
The "reason" should be a concise explanation of why the email is or isn't a cold email.
The "coldEmail" should be true if the email is a cold email and false otherwise."""


async def is_known_cold_sender(session, email_account_id, from_email: str) -> bool:
    result = await session.execute(
        select(ColdEmail.id).where(
            ColdEmail.email_account_id == email_account_id,
            ColdEmail.from_email == from_email,
            ColdEmail.status == ColdEmailStatus.AI_LABELED_COLD.value,
        )
    )
    return result.scalar_one_or_none() is not None


async def is_cold_email(
    message: ParsedMessage,
    email_account,
    provider: EmailProvider,
    session,
) -> ColdEmailResult:
    """
    Decide whether a message is unsolicited outreach.

    Raises:
        LLMError: The AI check failed
    """
    log_extra = {
        "email_account_id": str(email_account.id),
        "message_id": message.id,
        "thread_id": message.thread_id,
    }
    sender = extract_email_address(message.headers.from_)

    if await is_known_cold_sender(session, email_account.id, sender):
        logger.info("Known cold email sender", extra=log_extra)
        return ColdEmailResult(True, REASON_KNOWN_SENDER)

    has_previous = False
    if message.internal_date:
        has_previous = await provider.has_previous_communications_with_sender(
            sender, message.internal_date, message.id
        )
    if has_previous:
        logger.info("Sender has previous communication", extra=log_extra)
        return ColdEmailResult(False, REASON_PREVIOUS_EMAIL)

    email = get_email_for_llm(message)
    response = await get_llm_client().generate_object(
        system=build_system_prompt(getattr(email_account, "cold_email_prompt", None)),
        prompt=f"<email>\n{stringify_email(email, 500)}\n</email>",
        schema=ColdEmailResponse,
        label="cold-email",
        email_account=email_account,
    )

    logger.info(f"AI cold email check: {response.cold_email}", extra=log_extra)
    return ColdEmailResult(response.cold_email, REASON_AI, response.reason)


async def save_cold_email(session, email_account, message: ParsedMessage, reason: Optional[str]):
    """Record the sender as cold (upsert on account + sender)."""
    sender = extract_email_address(message.headers.from_)
    stmt = insert(ColdEmail).values(
        email_account_id=email_account.id,
        from_email=sender,
        status=ColdEmailStatus.AI_LABELED_COLD.value,
        reason=reason,
        message_id=message.id,
        thread_id=message.thread_id,
    ).on_conflict_do_update(
        constraint="uq_cold_emails_account_sender",
        set_={"status": ColdEmailStatus.AI_LABELED_COLD.value},
    )
    await session.execute(stmt)
