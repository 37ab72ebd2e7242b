"""
Provider selection for an email account.
"""

import logging

from app.models.email_account import EmailAccount, EmailProviderType
from app.modules.auth.token_refresh import ensure_fresh_access_token
from app.modules.email.gmail_provider import GmailProvider
from app.modules.email.outlook_provider import OutlookProvider
from app.modules.email.provider import EmailProvider

logger = logging.getLogger(__name__)


def create_email_provider(email_account: EmailAccount) -> EmailProvider:
    """
    Build the provider for an account from its stored tokens.

    Raises:
        ValueError: Unknown provider
    """
    if email_account.provider == EmailProviderType.GOOGLE.value:
        return GmailProvider(email_account)
    if email_account.provider == EmailProviderType.MICROSOFT.value:
        return OutlookProvider(email_account)
    raise ValueError(f"Unsupported email provider: {email_account.provider}")


async def get_email_provider(email_account: EmailAccount, session) -> EmailProvider:
    """Refresh the access token if needed, then build the provider."""
    await ensure_fresh_access_token(email_account, session)
    return create_email_provider(email_account)
