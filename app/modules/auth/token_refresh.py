"""
OAuth access token refresh for Google and Microsoft accounts.

Handles:
- Refreshing an expired access token from the stored refresh token
- Retrying transient failures with exponential backoff
- Deactivating accounts whose refresh token is permanently invalid

CRITICAL SECURITY:
- NEVER log tokens (access_token, refresh_token)
- ALWAYS encrypt tokens before database storage
"""

import logging
from datetime import datetime, timedelta
from typing import Tuple

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)

from app.core.config import settings
from app.core.security import encrypt_token, decrypt_token
from app.models.email_account import EmailAccount, EmailProviderType

logger = logging.getLogger(__name__)


GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_SCOPES = "https://graph.microsoft.com/Mail.ReadWrite https://graph.microsoft.com/Mail.Send offline_access User.Read"

# Refresh slightly early so a token never expires mid-run
EXPIRY_MARGIN = timedelta(minutes=5)


class OAuthPermanentError(Exception):
    """
    Raised for permanent OAuth failures where the user must reconnect.

    Examples:
    - Invalid refresh token (invalid_grant)
    - Token revoked by user
    """
    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.error_code = error_code


class OAuthTransientError(Exception):
    """Raised for OAuth failures where a retry may succeed."""
    pass


TRANSIENT_FAILURES = (
    requests.Timeout,
    requests.ConnectionError,
    OAuthTransientError,
)


def _token_request(account: EmailAccount, refresh_token: str) -> Tuple[str, dict]:
    if account.provider == EmailProviderType.MICROSOFT.value:
        url = MICROSOFT_TOKEN_URL.format(tenant=settings.MICROSOFT_TENANT)
        data = {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "client_secret": settings.MICROSOFT_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": MICROSOFT_SCOPES,
        }
    else:
        url = GOOGLE_TOKEN_URL
        data = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
    return url, data


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),  # 2s, 4s, 8s
    retry=retry_if_exception_type(TRANSIENT_FAILURES),
    reraise=True
)
def refresh_access_token_with_retry(account: EmailAccount) -> Tuple[str, datetime, str]:
    """
    Exchange the stored refresh token for a new access token.

    Returns:
        Tuple of (encrypted_access_token, expires_at, encrypted_refresh_token).
        Microsoft rotates refresh tokens, so the refresh token may change.

    Raises:
        OAuthPermanentError: User must reconnect (not retried)
        OAuthTransientError: After 3 failed attempts
    """
    account_id = str(account.id)
    refresh_token = decrypt_token(account.encrypted_refresh_token)
    url, data = _token_request(account, refresh_token)

    try:
        response = requests.post(url, data=data, timeout=10)
    except (requests.Timeout, requests.ConnectionError) as e:
        logger.warning(
            f"Token refresh network error for account {account_id} - will retry",
            extra={"email_account_id": account_id, "error_type": type(e).__name__}
        )
        raise

    if response.status_code in (400, 401):
        error = response.json().get("error", "")
        if error in ("invalid_grant", "unauthorized_client", "invalid_client"):
            raise OAuthPermanentError(
                f"Invalid refresh token for account {account_id}. User must reconnect.",
                error_code=error
            )

    if response.status_code == 403:
        raise OAuthPermanentError(
            f"OAuth access forbidden for account {account_id}",
            error_code="forbidden"
        )

    if response.status_code >= 500 or response.status_code == 429:
        raise OAuthTransientError(f"Token endpoint returned {response.status_code}")

    if response.status_code >= 400:
        raise OAuthPermanentError(
            f"Token refresh failed with {response.status_code} for account {account_id}",
            error_code=str(response.status_code)
        )

    token_data = response.json()
    expires_at = datetime.utcnow() + timedelta(seconds=token_data.get("expires_in", 3600))
    new_refresh = token_data.get("refresh_token")
    encrypted_refresh = encrypt_token(new_refresh) if new_refresh else account.encrypted_refresh_token

    return encrypt_token(token_data["access_token"]), expires_at, encrypted_refresh


def access_token_expired(account: EmailAccount) -> bool:
    if not account.encrypted_access_token or not account.token_expires_at:
        return True
    return account.token_expires_at - EXPIRY_MARGIN <= datetime.utcnow()


async def ensure_fresh_access_token(account: EmailAccount, session) -> EmailAccount:
    """
    Refresh the account's access token when it is missing or about to expire.

    The new token is written to the account and flushed; the caller's session
    commits it. Permanent failures deactivate the account and re-raise.
    """
    if not access_token_expired(account):
        return account

    try:
        encrypted_access, expires_at, encrypted_refresh = refresh_access_token_with_retry(account)
    except OAuthPermanentError as e:
        account.is_active = False
        await session.flush()
        logger.error(
            f"Permanent OAuth failure for account {account.id}: {e.error_code}",
            extra={"email_account_id": str(account.id), "error_code": e.error_code}
        )
        raise

    account.encrypted_access_token = encrypted_access
    account.encrypted_refresh_token = encrypted_refresh
    account.token_expires_at = expires_at
    await session.flush()

    logger.info(
        f"Refreshed access token for account {account.id}",
        extra={"email_account_id": str(account.id), "expires_at": expires_at.isoformat()}
    )
    return account
