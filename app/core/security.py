"""
Token encryption for mail provider OAuth credentials.

CRITICAL SECURITY REQUIREMENTS:
1. NEVER log tokens (access_token, refresh_token)
2. ALWAYS encrypt OAuth tokens before database storage
3. Decrypt only when building a provider client
"""

from cryptography.fernet import Fernet

from app.core.config import settings


class TokenEncryption:
    """
    Symmetric encryption for OAuth tokens using Fernet (AES-128-CBC + HMAC).
    """

    def __init__(self, encryption_key: str):
        """
        Initialize with encryption key.

        Key must be 44-character base64-encoded string.
        Generate with: Fernet.generate_key().decode()
        """
        self._fernet = Fernet(encryption_key.encode())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Raises:
            cryptography.fernet.InvalidToken: If the key does not match
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")
        return self._fernet.decrypt(ciphertext.encode()).decode()


# Global encryption instance
token_encryptor = TokenEncryption(settings.ENCRYPTION_KEY)


def encrypt_token(token: str) -> str:
    """
    Encrypt OAuth token for database storage.

    Usage:
        account.encrypted_access_token = encrypt_token(new_access_token)
    """
    return token_encryptor.encrypt(token)


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt OAuth token from database.

    WARNING: Never log the decrypted token!
    """
    return token_encryptor.decrypt(encrypted_token)


def mask_email(email_address: str) -> str:
    """
    Mask an email address for logs, e.g. "seb***@example.com".
    """
    if "@" not in email_address:
        return "***@unknown"
    local, domain = email_address.split("@", 1)
    masked_local = local[:3] + "***" if len(local) > 3 else "***"
    return f"{masked_local}@{domain}"
