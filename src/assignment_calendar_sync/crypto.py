"""
Symmetric encryption for stored OAuth tokens.
"""

from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken

from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import ConfigError


def generate_key() -> str:
    """Return a new url-safe base64 Fernet key."""
    return Fernet.generate_key().decode("ascii")


class TokenCipher:
    """Fernet wrapper; plaintext tokens never leave the token manager."""

    def __init__(self, key: str | bytes):
        if not key:
            raise ConfigError("An encryption key is required to store calendar tokens")
        try:
            self._fernet = Fernet(key.encode("ascii") if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid encryption key: {e}") from None

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken:
            # Wrong key or tampered row; never include the ciphertext in the message.
            raise CalendarSyncError("Stored token could not be decrypted") from None
