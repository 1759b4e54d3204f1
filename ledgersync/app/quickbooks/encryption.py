"""
Token Encryption Module

Encrypts QuickBooks OAuth tokens at rest with Fernet symmetric encryption.
The key is derived from the application's secret_key setting.
"""

from cryptography.fernet import Fernet, InvalidToken
import base64
from typing import Optional

from ledgersync.config import get_settings


class TokenEncryption:
    """
    Encrypt and decrypt OAuth tokens for storage in the connections table.

    Both access and refresh tokens go through here before they are written,
    and are decrypted only immediately before an outbound call.
    """

    def __init__(self, secret_key: Optional[str] = None):
        """
        Build the Fernet cipher.

        Args:
            secret_key: Override for the configured secret_key. The value is
                padded/truncated to 32 bytes and base64-encoded.
        """
        if secret_key is None:
            secret_key = get_settings().secret_key

        key_bytes = secret_key.encode()[:32].ljust(32, b'0')
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, token: Optional[str]) -> str:
        """
        Encrypt a token for database storage.

        Returns:
            Base64 text suitable for a TEXT column, or "" for an empty token

        Example:
            >>> enc = TokenEncryption()
            >>> stored = enc.encrypt(tokens['access_token'])
        """
        if not token:
            return ""

        encrypted_bytes = self.cipher.encrypt(token.encode())
        return base64.b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted_token: Optional[str]) -> str:
        """
        Decrypt a stored token.

        Raises:
            ValueError: If the value was not produced with this key
        """
        if not encrypted_token:
            return ""

        try:
            decrypted_bytes = self.cipher.decrypt(base64.b64decode(encrypted_token))
        except (InvalidToken, ValueError) as e:
            raise ValueError("Stored token could not be decrypted") from e

        return decrypted_bytes.decode()
