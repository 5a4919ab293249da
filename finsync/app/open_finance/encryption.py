"""
Secret Encryption Module

Fernet symmetric encryption for provider client secrets at rest. The key is
derived from the application SECRET_KEY.
"""

import base64

from cryptography.fernet import Fernet, InvalidToken

from finsync.config import get_settings


class SecretEncryption:
    """
    Encrypt and decrypt provider secrets for storage in user_configs.

    The SECRET_KEY is padded/truncated to 32 bytes and base64-encoded to form
    a valid Fernet key.
    """

    def __init__(self, secret_key: str = None):
        secret_key = secret_key or get_settings().secret_key
        key_bytes = secret_key.encode()[:32].ljust(32, b'0')
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, value: str) -> str:
        """
        Encrypt a secret for database storage.

        Args:
            value: Plain text secret

        Returns:
            Fernet token (URL-safe base64 text), or "" for empty input
        """
        if not value:
            return ""
        return self.cipher.encrypt(value.encode()).decode()

    def decrypt(self, encrypted_value: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            ValueError: The value was not produced with this key
        """
        if not encrypted_value:
            return ""
        try:
            return self.cipher.decrypt(encrypted_value.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored secret cannot be decrypted with the current SECRET_KEY") from e
