import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from apptrack.core import config
from apptrack.core.errors import ConfigurationError


def get_encryption_key(key: Optional[str] = None) -> bytes:
    key = key if key is not None else config.ENCRYPTION_KEY
    if not key:
        raise ConfigurationError(
            "ENCRYPTION_KEY environment variable not set. "
            "Generate one with: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
        )
    return key.encode() if isinstance(key, str) else key


class ContentEncryptor:
    """
    Authenticated symmetric encryption for preview content at rest (Fernet: AES-CBC + HMAC-SHA256).
    The key is server-held and fixed at deploy time; it is never derived from request data.
    """

    def __init__(self, key: Optional[str] = None):
        try:
            self._fernet = Fernet(get_encryption_key(key))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Raises cryptography.fernet.InvalidToken on tampered ciphertext or wrong key."""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def encrypt_json(self, content: Any) -> str:
        return self.encrypt(json.dumps(content))

    def decrypt_json(self, ciphertext: str) -> Any:
        return json.loads(self.decrypt(ciphertext))


def generate_encryption_key() -> str:
    return Fernet.generate_key().decode()


__all__ = ["ContentEncryptor", "InvalidToken", "generate_encryption_key", "get_encryption_key"]
