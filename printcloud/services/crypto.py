"""
Credential encryption for printer integrations.

Integration credentials (community strings, passwords, API keys, webhook
secrets) are stored as a single Fernet token per integration.
"""

import base64
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from config import config as settings

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ('password', 'api_key', 'community', 'webhook_secret', 'key_password')


class CredentialEncryption:
    """Encrypts and decrypts credential dictionaries with a Fernet key."""

    def __init__(self, key: Optional[str] = None, data_dir: Optional[Path] = None):
        self._data_dir = data_dir or settings.DATA_DIR
        self._key_created_at: Optional[datetime] = None
        self._fernet = Fernet(key.encode() if key else self._load_or_create_key())

    def _get_key_file_path(self) -> Path:
        return self._data_dir / settings.ENCRYPTION_KEY_FILE_NAME

    def _load_or_create_key(self) -> bytes:
        key_file = self._get_key_file_path()

        try:
            if key_file.exists():
                key_data = json.loads(key_file.read_text())
                self._key_created_at = datetime.fromisoformat(key_data['created_at'])
                return base64.urlsafe_b64decode(key_data['key'])

            key = Fernet.generate_key()
            self._key_created_at = datetime.now()
            key_file.parent.mkdir(parents=True, exist_ok=True)
            key_file.write_text(json.dumps({
                'key': base64.urlsafe_b64encode(key).decode(),
                'created_at': self._key_created_at.isoformat(),
                'version': 1,
            }))
            key_file.chmod(0o600)
            logger.info('Generated new integration encryption key')
            return key

        except (OSError, ValueError, KeyError) as e:
            logger.error(f'Failed to initialize encryption key: {e}')
            logger.warning('Using in-memory encryption key - credentials will not persist')
            self._key_created_at = datetime.now()
            return Fernet.generate_key()

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error('Decryption failed - invalid token or corrupted data')
            raise ValueError('Failed to decrypt credential - key may have changed')

    def encrypt_credentials(self, credentials: Optional[Dict[str, Any]]) -> Optional[str]:
        if not credentials:
            return None
        return self.encrypt(json.dumps(credentials))

    def decrypt_credentials(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            return {}
        return json.loads(self.decrypt(token))


_encryption: Optional[CredentialEncryption] = None


def get_credential_encryption() -> CredentialEncryption:
    """Get the process-wide CredentialEncryption instance."""
    global _encryption
    if _encryption is None:
        _encryption = CredentialEncryption(key=settings.ENCRYPTION_KEY)
    return _encryption


def mask_credential(value: Any, visible_chars: int = 4) -> str:
    """
    Mask a credential for display, showing only the last few characters.

    Returns:
        Masked string like '••••••••abcd'.
    """
    value = str(value) if value is not None else ''
    if not value or len(value) <= visible_chars:
        return '•' * 8

    hidden_count = len(value) - visible_chars
    return '•' * min(hidden_count, 12) + value[-visible_chars:]


def mask_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``credentials`` with sensitive fields masked."""
    return {
        key: mask_credential(value) if key in SENSITIVE_FIELDS else value
        for key, value in credentials.items()
    }
