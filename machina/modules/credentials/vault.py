import base64
import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from supabase import Client

from machina.config import settings

logger = logging.getLogger(__name__)

KEY_FILE_NAME = ".encryption_key"


def _derive_key(secret: str) -> bytes:
    """Accept a ready Fernet key, otherwise stretch an arbitrary secret into one."""
    candidate = secret.encode()
    try:
        Fernet(candidate)
        return candidate
    except (ValueError, TypeError):
        return base64.urlsafe_b64encode(hashlib.sha256(candidate).digest())


def load_or_create_key(encryption_key: Optional[str] = None, data_dir: Optional[str] = None) -> bytes:
    """
    Resolve the vault key.

    Order: explicit/configured ENCRYPTION_KEY, then ``<data_dir>/.encryption_key``.
    When neither exists a new key is generated and written with mode 0600.
    """
    secret = encryption_key if encryption_key is not None else settings.encryption_key
    if secret:
        return _derive_key(secret)

    key_path = Path(data_dir or settings.data_dir) / KEY_FILE_NAME
    if key_path.exists():
        return _derive_key(key_path.read_text().strip())

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key.decode())
    logger.info(f"Generated new credential encryption key at {key_path}")
    return key


class CredentialVault:
    """Encrypted provider credentials keyed by provider account id."""

    table = "credentials"

    def __init__(self, supabase: Client, key: Optional[bytes] = None):
        self.supabase = supabase
        self._fernet = Fernet(key or load_or_create_key())

    def store(self, provider_account_id: str, credentials: Dict[str, Any]) -> None:
        token = self._fernet.encrypt(json.dumps(credentials).encode()).decode()
        self.supabase.table(self.table).upsert(
            {
                "provider_account_id": provider_account_id,
                "encrypted_data": token,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            on_conflict="provider_account_id",
        ).execute()
        logger.info(f"Stored credentials for provider account {provider_account_id}")

    def get(self, provider_account_id: str) -> Optional[Dict[str, Any]]:
        """Decrypted credentials, or None when absent or unreadable."""
        result = self.supabase.table(self.table)\
            .select("*")\
            .eq("provider_account_id", provider_account_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            return None

        try:
            plaintext = self._fernet.decrypt(result.data["encrypted_data"].encode())
            return json.loads(plaintext)
        except (InvalidToken, ValueError, KeyError):
            # Key rotated or row tampered with; the stored bundle is unusable
            logger.warning(
                f"Could not decrypt credentials for provider account {provider_account_id}; removing them"
            )
            self.delete(provider_account_id)
            return None

    def delete(self, provider_account_id: str) -> None:
        self.supabase.table(self.table)\
            .delete()\
            .eq("provider_account_id", provider_account_id)\
            .execute()

    def has(self, provider_account_id: str) -> bool:
        result = self.supabase.table(self.table)\
            .select("provider_account_id")\
            .eq("provider_account_id", provider_account_id)\
            .maybe_single()\
            .execute()
        return bool(result and result.data)
