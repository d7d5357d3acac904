"""
Encryption of stored Power BI credentials.

Secrets are stored in power_bi_configs as base64(iv || AES-GCM ciphertext+tag)
with a 12-byte random IV. The key is the UTF-8 ENCRYPTION_KEY right-padded
with '0' to 32 bytes.
"""

import os
import base64
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import supabase_client as db
from powerbi import PowerBICredential

logger = logging.getLogger(__name__)

# Configuration
ENCRYPTION_KEY = os.environ.get('ENCRYPTION_KEY')

IV_LENGTH = 12


class EncryptionNotConfigured(Exception):
    pass


def _key_bytes(secret: str) -> bytes:
    return secret.encode('utf-8').ljust(32, b'0')[:32]


def encrypt_value(plaintext: Optional[str]) -> str:
    if not plaintext:
        return ''
    if not ENCRYPTION_KEY:
        raise EncryptionNotConfigured('ENCRYPTION_KEY not configured')

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_key_bytes(ENCRYPTION_KEY)).encrypt(iv, plaintext.encode('utf-8'), None)
    return base64.b64encode(iv + sealed).decode('ascii')


def decrypt_value(ciphertext: Optional[str]) -> str:
    """
    Decrypt a stored secret.

    Rows written before encryption was introduced hold plaintext, so anything
    that does not decrypt is returned as-is.
    """
    if not ciphertext:
        return ''
    if not ENCRYPTION_KEY:
        logger.warning("ENCRYPTION_KEY not configured, returning stored value unchanged")
        return ciphertext

    try:
        raw = base64.b64decode(ciphertext, validate=True)
        if len(raw) <= IV_LENGTH:
            return ciphertext
        plain = AESGCM(_key_bytes(ENCRYPTION_KEY)).decrypt(raw[:IV_LENGTH], raw[IV_LENGTH:], None)
        return plain.decode('utf-8')
    except (ValueError, InvalidTag, UnicodeDecodeError):
        return ciphertext


def load_powerbi_credential(credential_id: str) -> Optional[PowerBICredential]:
    """Fetch a power_bi_configs row and return it with secrets decrypted."""
    row = db.select_one(
        'power_bi_configs',
        {'id': f'eq.{credential_id}'},
        select='id,client_id,client_secret,tenant_id,username,password'
    )
    if not row:
        logger.warning(f"Credential {credential_id} not found")
        return None

    return PowerBICredential(
        client_id=row.get('client_id') or '',
        client_secret=decrypt_value(row.get('client_secret')),
        tenant_id=row.get('tenant_id') or '',
        username=row.get('username') or '',
        password=decrypt_value(row.get('password')),
    )
