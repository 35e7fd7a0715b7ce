"""
Encryption utilities for credential token storage.

Handles cross-database encryption (PostgreSQL pgcrypto, SQLite plaintext for testing).
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from ..config import get_config


def _key_for(scope_key: str, key_suffix: str) -> str:
    secret = get_config().security.encryption_key or ""
    return f"{secret}:{scope_key}_{key_suffix}"


def encrypt_value(session: Session, value: str, scope_key: str, key_suffix: str = "") -> bytes:
    """
    Encrypt a value using database-specific encryption.

    Args:
        session: Database session
        value: Value to encrypt
        scope_key: Tenant scope for key isolation
        key_suffix: Additional key suffix for different data types

    Returns:
        Encrypted bytes
    """
    if session.bind.dialect.name == "postgresql":
        return session.execute(
            text("SELECT pgp_sym_encrypt(:data, :key)"),
            {"data": value, "key": _key_for(scope_key, key_suffix)},
        ).scalar()

    # SQLite for testing - stored as-is
    return value.encode() if isinstance(value, str) else value


def decrypt_value(
    session: Session, encrypted_value: bytes, scope_key: str, key_suffix: str = ""
) -> Optional[str]:
    """
    Decrypt a value using database-specific decryption.

    Args:
        session: Database session
        encrypted_value: Encrypted bytes
        scope_key: Tenant scope used when encrypting
        key_suffix: Additional key suffix for different data types

    Returns:
        Decrypted string or None
    """
    if not encrypted_value:
        return None

    if session.bind.dialect.name == "postgresql":
        return session.execute(
            text("SELECT pgp_sym_decrypt(:data, :key)"),
            {"data": encrypted_value, "key": _key_for(scope_key, key_suffix)},
        ).scalar()

    if isinstance(encrypted_value, bytes):
        return encrypted_value.decode()
    return encrypted_value


def encrypt_token(session: Session, token: str, scope_key: str, token_kind: str) -> bytes:
    """Encrypt an access or refresh token for one tenant scope."""
    return encrypt_value(session, token, scope_key, f"token_{token_kind}")


def decrypt_token(
    session: Session, encrypted: bytes, scope_key: str, token_kind: str
) -> Optional[str]:
    return decrypt_value(session, encrypted, scope_key, f"token_{token_kind}")
