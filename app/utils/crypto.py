"""
Crypto utilities — bcrypt password hashing & Fernet symmetric encryption.

Password hashing:
  bcrypt ($2b$) for all new hashes.  Legacy werkzeug (scrypt/pbkdf2)
  hashes imported from older tenants still verify.

Symmetric encryption (MFA secrets at rest):
  `encrypt_secret` / `decrypt_secret` use Fernet (AES-128-CBC + HMAC-SHA256)
  keyed by the ENCRYPTION_KEY environment variable.

  WARNING: ENCRYPTION_KEY must be a 32-byte URL-safe base64 key generated via:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
  Store it in the environment — never hard-code or commit it.
"""

import hashlib
import os
import secrets

import bcrypt
from cryptography.fernet import Fernet
from werkzeug.security import check_password_hash

# Crockford-style alphabet without ambiguous characters
_RECOVERY_ALPHABET = "ABCDEFGHJKMNPQRSTVWXYZ23456789"


def hash_password(plain_password: str, rounds: int = 12) -> str:
    """Hash a plain-text password with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify a plain-text password against its hash.

    Handles both bcrypt ($2b$/$2a$) and legacy werkzeug (scrypt/pbkdf2) formats.
    """
    if not password_hash:
        return False

    if password_hash.startswith(("$2b$", "$2a$")):
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8"),
        )

    return check_password_hash(password_hash, plain_password)


# ── Fernet symmetric encryption (MFA secrets) ────────────────────────────────


def _get_fernet() -> Fernet:
    """Return a Fernet instance keyed by the ENCRYPTION_KEY env var.

    Raises RuntimeError if ENCRYPTION_KEY is not set — fail loud rather
    than silently storing plaintext secrets.
    """
    raw_key = os.getenv("ENCRYPTION_KEY")
    if not raw_key:
        raise RuntimeError(
            "ENCRYPTION_KEY environment variable is not set. "
            "Generate one with: python -c \""
            "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a plaintext secret and return URL-safe base64 ciphertext.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
    """
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a Fernet-encrypted ciphertext back to plaintext.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
        cryptography.fernet.InvalidToken: If ciphertext is tampered or
            encrypted with a different key.
    """
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


# ── MFA recovery codes ───────────────────────────────────────────────────────


def generate_recovery_codes(count: int = 8, length: int = 10) -> list[str]:
    """Return *count* random one-time recovery codes (plaintext, shown once)."""
    return [
        "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(length))
        for _ in range(count)
    ]


def hash_recovery_code(code: str) -> str:
    """SHA-256 of a normalised recovery code (codes are stored hashed)."""
    normalised = code.replace("-", "").strip().upper()
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()
