import base64
import hashlib
import hmac
import logging
import secrets

import bcrypt

logger = logging.getLogger(__name__)


def generate_token() -> str:
    """Opaque, URL-safe random token for sessions, CSRF, resets and undo."""
    return secrets.token_urlsafe(32)


def _peppered(password: str, pepper: str) -> bytes:
    # bcrypt only reads 72 bytes; a fixed-length HMAC keeps long passwords intact.
    digest = hmac.new(pepper.encode(), password.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest)


def hash_password(password: str, pepper: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_peppered(password, pepper), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, password_hash: str, pepper: str) -> bool:
    try:
        return bcrypt.checkpw(_peppered(password, pepper), password_hash.encode())
    except ValueError as e:
        logger.error(f"Error verifying password: {e}")
        return False
