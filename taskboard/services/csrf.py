import hmac
import logging

from taskboard.cache.layer import EphemeralStore
from taskboard.core.errors import StoreUnavailable
from taskboard.services.security import generate_token

logger = logging.getLogger(__name__)

CSRF_PREFIX = "csrf:"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class CsrfGuard:
    """One anti-forgery token per session, keyed by the session token."""

    def __init__(self, store: EphemeralStore, ttl_seconds: int = 3600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def issue(self) -> str:
        return generate_token()

    async def bind(self, token: str, session_token: str) -> None:
        await self.store.set(f"{CSRF_PREFIX}{session_token}", token, self.ttl_seconds)

    async def issue_for(self, session_token: str) -> str:
        token = self.issue()
        try:
            await self.bind(token, session_token)
        except StoreUnavailable as e:
            logger.error(f"Error storing CSRF token: {e}")
        return token

    async def validate(self, submitted: str | None, session_token: str | None) -> bool:
        if not submitted or not session_token:
            return False
        try:
            stored = await self.store.get(f"{CSRF_PREFIX}{session_token}")
        except StoreUnavailable as e:
            logger.error(f"Error validating CSRF token: {e}")
            return False
        if stored is None:
            return False
        return hmac.compare_digest(stored.encode(), submitted.encode())

    async def transfer(self, old_session_token: str, new_session_token: str) -> str:
        """Carry the CSRF token over to a refreshed session, issuing one if none exists."""
        try:
            token = await self.store.get(f"{CSRF_PREFIX}{old_session_token}")
            await self.store.delete(f"{CSRF_PREFIX}{old_session_token}")
        except StoreUnavailable as e:
            logger.error(f"Error reading CSRF token for refresh: {e}")
            token = None
        if token is None:
            return await self.issue_for(new_session_token)
        try:
            await self.bind(token, new_session_token)
        except StoreUnavailable as e:
            logger.error(f"Error storing CSRF token: {e}")
        return token
