import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import ValidationError

from taskboard.cache.layer import EphemeralStore
from taskboard.core.errors import StoreUnavailable
from taskboard.schemas import SessionUser
from taskboard.services.security import generate_token

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    token: str
    user: SessionUser
    expires_at: datetime


class SessionManager:
    """
    Issues and resolves opaque session tokens stored in the ephemeral store.

    The stored user is a snapshot taken at issue time; it is not kept in
    sync with the users table. Expiry is enforced twice: by the store TTL
    and by the absolute ``expiresAt`` checked on every read.
    """

    def __init__(
        self,
        store: EphemeralStore,
        max_age_seconds: int = 24 * 60 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    @staticmethod
    def _key(token: str) -> str:
        return f"{SESSION_PREFIX}{token}"

    async def create_session(self, user) -> SessionRecord:
        snapshot = SessionUser.model_validate(user, from_attributes=True)
        token = generate_token()
        expires_at = self._clock() + timedelta(seconds=self.max_age_seconds)
        payload = {
            "user": snapshot.model_dump(mode="json"),
            "expiresAt": expires_at.isoformat(),
        }
        await self.store.set(self._key(token), json.dumps(payload), self.max_age_seconds)
        return SessionRecord(token=token, user=snapshot, expires_at=expires_at)

    async def get_session_record(self, token: str | None) -> SessionRecord | None:
        if not token:
            return None
        try:
            raw = await self.store.get(self._key(token))
        except StoreUnavailable as e:
            logger.error(f"Error getting session: {e}")
            return None
        if raw is None:
            return None

        try:
            data = json.loads(raw)
            expires_at = datetime.fromisoformat(data["expiresAt"])
            user = SessionUser.model_validate(data["user"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.error(f"Discarding corrupt session record: {e}")
            await self.delete_session(token)
            return None

        if expires_at <= self._clock():
            await self.delete_session(token)
            return None
        return SessionRecord(token=token, user=user, expires_at=expires_at)

    async def get_session(self, token: str | None) -> SessionUser | None:
        record = await self.get_session_record(token)
        return record.user if record else None

    async def delete_session(self, token: str) -> None:
        try:
            await self.store.delete(self._key(token))
        except StoreUnavailable as e:
            logger.error(f"Error deleting session: {e}")

    async def refresh(self, old_token: str) -> SessionRecord | None:
        """Issue a new session for the same user, then revoke the old one."""
        current = await self.get_session_record(old_token)
        if current is None:
            return None
        fresh = await self.create_session(current.user)
        await self.delete_session(old_token)
        return fresh
