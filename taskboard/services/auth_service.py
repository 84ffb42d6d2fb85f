import json
import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.layer import EphemeralStore
from taskboard.core.config import Settings
from taskboard.core.errors import InvalidInput, NotFound, StoreUnavailable, Unauthorized
from taskboard.models import User, get_utc_now
from taskboard.schemas import LoginRequest, SignupRequest, UserRead, as_utc
from taskboard.services.mailer import Mailer
from taskboard.services.security import generate_token, hash_password, verify_password
from taskboard.services.sessions import SessionManager, SessionRecord
from taskboard.services.task_views import user_read

logger = logging.getLogger(__name__)

PASSWORD_RESET_PREFIX = "password-reset:"

RESET_EMAIL_TEXT = """Hello {name},

We received a request to reset your taskboard password.
Open the link below to choose a new one:

{url}

The link is valid for one hour. If you did not ask for a reset, ignore this email.
"""


class AuthService:
    """Credential accounts, sessions and password resets."""

    def __init__(
        self,
        settings: Settings,
        store: EphemeralStore,
        sessions: SessionManager,
        mailer: Mailer,
    ):
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.mailer = mailer

    @staticmethod
    async def _find_by_email(db: AsyncSession, email: str) -> User | None:
        result = await db.exec(select(User).where(User.email == email))
        return result.first()

    async def signup(self, db: AsyncSession, data: SignupRequest) -> tuple[UserRead, SessionRecord]:
        email = data.email
        if await self._find_by_email(db, email):
            raise InvalidInput("Email is already registered", field="email")

        user = User(
            email=email,
            name=data.name.strip(),
            password_hash=hash_password(
                data.password, self.settings.password_pepper, self.settings.bcrypt_rounds
            ),
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise InvalidInput("Email is already registered", field="email")
        await db.refresh(user)

        record = await self.sessions.create_session(user)
        logger.info(f"User signed up: {user.email}")
        return user_read(user), record

    async def login(self, db: AsyncSession, data: LoginRequest) -> tuple[UserRead, SessionRecord]:
        user = await self._find_by_email(db, data.email)
        if user is None or not user.password_hash:
            raise Unauthorized("Invalid email or password")
        if not verify_password(data.password, user.password_hash, self.settings.password_pepper):
            logger.info(f"Failed login for {user.email}")
            raise Unauthorized("Invalid email or password")

        record = await self.sessions.create_session(user)
        logger.info(f"User logged in: {user.email}")
        return user_read(user), record

    async def logout(self, session_token: str | None) -> None:
        if session_token:
            await self.sessions.delete_session(session_token)
            logger.info("User logged out")

    async def get_current_user(self, db: AsyncSession, user_id: str) -> UserRead:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user_read(user)

    async def forgot_password(self, db: AsyncSession, email: str) -> None:
        """Send a reset link if the account exists. Silent either way."""
        user = await self._find_by_email(db, email)
        if user is None:
            logger.info(f"Password reset requested for unknown email: {email}")
            return

        token = generate_token()
        expires_at = get_utc_now() + timedelta(seconds=self.settings.password_reset_ttl_seconds)
        try:
            await self.store.set(
                f"{PASSWORD_RESET_PREFIX}{token}",
                json.dumps({"email": user.email, "expiresAt": expires_at.isoformat()}),
                self.settings.password_reset_ttl_seconds,
            )
        except StoreUnavailable as e:
            logger.error(f"Could not store password reset token for {user.email}: {e}")
            return

        reset_url = f"{self.settings.frontend_url}/reset-password?token={token}"
        await self.mailer.send(
            user.email,
            "Reset your taskboard password",
            RESET_EMAIL_TEXT.format(name=user.name, url=reset_url),
        )
        logger.info(f"Password reset issued for: {user.email}")

    async def reset_password(self, db: AsyncSession, token: str, new_password: str) -> None:
        key = f"{PASSWORD_RESET_PREFIX}{token}"
        raw = await self.store.get(key)
        if raw is None:
            raise InvalidInput("Invalid or expired reset token", field="token")

        try:
            record = json.loads(raw)
            email = record["email"]
            expires_at = as_utc(datetime.fromisoformat(record["expiresAt"]))
        except (ValueError, KeyError, TypeError):
            await self.store.delete(key)
            raise InvalidInput("Invalid or expired reset token", field="token")

        if expires_at <= get_utc_now():
            await self.store.delete(key)
            raise InvalidInput("Invalid or expired reset token", field="token")

        user = await self._find_by_email(db, email)
        if user is None:
            raise InvalidInput("Invalid or expired reset token", field="token")

        user.password_hash = hash_password(
            new_password, self.settings.password_pepper, self.settings.bcrypt_rounds
        )
        user.updated_at = get_utc_now()
        db.add(user)
        await db.commit()

        # Single use, consumed only once the new password is stored.
        await self.store.delete(key)
        logger.info(f"Password reset successful for: {user.email}")
