from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, Optional

from taskkeeper.logging import get_logger
from taskkeeper.service.credentials import (
    CredentialService,
    generate_reset_token,
    generate_verification_code,
)
from taskkeeper.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    HashingFailed,
    NotFoundError,
    ServerError,
    ServiceUnavailableError,
    ValidationError,
)
from taskkeeper.service.validation import (
    password_error_message,
    validate_email,
    validate_name,
    validate_password_strength,
)
from taskkeeper.storage.errors import BackendError, BackendUnavailable, ConstraintViolation
from taskkeeper.storage.models import Session, User, utcnow

if TYPE_CHECKING:
    from taskkeeper.service.email import EmailService
    from taskkeeper.storage.memory import MemoryStore
    from taskkeeper.storage.surreal import SurrealStore

logger = get_logger(__name__)

DEFAULT_NAME = "User"
INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class AuthResult:
    user: User
    session: Session


@contextmanager
def _backend_errors(operation: str) -> Iterator[None]:
    """Translate storage failures into service errors for ``operation``."""
    try:
        yield
    except BackendUnavailable as exc:
        logger.error("backend_unavailable", operation=operation, error=exc.message)
        raise ServiceUnavailableError("service temporarily unavailable") from exc
    except BackendError as exc:
        logger.error("backend_error", operation=operation, error=exc.message, detail=exc.detail)
        raise ServerError("internal error") from exc


class AuthService:
    """Signup, login, session and account-recovery flows.

    Email delivery is best effort: a failed notification is logged and never
    fails the operation that triggered it.
    """

    def __init__(
        self,
        store: "SurrealStore | MemoryStore",
        credentials: CredentialService,
        email: "EmailService",
        *,
        verification_ttl: timedelta = timedelta(minutes=10),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.email = email
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    async def _notify(self, send: Awaitable[bool], *, kind: str, user_id: str) -> None:
        try:
            delivered = await send
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("notification_not_delivered", kind=kind, user_id=user_id)

    async def signup(self, email: str, password: str, name: Optional[str] = None) -> AuthResult:
        email = self._normalize_email(email)
        if not validate_email(email):
            raise ValidationError("invalid email format")
        check = validate_password_strength(password)
        if not check.valid:
            raise ValidationError(password_error_message(check))
        name = DEFAULT_NAME if name is None else name
        if not validate_name(name):
            raise ValidationError("invalid name format")

        with _backend_errors("signup"):
            if await self.store.get_user_by_email(email):
                logger.info("signup_rejected", reason="email_exists", email=email)
                raise ConflictError("email already registered")

            password_hash = self.credentials.hash_password(password)
            code = generate_verification_code()
            try:
                user = await self.store.create_user(
                    email,
                    password_hash,
                    name,
                    verification_token=code,
                    verification_expires=self._clock() + self.verification_ttl,
                )
            except ConstraintViolation as exc:
                raise ConflictError("email already registered") from exc

        await self._notify(
            self.email.send_verification_code(user.email, user.name, code),
            kind="verification",
            user_id=user.id,
        )

        with _backend_errors("create_session"):
            session = await self.store.create_session(user.id)
        logger.info("signup_completed", user_id=user.id, weak_password=check.weak)
        return AuthResult(user=user, session=session)

    async def login(self, email: str, password: str) -> AuthResult:
        email = self._normalize_email(email)
        with _backend_errors("login"):
            user = await self.store.get_user_by_email(email)
        if user is None:
            logger.info("login_failed", reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.credentials.verify_password(user.password_hash, password):
            logger.info("login_failed", reason="wrong_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.credentials.is_legacy_hash(user.password_hash):
            await self._upgrade_legacy_hash(user, password)

        with _backend_errors("create_session"):
            session = await self.store.create_session(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, session=session)

    async def _upgrade_legacy_hash(self, user: User, password: str) -> None:
        try:
            new_hash = self.credentials.hash_password(password)
            await self.store.update_user_password(user.id, new_hash)
        except (HashingFailed, BackendError) as exc:
            logger.warning(
                "legacy_hash_upgrade_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
            return
        user.password_hash = new_hash
        logger.info("legacy_hash_upgraded", user_id=user.id)

    async def authenticate(self, token: Optional[str]) -> str:
        """Resolve a bearer token to its user id or raise ``AuthenticationError``."""
        if not token:
            raise AuthenticationError("not authenticated")
        with _backend_errors("validate_session"):
            user_id = await self.store.validate_session(token)
        if user_id is None:
            raise AuthenticationError("not authenticated")
        return user_id

    async def get_user(self, user_id: str) -> User:
        with _backend_errors("get_user"):
            user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def logout(self, token: str) -> None:
        with _backend_errors("logout"):
            await self.store.delete_session(token)

    async def logout_all(self, user_id: str) -> None:
        with _backend_errors("logout_all"):
            await self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id)

    async def verify_email(self, code: str) -> User:
        code = (code or "").strip()
        if not code:
            raise ValidationError("missing verification code")
        with _backend_errors("verify_email"):
            user = await self.store.get_user_by_verification_token(code)
            if user is None:
                raise BadRequestError("invalid or expired code")
            if user.verification_expires and user.verification_expires < self._clock():
                logger.info("verification_code_expired", user_id=user.id)
                raise BadRequestError("verification code expired")
            await self.store.mark_email_verified(user.id)
        user.email_verified = True
        user.verification_token = None
        user.verification_expires = None
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, user_id: str) -> None:
        user = await self.get_user(user_id)
        if user.email_verified:
            raise BadRequestError("email already verified")
        code = generate_verification_code()
        with _backend_errors("resend_verification"):
            await self.store.set_verification_token(
                user.id, code, self._clock() + self.verification_ttl
            )
        await self._notify(
            self.email.send_verification_code(user.email, user.name, code),
            kind="verification",
            user_id=user.id,
        )

    async def forgot_password(self, email: str) -> None:
        """Issue a reset token if the account exists; silent either way."""
        email = self._normalize_email(email)
        with _backend_errors("forgot_password"):
            user = await self.store.get_user_by_email(email)
            if user is None:
                logger.info("password_reset_unknown_email")
                return
            token = generate_reset_token()
            await self.store.set_reset_token(user.id, token, self._clock() + self.reset_ttl)
        await self._notify(
            self.email.send_password_reset(user.email, token, user.name),
            kind="password_reset",
            user_id=user.id,
        )
        logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        check = validate_password_strength(new_password)
        if not check.valid:
            raise ValidationError(password_error_message(check))
        with _backend_errors("reset_password"):
            user = await self.store.get_user_by_reset_token(token)
            if user is None:
                raise BadRequestError("invalid or expired token")
            if user.reset_expires and user.reset_expires < self._clock():
                logger.info("reset_token_expired", user_id=user.id)
                raise BadRequestError("invalid or expired token")
            password_hash = self.credentials.hash_password(new_password)
            await self.store.update_user_password(user.id, password_hash)
            await self.store.clear_reset_token(user.id)
            await self.store.delete_user_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id)
