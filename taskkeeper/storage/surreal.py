"""SurrealDB-backed user and session store.

All statements are fixed templates; per-call values travel as bind
variables in the ``/sql`` request's query string. Responses are decoded into
``StatementResult`` / ``UserRecord`` / ``SessionRecord`` models.

Failure semantics:
- unreachable backend -> ``BackendUnavailable``
- statement error or rejected request -> ``BackendError``
- undecodable rows -> ``None`` on reads, ``MalformedResponse`` on writes
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from taskkeeper.logging import get_logger
from taskkeeper.service.credentials import generate_session_token
from taskkeeper.service.http_client import (
    RequestRejected,
    ResilientHttpClient,
    RetryPolicy,
    ServiceUnavailable,
)
from taskkeeper.storage.errors import (
    BackendError,
    BackendUnavailable,
    ConstraintViolation,
    MalformedResponse,
)
from taskkeeper.storage.models import (
    Session,
    SessionRecord,
    StatementResult,
    User,
    UserRecord,
    to_unix_millis,
    to_unix_seconds,
    utcnow,
)

logger = get_logger(__name__)

SCHEMA = """
DEFINE TABLE users SCHEMAFULL;
DEFINE FIELD email ON users TYPE string;
DEFINE FIELD password_hash ON users TYPE string;
DEFINE FIELD name ON users TYPE string;
DEFINE FIELD avatar ON users TYPE option<string>;
DEFINE FIELD email_verified ON users TYPE bool DEFAULT false;
DEFINE FIELD verification_token ON users TYPE option<string>;
DEFINE FIELD verification_expires ON users TYPE option<int>;
DEFINE FIELD reset_token ON users TYPE option<string>;
DEFINE FIELD reset_expires ON users TYPE option<int>;
DEFINE INDEX email_idx ON users COLUMNS email UNIQUE;
DEFINE TABLE sessions SCHEMAFULL;
DEFINE FIELD token ON sessions TYPE string;
DEFINE FIELD user_id ON sessions TYPE string;
DEFINE FIELD created_at ON sessions TYPE datetime DEFAULT time::now();
DEFINE FIELD expires_at ON sessions TYPE datetime;
DEFINE INDEX session_token_idx ON sessions COLUMNS token UNIQUE;
"""

USER_BY_EMAIL = "SELECT * FROM users WHERE string::lowercase(email) = $email LIMIT 1;"
USER_BY_ID = "SELECT * FROM type::record($record_id);"
USER_BY_RESET_TOKEN = "SELECT * FROM users WHERE reset_token = $reset_tkn LIMIT 1;"
USER_BY_VERIFICATION_TOKEN = (
    "SELECT * FROM users WHERE verification_token = $verification_tkn LIMIT 1;"
)
CREATE_USER = (
    "CREATE users SET email = $email, password_hash = $password_hash, name = $name, "
    "email_verified = false, verification_token = $verification_tkn, "
    "verification_expires = <int>$expires;"
)
UPDATE_PASSWORD = "UPDATE type::record($record_id) SET password_hash = $password_hash;"
MARK_VERIFIED = (
    "UPDATE type::record($record_id) SET email_verified = true, "
    "verification_token = NONE, verification_expires = NONE;"
)
SET_VERIFICATION_TOKEN = (
    "UPDATE type::record($record_id) SET verification_token = $verification_tkn, "
    "verification_expires = <int>$expires;"
)
SET_RESET_TOKEN = (
    "UPDATE type::record($record_id) SET reset_token = $reset_tkn, reset_expires = <int>$expires;"
)
CLEAR_RESET_TOKEN = (
    "UPDATE type::record($record_id) SET reset_token = NONE, reset_expires = NONE;"
)
CREATE_SESSION = (
    "CREATE sessions SET token = $session_token, user_id = $user_id, "
    "created_at = time::from::millis(<int>$created_ms), "
    "expires_at = time::from::millis(<int>$expires_ms);"
)
SESSION_BY_TOKEN = (
    "SELECT user_id, time::millis(expires_at) AS expires_ms "
    "FROM sessions WHERE token = $session_token LIMIT 1;"
)
DELETE_SESSION = "DELETE FROM sessions WHERE token = $session_token;"
DELETE_USER_SESSIONS = "DELETE FROM sessions WHERE user_id = $user_id;"
DELETE_EXPIRED_SESSIONS = (
    "DELETE FROM sessions WHERE expires_at < time::from::millis(<int>$current_ms) RETURN BEFORE;"
)

_RESULTS_ADAPTER = TypeAdapter(List[StatementResult])


class SurrealStore:
    """Users and sessions persisted through the SurrealDB HTTP ``/sql`` endpoint."""

    def __init__(
        self,
        client: ResilientHttpClient,
        *,
        session_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.session_ttl = session_ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> "SurrealStore":
        client = ResilientHttpClient(
            name="surrealdb",
            base_url=settings.surreal_url,
            auth=(settings.surreal_user, settings.surreal_pass or ""),
            headers={
                "Accept": "application/json",
                "surreal-ns": settings.surreal_ns,
                "surreal-db": settings.surreal_db,
            },
            timeout=settings.http_timeout_seconds,
            retry_policy=RetryPolicy.from_millis(
                settings.backend_retry_delays_ms, settings.http_max_attempts
            ),
            transport=transport,
        )
        return cls(client, session_ttl=timedelta(days=settings.session_ttl_days), **kwargs)

    async def close(self) -> None:
        await self.client.aclose()

    # query plumbing
    async def execute(
        self, statement: str, variables: Optional[Mapping[str, Any]] = None
    ) -> List[StatementResult]:
        params = {name: _bind_value(value) for name, value in (variables or {}).items()}
        try:
            response = await self.client.post("/sql", content=statement, params=params)
        except ServiceUnavailable as exc:
            raise BackendUnavailable("database unreachable", {"error": exc.message}) from exc
        except RequestRejected as exc:
            raise BackendError(
                "database rejected request", {"status_code": exc.status_code}
            ) from exc
        try:
            return _RESULTS_ADAPTER.validate_json(response.content)
        except PydanticValidationError as exc:
            raise MalformedResponse(
                "undecodable database response", {"errors": exc.error_count()}
            ) from exc

    async def _rows(self, statement: str, variables: Mapping[str, Any]) -> List[dict]:
        results = await self.execute(statement, variables)
        if not results:
            raise MalformedResponse("database returned no statement results")
        result = results[-1]
        if not result.ok:
            message = result.result if isinstance(result.result, str) else "statement failed"
            if "already contains" in message:
                raise ConstraintViolation("duplicate value for unique index", {"error": message})
            raise BackendError("database statement failed", {"error": message})
        return result.rows()

    async def _read_user(self, statement: str, variables: Mapping[str, Any]) -> Optional[User]:
        try:
            rows = await self._rows(statement, variables)
        except MalformedResponse as exc:
            logger.warning("surreal_read_malformed", detail=exc.detail)
            return None
        if not rows:
            return None
        try:
            return UserRecord.model_validate(rows[0]).to_user()
        except PydanticValidationError as exc:
            logger.warning("surreal_user_row_malformed", errors=exc.error_count())
            return None

    async def _write(self, statement: str, variables: Mapping[str, Any]) -> List[dict]:
        return await self._rows(statement, variables)

    # users
    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._read_user(USER_BY_EMAIL, {"email": email.lower()})

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._read_user(USER_BY_ID, {"record_id": user_id})

    async def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return await self._read_user(USER_BY_RESET_TOKEN, {"reset_tkn": token})

    async def get_user_by_verification_token(self, code: str) -> Optional[User]:
        if not code:
            return None
        return await self._read_user(USER_BY_VERIFICATION_TOKEN, {"verification_tkn": code})

    async def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        verification_token: str,
        verification_expires: datetime,
    ) -> User:
        rows = await self._write(
            CREATE_USER,
            {
                "email": email,
                "password_hash": password_hash,
                "name": name,
                "verification_tkn": verification_token,
                "expires": to_unix_seconds(verification_expires),
            },
        )
        if not rows:
            raise MalformedResponse("user creation returned no row")
        try:
            user = UserRecord.model_validate(rows[0]).to_user()
        except PydanticValidationError as exc:
            raise MalformedResponse(
                "created user row undecodable", {"errors": exc.error_count()}
            ) from exc
        logger.info("user_created", user_id=user.id)
        return user

    async def update_user_password(self, user_id: str, password_hash: str) -> None:
        await self._write(UPDATE_PASSWORD, {"record_id": user_id, "password_hash": password_hash})

    async def mark_email_verified(self, user_id: str) -> None:
        await self._write(MARK_VERIFIED, {"record_id": user_id})

    async def set_verification_token(self, user_id: str, code: str, expires: datetime) -> None:
        await self._write(
            SET_VERIFICATION_TOKEN,
            {"record_id": user_id, "verification_tkn": code, "expires": to_unix_seconds(expires)},
        )

    async def set_reset_token(self, user_id: str, token: str, expires: datetime) -> None:
        await self._write(
            SET_RESET_TOKEN,
            {"record_id": user_id, "reset_tkn": token, "expires": to_unix_seconds(expires)},
        )

    async def clear_reset_token(self, user_id: str) -> None:
        await self._write(CLEAR_RESET_TOKEN, {"record_id": user_id})

    # sessions
    async def create_session(self, user_id: str) -> Session:
        session = Session.new(generate_session_token(), user_id, self.session_ttl, now=self._clock())
        await self._write(
            CREATE_SESSION,
            {
                "session_token": session.token,
                "user_id": user_id,
                "created_ms": to_unix_millis(session.created_at),
                "expires_ms": to_unix_millis(session.expires_at),
            },
        )
        return session

    async def validate_session(self, token: str) -> Optional[str]:
        """Return the owning user id, or None for unknown or expired tokens.

        Raises ``BackendUnavailable`` when the lookup itself fails.
        """
        if not token:
            return None
        try:
            rows = await self._rows(SESSION_BY_TOKEN, {"session_token": token})
        except MalformedResponse as exc:
            logger.warning("surreal_session_malformed", detail=exc.detail)
            return None
        if not rows:
            return None
        try:
            record = SessionRecord.model_validate(rows[0])
        except PydanticValidationError as exc:
            logger.warning("surreal_session_row_malformed", errors=exc.error_count())
            return None
        if self._clock() >= record.expires_at:
            logger.info("session_expired", user_id=record.user_id)
            return None
        return record.user_id

    async def delete_session(self, token: str) -> None:
        await self._write(DELETE_SESSION, {"session_token": token})

    async def delete_user_sessions(self, user_id: str) -> None:
        await self._write(DELETE_USER_SESSIONS, {"user_id": user_id})

    async def cleanup_expired_sessions(self) -> int:
        rows = await self._write(
            DELETE_EXPIRED_SESSIONS, {"current_ms": to_unix_millis(self._clock())}
        )
        return len(rows)


def _bind_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


__all__ = ["SurrealStore", "SCHEMA"]
