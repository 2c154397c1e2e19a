from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from taskkeeper.logging import get_logger
from taskkeeper.service.credentials import generate_session_token
from taskkeeper.storage.errors import ConstraintViolation
from taskkeeper.storage.models import Session, User, utcnow


class MemoryStore:
    """In-process user and session store for development and tests.

    Honors the same contract as ``SurrealStore``: expired sessions validate
    as absent even before the sweep removes them.
    """

    def __init__(
        self,
        *,
        session_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.session_ttl = session_ttl
        self._clock = clock
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest acquisitions
        self._data_lock = threading.RLock()

    async def close(self) -> None:
        return None

    def _find_user(self, predicate: Callable[[User], bool]) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if predicate(user):
                    return replace(user)
        return None

    # users
    async def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        return self._find_user(lambda u: u.email.lower() == email)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._find_user(lambda u: u.reset_token == token)

    async def get_user_by_verification_token(self, code: str) -> Optional[User]:
        if not code:
            return None
        return self._find_user(lambda u: u.verification_token == code)

    async def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        verification_token: str,
        verification_expires: datetime,
    ) -> User:
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("duplicate value for unique index", {"field": "email"})
            user = User(
                id=f"users:{uuid.uuid4().hex}",
                email=email,
                name=name,
                password_hash=password_hash,
                verification_token=verification_token,
                verification_expires=verification_expires,
            )
            self.users[user.id] = user
            self.logger.info("user_created", user_id=user.id)
            return replace(user)

    def _update_user(self, user_id: str, **changes) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            self.users[user_id] = replace(user, **changes)

    async def update_user_password(self, user_id: str, password_hash: str) -> None:
        self._update_user(user_id, password_hash=password_hash)

    async def mark_email_verified(self, user_id: str) -> None:
        self._update_user(
            user_id, email_verified=True, verification_token=None, verification_expires=None
        )

    async def set_verification_token(self, user_id: str, code: str, expires: datetime) -> None:
        self._update_user(user_id, verification_token=code, verification_expires=expires)

    async def set_reset_token(self, user_id: str, token: str, expires: datetime) -> None:
        self._update_user(user_id, reset_token=token, reset_expires=expires)

    async def clear_reset_token(self, user_id: str) -> None:
        self._update_user(user_id, reset_token=None, reset_expires=None)

    # sessions
    async def create_session(self, user_id: str) -> Session:
        session = Session.new(generate_session_token(), user_id, self.session_ttl, now=self._clock())
        with self._data_lock:
            if session.token in self.sessions:
                raise ConstraintViolation("duplicate session token")
            self.sessions[session.token] = session
        return replace(session)

    async def validate_session(self, token: str) -> Optional[str]:
        if not token:
            return None
        with self._data_lock:
            session = self.sessions.get(token)
        if session is None:
            return None
        if not session.is_valid(self._clock()):
            self.logger.info("session_expired", user_id=session.user_id)
            return None
        return session.user_id

    async def delete_session(self, token: str) -> None:
        with self._data_lock:
            self.sessions.pop(token, None)

    async def delete_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [tok for tok, sess in self.sessions.items() if sess.user_id == user_id]
            for tok in stale:
                self.sessions.pop(tok, None)

    async def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        with self._data_lock:
            expired = [tok for tok, sess in self.sessions.items() if sess.expires_at < now]
            for tok in expired:
                self.sessions.pop(tok, None)
        return len(expired)
