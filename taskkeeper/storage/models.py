from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_unix_seconds(value: datetime) -> int:
    return int(value.timestamp())


def to_unix_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_unix_seconds(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    email_verified: bool = False
    verification_token: Optional[str] = None
    verification_expires: Optional[datetime] = None
    reset_token: Optional[str] = None
    reset_expires: Optional[datetime] = None
    avatar: Optional[str] = None


@dataclass
class Session:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, token: str, user_id: str, ttl: timedelta, *, now: Optional[datetime] = None) -> "Session":
        created = now or utcnow()
        return cls(token=token, user_id=user_id, created_at=created, expires_at=created + ttl)

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


# Wire models for SurrealDB /sql responses. Unknown fields are ignored so the
# backend can grow columns without breaking decoding.


class StatementResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    time: Optional[str] = None
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def rows(self) -> List[dict]:
        if isinstance(self.result, list):
            return [row for row in self.result if isinstance(row, dict)]
        if isinstance(self.result, dict):
            return [self.result]
        return []


class UserRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    password_hash: str
    name: str = "User"
    avatar: Optional[str] = None
    email_verified: bool = False
    verification_token: Optional[str] = None
    verification_expires: Optional[int] = None
    reset_token: Optional[str] = None
    reset_expires: Optional[int] = None

    def to_user(self) -> User:
        return User(
            id=self.id,
            email=self.email,
            name=self.name,
            password_hash=self.password_hash,
            email_verified=self.email_verified,
            verification_token=self.verification_token,
            verification_expires=(
                from_unix_seconds(self.verification_expires)
                if self.verification_expires is not None
                else None
            ),
            reset_token=self.reset_token,
            reset_expires=(
                from_unix_seconds(self.reset_expires) if self.reset_expires is not None else None
            ),
            avatar=self.avatar,
        )


class SessionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    expires_ms: int = Field(..., ge=0)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.expires_ms / 1000, tz=timezone.utc)
