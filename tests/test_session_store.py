"""Tests for the user and session stores.

``MemoryStore`` is exercised directly. ``SurrealStore`` talks to a scripted
``httpx.MockTransport`` standing in for the ``/sql`` endpoint.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import FakeClock
from taskkeeper.config import Settings
from taskkeeper.storage.errors import (
    BackendError,
    BackendUnavailable,
    ConstraintViolation,
    MalformedResponse,
)
from taskkeeper.storage.memory import MemoryStore
from taskkeeper.storage.models import to_unix_millis, to_unix_seconds
from taskkeeper.storage.surreal import SurrealStore

START = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


class FakeSurreal:
    """Answers every /sql call with the next scripted body and keeps the requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        body = self.responses.pop(0) if self.responses else ok([])
        if isinstance(body, httpx.Response):
            return body
        if isinstance(body, int):
            return httpx.Response(body)
        return httpx.Response(200, json=body)

    @property
    def last_params(self):
        return dict(self.requests[-1].url.params)

    @property
    def last_statement(self):
        return self.requests[-1].content.decode()


def ok(rows):
    return [{"status": "OK", "time": "1ms", "result": rows}]


def err(message):
    return [{"status": "ERR", "time": "1ms", "result": message}]


def user_row(**overrides):
    row = {
        "id": "users:abc123",
        "email": "a@b.com",
        "name": "User",
        "password_hash": "$argon2id$" + "00" * 16 + "$" + "11" * 32,
        "email_verified": False,
        "verification_token": "123456",
        "verification_expires": to_unix_seconds(START + timedelta(minutes=10)),
    }
    row.update(overrides)
    return row


def surreal_store(fake, clock):
    settings = Settings(
        use_memory_store=False,
        surreal_url="http://surreal.test/",
        surreal_pass="pw",
        backend_retry_delays_ms=[0],
    )
    return SurrealStore.from_settings(settings, transport=httpx.MockTransport(fake), clock=clock)


class TestMemoryStoreUsers:
    async def test_create_and_lookup(self, memory_store):
        user = await memory_store.create_user(
            "a@b.com",
            "hash",
            "Ada",
            verification_token="123456",
            verification_expires=START + timedelta(minutes=10),
        )

        assert user.id.startswith("users:")
        assert (await memory_store.get_user_by_email("a@b.com")).id == user.id
        assert (await memory_store.get_user(user.id)).name == "Ada"
        assert (await memory_store.get_user_by_verification_token("123456")).id == user.id
        assert await memory_store.get_user_by_verification_token("") is None
        assert await memory_store.get_user("users:missing") is None

    async def test_email_lookup_ignores_case(self, memory_store):
        user = await memory_store.create_user(
            "Alice@Example.com",
            "hash",
            "Alice",
            verification_token="123456",
            verification_expires=START,
        )

        assert (await memory_store.get_user_by_email("alice@example.com")).id == user.id
        assert (await memory_store.get_user_by_email("ALICE@example.COM")).id == user.id

    async def test_duplicate_email_violates_constraint(self, memory_store):
        kwargs = {"verification_token": "1", "verification_expires": START}
        await memory_store.create_user("a@b.com", "h", "A", **kwargs)

        with pytest.raises(ConstraintViolation):
            await memory_store.create_user("a@b.com", "h", "B", **kwargs)

    async def test_returned_users_are_copies(self, memory_store):
        user = await memory_store.create_user(
            "a@b.com", "h", "A", verification_token="1", verification_expires=START
        )
        user.name = "Mallory"

        assert (await memory_store.get_user(user.id)).name == "A"

    async def test_token_updates(self, memory_store):
        user = await memory_store.create_user(
            "a@b.com", "h", "A", verification_token="1", verification_expires=START
        )
        await memory_store.set_reset_token(user.id, "r" * 64, START + timedelta(hours=1))
        assert (await memory_store.get_user_by_reset_token("r" * 64)).id == user.id

        await memory_store.clear_reset_token(user.id)
        assert await memory_store.get_user_by_reset_token("r" * 64) is None

        await memory_store.mark_email_verified(user.id)
        stored = await memory_store.get_user(user.id)
        assert stored.email_verified
        assert stored.verification_token is None
        assert stored.verification_expires is None


class TestMemoryStoreSessions:
    async def test_session_lifecycle(self, memory_store, clock):
        session = await memory_store.create_session("users:1")

        assert len(session.token) == 64
        assert session.expires_at == START + timedelta(days=7)
        assert await memory_store.validate_session(session.token) == "users:1"

        clock.advance(timedelta(days=7))
        assert await memory_store.validate_session(session.token) is None

    async def test_unknown_and_empty_tokens(self, memory_store):
        assert await memory_store.validate_session("") is None
        assert await memory_store.validate_session("f" * 64) is None

    async def test_delete_session_and_user_sessions(self, memory_store):
        first = await memory_store.create_session("users:1")
        second = await memory_store.create_session("users:1")
        other = await memory_store.create_session("users:2")

        await memory_store.delete_session(first.token)
        assert await memory_store.validate_session(first.token) is None
        assert await memory_store.validate_session(second.token) == "users:1"

        await memory_store.delete_user_sessions("users:1")
        assert await memory_store.validate_session(second.token) is None
        assert await memory_store.validate_session(other.token) == "users:2"

    async def test_cleanup_removes_only_expired(self, memory_store, clock):
        old = await memory_store.create_session("users:1")
        clock.advance(timedelta(days=4))
        fresh = await memory_store.create_session("users:2")
        clock.advance(timedelta(days=4))

        assert await memory_store.cleanup_expired_sessions() == 1
        assert old.token not in memory_store.sessions
        assert fresh.token in memory_store.sessions


class TestSurrealStoreRequests:
    """Wire-level behavior of the /sql calls."""

    async def test_request_carries_namespace_auth_and_bind_params(self, clock):
        fake = FakeSurreal(ok([user_row()]))
        store = surreal_store(fake, clock)

        user = await store.get_user_by_email("a@b.com")
        await store.close()

        request = fake.requests[0]
        assert request.url.path == "/sql"
        assert str(request.url).startswith("http://surreal.test/sql")
        assert request.headers["surreal-ns"] == "taskkeeper"
        assert request.headers["surreal-db"] == "taskkeeper"
        assert request.headers["authorization"].startswith("Basic ")
        assert "$email" in fake.last_statement
        assert "a@b.com" not in fake.last_statement
        assert fake.last_params == {"email": "a@b.com"}
        assert user.id == "users:abc123"
        assert user.verification_expires == START + timedelta(minutes=10)

    async def test_email_lookup_is_case_insensitive(self, clock):
        fake = FakeSurreal(ok([user_row(email="Alice@Example.com")]))
        store = surreal_store(fake, clock)

        user = await store.get_user_by_email("Alice@Example.com")
        await store.close()

        assert "string::lowercase(email) = $email" in fake.last_statement
        assert fake.last_params == {"email": "alice@example.com"}
        assert user.email == "Alice@Example.com"

    async def test_create_user_binds_expiry_as_unix_seconds(self, clock):
        fake = FakeSurreal(ok([user_row()]))
        store = surreal_store(fake, clock)

        await store.create_user(
            "a@b.com",
            "hash",
            "User",
            verification_token="123456",
            verification_expires=START + timedelta(minutes=10),
        )
        await store.close()

        params = fake.last_params
        assert params["verification_tkn"] == "123456"
        assert params["expires"] == str(to_unix_seconds(START + timedelta(minutes=10)))
        assert "<int>$expires" in fake.last_statement

    async def test_create_session_binds_millis(self, clock):
        fake = FakeSurreal(ok([{"token": "t"}]))
        store = surreal_store(fake, clock)

        session = await store.create_session("users:abc123")
        await store.close()

        params = fake.last_params
        assert params["session_token"] == session.token
        assert params["user_id"] == "users:abc123"
        assert params["expires_ms"] == str(to_unix_millis(START + timedelta(days=7)))

    async def test_duplicate_index_maps_to_constraint_violation(self, clock):
        fake = FakeSurreal(
            err("Database index `email_idx` already contains 'a@b.com', with record `users:x`")
        )
        store = surreal_store(fake, clock)

        with pytest.raises(ConstraintViolation):
            await store.create_user(
                "a@b.com", "h", "User", verification_token="1", verification_expires=START
            )
        await store.close()

    async def test_statement_error_maps_to_backend_error(self, clock):
        fake = FakeSurreal(err("There was a problem with the database"))
        store = surreal_store(fake, clock)

        with pytest.raises(BackendError):
            await store.update_user_password("users:abc123", "h")
        await store.close()

    async def test_rejected_request_maps_to_backend_error(self, clock):
        fake = FakeSurreal(httpx.Response(401, text="unauthorized"))
        store = surreal_store(fake, clock)

        with pytest.raises(BackendError) as exc_info:
            await store.delete_session("t")
        await store.close()

        assert not isinstance(exc_info.value, BackendUnavailable)
        assert len(fake.requests) == 1

    async def test_unreachable_backend_maps_to_unavailable(self, clock):
        fake = FakeSurreal(503, 503, 503)
        store = surreal_store(fake, clock)

        with pytest.raises(BackendUnavailable):
            await store.get_user_by_email("a@b.com")
        await store.close()

        assert len(fake.requests) == 3


class TestSurrealStoreDecoding:
    async def test_malformed_read_returns_none(self, clock):
        fake = FakeSurreal(httpx.Response(200, text="<html>proxy error</html>"))
        store = surreal_store(fake, clock)

        assert await store.get_user_by_email("a@b.com") is None
        await store.close()

    async def test_row_missing_fields_reads_as_none(self, clock):
        fake = FakeSurreal(ok([{"id": "users:abc123"}]))
        store = surreal_store(fake, clock)

        assert await store.get_user("users:abc123") is None
        await store.close()

    async def test_unknown_fields_are_ignored(self, clock):
        fake = FakeSurreal(ok([user_row(theme="dark", created_at="2026-01-01T00:00:00Z")]))
        store = surreal_store(fake, clock)

        user = await store.get_user("users:abc123")
        await store.close()

        assert user.email == "a@b.com"

    async def test_malformed_write_raises(self, clock):
        fake = FakeSurreal(ok([{"unexpected": True}]))
        store = surreal_store(fake, clock)

        with pytest.raises(MalformedResponse):
            await store.create_user(
                "a@b.com", "h", "User", verification_token="1", verification_expires=START
            )
        await store.close()

    async def test_empty_result_list_on_write_raises(self, clock):
        fake = FakeSurreal(httpx.Response(200, json=[]))
        store = surreal_store(fake, clock)

        with pytest.raises(MalformedResponse):
            await store.set_reset_token("users:abc123", "r", START)
        await store.close()

    async def test_multi_statement_response_uses_last_result(self, clock):
        body = ok([]) + ok([user_row(name="Last")])
        fake = FakeSurreal(body)
        store = surreal_store(fake, clock)

        user = await store.get_user_by_email("a@b.com")
        await store.close()

        assert user.name == "Last"


class TestSurrealStoreSessions:
    async def test_validate_live_session(self, clock):
        expires = to_unix_millis(START + timedelta(days=7))
        fake = FakeSurreal(ok([{"user_id": "users:abc123", "expires_ms": expires}]))
        store = surreal_store(fake, clock)

        assert await store.validate_session("t" * 64) == "users:abc123"
        assert fake.last_params == {"session_token": "t" * 64}
        await store.close()

    async def test_expired_session_is_absent(self, clock):
        expires = to_unix_millis(START)
        fake = FakeSurreal(ok([{"user_id": "users:abc123", "expires_ms": expires}]))
        store = surreal_store(fake, clock)

        assert await store.validate_session("t" * 64) is None
        await store.close()

    async def test_expiry_keeps_millisecond_precision(self, clock):
        expires = to_unix_millis(START + timedelta(seconds=1, milliseconds=600))
        fake = FakeSurreal(
            ok([{"user_id": "users:abc123", "expires_ms": expires}]),
            ok([{"user_id": "users:abc123", "expires_ms": expires}]),
        )
        store = surreal_store(fake, clock)

        clock.advance(timedelta(seconds=1, milliseconds=100))
        assert await store.validate_session("t" * 64) == "users:abc123"
        assert "time::millis(expires_at) AS expires_ms" in fake.last_statement
        clock.advance(timedelta(milliseconds=500))
        assert await store.validate_session("t" * 64) is None
        await store.close()

    async def test_unknown_session_is_absent(self, clock):
        store = surreal_store(FakeSurreal(ok([])), clock)

        assert await store.validate_session("t" * 64) is None
        await store.close()

    async def test_malformed_session_row_is_absent(self, clock):
        store = surreal_store(FakeSurreal(ok([{"user_id": "users:abc123"}])), clock)

        assert await store.validate_session("t" * 64) is None
        await store.close()

    async def test_unavailable_backend_propagates(self, clock):
        store = surreal_store(FakeSurreal(500, 500, 500), clock)

        with pytest.raises(BackendUnavailable):
            await store.validate_session("t" * 64)
        await store.close()

    async def test_cleanup_counts_deleted_rows(self, clock):
        fake = FakeSurreal(ok([{"token": "a"}, {"token": "b"}]))
        store = surreal_store(fake, clock)

        assert await store.cleanup_expired_sessions() == 2
        assert fake.last_params == {"current_ms": str(to_unix_millis(START))}
        await store.close()
