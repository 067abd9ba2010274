"""Admission decisions made by the session gate."""

from datetime import timedelta

import pytest

from shelfkeeper.service.errors import AuthenticationError, ForbiddenError
from shelfkeeper.service.session_gate import SessionGate, extract_bearer
from shelfkeeper.service.tokens import TokenClass, TokenCodec
from shelfkeeper.storage.models import User


@pytest.fixture
def clocked_codec(settings, clock):
    return TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )


@pytest.fixture
def gate(clocked_codec, memory_store):
    return SessionGate(clocked_codec, memory_store)


@pytest.fixture
def reader(memory_store):
    return memory_store.create(User.new("reader@example.com"))


@pytest.fixture
def admin(memory_store):
    return memory_store.create(User.new("admin@example.com", role="admin", is_email_verified=True))


def _bearer(codec, user, token_class=TokenClass.ACCESS, ttl=timedelta(minutes=15)):
    return f"Bearer {codec.issue(user.id, token_class, ttl)}"


class TestBearerExtraction:
    @pytest.mark.parametrize(
        "header,expected",
        [
            (None, None),
            ("", None),
            ("Bearer", None),
            ("Bearer   ", None),
            ("Basic abc", None),
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer(header) == expected


class TestUnauthenticated:
    async def test_missing_header(self, gate):
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.admit(None)
        assert exc_info.value.status_code == 401

    async def test_garbage_token(self, gate):
        with pytest.raises(AuthenticationError):
            await gate.admit("Bearer not-a-token")

    async def test_refresh_token_is_not_an_access_token(self, gate, clocked_codec, reader):
        with pytest.raises(AuthenticationError):
            await gate.admit(_bearer(clocked_codec, reader, TokenClass.REFRESH))

    async def test_expired_token_same_message(self, gate, clocked_codec, reader, clock):
        header = _bearer(clocked_codec, reader, ttl=timedelta(minutes=1))
        clock.advance(timedelta(minutes=2))
        with pytest.raises(AuthenticationError) as expired:
            await gate.admit(header)
        with pytest.raises(AuthenticationError) as malformed:
            await gate.admit("Bearer x.y.z")
        assert expired.value.message == malformed.value.message

    async def test_unknown_subject(self, gate, clocked_codec):
        ghost = User.new("ghost@example.com")
        with pytest.raises(AuthenticationError):
            await gate.admit(_bearer(clocked_codec, ghost))


class TestAuthorization:
    async def test_plain_user_admitted(self, gate, clocked_codec, reader):
        ctx = await gate.admit(_bearer(clocked_codec, reader))
        assert ctx.user_id == reader.id
        assert ctx.role == "user"

    async def test_admin_route_forbids_user(self, gate, clocked_codec, reader):
        with pytest.raises(ForbiddenError) as exc_info:
            await gate.admit(_bearer(clocked_codec, reader), required_role="admin")
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "admin access required"

    async def test_admin_satisfies_user_role(self, gate, clocked_codec, admin):
        ctx = await gate.admit(_bearer(clocked_codec, admin), required_role="user")
        assert ctx.role == "admin"

    async def test_unverified_user_forbidden_when_required(self, gate, clocked_codec, reader):
        with pytest.raises(ForbiddenError) as exc_info:
            await gate.admit(_bearer(clocked_codec, reader), require_verified=True)
        assert exc_info.value.message == "email verification required"

    async def test_role_checked_against_current_record(
        self, gate, clocked_codec, reader, memory_store
    ):
        header = _bearer(clocked_codec, reader)
        memory_store.set_role(reader.id, "admin")
        ctx = await gate.admit(header, required_role="admin")
        assert ctx.role == "admin"
