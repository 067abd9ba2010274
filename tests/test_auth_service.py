"""Unit tests for the account workflows in AuthService."""

from datetime import timedelta

import pytest

from shelfkeeper.service.auth import AuthService
from shelfkeeper.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    OAuthLinkError,
    ServerError,
    SessionExpiredError,
    ValidationError,
)
from shelfkeeper.service.oauth import OAuthProfile
from shelfkeeper.service.tokens import TokenClass, TokenCodec
from shelfkeeper.storage.errors import StorageError
from shelfkeeper.storage.memory import MemoryStore
from shelfkeeper.storage.models import User

PASSWORD = "Shelf-Password-1"


@pytest.fixture
def clocked_codec(settings, clock):
    return TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )


@pytest.fixture
def auth_service(memory_store, clocked_codec, fast_hasher, notifier, settings, clock):
    return AuthService(memory_store, clocked_codec, fast_hasher, notifier, settings, clock=clock)


class InterleavingStore(MemoryStore):
    """Runs ``before_write`` between the service's read and its token write."""

    before_write = None

    def _interleave(self):
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook()

    def set_reset_token(self, user_id, token, expires_at):
        self._interleave()
        return super().set_reset_token(user_id, token, expires_at)

    def set_verification_token(self, user_id, token, expires_at):
        self._interleave()
        return super().set_verification_token(user_id, token, expires_at)


@pytest.fixture
def interleaving(clocked_codec, fast_hasher, notifier, settings, clock):
    store = InterleavingStore()
    service = AuthService(store, clocked_codec, fast_hasher, notifier, settings, clock=clock)
    return store, service


class BrokenStore:
    """Store whose every call fails like a lost database connection."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise StorageError("connection refused", {"host": "db.internal"})

        return _fail


class TestSignup:
    async def test_signup_creates_unverified_user_and_sends_link(
        self, auth_service, memory_store, notifier, clocked_codec, clock
    ):
        result = await auth_service.signup("Reader@Example.com", PASSWORD)

        assert result.user.email == "reader@example.com"
        assert result.user.is_email_verified is False
        assert result.verification_email_sent is True
        assert notifier.verification[0][0] == "reader@example.com"
        stored = memory_store.find_by_id(result.user.id)
        assert stored.email_verification_token == notifier.verification[0][1]
        assert stored.email_verification_expires == clock.now + timedelta(hours=24)
        assert clocked_codec.verify(result.tokens.access_token, TokenClass.ACCESS).subject_id == result.user.id

    async def test_password_is_hashed(self, auth_service, memory_store, fast_hasher):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        digest = memory_store.get_password_hash(result.user.id)
        assert digest != PASSWORD
        assert fast_hasher.compare(PASSWORD, digest)

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.signup("reader@example.com", PASSWORD)
        with pytest.raises(ConflictError) as exc_info:
            await auth_service.signup("READER@example.com", PASSWORD)
        assert exc_info.value.message == "email already registered"

    async def test_email_failure_keeps_account(
        self, memory_store, clocked_codec, fast_hasher, failing_notifier, settings, clock
    ):
        service = AuthService(
            memory_store, clocked_codec, fast_hasher, failing_notifier, settings, clock=clock
        )
        result = await service.signup("reader@example.com", PASSWORD)
        assert result.verification_email_sent is False
        assert memory_store.find_by_email("reader@example.com") is not None

    async def test_signup_disabled(self, auth_service, settings):
        settings.allow_signup = False
        with pytest.raises(ForbiddenError):
            await auth_service.signup("reader@example.com", PASSWORD)

    async def test_store_failure_is_opaque_server_error(
        self, clocked_codec, fast_hasher, notifier, settings, clock
    ):
        service = AuthService(BrokenStore(), clocked_codec, fast_hasher, notifier, settings, clock=clock)
        with pytest.raises(ServerError) as exc_info:
            await service.signup("reader@example.com", PASSWORD)
        assert "db.internal" not in exc_info.value.message
        assert exc_info.value.reference


class TestLogin:
    async def test_login_issues_pair(self, auth_service):
        await auth_service.signup("reader@example.com", PASSWORD)
        result = await auth_service.login(" Reader@example.com", PASSWORD)
        assert result.user.email == "reader@example.com"
        assert result.tokens.refresh_token

    async def test_wrong_password_and_unknown_email_look_identical(self, auth_service):
        await auth_service.signup("reader@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("reader@example.com", "not-the-password")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        assert wrong.value.message == unknown.value.message == "invalid credentials"
        assert wrong.value.status_code == unknown.value.status_code == 401

    async def test_oauth_only_account_cannot_password_login(self, auth_service):
        await auth_service.oauth_login(
            OAuthProfile(provider="google", id="g-1", email="reader@example.com", email_verified=True)
        )
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("reader@example.com", PASSWORD)


class TestEmailVerification:
    async def test_verify_marks_user_and_clears_token(self, auth_service, notifier, memory_store):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        token = notifier.verification[0][1]

        user = await auth_service.verify_email(token)
        assert user.is_email_verified is True
        stored = memory_store.find_by_id(result.user.id)
        assert stored.email_verification_token is None
        assert stored.email_verification_expires is None

    async def test_token_is_single_use(self, auth_service, notifier):
        await auth_service.signup("reader@example.com", PASSWORD)
        token = notifier.verification[0][1]
        await auth_service.verify_email(token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.verify_email(token)

    async def test_expired_token_rejected(self, auth_service, notifier, clock):
        await auth_service.signup("reader@example.com", PASSWORD)
        clock.advance(timedelta(hours=24, seconds=1))
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.verify_email(notifier.verification[0][1])

    async def test_unknown_token_rejected(self, auth_service):
        with pytest.raises(InvalidOrExpiredTokenError) as exc_info:
            await auth_service.verify_email("f" * 64)
        assert exc_info.value.status_code == 400

    async def test_resend_issues_new_token(self, auth_service, notifier):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        await auth_service.request_email_verification(result.user.id)
        first, second = notifier.verification[0][1], notifier.verification[1][1]
        assert first != second
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.verify_email(first)
        assert (await auth_service.verify_email(second)).is_email_verified

    async def test_resend_for_verified_user_conflicts(self, auth_service, notifier):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        await auth_service.verify_email(notifier.verification[0][1])
        with pytest.raises(ConflictError):
            await auth_service.request_email_verification(result.user.id)

    async def test_resend_racing_verification_conflicts(self, interleaving, notifier, clock):
        store, service = interleaving
        result = await service.signup("reader@example.com", PASSWORD)
        token = notifier.verification[0][1]
        store.before_write = lambda: store.consume_verification_token(token, clock.now)

        with pytest.raises(ConflictError):
            await service.request_email_verification(result.user.id)

        assert store.find_by_id(result.user.id).is_email_verified is True
        assert len(notifier.verification) == 1


class TestPasswordRecovery:
    async def test_forgot_and_reset(self, auth_service, notifier, memory_store, clock):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        await auth_service.forgot_password("reader@example.com")
        email, token = notifier.reset[0]
        assert email == "reader@example.com"
        stored = memory_store.find_by_id(result.user.id)
        assert stored.reset_password_expires == clock.now + timedelta(hours=1)

        await auth_service.reset_password(token, "Brand-New-Pass-2")

        assert notifier.changed == ["reader@example.com"]
        await auth_service.login("reader@example.com", "Brand-New-Pass-2")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("reader@example.com", PASSWORD)

    async def test_reset_token_is_single_use(self, auth_service, notifier):
        await auth_service.signup("reader@example.com", PASSWORD)
        await auth_service.forgot_password("reader@example.com")
        token = notifier.reset[0][1]
        await auth_service.reset_password(token, "Brand-New-Pass-2")
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(token, "Another-Pass-3")

    async def test_expired_reset_token_rejected(self, auth_service, notifier, clock):
        await auth_service.signup("reader@example.com", PASSWORD)
        await auth_service.forgot_password("reader@example.com")
        clock.advance(timedelta(hours=1))
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(notifier.reset[0][1], "Brand-New-Pass-2")
        await auth_service.login("reader@example.com", PASSWORD)

    async def test_unknown_email_is_reported_by_default(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.forgot_password("nobody@example.com")

    async def test_unknown_email_silent_when_configured(self, auth_service, settings, notifier):
        settings.reveal_unknown_reset_email = False
        await auth_service.forgot_password("nobody@example.com")
        assert notifier.reset == []

    async def test_reset_email_failure_is_server_error(
        self, memory_store, clocked_codec, fast_hasher, failing_notifier, settings, clock
    ):
        service = AuthService(
            memory_store, clocked_codec, fast_hasher, failing_notifier, settings, clock=clock
        )
        await service.signup("reader@example.com", PASSWORD)
        with pytest.raises(ServerError):
            await service.forgot_password("reader@example.com")

    async def test_reset_request_racing_verification_keeps_token_spent(
        self, interleaving, notifier, clock
    ):
        store, service = interleaving
        result = await service.signup("reader@example.com", PASSWORD)
        token = notifier.verification[0][1]
        store.before_write = lambda: store.consume_verification_token(token, clock.now)

        await service.forgot_password("reader@example.com")

        stored = store.find_by_id(result.user.id)
        assert stored.is_email_verified is True
        assert stored.email_verification_token is None
        assert stored.reset_password_token == notifier.reset[0][1]
        with pytest.raises(InvalidOrExpiredTokenError):
            await service.verify_email(token)

    async def test_change_password(self, auth_service, notifier):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(result.user.id, "wrong-current", "Brand-New-Pass-2")
        await auth_service.change_password(result.user.id, PASSWORD, "Brand-New-Pass-2")
        assert notifier.changed == ["reader@example.com"]
        await auth_service.login("reader@example.com", "Brand-New-Pass-2")


class TestOAuthLogin:
    async def test_new_identity_creates_verified_user(self, auth_service, memory_store):
        result = await auth_service.oauth_login(
            OAuthProfile(provider="google", id="g-1", email="Reader@Example.com", email_verified=True)
        )
        assert result.user.is_email_verified is True
        assert result.user.oauth_id == "g-1"
        assert memory_store.get_password_hash(result.user.id) is None

    async def test_existing_email_is_linked(self, auth_service, memory_store):
        signed_up = await auth_service.signup("reader@example.com", PASSWORD)
        result = await auth_service.oauth_login(
            OAuthProfile(provider="google", id="g-1", email="reader@example.com", email_verified=True)
        )
        assert result.user.id == signed_up.user.id
        assert result.user.is_email_verified is True
        assert memory_store.find_by_oauth_id("google", "g-1").id == signed_up.user.id
        # password login still works after linking
        await auth_service.login("reader@example.com", PASSWORD)

    async def test_unverified_provider_email_cannot_link(self, auth_service, memory_store):
        signed_up = await auth_service.signup("reader@example.com", PASSWORD)
        with pytest.raises(OAuthLinkError) as exc_info:
            await auth_service.oauth_login(
                OAuthProfile(provider="google", id="g-1", email="reader@example.com")
            )
        assert exc_info.value.message == "oauth email is not verified"
        stored = memory_store.find_by_id(signed_up.user.id)
        assert stored.oauth_id is None
        assert stored.is_email_verified is False

    async def test_unverified_provider_email_creates_unverified_user(self, auth_service):
        result = await auth_service.oauth_login(
            OAuthProfile(provider="google", id="g-2", email="new@example.com", email_verified=False)
        )
        assert result.user.is_email_verified is False
        assert result.user.oauth_id == "g-2"

    async def test_repeat_login_finds_by_provider_id(self, auth_service):
        profile = OAuthProfile(provider="google", id="g-1", email="reader@example.com")
        first = await auth_service.oauth_login(profile)
        changed_email = OAuthProfile(provider="google", id="g-1", email="renamed@example.com")
        second = await auth_service.oauth_login(changed_email)
        assert first.user.id == second.user.id

    @pytest.mark.parametrize(
        "profile",
        [
            OAuthProfile(provider="google", id="", email="reader@example.com"),
            OAuthProfile(provider="google", id="g-1", email=None),
        ],
    )
    async def test_incomplete_profile_rejected(self, auth_service, profile):
        with pytest.raises(OAuthLinkError):
            await auth_service.oauth_login(profile)


class TestRefreshAndProfile:
    async def test_refresh_returns_new_pair(self, auth_service, clocked_codec, clock):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        clock.advance(timedelta(seconds=5))
        pair = await auth_service.refresh(result.tokens.refresh_token)
        assert pair.access_token != result.tokens.access_token
        assert clocked_codec.verify(pair.refresh_token, TokenClass.REFRESH).subject_id == result.user.id

    async def test_access_token_cannot_refresh(self, auth_service):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(result.tokens.access_token)
        assert exc_info.value.message == "invalid refresh token"

    async def test_expired_refresh_token(self, auth_service, clock):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        clock.advance(timedelta(days=2))
        with pytest.raises(SessionExpiredError) as exc_info:
            await auth_service.refresh(result.tokens.refresh_token)
        assert exc_info.value.status_code == 401

    async def test_refresh_for_deleted_subject(self, auth_service, memory_store):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        memory_store.users.clear()
        with pytest.raises(NotFoundError):
            await auth_service.refresh(result.tokens.refresh_token)

    async def test_get_profile(self, auth_service):
        result = await auth_service.signup("reader@example.com", PASSWORD)
        assert (await auth_service.get_profile(result.user.id)).email == "reader@example.com"
        with pytest.raises(NotFoundError):
            await auth_service.get_profile("missing")


class TestAdmin:
    async def test_set_role(self, auth_service, memory_store):
        admin = memory_store.create(User.new("admin@example.com", role="admin"))
        target = await auth_service.signup("reader@example.com", PASSWORD)
        updated = await auth_service.set_user_role(admin.id, target.user.id, "admin")
        assert updated.role == "admin"

    async def test_cannot_change_own_role(self, auth_service, memory_store):
        admin = memory_store.create(User.new("admin@example.com", role="admin"))
        with pytest.raises(ForbiddenError):
            await auth_service.set_user_role(admin.id, admin.id, "user")

    async def test_invalid_role(self, auth_service, memory_store):
        admin = memory_store.create(User.new("admin@example.com", role="admin"))
        with pytest.raises(ValidationError):
            await auth_service.set_user_role(admin.id, "someone", "librarian")
