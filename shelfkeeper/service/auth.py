from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from shelfkeeper.config import Settings
from shelfkeeper.logging import get_logger, redact_email
from shelfkeeper.service.email import EmailNotifier
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
from shelfkeeper.service.oauth import OAUTH_PROVIDERS, OAuthClient, OAuthProfile
from shelfkeeper.service.passwords import PasswordHasher
from shelfkeeper.service.tokens import (
    ExpiredTokenError,
    OneTimeTokenPurpose,
    TokenClass,
    TokenCodec,
    TokenError,
    TokenPair,
    expiry_for,
    generate_one_time_token,
)
from shelfkeeper.storage.errors import ConstraintViolation, StorageError
from shelfkeeper.storage.models import Role, User, normalize_email, utcnow

logger = get_logger(__name__)


class UserStore(Protocol):
    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_oauth_id(self, provider: str, oauth_id: str) -> Optional[User]: ...

    def find_by_verification_token(self, token: str) -> Optional[User]: ...

    def find_by_reset_token(self, token: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def create(self, user: User, password_hash: Optional[str] = None) -> User: ...

    def set_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]: ...

    def set_reset_token(self, user_id: str, token: str, expires_at: datetime) -> User: ...

    def link_oauth(self, user_id: str, provider: str, oauth_id: str) -> User: ...

    def set_role(self, user_id: str, role: str) -> User: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def consume_verification_token(self, token: str, now: datetime) -> Optional[User]: ...

    def consume_reset_token(
        self, token: str, now: datetime, password_hash: str
    ) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    is_email_verified: bool
    user: User


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    verification_email_sent: Optional[bool] = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"user": self.user.to_public(), **self.tokens.as_dict()}
        if self.verification_email_sent is not None:
            data["verification_email_sent"] = self.verification_email_sent
        return data


class AuthService:
    """Account workflows: signup, login, verification, recovery and OAuth.

    Store, argon2 and SMTP calls block, so each one is pushed to a worker
    thread. Failures of those collaborators surface as ``ServerError`` with a
    reference that matches the ``auth_collaborator_failure`` log entry.
    """

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        hasher: PasswordHasher,
        notifier: EmailNotifier,
        settings: Settings,
        *,
        oauth: Optional[OAuthClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.notifier = notifier
        self.settings = settings
        self.oauth = oauth
        self.logger = logger
        self._clock = clock or utcnow
        self._dummy_hash: Optional[str] = None

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _issue_tokens(self, user: User) -> TokenPair:
        return self.codec.issue_pair(
            user.id, access_ttl=self.access_ttl, refresh_ttl=self.refresh_ttl
        )

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking collaborator call off the event loop."""
        try:
            return await asyncio.to_thread(fn, *args)
        except ConstraintViolation:
            raise
        except StorageError as exc:
            err = ServerError()
            self.logger.error(
                "auth_collaborator_failure",
                operation=operation,
                reference=err.reference,
                error=exc.message,
                detail=exc.detail,
            )
            raise err from exc

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _compare(self, password: str, digest: Optional[str]) -> bool:
        if not digest:
            # Burn the same argon2 work so unknown accounts are not faster to reject
            if self._dummy_hash is None:
                self._dummy_hash = await self._hash(secrets.token_hex(16))
            await asyncio.to_thread(self.hasher.compare, password, self._dummy_hash)
            return False
        return await asyncio.to_thread(self.hasher.compare, password, digest)

    async def _send(self, operation: str, fn: Callable[..., bool], *args: Any) -> bool:
        try:
            return bool(await asyncio.to_thread(fn, *args))
        except Exception as exc:
            self.logger.error("email_dispatch_failed", operation=operation, error=str(exc))
            return False

    def _ttl_override(self, purpose: OneTimeTokenPurpose) -> timedelta:
        if purpose == OneTimeTokenPurpose.EMAIL_VERIFICATION:
            return timedelta(minutes=self.settings.email_verification_ttl_minutes)
        return timedelta(minutes=self.settings.password_reset_ttl_minutes)

    def _new_one_time_token(self, purpose: OneTimeTokenPurpose) -> tuple[str, datetime]:
        token = generate_one_time_token()
        return token, expiry_for(purpose, self._clock(), self._ttl_override(purpose))

    async def _require_user(self, user_id: str) -> User:
        user = await self._call("find_by_id", self.store.find_by_id, user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    # signup / login

    async def signup(self, email: str, password: str) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        token, expires_at = self._new_one_time_token(OneTimeTokenPurpose.EMAIL_VERIFICATION)
        user = User.new(email)
        user.email_verification_token = token
        user.email_verification_expires = expires_at
        password_hash = await self._hash(password)
        try:
            user = await self._call("create", self.store.create, user, password_hash)
        except ConstraintViolation:
            raise ConflictError("email already registered", detail={"field": "email"})

        sent = await self._send(
            "verification", self.notifier.send_verification_email, user, token
        )
        if not sent:
            self.logger.error("verification_email_failed", user_id=user.id)
        self.logger.info("user_signed_up", user_id=user.id, email=redact_email(user.email))
        return AuthResult(user=user, tokens=self._issue_tokens(user), verification_email_sent=sent)

    async def login(self, email: str, password: str) -> AuthResult:
        user = await self._call("find_by_email", self.store.find_by_email, normalize_email(email))
        digest = None
        if user:
            digest = await self._call("get_password_hash", self.store.get_password_hash, user.id)
        if not await self._compare(password, digest) or not user:
            self.logger.info("login_failed", email=redact_email(email))
            raise InvalidCredentialsError()
        if digest and self.hasher.needs_rehash(digest):
            await self._call(
                "set_password_hash", self.store.set_password_hash, user.id, await self._hash(password)
            )
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=self._issue_tokens(user))

    # email verification

    async def verify_email(self, token: str) -> User:
        if not token:
            raise InvalidOrExpiredTokenError("invalid or expired verification token")
        user = await self._call(
            "consume_verification_token", self.store.consume_verification_token, token, self._clock()
        )
        if not user:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError("invalid or expired verification token")
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def request_email_verification(self, user_id: str) -> None:
        user = await self._require_user(user_id)
        if user.is_email_verified:
            raise ConflictError("email already verified")
        token, expires_at = self._new_one_time_token(OneTimeTokenPurpose.EMAIL_VERIFICATION)
        user = await self._call(
            "set_verification_token", self.store.set_verification_token, user.id, token, expires_at
        )
        if user is None:
            raise ConflictError("email already verified")
        if not await self._send("verification", self.notifier.send_verification_email, user, token):
            err = ServerError("failed to send verification email")
            self.logger.error("verification_email_failed", user_id=user.id, reference=err.reference)
            raise err
        self.logger.info("email_verification_requested", user_id=user.id)

    # password recovery

    async def forgot_password(self, email: str) -> None:
        user = await self._call("find_by_email", self.store.find_by_email, normalize_email(email))
        if not user:
            self.logger.info("password_reset_unknown_email", email=redact_email(email))
            if self.settings.reveal_unknown_reset_email:
                raise NotFoundError("user not found")
            return
        token, expires_at = self._new_one_time_token(OneTimeTokenPurpose.PASSWORD_RESET)
        user = await self._call(
            "set_reset_token", self.store.set_reset_token, user.id, token, expires_at
        )
        if not await self._send("password_reset", self.notifier.send_password_reset_email, user, token):
            err = ServerError("failed to send password reset email")
            self.logger.error("password_reset_email_failed", user_id=user.id, reference=err.reference)
            raise err
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> User:
        if not token:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        password_hash = await self._hash(new_password)
        user = await self._call(
            "consume_reset_token", self.store.consume_reset_token, token, self._clock(), password_hash
        )
        if not user:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        if not await self._send(
            "password_changed", self.notifier.send_password_change_notification, user
        ):
            self.logger.warning("password_change_notification_failed", user_id=user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = await self._require_user(user_id)
        digest = await self._call("get_password_hash", self.store.get_password_hash, user.id)
        if not await self._compare(current_password, digest):
            raise InvalidCredentialsError("current password is incorrect")
        await self._call(
            "set_password_hash", self.store.set_password_hash, user.id, await self._hash(new_password)
        )
        if not await self._send(
            "password_changed", self.notifier.send_password_change_notification, user
        ):
            self.logger.warning("password_change_notification_failed", user_id=user.id)
        self.logger.info("password_changed", user_id=user.id)

    # oauth

    async def oauth_login(self, profile: OAuthProfile) -> AuthResult:
        if not profile.id or not profile.email:
            raise OAuthLinkError("oauth profile is missing an id or email")
        user = await self._call(
            "find_by_oauth_id", self.store.find_by_oauth_id, profile.provider, profile.id
        )
        if not user:
            user = await self._link_or_create(profile)
        self.logger.info("oauth_login", user_id=user.id, provider=profile.provider)
        return AuthResult(user=user, tokens=self._issue_tokens(user))

    async def _link_or_create(self, profile: OAuthProfile) -> User:
        email = normalize_email(profile.email or "")
        existing = await self._call("find_by_email", self.store.find_by_email, email)
        if existing:
            if not profile.email_verified:
                self.logger.warning(
                    "oauth_link_unverified_email", user_id=existing.id, provider=profile.provider
                )
                raise OAuthLinkError("oauth email is not verified")
            try:
                linked = await self._call(
                    "link_oauth", self.store.link_oauth, existing.id, profile.provider, profile.id
                )
            except ConstraintViolation:
                raise OAuthLinkError("oauth identity conflicts with an existing account")
            self.logger.info("oauth_identity_linked", user_id=linked.id, provider=profile.provider)
            return linked
        user = User.new(
            email,
            is_email_verified=profile.email_verified,
            oauth_provider=profile.provider,
            oauth_id=profile.id,
        )
        try:
            return await self._call("create", self.store.create, user, None)
        except ConstraintViolation:
            # Lost a race with a concurrent callback for the same identity
            winner = await self._call(
                "find_by_oauth_id", self.store.find_by_oauth_id, profile.provider, profile.id
            )
            if winner:
                return winner
            raise OAuthLinkError("oauth identity conflicts with an existing account")

    async def start_oauth(self, provider: str) -> dict[str, str]:
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError(f"unsupported oauth provider: {provider}")
        if not self.oauth:
            raise ValidationError(f"oauth provider {provider} is not configured")
        try:
            return self.oauth.authorization_url(provider)
        except ValueError as exc:
            raise ValidationError(str(exc))

    async def complete_oauth(self, provider: str, code: str, state: str) -> AuthResult:
        if not self.oauth or not self.oauth.consume_state(provider, state):
            self.logger.warning("oauth_state_invalid", provider=provider)
            raise OAuthLinkError("invalid oauth state")
        profile = await self.oauth.exchange_code(provider, code)
        if not profile:
            raise OAuthLinkError("oauth exchange failed")
        return await self.oauth_login(profile)

    # tokens / profile

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            verified = self.codec.verify(refresh_token, TokenClass.REFRESH)
        except ExpiredTokenError:
            raise SessionExpiredError("refresh token expired")
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=str(exc))
            raise AuthenticationError("invalid refresh token")
        user = await self._require_user(verified.subject_id)
        return self._issue_tokens(user)

    async def get_profile(self, user_id: str) -> User:
        return await self._require_user(user_id)

    # admin

    async def list_users(self, limit: int = 100) -> List[User]:
        return await self._call("list_users", self.store.list_users, limit)

    async def set_user_role(self, actor_id: str, user_id: str, role: str) -> User:
        if role not in {r.value for r in Role}:
            raise ValidationError("invalid role", detail={"allowed": [r.value for r in Role]})
        if actor_id == user_id:
            raise ForbiddenError("cannot modify own role")
        await self._require_user(user_id)
        user = await self._call("set_role", self.store.set_role, user_id, role)
        self.logger.info("user_role_changed", actor_id=actor_id, user_id=user.id, role=role)
        return user
