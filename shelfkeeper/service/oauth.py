from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode, urlparse

import httpx

from shelfkeeper.logging import get_logger
from shelfkeeper.storage.models import utcnow

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
}

STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class OAuthProfile:
    """Identity asserted by an external provider."""

    provider: str
    id: str
    email: Optional[str]
    email_verified: bool = False


def validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


class OAuthClient:
    """Authorization-code flow against the configured identity providers.

    ``state`` values are single-use and expire after ten minutes. They are kept
    in process memory, so a multi-worker deployment must pin the callback to
    the worker that issued the state.
    """

    def __init__(
        self,
        *,
        credentials: dict[str, tuple[Optional[str], Optional[str]]],
        redirect_uri: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.credentials = credentials
        self.redirect_uri = redirect_uri
        self._transport = transport
        self._clock = clock or utcnow
        self._timeout = timeout
        self._states: dict[str, tuple[str, datetime]] = {}
        self._state_lock = threading.Lock()

    def is_configured(self, provider: str) -> bool:
        client_id, client_secret = self.credentials.get(provider, (None, None))
        return bool(provider in OAUTH_PROVIDERS and client_id and client_secret and self.redirect_uri)

    def _purge_expired(self, now: datetime) -> None:
        expired = [s for s, (_, expires_at) in self._states.items() if expires_at <= now]
        for state in expired:
            self._states.pop(state, None)

    def authorization_url(self, provider: str) -> dict[str, str]:
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Unsupported OAuth provider: {provider}")
        if not self.is_configured(provider):
            logger.warning("oauth_not_configured", provider=provider)
            raise ValueError(f"OAuth provider {provider} is not configured")
        callback_uri = validate_redirect_uri(self.redirect_uri)

        state = secrets.token_urlsafe(32)
        now = self._clock()
        with self._state_lock:
            self._purge_expired(now)
            self._states[state] = (provider, now + STATE_TTL)

        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": self.credentials[provider][0],
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def consume_state(self, provider: str, state: str) -> bool:
        """Pop ``state``; True only if it was issued for ``provider`` and is unexpired."""
        now = self._clock()
        with self._state_lock:
            stored = self._states.pop(state, None)
            self._purge_expired(now)
        if not stored:
            return False
        stored_provider, expires_at = stored
        return stored_provider == provider and expires_at > now

    async def exchange_code(self, provider: str, code: str) -> Optional[OAuthProfile]:
        """Trade an authorization code for the provider's view of the user."""
        if not self.is_configured(provider):
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        client_id, client_secret = self.credentials[provider]
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_response = await client.get(
                    config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=e.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("oauth_exchange_error", provider=provider, error=str(e))
            return None

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=provider)
            return None
        profile = self._parse_userinfo(provider, userinfo)
        if not profile.id:
            logger.error("oauth_identity_missing_uid", provider=provider)
            return None
        logger.info("oauth_exchange_success", provider=provider, provider_uid=profile.id)
        return profile

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict) -> OAuthProfile:
        uid = userinfo.get("id") or userinfo.get("sub")
        verified = userinfo.get("verified_email", userinfo.get("email_verified", False))
        return OAuthProfile(
            provider=provider,
            id=str(uid) if uid else "",
            email=userinfo.get("email"),
            email_verified=bool(verified),
        )
