from __future__ import annotations

from typing import Any, Optional, Tuple

import httpx

from shelfkeeper.client.errors import ApiError, SessionExpiredError
from shelfkeeper.client.refresh import AuthFailureHook, RefreshCoordinator, TokenStore
from shelfkeeper.logging import get_logger

logger = get_logger(__name__)

REFRESH_PATH = "/v1/auth/refresh"


def _unwrap(response: httpx.Response) -> Any:
    """Return the envelope's ``data`` or raise ``ApiError`` for non-2xx."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if response.is_success:
        if isinstance(body, dict) and "status" in body:
            return body.get("data")
        return body
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        raise ApiError(
            response.status_code, error.get("message") or "request failed", error.get("code")
        )
    raise ApiError(response.status_code, response.reason_phrase or "request failed")


class AuthenticatedClient:
    """httpx client that attaches the bearer token and recovers from one 401."""

    def __init__(
        self,
        base_url: str,
        *,
        tokens: Optional[TokenStore] = None,
        on_auth_failure: Optional[AuthFailureHook] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.tokens = tokens or TokenStore()
        self.coordinator = RefreshCoordinator(
            self._call_refresh, self.tokens, on_auth_failure=on_auth_failure
        )

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _call_refresh(self, refresh_token: str) -> Tuple[str, str]:
        response = await self._http.post(REFRESH_PATH, json={"refresh_token": refresh_token})
        data = _unwrap(response)
        return data["access_token"], data["refresh_token"]

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        authenticated: bool = True,
        retried: bool = False,
    ) -> Any:
        headers = {}
        sent_token = self.tokens.access_token if authenticated else None
        if sent_token:
            headers["Authorization"] = f"Bearer {sent_token}"
        response = await self._http.request(method, path, json=json, params=params, headers=headers)

        if (
            response.status_code == 401
            and authenticated
            and not retried
            and self.tokens.refresh_token
        ):
            logger.debug("request_unauthorized_refreshing", path=path)
            await self.coordinator.obtain_fresh_token(stale_access_token=sent_token)
            return await self.request(
                method, path, json=json, params=params, authenticated=True, retried=True
            )
        return _unwrap(response)

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)


class AuthApi:
    """Typed-ish helpers for the /v1/auth endpoints."""

    def __init__(self, client: AuthenticatedClient) -> None:
        self.client = client

    def _store(self, data: dict) -> dict:
        self.client.tokens.set(data["access_token"], data["refresh_token"])
        return data

    async def signup(self, email: str, password: str) -> dict:
        data = await self.client.post(
            "/v1/auth/signup", json={"email": email, "password": password}, authenticated=False
        )
        return self._store(data)

    async def login(self, email: str, password: str) -> dict:
        data = await self.client.post(
            "/v1/auth/login", json={"email": email, "password": password}, authenticated=False
        )
        return self._store(data)

    async def get_profile(self) -> dict:
        return await self.client.get("/v1/auth/profile")

    async def verify_email(self, token: str) -> dict:
        return await self.client.post(
            "/v1/auth/verify-email", json={"token": token}, authenticated=False
        )

    async def forgot_password(self, email: str) -> dict:
        return await self.client.post(
            "/v1/auth/forgot-password", json={"email": email}, authenticated=False
        )

    async def reset_password(self, token: str, new_password: str) -> dict:
        return await self.client.post(
            "/v1/auth/reset-password",
            json={"token": token, "new_password": new_password},
            authenticated=False,
        )

    async def refresh(self) -> str:
        """Force a refresh through the coordinator; returns the new access token."""
        if not self.client.tokens.refresh_token:
            raise SessionExpiredError("no refresh token available")
        return await self.client.coordinator.obtain_fresh_token()

    def logout(self) -> None:
        self.client.tokens.clear()
