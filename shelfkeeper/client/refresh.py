"""Single-flight access-token refresh for API clients.

When several requests fail with 401 at once only the first one calls the
refresh endpoint. The others park on a future and are settled with the
refresher's outcome: the new access token, or ``SessionExpiredError``.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, List, Optional, Tuple

from shelfkeeper.client.errors import SessionExpiredError
from shelfkeeper.logging import get_logger

logger = get_logger(__name__)

RefreshFn = Callable[[str], Awaitable[Tuple[str, str]]]
AuthFailureHook = Callable[[], Optional[Awaitable[None]]]


class TokenStore:
    """In-memory holder for the current access/refresh pair."""

    def __init__(
        self, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def set(self, access_token: str, refresh_token: str) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token

    def clear(self) -> None:
        self._access_token = None
        self._refresh_token = None


class RefreshCoordinator:
    def __init__(
        self,
        refresh_fn: RefreshFn,
        tokens: TokenStore,
        *,
        on_auth_failure: Optional[AuthFailureHook] = None,
    ) -> None:
        self._refresh_fn = refresh_fn
        self.tokens = tokens
        self._on_auth_failure = on_auth_failure
        self._refreshing = False
        self._waiters: List[asyncio.Future] = []

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    async def obtain_fresh_token(self, stale_access_token: Optional[str] = None) -> str:
        """Return a usable access token, refreshing at most once per burst.

        ``stale_access_token`` is the token the failed request carried. If the
        store already holds a different one, a refresh finished in the
        meantime and it is returned without another round trip.
        """
        # No await between the check and the set below
        if self._refreshing:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter
        current = self.tokens.access_token
        if stale_access_token is not None and current and current != stale_access_token:
            return current

        self._refreshing = True
        result: Optional[str] = None
        failure: BaseException = SessionExpiredError("token refresh was interrupted")
        try:
            result = await self._refresh()
            return result
        except Exception as exc:
            failure = exc if isinstance(exc, SessionExpiredError) else SessionExpiredError()
            self.tokens.clear()
            logger.warning(
                "token_refresh_failed",
                error_type=type(exc).__name__,
                waiters=len(self._waiters),
            )
            await self._notify_auth_failure()
            if failure is exc:
                raise
            raise failure from exc
        finally:
            self._refreshing = False
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                if waiter.done():
                    continue
                if result is not None:
                    waiter.set_result(result)
                else:
                    waiter.set_exception(failure)

    async def _refresh(self) -> str:
        refresh_token = self.tokens.refresh_token
        if not refresh_token:
            raise SessionExpiredError("no refresh token available")
        access_token, new_refresh_token = await self._refresh_fn(refresh_token)
        self.tokens.set(access_token, new_refresh_token)
        logger.debug("token_refreshed", waiters=len(self._waiters))
        return access_token

    async def _notify_auth_failure(self) -> None:
        if self._on_auth_failure is None:
            return
        try:
            outcome = self._on_auth_failure()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error("auth_failure_hook_failed", error=str(exc))
