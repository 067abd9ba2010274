"""Bearer-token admission for protected routes.

A request moves through the gate one state at a time and stops at the first
failed check: missing or unverifiable tokens end in 401, a resolved principal
that fails the role or verification predicate ends in 403.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from shelfkeeper.logging import get_logger
from shelfkeeper.service.auth import AuthContext, UserStore
from shelfkeeper.service.errors import AuthenticationError, ForbiddenError, ServerError
from shelfkeeper.service.tokens import ExpiredTokenError, TokenClass, TokenCodec, TokenError
from shelfkeeper.storage.errors import StorageError
from shelfkeeper.storage.models import Role

logger = get_logger(__name__)

AUTH_REQUIRED_MESSAGE = "authentication required"


class GateState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TOKEN_PRESENT = "token_present"
    TOKEN_VALID = "token_valid"
    PRINCIPAL_RESOLVED = "principal_resolved"
    ROLE_CHECKED = "role_checked"
    ADMITTED = "admitted"
    REJECTED = "rejected"


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class SessionGate:
    def __init__(self, codec: TokenCodec, store: UserStore) -> None:
        self.codec = codec
        self.store = store

    def _reject(self, state: GateState, error: Exception, **context) -> Exception:
        logger.info("gate_rejected", at=state.value, reason=type(error).__name__, **context)
        return error

    async def admit(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
        require_verified: bool = False,
    ) -> AuthContext:
        state = GateState.UNAUTHENTICATED
        token = extract_bearer(authorization)
        if not token:
            raise self._reject(state, AuthenticationError(AUTH_REQUIRED_MESSAGE))

        state = GateState.TOKEN_PRESENT
        try:
            verified = self.codec.verify(token, TokenClass.ACCESS)
        except ExpiredTokenError:
            logger.info("gate_token_expired")
            raise self._reject(state, AuthenticationError(AUTH_REQUIRED_MESSAGE))
        except TokenError as exc:
            raise self._reject(
                state, AuthenticationError(AUTH_REQUIRED_MESSAGE), detail=str(exc)
            )

        state = GateState.TOKEN_VALID
        try:
            user = await asyncio.to_thread(self.store.find_by_id, verified.subject_id)
        except StorageError as exc:
            err = ServerError()
            logger.error("gate_store_failure", reference=err.reference, error=exc.message)
            raise err from exc
        if not user:
            raise self._reject(
                state, AuthenticationError(AUTH_REQUIRED_MESSAGE), user_id=verified.subject_id
            )

        state = GateState.PRINCIPAL_RESOLVED
        if required_role == Role.ADMIN.value and user.role != Role.ADMIN.value:
            raise self._reject(state, ForbiddenError("admin access required"), user_id=user.id)

        state = GateState.ROLE_CHECKED
        if require_verified and not user.is_email_verified:
            raise self._reject(
                state, ForbiddenError("email verification required"), user_id=user.id
            )

        state = GateState.ADMITTED
        logger.debug("gate_admitted", at=state.value, user_id=user.id)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            is_email_verified=user.is_email_verified,
            user=user,
        )
