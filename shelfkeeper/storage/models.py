from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class User:
    """A library principal.

    The password hash lives beside the record in the store, never on it, so
    saving profile or token fields can never re-hash or leak a credential.
    """

    id: str
    email: str
    role: str = Role.USER.value
    is_email_verified: bool = False
    oauth_provider: Optional[str] = None
    oauth_id: Optional[str] = None
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        role: str = Role.USER.value,
        is_email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_id: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            role=role,
            is_email_verified=is_email_verified,
            oauth_provider=oauth_provider,
            oauth_id=oauth_id,
        )

    def to_public(self) -> Dict[str, Any]:
        """Fields safe to return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "is_email_verified": self.is_email_verified,
            "oauth_provider": self.oauth_provider,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
