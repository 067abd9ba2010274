from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from shelfkeeper.logging import get_logger
from shelfkeeper.storage.errors import ConstraintViolation, StorageError
from shelfkeeper.storage.models import User, normalize_email, utcnow


class MemoryStore:
    """In-process user store for tests and local development.

    Records handed out are copies; writes go through field-scoped setters.
    When ``state_dir`` is given, every write is mirrored to a JSON snapshot
    that is reloaded on start.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self._state_dir = Path(state_dir) if state_dir else None
        if self._state_dir is not None:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # lookups
    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_by_email(self, email: str) -> Optional[User]:
        target = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == target), None)
            return replace(user) if user else None

    def find_by_oauth_id(self, provider: str, oauth_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.oauth_provider == provider and u.oauth_id == oauth_id
                ),
                None,
            )
            return replace(user) if user else None

    def find_by_verification_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )
            return replace(user) if user else None

    def find_by_reset_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_password_token == token),
                None,
            )
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    # writes
    def create(self, user: User, password_hash: Optional[str] = None) -> User:
        user.email = normalize_email(user.email)
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.oauth_id and any(
                existing.oauth_provider == user.oauth_provider
                and existing.oauth_id == user.oauth_id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("oauth identity already linked", {"field": "oauth_id"})
            self.users[user.id] = replace(user)
            if password_hash:
                self.credentials[user.id] = password_hash
            self._persist_state()
            return replace(user)

    def _update(self, user_id: str, **fields) -> User:
        """Set only ``fields`` on the stored record; the caller holds the lock."""
        user = self.users.get(user_id)
        if not user:
            raise StorageError("user not found", {"user_id": user_id})
        for name, value in fields.items():
            setattr(user, name, value)
        user.updated_at = utcnow()
        self._persist_state()
        return replace(user)

    def set_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        """Store a fresh verification token; None if the user is already verified."""
        with self._data_lock:
            current = self.users.get(user_id)
            if current is not None and current.is_email_verified:
                return None
            return self._update(
                user_id, email_verification_token=token, email_verification_expires=expires_at
            )

    def set_reset_token(self, user_id: str, token: str, expires_at: datetime) -> User:
        with self._data_lock:
            return self._update(
                user_id, reset_password_token=token, reset_password_expires=expires_at
            )

    def link_oauth(self, user_id: str, provider: str, oauth_id: str) -> User:
        """Attach an external identity and mark the address verified."""
        with self._data_lock:
            if any(
                u.id != user_id and u.oauth_provider == provider and u.oauth_id == oauth_id
                for u in self.users.values()
            ):
                raise ConstraintViolation("oauth identity already linked", {"field": "oauth_id"})
            return self._update(
                user_id, oauth_provider=provider, oauth_id=oauth_id, is_email_verified=True
            )

    def set_role(self, user_id: str, role: str) -> User:
        with self._data_lock:
            return self._update(user_id, role=role)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise StorageError("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = password_hash
            user.updated_at = utcnow()
            self._persist_state()

    def consume_verification_token(self, token: str, now: datetime) -> Optional[User]:
        """Mark the token's owner verified and clear the token in one step."""
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )
            if not user or not user.email_verification_expires:
                return None
            if user.email_verification_expires <= now:
                return None
            user.email_verification_token = None
            user.email_verification_expires = None
            user.is_email_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def consume_reset_token(
        self, token: str, now: datetime, password_hash: str
    ) -> Optional[User]:
        """Swap in the new password hash and clear the reset token in one step."""
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_password_token == token),
                None,
            )
            if not user or not user.reset_password_expires:
                return None
            if user.reset_password_expires <= now:
                return None
            user.reset_password_token = None
            user.reset_password_expires = None
            user.updated_at = utcnow()
            self.credentials[user.id] = password_hash
            self._persist_state()
            return replace(user)

    # snapshot
    def _state_path(self) -> Optional[Path]:
        if self._state_dir is None:
            return None
        return self._state_dir / "users.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": digest}
                for user_id, digest in self.credentials.items()
            ],
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StorageError("failed to persist user snapshot") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", path=str(path), error=str(exc))
            raise StorageError("failed to load user snapshot") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "is_email_verified": user.is_email_verified,
            "oauth_provider": user.oauth_provider,
            "oauth_id": user.oauth_id,
            "email_verification_token": user.email_verification_token,
            "email_verification_expires": self._serialize_datetime(
                user.email_verification_expires
            ),
            "reset_password_token": user.reset_password_token,
            "reset_password_expires": self._serialize_datetime(user.reset_password_expires),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "user"),
            is_email_verified=bool(data.get("is_email_verified", False)),
            oauth_provider=data.get("oauth_provider"),
            oauth_id=data.get("oauth_id"),
            email_verification_token=data.get("email_verification_token"),
            email_verification_expires=self._deserialize_datetime(
                data.get("email_verification_expires")
            ),
            reset_password_token=data.get("reset_password_token"),
            reset_password_expires=self._deserialize_datetime(
                data.get("reset_password_expires")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
