from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionvault.logging import get_logger, mask_email
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserDirectory(Protocol):
    """Lookup surface the auth flows need from the user document store."""

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def verify_credentials(self, email: str, password: str) -> Optional[User]: ...


class MemoryUserDirectory:
    """In-process user directory with argon2id password hashes (dev and tests)."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}

    def create_user(
        self,
        email: str,
        password: str,
        *,
        role: str = "user",
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=normalized,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            self.credentials[user.id] = (self._pwd_hasher.hash(password), "argon2id")
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def verify_credentials(self, email: str, password: str) -> Optional[User]:
        user = self.get_user_by_email(email)
        if not user or not user.is_active:
            self.logger.info("credential_check_unknown_user", account=mask_email(email))
            return None
        with self._lock:
            record = self.credentials.get(user.id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user.id)
            return None
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", user_id=user.id)
            return None
        return user


__all__ = ["UserDirectory", "MemoryUserDirectory", "normalize_email"]
