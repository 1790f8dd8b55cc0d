from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True


@dataclass(frozen=True)
class SessionInfo:
    """Public view of a refresh-token session; never carries the token hash."""

    user_id: str
    device_info: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_info": self.device_info,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class RefreshTokenRecord:
    token_hash: str
    user_id: str
    device_info: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_id: str,
        ttl_seconds: int,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        created = now or _utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            device_info=device_info,
            ip_address=ip_address,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def to_json(self) -> str:
        return json.dumps(
            {
                "token_hash": self.token_hash,
                "user_id": self.user_id,
                "device_info": self.device_info,
                "ip_address": self.ip_address,
                "created_at": self.created_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "RefreshTokenRecord":
        """Parse a stored record; raises ValueError on corrupt payloads."""
        try:
            data = json.loads(raw)
            return cls(
                token_hash=str(data["token_hash"]),
                user_id=str(data["user_id"]),
                device_info=data.get("device_info"),
                ip_address=data.get("ip_address"),
                created_at=parse_iso(data["created_at"]),
                expires_at=parse_iso(data["expires_at"]),
            )
        except (TypeError, KeyError, json.JSONDecodeError) as exc:
            raise ValueError(f"corrupt refresh token record: {exc}") from exc

    def session_info(self) -> SessionInfo:
        return SessionInfo(
            user_id=self.user_id,
            device_info=self.device_info,
            ip_address=self.ip_address,
            created_at=self.created_at,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    failed_attempts: int
    attempts_remaining: int
    lock_until: Optional[datetime] = None

    @classmethod
    def unlocked(cls, threshold: int) -> "LockoutStatus":
        return cls(locked=False, failed_attempts=0, attempts_remaining=threshold)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locked": self.locked,
            "failed_attempts": self.failed_attempts,
            "attempts_remaining": self.attempts_remaining,
            "lock_until": self.lock_until.isoformat() if self.lock_until else None,
        }
