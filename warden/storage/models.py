from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshSession:
    """A stored refresh token; the opaque token value is the store key."""

    session_id: str
    subject_id: str
    token: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, subject_id: str, ttl_seconds: int, *, now: datetime) -> "RefreshSession":
        return cls(
            session_id=str(uuid.uuid4()),
            subject_id=subject_id,
            token=secrets.token_urlsafe(48),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def remaining_seconds(self, now: datetime) -> int:
        return int((self.expires_at - now).total_seconds())

    def to_record(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_record(cls, token: str, record: Dict[str, Any]) -> Optional["RefreshSession"]:
        subject_id = record.get("subject_id")
        created_at = _parse_ts(record.get("created_at"))
        expires_at = _parse_ts(record.get("expires_at"))
        if not subject_id or not created_at or not expires_at:
            return None
        return cls(
            session_id=str(record.get("session_id") or ""),
            subject_id=str(subject_id),
            token=token,
            created_at=created_at,
            expires_at=expires_at,
        )


@dataclass
class RevocationEntry:
    revoked_at: datetime
    reason: str = "revoked"

    def to_record(self) -> Dict[str, Any]:
        return {"revoked_at": self.revoked_at.isoformat(), "reason": self.reason}


@dataclass
class LoginMetrics:
    failed_attempts: int = 0
    successful_logins: int = 0
    last_attempt: Optional[datetime] = None
    last_login: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "failed_attempts": self.failed_attempts,
            "successful_logins": self.successful_logins,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }

    @classmethod
    def from_record(cls, record: Optional[Dict[str, Any]]) -> "LoginMetrics":
        if not record:
            return cls()
        return cls(
            failed_attempts=int(record.get("failed_attempts") or 0),
            successful_logins=int(record.get("successful_logins") or 0),
            last_attempt=_parse_ts(record.get("last_attempt")),
            last_login=_parse_ts(record.get("last_login")),
        )


@dataclass
class QuotaDecision:
    allowed: bool
    remaining: int
    reset_seconds: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
