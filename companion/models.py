from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.PENDING


@dataclass(frozen=True)
class CallerIdentity:
    """What the transport boundary tells us about the caller."""
    authenticated: bool
    subject: Optional[str] = None


@dataclass
class RegistrationCode:
    code: str
    product_id: str
    device_serial: str
    session_id: str
    created_at: float
    expires_at: float
    consumed: bool = False

    def expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    token_type: str = "bearer"


@dataclass
class Session:
    session_id: str
    state_nonce: str
    product_id: str
    device_serial: str
    created_at: float
    expires_at: float
    owner: Optional[str] = None
    code_verifier: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    nonce_used: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[float] = None
    token_type: Optional[str] = None
    failure_reason: Optional[str] = None

    def expired(self, now: float) -> bool:
        return self.expires_at <= now

    def authorize(self, grant: TokenGrant, now: float) -> None:
        self.status = SessionStatus.AUTHORIZED
        self.access_token = grant.access_token
        self.refresh_token = grant.refresh_token
        self.token_type = grant.token_type
        self.token_expires_at = (now + grant.expires_in) if grant.expires_in is not None else None
        self.failure_reason = None

    def fail(self, reason: str) -> None:
        self.status = SessionStatus.FAILED
        self.failure_reason = reason
        self.access_token = None
        self.refresh_token = None
        self.token_expires_at = None
        self.token_type = None

    def expire(self) -> None:
        self.status = SessionStatus.EXPIRED
        self.access_token = None
        self.refresh_token = None
        self.token_expires_at = None
        self.token_type = None


@dataclass(frozen=True)
class IssuedCode:
    code: str
    session_id: str
    expires_in: int
    verification_uri: str
    interval: int


class PollStatus(str, Enum):
    AUTHORIZATION_PENDING = "pending"
    AUTHORIZED = "authorized"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    interval: Optional[int] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    failure_reason: Optional[str] = None
