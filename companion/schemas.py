from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegCodeResponse(_Wire):
    code: str
    session_id: str = Field(alias="sessionId")
    expires_in: int = Field(alias="expiresIn")
    verification_uri: str = Field(alias="verificationUri")
    interval: int


class PendingResponse(_Wire):
    status: Literal["pending"] = "pending"
    interval: int


class TokenResponse(_Wire):
    """Token material for the device. Never cached, never logged."""
    status: Literal["authorized"] = "authorized"
    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_in: Optional[int] = Field(default=None, alias="expiresIn")
    token_type: str = Field(default="bearer", alias="tokenType")


class FailedResponse(_Wire):
    status: Literal["failed"] = "failed"
    error: str
    message: str
