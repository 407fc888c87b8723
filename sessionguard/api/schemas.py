from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class ErrorBody(BaseModel):
    """Error envelope body with a stable code and bilingual message."""

    code: str
    message: str
    message_bn: Optional[str] = None
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320, description="email or phone")
    password: str = Field(..., min_length=1, max_length=1024)
    remember_me: bool = False
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("identifier")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("identifier must not be blank")
        return value


class RememberRefreshRequest(BaseModel):
    remember_token: str = Field(..., min_length=16, max_length=512)


class LogoutRequest(BaseModel):
    everywhere: bool = False
    remember_token: Optional[str] = Field(default=None, max_length=512)


class AuthResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    token_type: str = "Bearer"
    token_expires_at: datetime
    remember_token: Optional[str] = None


class PrincipalResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    flagged: bool = False


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    remember_me: bool
    revoked: bool
    revoked_reason: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class RevocationResponse(BaseModel):
    revoked: int


class RememberRevokeRequest(BaseModel):
    remember_token: Optional[str] = Field(default=None, max_length=512)


class SessionStatsResponse(BaseModel):
    user_id: str
    sessions: dict
    login: Optional[dict] = None


class CleanupResponse(BaseModel):
    sessions_purged: int
    fallback_counters_purged: int
