# portfolio_auth/schemas.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=128)
    name: str = Field("", max_length=100)


class UserResponse(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: str
    is_active: bool
    email_verified: bool

    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    remember_me: bool = False


class LoginResponse(BaseModel):
    user: UserResponse
    expires_at: datetime


class CSRFTokenResponse(BaseModel):
    csrf_token: str


class MessageResponse(BaseModel):
    ok: bool = True
    message: str


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(..., max_length=256)


class ResetTokenCheckResponse(BaseModel):
    valid: bool


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., max_length=256)


class SessionsRevokedResponse(BaseModel):
    ok: bool = True
    revoked: int


class SessionResponse(BaseModel):
    id: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_remember_me: bool
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False

    model_config = ConfigDict(from_attributes=True)


class DeactivateAccountRequest(BaseModel):
    password: str
    reason: Optional[str] = Field(None, max_length=500)


class ReactivateAccountRequest(BaseModel):
    email: EmailStr
    password: str


class DeleteAccountRequest(BaseModel):
    password: str
    confirmation_text: str


class AccountStatusResponse(BaseModel):
    id: int
    email: str
    name: str
    is_active: bool
    email_verified: bool
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    active_sessions: int

    model_config = ConfigDict(from_attributes=True)


# -------- admin --------
class SessionStatsResponse(BaseModel):
    total_active_sessions: int
    total_users: int
    remember_me_sessions: int
    sessions_expiring_in_24h: int
    suspicious_activity_count: int
    average_session_duration: float

    model_config = ConfigDict(from_attributes=True)


class SuspiciousUserResponse(BaseModel):
    user_id: int
    email: Optional[str] = None
    session_count: int
    distinct_ips: int
    distinct_user_agents: int
    reasons: list[str]

    model_config = ConfigDict(from_attributes=True)


class HealthReportResponse(BaseModel):
    healthy: bool
    alerts: list[str]
    stats: SessionStatsResponse

    model_config = ConfigDict(from_attributes=True)


class MaintenanceReportResponse(BaseModel):
    expired_sessions_cleaned: int
    suspicious_sessions_found: int
    errors: list[str]

    model_config = ConfigDict(from_attributes=True)
