from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authkernel.logging import get_correlation_id
from authkernel.service.auth import AuthContext, LoginResult, OtpIssued
from authkernel.service.errors import ErrorKind
from authkernel.service.tokens import AccessGrant, TokenPair
from authkernel.storage.models import Account, Session, profile_to_dict

_ERROR_CODES = frozenset(kind.value for kind in ErrorKind) | {"server_error"}


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the ``ErrorKind`` values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class AccountResponse(BaseModel):
    id: str
    role: str
    status: str
    email: Optional[str] = None
    phone: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    profile: dict = Field(default_factory=dict)
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            role=account.role.value,
            status=account.status.value,
            email=account.email,
            phone=account.phone,
            full_name=account.full_name,
            avatar_url=account.avatar_url,
            profile=profile_to_dict(account.profile),
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int
    session_id: Optional[str] = None

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            session_id=pair.session_id,
        )

    @classmethod
    def from_grant(cls, grant: AccessGrant) -> "TokenResponse":
        return cls(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_type=grant.token_type,
            expires_in=grant.expires_in,
        )


class LoginResponse(BaseModel):
    account: AccountResponse
    tokens: TokenResponse
    is_new_account: bool = False
    linked_provider: Optional[str] = None

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        return cls(
            account=AccountResponse.from_account(result.account),
            tokens=TokenResponse.from_pair(result.tokens),
            is_new_account=result.is_new_account,
            linked_provider=result.linked_provider,
        )


class OtpIssuedResponse(BaseModel):
    message: str = "If the account exists, a code has been sent"
    expires_in: int
    code: Optional[str] = None

    @classmethod
    def from_issued(cls, issued: OtpIssued) -> "OtpIssuedResponse":
        return cls(expires_in=issued.expires_in, code=issued.code)


class SessionResponse(BaseModel):
    id: str
    device_type: str
    device_name: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(
        cls, session: Session, ctx: Optional[AuthContext] = None
    ) -> "SessionResponse":
        return cls(
            id=session.id,
            device_type=session.device_type,
            device_name=session.device_name,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            current=ctx is not None and ctx.session_id == session.id,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


def ok(data: Any = None) -> dict:
    """Wrap a payload (pydantic model or plain data) in a success envelope."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return Envelope(status="ok", data=data).model_dump(mode="json")
