from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Dict, Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    PARTNER = "partner"
    SHIPPER = "shipper"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


# Roles whose accounts wait for an administrator before they can sign in
APPROVAL_ROLES = frozenset({Role.PARTNER, Role.SHIPPER})

VEHICLE_TYPES = frozenset({"motorcycle", "car", "bicycle", "truck"})

IDENTITY_PROVIDERS = frozenset({"google", "facebook"})


@dataclass(frozen=True)
class CustomerProfile:
    role: ClassVar[Role] = Role.CUSTOMER


@dataclass(frozen=True)
class PartnerProfile:
    business_name: str
    tax_id: str
    role: ClassVar[Role] = Role.PARTNER


@dataclass(frozen=True)
class ShipperProfile:
    id_card_number: str
    vehicle_type: str
    vehicle_plate: str
    role: ClassVar[Role] = Role.SHIPPER


@dataclass(frozen=True)
class AdminProfile:
    role: ClassVar[Role] = Role.ADMIN


AccountProfile = Union[CustomerProfile, PartnerProfile, ShipperProfile, AdminProfile]

_PROFILE_TYPES: Dict[Role, type] = {
    Role.CUSTOMER: CustomerProfile,
    Role.PARTNER: PartnerProfile,
    Role.SHIPPER: ShipperProfile,
    Role.ADMIN: AdminProfile,
}


def profile_to_dict(profile: AccountProfile) -> dict:
    return asdict(profile)


def profile_from_dict(role: str | Role, data: Optional[dict]) -> AccountProfile:
    """Rebuild the role-specific payload stored next to an account row."""
    profile_type = _PROFILE_TYPES[Role(role)]
    return profile_type(**(data or {}))


@dataclass
class Account:
    id: str
    profile: AccountProfile
    status: AccountStatus
    email: Optional[str] = None
    phone: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    password_hash: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def role(self) -> Role:
        return self.profile.role

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @classmethod
    def new(
        cls,
        profile: AccountProfile,
        status: AccountStatus,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        password_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Account":
        stamp = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            profile=profile,
            status=status,
            email=email,
            phone=phone,
            full_name=full_name,
            avatar_url=avatar_url,
            password_hash=password_hash,
            created_at=stamp,
            updated_at=stamp,
        )


@dataclass
class ExternalIdentity:
    account_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OneTimeCode:
    id: str
    identifier: str
    purpose: OtpPurpose
    code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 5
    verified_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        identifier: str,
        purpose: OtpPurpose,
        code: str,
        *,
        ttl_minutes: int,
        max_attempts: int,
        now: datetime,
    ) -> "OneTimeCode":
        return cls(
            id=str(uuid.uuid4()),
            identifier=identifier,
            purpose=purpose,
            code=code,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            max_attempts=max_attempts,
        )

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    @property
    def is_locked(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_valid(self, now: datetime) -> bool:
        return self.verified_at is None and now < self.expires_at


@dataclass
class DeviceInfo:
    device_type: str = "unknown"
    device_name: str = "unknown"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Session:
    id: str
    account_id: str
    refresh_token_hash: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    device_type: str = "unknown"
    device_name: str = "unknown"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        refresh_token_hash: str,
        *,
        ttl_minutes: int,
        now: datetime,
        device: Optional[DeviceInfo] = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        device = device or DeviceInfo()
        return cls(
            id=session_id or str(uuid.uuid4()),
            account_id=account_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device_type=device.device_type or "unknown",
            device_name=device.device_name or "unknown",
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at
