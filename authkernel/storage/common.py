"""Storage contract and helpers shared between memory and postgres implementations.

The kernel only talks to persistence through ``AuthStore``. Every mutating
method that guards a state transition is a compare-and-set: it applies the
change only when the row still matches the expected state and returns
``None``/``False`` otherwise, so callers never need read-then-write steps.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from authkernel.storage.models import (
    Account,
    AccountStatus,
    ExternalIdentity,
    OneTimeCode,
    OtpPurpose,
    Role,
    Session,
)

_PHONE_STRIP = re.compile(r"[^\d+]")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9]{9,15}$")


def is_email_identifier(identifier: str) -> bool:
    return "@" in identifier


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    """Normalize a phone number to ``+84...`` style E.164.

    Local numbers with a leading zero and bare ``84`` prefixes are rewritten
    with the country code.
    """
    normalized = _PHONE_STRIP.sub("", phone)
    if normalized.startswith("0"):
        normalized = "+84" + normalized[1:]
    elif normalized.startswith("84"):
        normalized = "+" + normalized
    return normalized


def normalize_identifier(identifier: str) -> str:
    """Normalize an email or phone so OTP rows and account lookups agree."""
    identifier = identifier.strip()
    if is_email_identifier(identifier):
        return normalize_email(identifier)
    return normalize_phone(identifier)


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email)) and len(email) <= 255


def is_valid_phone(phone: str) -> bool:
    return bool(_PHONE_RE.match(phone))


class AuthStore(Protocol):
    # accounts
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_phone(self, phone: str) -> Optional[Account]: ...

    def get_account_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        status: Optional[AccountStatus] = None,
        role: Optional[Role] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Account]: ...

    def count_accounts(
        self, *, status: Optional[AccountStatus] = None, role: Optional[Role] = None
    ) -> int: ...

    def update_account(
        self, account_id: str, *, now: datetime, **fields
    ) -> Optional[Account]: ...

    def transition_account_status(
        self,
        account_id: str,
        from_statuses: Iterable[AccountStatus],
        to_status: AccountStatus,
        *,
        now: datetime,
        locked_until: Optional[datetime] = None,
        lock_expired_before: Optional[datetime] = None,
        reset_failed_logins: bool = False,
    ) -> Optional[Account]: ...

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[Account]: ...

    def record_successful_login(
        self, account_id: str, *, now: datetime
    ) -> Optional[Account]: ...

    # external identities
    def link_identity(
        self, account_id: str, provider: str, provider_uid: str
    ) -> ExternalIdentity: ...

    def unlink_identity(self, account_id: str, provider: str) -> bool: ...

    def list_identities(self, account_id: str) -> List[ExternalIdentity]: ...

    # one-time codes
    def create_otp(
        self,
        otp: OneTimeCode,
        *,
        window_start: Optional[datetime] = None,
        max_requests: Optional[int] = None,
    ) -> bool: ...

    def find_valid_otp(
        self, identifier: str, purpose: OtpPurpose, now: datetime
    ) -> Optional[OneTimeCode]: ...

    def get_otp(self, otp_id: str) -> Optional[OneTimeCode]: ...

    def increment_otp_attempts(self, otp_id: str) -> Optional[OneTimeCode]: ...

    def mark_otp_verified(self, otp_id: str, now: datetime) -> bool: ...

    def count_recent_otps(self, identifier: str, since: datetime) -> int: ...

    def delete_expired_otps(self, now: datetime) -> int: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(
        self, refresh_token_hash: str
    ) -> Optional[Session]: ...

    def list_sessions(self, account_id: str, now: datetime) -> List[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> bool: ...

    def rotate_session_refresh_hash(
        self, session_id: str, old_hash: str, new_hash: str, now: datetime
    ) -> bool: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_account_sessions(self, account_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


__all__ = [
    "AuthStore",
    "is_email_identifier",
    "is_valid_email",
    "is_valid_phone",
    "normalize_email",
    "normalize_identifier",
    "normalize_phone",
]
