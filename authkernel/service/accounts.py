from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from authkernel.clock import Clock, SystemClock
from authkernel.logging import get_logger, hash_identifier
from authkernel.service.errors import (
    AccountNotFoundError,
    DuplicateIdentifierError,
    ForbiddenError,
    InvalidStateError,
    RateLimitedError,
    ValidationError,
)
from authkernel.service.notify import AccountEvent, Notifier, dispatch
from authkernel.service.otp import OtpLedger
from authkernel.service.passwords import CredentialHasher, ensure_password_complexity
from authkernel.service.sessions import SessionLedger
from authkernel.storage.common import (
    AuthStore,
    is_email_identifier,
    is_valid_email,
    is_valid_phone,
    normalize_email,
    normalize_identifier,
    normalize_phone,
)
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    APPROVAL_ROLES,
    VEHICLE_TYPES,
    Account,
    AccountProfile,
    AccountStatus,
    AdminProfile,
    CustomerProfile,
    OtpPurpose,
    PartnerProfile,
    Role,
    ShipperProfile,
)


@dataclass(frozen=True)
class FailedLoginOutcome:
    account: Account
    locked: bool
    remaining_attempts: int
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class PendingPage:
    items: List[Account]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _require_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required", detail={"field": field})
    return cleaned


class AccountService:
    """Registration and the account status machine.

    ``pending -> active -> (locked <-> active) -> inactive`` plus
    ``pending -> inactive`` on rejection. Every transition is a
    compare-and-set in the store, so when two administrators act on the same
    account only one of them wins and the other sees ``InvalidStateError``.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        otp: OtpLedger,
        sessions: SessionLedger,
        notifier: Optional[Notifier] = None,
        *,
        clock: Optional[Clock] = None,
        max_login_attempts: int = 5,
        lockout_minutes: int = 30,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.otp = otp
        self.sessions = sessions
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.max_login_attempts = max_login_attempts
        self.lockout_minutes = lockout_minutes
        self.logger = get_logger(__name__)

    # lookups ----------------------------------------------------------------

    def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("Account not found")
        return account

    def find_by_identifier(self, identifier: str) -> Optional[Account]:
        normalized = normalize_identifier(identifier)
        if is_email_identifier(normalized):
            return self.store.get_account_by_email(normalized)
        return self.store.get_account_by_phone(normalized)

    def list_pending(
        self, role: Optional[Role] = None, page: int = 1, limit: int = 20
    ) -> PendingPage:
        if role is not None and Role(role) not in APPROVAL_ROLES:
            raise ValidationError("Only partner and shipper accounts await approval")
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        kwargs = {"status": AccountStatus.PENDING, "role": Role(role) if role else None}
        items = self.store.list_accounts(offset=(page - 1) * limit, limit=limit, **kwargs)
        total = self.store.count_accounts(**kwargs)
        return PendingPage(items=items, total=total, page=page, limit=limit)

    # registration -----------------------------------------------------------

    def _contact(
        self, email: Optional[str], phone: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        normalized_email = normalize_email(email) if email else None
        normalized_phone = normalize_phone(phone) if phone else None
        if normalized_email is not None and not is_valid_email(normalized_email):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        if normalized_phone is not None and not is_valid_phone(normalized_phone):
            raise ValidationError("Invalid phone number", detail={"field": "phone"})
        return normalized_email, normalized_phone

    def _ensure_unbound(self, email: Optional[str], phone: Optional[str]) -> None:
        if email and self.store.get_account_by_email(email):
            raise DuplicateIdentifierError(
                "Email is already registered", detail={"field": "email"}
            )
        if phone and self.store.get_account_by_phone(phone):
            raise DuplicateIdentifierError(
                "Phone number is already registered", detail={"field": "phone"}
            )

    def _create(
        self,
        profile: AccountProfile,
        status: AccountStatus,
        *,
        email: Optional[str],
        phone: Optional[str],
        full_name: Optional[str],
        password: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Account:
        self._ensure_unbound(email, phone)
        if password is not None:
            ensure_password_complexity(password)
        account = Account.new(
            profile,
            status,
            email=email,
            phone=phone,
            full_name=full_name,
            avatar_url=avatar_url,
            password_hash=self.hasher.hash(password) if password is not None else None,
            now=self.clock.now(),
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration for the same contact
            field = exc.detail.get("field", "email")
            raise DuplicateIdentifierError(
                f"{field.capitalize()} is already registered", detail={"field": field}
            ) from exc
        self.logger.info(
            "account_registered",
            account_id=created.id,
            role=created.role.value,
            status=created.status.value,
        )
        return created

    def _send_registration_code(self, account: Account) -> None:
        identifier = account.phone or account.email
        if not identifier:
            return
        try:
            otp = self.otp.issue(identifier, OtpPurpose.REGISTRATION)
        except RateLimitedError:
            self.logger.warning(
                "registration_code_deferred",
                account_id=account.id,
                identifier_hash=hash_identifier(identifier),
            )
            return
        if self.notifier is not None:
            dispatch(
                "send_code",
                self.notifier.send_code,
                otp.identifier,
                otp.code,
                OtpPurpose.REGISTRATION,
            )

    def _notify_status(
        self, account: Account, event: AccountEvent, reason: Optional[str] = None
    ) -> None:
        if self.notifier is not None:
            dispatch(
                "send_account_status",
                self.notifier.send_account_status,
                account,
                event,
                reason,
            )

    def register_customer(
        self,
        *,
        password: str,
        full_name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        """Create a pending customer and send a registration code.

        The code goes to the phone when one is given, otherwise to the email.
        """
        if not email and not phone:
            raise ValidationError("Email or phone number is required")
        email, phone = self._contact(email, phone)
        account = self._create(
            CustomerProfile(),
            AccountStatus.PENDING,
            email=email,
            phone=phone,
            full_name=_require_text(full_name, "full_name"),
            password=password,
        )
        self._send_registration_code(account)
        return account

    def register_partner(
        self,
        *,
        email: str,
        phone: str,
        password: str,
        full_name: str,
        business_name: str,
        tax_id: str,
    ) -> Account:
        email, phone = self._contact(
            _require_text(email, "email"), _require_text(phone, "phone")
        )
        profile = PartnerProfile(
            business_name=_require_text(business_name, "business_name"),
            tax_id=_require_text(tax_id, "tax_id"),
        )
        account = self._create(
            profile,
            AccountStatus.PENDING,
            email=email,
            phone=phone,
            full_name=_require_text(full_name, "full_name"),
            password=password,
        )
        self._notify_status(account, AccountEvent.REGISTERED)
        return account

    def register_shipper(
        self,
        *,
        phone: str,
        password: str,
        full_name: str,
        id_card_number: str,
        vehicle_type: str,
        vehicle_plate: str,
        email: Optional[str] = None,
    ) -> Account:
        if vehicle_type not in VEHICLE_TYPES:
            raise ValidationError(
                "Unsupported vehicle type",
                detail={"field": "vehicle_type", "allowed": sorted(VEHICLE_TYPES)},
            )
        email, phone = self._contact(email, _require_text(phone, "phone"))
        profile = ShipperProfile(
            id_card_number=_require_text(id_card_number, "id_card_number"),
            vehicle_type=vehicle_type,
            vehicle_plate=_require_text(vehicle_plate, "vehicle_plate"),
        )
        account = self._create(
            profile,
            AccountStatus.PENDING,
            email=email,
            phone=phone,
            full_name=_require_text(full_name, "full_name"),
            password=password,
        )
        self._notify_status(account, AccountEvent.REGISTERED)
        return account

    def register_identity_provider_customer(
        self,
        *,
        email: Optional[str],
        full_name: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> Account:
        """Customer signing up through Google/Facebook: active, no password."""
        email, _ = self._contact(email, None)
        return self._create(
            CustomerProfile(),
            AccountStatus.ACTIVE,
            email=email,
            phone=None,
            full_name=(full_name or "").strip() or None,
            avatar_url=avatar_url,
        )

    def create_admin(self, *, email: str, password: str, full_name: str) -> Account:
        email, _ = self._contact(_require_text(email, "email"), None)
        return self._create(
            AdminProfile(),
            AccountStatus.ACTIVE,
            email=email,
            phone=None,
            full_name=_require_text(full_name, "full_name"),
            password=password,
        )

    def verify_registration_otp(self, identifier: str, code: str) -> Account:
        self.otp.verify(identifier, OtpPurpose.REGISTRATION, code)
        account = self.find_by_identifier(identifier)
        if account is None:
            raise AccountNotFoundError("Account not found")
        if account.status != AccountStatus.PENDING or account.role != Role.CUSTOMER:
            # partners and shippers still wait for an administrator
            return account
        activated = self.store.transition_account_status(
            account.id,
            [AccountStatus.PENDING],
            AccountStatus.ACTIVE,
            now=self.clock.now(),
        )
        if activated is None:
            return self.get_account(account.id)
        self.logger.info("account_activated", account_id=account.id)
        return activated

    # administrator actions --------------------------------------------------

    def approve(self, account_id: str, admin_id: str) -> Account:
        account = self.get_account(account_id)
        if account.status != AccountStatus.PENDING:
            raise InvalidStateError(
                "Account is not awaiting approval",
                detail={"status": account.status.value},
            )
        if account.role not in APPROVAL_ROLES:
            raise ForbiddenError("Only partner and shipper accounts can be approved")
        approved = self.store.transition_account_status(
            account_id,
            [AccountStatus.PENDING],
            AccountStatus.ACTIVE,
            now=self.clock.now(),
        )
        if approved is None:
            raise InvalidStateError("Account is not awaiting approval")
        self.logger.info(
            "account_approved",
            account_id=account_id,
            admin_id=admin_id,
            role=approved.role.value,
        )
        self._notify_status(approved, AccountEvent.APPROVED)
        return approved

    def reject(self, account_id: str, admin_id: str, reason: str) -> Account:
        reason = _require_text(reason, "reason")
        account = self.get_account(account_id)
        if account.status != AccountStatus.PENDING:
            raise InvalidStateError(
                "Account is not awaiting approval",
                detail={"status": account.status.value},
            )
        rejected = self.store.transition_account_status(
            account_id,
            [AccountStatus.PENDING],
            AccountStatus.INACTIVE,
            now=self.clock.now(),
        )
        if rejected is None:
            raise InvalidStateError("Account is not awaiting approval")
        self.logger.info("account_rejected", account_id=account_id, admin_id=admin_id)
        self._notify_status(rejected, AccountEvent.REJECTED, reason)
        return rejected

    def deactivate(
        self, account_id: str, admin_id: str, reason: Optional[str] = None
    ) -> Account:
        account = self.get_account(account_id)
        if account.role == Role.ADMIN:
            raise ForbiddenError("Administrator accounts cannot be deactivated")
        deactivated = self.store.transition_account_status(
            account_id,
            [AccountStatus.ACTIVE, AccountStatus.LOCKED],
            AccountStatus.INACTIVE,
            now=self.clock.now(),
        )
        if deactivated is None:
            raise InvalidStateError(
                "Only active or locked accounts can be deactivated",
                detail={"status": account.status.value},
            )
        revoked = self.sessions.delete_all(account_id)
        self.logger.info(
            "account_deactivated",
            account_id=account_id,
            admin_id=admin_id,
            sessions_revoked=revoked,
        )
        self._notify_status(deactivated, AccountEvent.DEACTIVATED, reason)
        return deactivated

    def reactivate(self, account_id: str, admin_id: str) -> Account:
        account = self.get_account(account_id)
        reactivated = self.store.transition_account_status(
            account_id,
            [AccountStatus.INACTIVE],
            AccountStatus.ACTIVE,
            now=self.clock.now(),
            reset_failed_logins=True,
        )
        if reactivated is None:
            raise InvalidStateError(
                "Only inactive accounts can be reactivated",
                detail={"status": account.status.value},
            )
        self.logger.info("account_reactivated", account_id=account_id, admin_id=admin_id)
        self._notify_status(reactivated, AccountEvent.REACTIVATED)
        return reactivated

    # login bookkeeping ------------------------------------------------------

    def record_failed_login(self, account_id: str) -> FailedLoginOutcome:
        now = self.clock.now()
        updated = self.store.record_failed_login(
            account_id,
            max_attempts=self.max_login_attempts,
            lock_until=now + timedelta(minutes=self.lockout_minutes),
            now=now,
        )
        if updated is None:
            # not active any more, e.g. a concurrent attempt already locked it
            current = self.get_account(account_id)
            return FailedLoginOutcome(
                account=current,
                locked=current.status == AccountStatus.LOCKED,
                remaining_attempts=0,
                locked_until=current.locked_until,
            )
        locked = updated.status == AccountStatus.LOCKED
        if locked:
            self.logger.warning(
                "account_locked",
                account_id=account_id,
                locked_until=updated.locked_until.isoformat(),
            )
        return FailedLoginOutcome(
            account=updated,
            locked=locked,
            remaining_attempts=(
                0 if locked else self.max_login_attempts - updated.failed_login_attempts
            ),
            locked_until=updated.locked_until if locked else None,
        )

    def record_successful_login(self, account_id: str) -> Account:
        account = self.store.record_successful_login(account_id, now=self.clock.now())
        if account is None:
            raise AccountNotFoundError("Account not found")
        return account

    def unlock_if_expired(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account.status != AccountStatus.LOCKED:
            return account
        now = self.clock.now()
        if account.locked_until is not None and now <= account.locked_until:
            return account
        unlocked = self.store.transition_account_status(
            account_id,
            [AccountStatus.LOCKED],
            AccountStatus.ACTIVE,
            now=now,
            lock_expired_before=now,
            reset_failed_logins=True,
        )
        if unlocked is None:
            return self.get_account(account_id)
        self.logger.info("account_unlocked", account_id=account_id)
        return unlocked

    # credentials ------------------------------------------------------------

    def set_password(self, account_id: str, new_password: str) -> Account:
        ensure_password_complexity(new_password)
        updated = self.store.update_account(
            account_id,
            now=self.clock.now(),
            password_hash=self.hasher.hash(new_password),
        )
        if updated is None:
            raise AccountNotFoundError("Account not found")
        return updated
