from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from typing import List, Optional

from authkernel.clock import Clock, SystemClock
from authkernel.logging import get_logger, hash_identifier
from authkernel.service.accounts import AccountService
from authkernel.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    AccountNotFoundError,
    AccountPendingError,
    AlreadyLinkedError,
    DuplicateIdentifierError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidStateError,
    SessionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from authkernel.service.notify import Notifier, dispatch
from authkernel.service.otp import OtpLedger
from authkernel.service.passwords import CredentialHasher, ensure_password_complexity
from authkernel.service.sessions import SessionLedger, hash_refresh_token
from authkernel.service.tokens import AccessGrant, TokenCodec, TokenPair
from authkernel.storage.common import (
    AuthStore,
    is_email_identifier,
    normalize_email,
    normalize_identifier,
)
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    IDENTITY_PROVIDERS,
    Account,
    AccountStatus,
    DeviceInfo,
    ExternalIdentity,
    OtpPurpose,
    Role,
    Session,
)

_INVALID_CREDENTIALS = "Invalid credentials"


@dataclass(frozen=True)
class LoginResult:
    account: Account
    tokens: TokenPair
    is_new_account: bool = False
    linked_provider: Optional[str] = None


@dataclass(frozen=True)
class OtpIssued:
    expires_in: int
    # echoed only when TEST_MODE is on
    code: Optional[str] = None


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    role: Role
    session_id: str


def require_role(ctx: AuthContext, *roles: Role) -> AuthContext:
    if ctx.role not in {Role(r) for r in roles}:
        raise ForbiddenError(
            "Insufficient role",
            detail={"required": sorted(Role(r).value for r in roles)},
        )
    return ctx


class AuthService:
    """Login, token and session orchestration on top of the account engine.

    Each public method is one synchronous unit of work: it validates input,
    drives the account engine and ledgers, and either returns a result
    dataclass or raises a ``ServiceError`` subclass.
    """

    def __init__(
        self,
        store: AuthStore,
        accounts: AccountService,
        otp: OtpLedger,
        sessions: SessionLedger,
        tokens: TokenCodec,
        hasher: CredentialHasher,
        notifier: Optional[Notifier] = None,
        *,
        clock: Optional[Clock] = None,
        test_mode: bool = False,
        rotate_refresh_tokens: bool = False,
        password_reset_email_ttl_minutes: int = 60,
        password_reset_phone_ttl_minutes: int = 5,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.otp = otp
        self.sessions = sessions
        self.tokens = tokens
        self.hasher = hasher
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.test_mode = test_mode
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.password_reset_email_ttl_minutes = password_reset_email_ttl_minutes
        self.password_reset_phone_ttl_minutes = password_reset_phone_ttl_minutes
        self.logger = get_logger(__name__)

    # helpers ----------------------------------------------------------------

    def _ensure_can_login(self, account: Account) -> Account:
        account = self.accounts.unlock_if_expired(account.id)
        if account.status == AccountStatus.LOCKED:
            retry_after = 0
            if account.locked_until is not None:
                remaining = (account.locked_until - self.clock.now()).total_seconds()
                retry_after = max(math.ceil(remaining), 1)
            raise AccountLockedError(
                "Account is temporarily locked", retry_after_seconds=retry_after
            )
        if account.status == AccountStatus.PENDING:
            raise AccountPendingError("Account is awaiting activation")
        if account.status == AccountStatus.INACTIVE:
            raise AccountInactiveError("Account is inactive")
        return account

    def _start_session(self, account: Account, device: Optional[DeviceInfo]) -> TokenPair:
        session_id = str(uuid.uuid4())
        pair = self.tokens.mint_pair(account.id, account.role, session_id)
        self.sessions.create(
            account.id,
            hash_refresh_token(pair.refresh_token),
            device,
            session_id=session_id,
        )
        return pair

    def _complete_login(
        self,
        account: Account,
        device: Optional[DeviceInfo],
        *,
        method: str,
        is_new_account: bool = False,
        linked_provider: Optional[str] = None,
    ) -> LoginResult:
        account = self.accounts.record_successful_login(account.id)
        tokens = self._start_session(account, device)
        self.logger.info(
            "login_succeeded",
            account_id=account.id,
            method=method,
            session_id=tokens.session_id,
            is_new_account=is_new_account,
        )
        return LoginResult(
            account=account,
            tokens=tokens,
            is_new_account=is_new_account,
            linked_provider=linked_provider,
        )

    def _send_code(self, identifier: str, code: str, purpose: OtpPurpose) -> None:
        if self.notifier is not None:
            dispatch("send_code", self.notifier.send_code, identifier, code, purpose)

    def _link(self, account_id: str, provider: str, provider_id: str) -> ExternalIdentity:
        try:
            return self.store.link_identity(account_id, provider, provider_id)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "account_id":
                raise AccountNotFoundError("Account not found") from exc
            raise AlreadyLinkedError(
                "This identity is linked to another account",
                detail={"provider": provider},
            ) from exc

    # password / otp login ---------------------------------------------------

    def login_with_password(
        self, identifier: str, password: str, device: Optional[DeviceInfo] = None
    ) -> LoginResult:
        account = self.accounts.find_by_identifier(identifier) if identifier else None
        if account is None:
            self.logger.info(
                "login_failed",
                reason="unknown_identifier",
                identifier_hash=hash_identifier(identifier),
            )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        account = self._ensure_can_login(account)

        if not self.hasher.verify(password, account.password_hash):
            outcome = self.accounts.record_failed_login(account.id)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                account_id=account.id,
                remaining_attempts=outcome.remaining_attempts,
            )
            if outcome.locked:
                retry_after = self.accounts.lockout_minutes * 60
                if outcome.locked_until is not None:
                    retry_after = max(
                        math.ceil(
                            (outcome.locked_until - self.clock.now()).total_seconds()
                        ),
                        1,
                    )
                raise AccountLockedError(
                    "Too many failed attempts, account is temporarily locked",
                    retry_after_seconds=retry_after,
                )
            raise InvalidCredentialsError(
                _INVALID_CREDENTIALS,
                detail={"remaining_attempts": outcome.remaining_attempts},
            )

        if self.hasher.needs_rehash(account.password_hash):
            self.store.update_account(
                account.id,
                now=self.clock.now(),
                password_hash=self.hasher.hash(password),
            )
            self.logger.info("password_rehashed", account_id=account.id)
        return self._complete_login(account, device, method="password")

    def request_otp(
        self, identifier: str, purpose: OtpPurpose = OtpPurpose.LOGIN
    ) -> OtpIssued:
        purpose = OtpPurpose(purpose)
        if purpose == OtpPurpose.PASSWORD_RESET:
            raise ValidationError("Use the password reset flow to request this code")
        account = self.accounts.find_by_identifier(identifier)
        if account is None:
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if purpose == OtpPurpose.REGISTRATION and account.status != AccountStatus.PENDING:
            raise InvalidStateError("Account is already verified")
        otp = self.otp.issue(identifier, purpose)
        self._send_code(otp.identifier, otp.code, purpose)
        expires_in = int((otp.expires_at - otp.created_at).total_seconds())
        return OtpIssued(expires_in=expires_in, code=otp.code if self.test_mode else None)

    def login_with_otp(
        self, identifier: str, code: str, device: Optional[DeviceInfo] = None
    ) -> LoginResult:
        self.otp.verify(identifier, OtpPurpose.LOGIN, code)
        account = self.accounts.find_by_identifier(identifier)
        if account is None:
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        account = self._ensure_can_login(account)
        return self._complete_login(account, device, method="otp")

    # identity providers -----------------------------------------------------

    def login_with_identity_provider(
        self,
        provider: str,
        provider_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> LoginResult:
        """Sign in with an already verified Google/Facebook identity.

        Lookup order is the (provider, provider_id) mapping, then the email
        address (linking the identity to that account), then a brand new
        active customer. Repeating the call with the same identity always
        resolves to the same account.
        """
        if provider not in IDENTITY_PROVIDERS:
            raise ValidationError(
                "Unsupported identity provider",
                detail={"allowed": sorted(IDENTITY_PROVIDERS)},
            )
        if not provider_id:
            raise ValidationError("Provider account id is required")

        account = self.store.get_account_by_provider(provider, provider_id)
        if account is not None:
            account = self._ensure_can_login(account)
            return self._complete_login(account, device, method=provider)

        normalized_email = normalize_email(email) if email else None
        if normalized_email:
            account = self.store.get_account_by_email(normalized_email)
        if account is not None:
            self._link(account.id, provider, provider_id)
            if avatar_url and not account.avatar_url:
                account = (
                    self.store.update_account(
                        account.id, now=self.clock.now(), avatar_url=avatar_url
                    )
                    or account
                )
            account = self._ensure_can_login(account)
            return self._complete_login(
                account, device, method=provider, linked_provider=provider
            )

        try:
            account = self.accounts.register_identity_provider_customer(
                email=normalized_email, full_name=display_name, avatar_url=avatar_url
            )
        except DuplicateIdentifierError:
            # a concurrent first sign-in with the same identity won the race
            account = self.store.get_account_by_provider(provider, provider_id)
            if account is None:
                raise
            account = self._ensure_can_login(account)
            return self._complete_login(account, device, method=provider)
        self._link(account.id, provider, provider_id)
        return self._complete_login(
            account,
            device,
            method=provider,
            is_new_account=True,
            linked_provider=provider,
        )

    def link_identity_provider(
        self, account_id: str, provider: str, provider_id: str
    ) -> ExternalIdentity:
        if provider not in IDENTITY_PROVIDERS:
            raise ValidationError("Unsupported identity provider")
        if not provider_id:
            raise ValidationError("Provider account id is required")
        self.accounts.get_account(account_id)
        mapping = self._link(account_id, provider, provider_id)
        self.logger.info("identity_linked", account_id=account_id, provider=provider)
        return mapping

    def unlink_identity_provider(self, account_id: str, provider: str) -> None:
        account = self.accounts.get_account(account_id)
        identities = self.store.list_identities(account_id)
        if not any(m.provider == provider for m in identities):
            raise ValidationError("Identity provider is not linked")
        others = [m for m in identities if m.provider != provider]
        if not account.has_password and not others:
            raise ValidationError("Cannot remove the last sign-in method")
        self.store.unlink_identity(account_id, provider)
        self.logger.info("identity_unlinked", account_id=account_id, provider=provider)

    # tokens & sessions ------------------------------------------------------

    def refresh(self, refresh_token: str) -> AccessGrant:
        claims = self.tokens.verify_refresh(refresh_token)
        token_hash = hash_refresh_token(refresh_token)
        session = self.sessions.find_by_refresh_hash(token_hash, include_expired=True)
        if session is None:
            raise TokenInvalidError("Session not found")
        if not session.is_active(self.clock.now()):
            self.sessions.delete(session.id)
            raise TokenExpiredError("Session has expired")
        if session.id != claims.session_id or session.account_id != claims.account_id:
            raise TokenInvalidError("Token does not match session")

        account = self.store.get_account(session.account_id)
        if account is None or account.status != AccountStatus.ACTIVE:
            raise AccountInactiveError("Account is not active")

        access_token = self.tokens.mint_access(account.id, account.role, session.id)
        new_refresh: Optional[str] = None
        if self.rotate_refresh_tokens:
            # a later exp keeps a same-second rotation from reissuing the old token
            new_refresh = self.tokens.mint_refresh(
                account.id, account.role, session.id, min_exp=claims.exp + 1
            )
            if not self.sessions.rotate(
                session.id, token_hash, hash_refresh_token(new_refresh)
            ):
                raise TokenInvalidError("Refresh token has already been used")
        else:
            self.sessions.touch(session.id)
        self.logger.info(
            "token_refreshed",
            account_id=account.id,
            session_id=session.id,
            rotated=new_refresh is not None,
        )
        return AccessGrant(
            access_token=access_token,
            expires_in=self.tokens.access_ttl_seconds,
            refresh_token=new_refresh,
        )

    def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify_access(access_token)
        session = self.sessions.get(claims.session_id)
        if session is None or session.account_id != claims.account_id:
            raise TokenInvalidError("Session has ended")
        return AuthContext(
            account_id=claims.account_id, role=claims.role, session_id=claims.session_id
        )

    def logout(self, account_id: str, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if session is None or session.account_id != account_id:
            return False
        removed = self.sessions.delete(session_id)
        self.logger.info("logout", account_id=account_id, session_id=session_id)
        return removed

    def logout_all(self, account_id: str) -> int:
        return self.sessions.delete_all(account_id)

    def list_sessions(self, account_id: str) -> List[Session]:
        return self.sessions.find_all_active(account_id)

    def terminate_session(self, account_id: str, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError("Session not found")
        if session.account_id != account_id:
            raise ForbiddenError("Session belongs to another account")
        self.sessions.delete(session_id)

    # passwords --------------------------------------------------------------

    def request_password_reset(self, identifier: str) -> OtpIssued:
        """Start a reset; the answer looks the same whether or not the account exists."""
        normalized = normalize_identifier(identifier)
        if is_email_identifier(normalized):
            ttl_minutes = self.password_reset_email_ttl_minutes
        else:
            ttl_minutes = self.password_reset_phone_ttl_minutes
        account = self.accounts.find_by_identifier(normalized)
        if account is None:
            self.logger.info(
                "password_reset_unknown_identifier",
                identifier_hash=hash_identifier(normalized),
            )
            return OtpIssued(expires_in=ttl_minutes * 60)
        otp = self.otp.issue(normalized, OtpPurpose.PASSWORD_RESET, ttl_minutes=ttl_minutes)
        self._send_code(otp.identifier, otp.code, OtpPurpose.PASSWORD_RESET)
        self.logger.info("password_reset_requested", account_id=account.id)
        return OtpIssued(
            expires_in=ttl_minutes * 60, code=otp.code if self.test_mode else None
        )

    def reset_password(self, identifier: str, code: str, new_password: str) -> None:
        ensure_password_complexity(new_password)
        self.otp.verify(identifier, OtpPurpose.PASSWORD_RESET, code)
        account = self.accounts.find_by_identifier(identifier)
        if account is None:
            raise AccountNotFoundError("Account not found")
        self.accounts.set_password(account.id, new_password)
        revoked = self.sessions.delete_all(account.id)
        self.logger.info("password_reset", account_id=account.id, sessions_revoked=revoked)

    def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self.accounts.get_account(account_id)
        if not self.hasher.verify(current_password, account.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")
        self.accounts.set_password(account_id, new_password)
        revoked = self.sessions.delete_all(account_id)
        self.logger.info("password_changed", account_id=account_id, sessions_revoked=revoked)

    def get_current_account(self, account_id: str) -> Account:
        return self.accounts.get_account(account_id)
