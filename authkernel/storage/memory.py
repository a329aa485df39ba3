from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    Account,
    AccountStatus,
    ExternalIdentity,
    OneTimeCode,
    OtpPurpose,
    Role,
    Session,
    profile_from_dict,
    profile_to_dict,
)

_ACCOUNT_FIELDS = frozenset(
    {
        "email",
        "phone",
        "full_name",
        "avatar_url",
        "password_hash",
        "failed_login_attempts",
        "locked_until",
        "last_login_at",
    }
)


class MemoryStore:
    """In-process store used by tests and single-node deployments.

    All reads return copies so callers cannot mutate stored rows. When
    ``fs_root`` is given, every mutation snapshots the state to
    ``<fs_root>/state/auth_store.json`` and the snapshot is reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.identities: List[ExternalIdentity] = []
        self.otps: Dict[str, OneTimeCode] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    accounts=len(self.accounts),
                    sessions=len(self.sessions),
                )

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("memory store has no fs_root configured")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # accounts ---------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            for existing in self.accounts.values():
                if account.email and existing.email == account.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if account.phone and existing.phone == account.phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            self.accounts[account.id] = replace(account)
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email:
                    return replace(account)
            return None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.phone == phone:
                    return replace(account)
            return None

    def get_account_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Account]:
        with self._data_lock:
            for mapping in self.identities:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return self.get_account(mapping.account_id)
            return None

    def _filter_accounts(
        self, status: Optional[AccountStatus], role: Optional[Role]
    ) -> List[Account]:
        rows = [
            a
            for a in self.accounts.values()
            if (status is None or a.status == status) and (role is None or a.role == role)
        ]
        rows.sort(key=lambda a: (a.created_at, a.id))
        return rows

    def list_accounts(
        self,
        *,
        status: Optional[AccountStatus] = None,
        role: Optional[Role] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Account]:
        with self._data_lock:
            rows = self._filter_accounts(status, role)
            return [replace(a) for a in rows[offset : offset + limit]]

    def count_accounts(
        self, *, status: Optional[AccountStatus] = None, role: Optional[Role] = None
    ) -> int:
        with self._data_lock:
            return len(self._filter_accounts(status, role))

    def update_account(
        self, account_id: str, *, now: datetime, **fields
    ) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            for key in ("email", "phone"):
                value = fields.get(key)
                if value and any(
                    getattr(other, key) == value
                    for other in self.accounts.values()
                    if other.id != account_id
                ):
                    raise ConstraintViolation(f"{key} already exists", {"field": key})
            updated = replace(account, updated_at=now, **fields)
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

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
    ) -> Optional[Account]:
        allowed = set(from_statuses)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.status not in allowed:
                return None
            if lock_expired_before is not None and (
                account.locked_until is not None
                and account.locked_until >= lock_expired_before
            ):
                return None
            updated = replace(
                account,
                status=to_status,
                locked_until=locked_until,
                updated_at=now,
            )
            if reset_failed_logins:
                updated.failed_login_attempts = 0
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.status != AccountStatus.ACTIVE:
                return None
            attempts = account.failed_login_attempts + 1
            updated = replace(account, failed_login_attempts=attempts, updated_at=now)
            if attempts >= max_attempts:
                updated.status = AccountStatus.LOCKED
                updated.locked_until = lock_until
                updated.failed_login_attempts = 0
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def record_successful_login(
        self, account_id: str, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            updated = replace(
                account, failed_login_attempts=0, last_login_at=now, updated_at=now
            )
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    # external identities -------------------------------------------------------

    def link_identity(
        self, account_id: str, provider: str, provider_uid: str
    ) -> ExternalIdentity:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"field": "account_id"}
                )
            for existing in self.identities:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    if existing.account_id != account_id:
                        raise ConstraintViolation(
                            "identity already linked", {"field": "provider_uid"}
                        )
                    return replace(existing)
            replaced = [
                m
                for m in self.identities
                if m.account_id == account_id and m.provider == provider
            ]
            if replaced:
                self.logger.info(
                    "identity_mapping_replaced",
                    account_id=account_id,
                    provider=provider,
                )
                self.identities = [m for m in self.identities if m not in replaced]
            mapping = ExternalIdentity(
                account_id=account_id, provider=provider, provider_uid=provider_uid
            )
            self.identities.append(mapping)
            self._persist_state()
            return replace(mapping)

    def unlink_identity(self, account_id: str, provider: str) -> bool:
        with self._data_lock:
            remaining = [
                m
                for m in self.identities
                if not (m.account_id == account_id and m.provider == provider)
            ]
            removed = len(remaining) != len(self.identities)
            if removed:
                self.identities = remaining
                self._persist_state()
            return removed

    def list_identities(self, account_id: str) -> List[ExternalIdentity]:
        with self._data_lock:
            return [replace(m) for m in self.identities if m.account_id == account_id]

    # one-time codes ---------------------------------------------------------

    def create_otp(
        self,
        otp: OneTimeCode,
        *,
        window_start: Optional[datetime] = None,
        max_requests: Optional[int] = None,
    ) -> bool:
        with self._data_lock:
            if window_start is not None and max_requests is not None:
                if self.count_recent_otps(otp.identifier, window_start) >= max_requests:
                    return False
            self.otps[otp.id] = replace(otp)
            self._persist_state()
            return True

    def find_valid_otp(
        self, identifier: str, purpose: OtpPurpose, now: datetime
    ) -> Optional[OneTimeCode]:
        with self._data_lock:
            candidates = [
                o
                for o in self.otps.values()
                if o.identifier == identifier and o.purpose == purpose and o.is_valid(now)
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda o: o.created_at)
            return replace(newest)

    def get_otp(self, otp_id: str) -> Optional[OneTimeCode]:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            return replace(otp) if otp else None

    def increment_otp_attempts(self, otp_id: str) -> Optional[OneTimeCode]:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if otp is None or otp.verified_at is not None or otp.is_locked:
                return None
            otp.attempts += 1
            self._persist_state()
            return replace(otp)

    def mark_otp_verified(self, otp_id: str, now: datetime) -> bool:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if otp is None or otp.verified_at is not None or now >= otp.expires_at:
                return False
            otp.verified_at = now
            self._persist_state()
            return True

    def count_recent_otps(self, identifier: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for o in self.otps.values()
                if o.identifier == identifier and o.created_at > since
            )

    def delete_expired_otps(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, o in self.otps.items() if o.expires_at <= now]
            for key in expired:
                del self.otps[key]
            if expired:
                self._persist_state()
            return len(expired)

    # sessions ---------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"field": "account_id"}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.refresh_token_hash == refresh_token_hash:
                    return replace(session)
            return None

    def list_sessions(self, account_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if s.account_id == account_id and s.is_active(now)
            ]
            rows.sort(key=lambda s: s.last_activity_at, reverse=True)
            return [replace(s) for s in rows]

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None:
                return False
            session.last_activity_at = now
            self._persist_state()
            return True

    def rotate_session_refresh_hash(
        self, session_id: str, old_hash: str, new_hash: str, now: datetime
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.refresh_token_hash != old_hash:
                return False
            session.refresh_token_hash = new_hash
            session.last_activity_at = now
            self._persist_state()
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            doomed = [k for k, s in self.sessions.items() if s.account_id == account_id]
            for key in doomed:
                del self.sessions[key]
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, s in self.sessions.items() if not s.is_active(now)]
            for key in expired:
                del self.sessions[key]
            if expired:
                self._persist_state()
            return len(expired)

    # persistence ------------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "identities": [self._serialize_identity(m) for m in self.identities],
            "otps": [self._serialize_otp(o) for o in self.otps.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.identities = [
            self._deserialize_identity(m) for m in data.get("identities", [])
        ]
        self.otps = {o["id"]: self._deserialize_otp(o) for o in data.get("otps", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "role": account.role.value,
            "profile": profile_to_dict(account.profile),
            "status": account.status.value,
            "email": account.email,
            "phone": account.phone,
            "full_name": account.full_name,
            "avatar_url": account.avatar_url,
            "password_hash": account.password_hash,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            profile=profile_from_dict(data["role"], data.get("profile")),
            status=AccountStatus(data["status"]),
            email=data.get("email"),
            phone=data.get("phone"),
            full_name=data.get("full_name"),
            avatar_url=data.get("avatar_url"),
            password_hash=data.get("password_hash"),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_identity(self, mapping: ExternalIdentity) -> dict:
        return {
            "account_id": mapping.account_id,
            "provider": mapping.provider,
            "provider_uid": mapping.provider_uid,
            "created_at": self._serialize_datetime(mapping.created_at),
        }

    def _deserialize_identity(self, data: dict) -> ExternalIdentity:
        return ExternalIdentity(
            account_id=data["account_id"],
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_otp(self, otp: OneTimeCode) -> dict:
        return {
            "id": otp.id,
            "identifier": otp.identifier,
            "purpose": otp.purpose.value,
            "code": otp.code,
            "created_at": self._serialize_datetime(otp.created_at),
            "expires_at": self._serialize_datetime(otp.expires_at),
            "attempts": otp.attempts,
            "max_attempts": otp.max_attempts,
            "verified_at": self._serialize_datetime(otp.verified_at),
        }

    def _deserialize_otp(self, data: dict) -> OneTimeCode:
        return OneTimeCode(
            id=data["id"],
            identifier=data["identifier"],
            purpose=OtpPurpose(data["purpose"]),
            code=data["code"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 5),
            verified_at=self._deserialize_datetime(data.get("verified_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_type": session.device_type,
            "device_name": session.device_name,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_type=data.get("device_type") or "unknown",
            device_name=data.get("device_name") or "unknown",
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )
