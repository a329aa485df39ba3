from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

# Unique constraint name -> field reported in ConstraintViolation.detail
_CONSTRAINT_FIELDS = {
    "account_email_key": "email",
    "account_phone_key": "phone",
    "external_identity_provider_uid_key": "provider_uid",
    "external_identity_account_provider_key": "provider",
    "auth_session_refresh_token_hash_key": "refresh_token_hash",
}

_ACCOUNT_COLUMNS = frozenset(
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

_REQUIRED_TABLES = ("account", "external_identity", "one_time_code", "auth_session")


def _violation(exc: errors.IntegrityError, fallback: str) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, fallback)
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed store; state transitions are single conditional statements."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when sql/schema.sql has not been applied."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # row mapping -------------------------------------------------------------

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        profile = row.get("profile")
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Account(
            id=str(row["id"]),
            profile=profile_from_dict(row["role"], profile),
            status=AccountStatus(row["status"]),
            email=row.get("email"),
            phone=row.get("phone"),
            full_name=row.get("full_name"),
            avatar_url=row.get("avatar_url"),
            password_hash=row.get("password_hash"),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _identity_from_row(row: dict) -> ExternalIdentity:
        return ExternalIdentity(
            account_id=str(row["account_id"]),
            provider=row["provider"],
            provider_uid=row["provider_uid"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OneTimeCode:
        return OneTimeCode(
            id=str(row["id"]),
            identifier=row["identifier"],
            purpose=OtpPurpose(row["purpose"]),
            code=row["code"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=row.get("attempts") or 0,
            max_attempts=row["max_attempts"],
            verified_at=row.get("verified_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        ip_raw = row.get("ip_address")
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            expires_at=row["expires_at"],
            device_type=row.get("device_type") or "unknown",
            device_name=row.get("device_name") or "unknown",
            ip_address=str(ip_raw) if ip_raw is not None else None,
            user_agent=row.get("user_agent"),
        )

    # accounts ---------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, role, profile, status, email, phone, full_name, avatar_url,
                        password_hash, failed_login_attempts, locked_until,
                        created_at, updated_at, last_login_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.role.value,
                        json.dumps(profile_to_dict(account.profile)),
                        account.status.value,
                        account.email,
                        account.phone,
                        account.full_name,
                        account.avatar_url,
                        account.password_hash,
                        account.failed_login_attempts,
                        account.locked_until,
                        account.created_at,
                        account.updated_at,
                        account.last_login_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _violation(exc, "email") from exc
        return account

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM account WHERE {where}", params).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email = %s", (email,))

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        return self._fetch_account("phone = %s", (phone,))

    def get_account_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT a.* FROM external_identity i JOIN account a ON a.id = i.account_id
                WHERE i.provider = %s AND i.provider_uid = %s
                """,
                (provider, provider_uid),
            ).fetchone()
        return self._account_from_row(row) if row else None

    @staticmethod
    def _account_filters(
        status: Optional[AccountStatus], role: Optional[Role]
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(AccountStatus(status).value)
        if role is not None:
            clauses.append("role = %s")
            params.append(Role(role).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_accounts(
        self,
        *,
        status: Optional[AccountStatus] = None,
        role: Optional[Role] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Account]:
        where, params = self._account_filters(status, role)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM account {where} ORDER BY created_at, id LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def count_accounts(
        self, *, status: Optional[AccountStatus] = None, role: Optional[Role] = None
    ) -> int:
        where, params = self._account_filters(status, role)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM account {where}", tuple(params)
            ).fetchone()
        return int(row["total"]) if row else 0

    def update_account(
        self, account_id: str, *, now: datetime, **fields
    ) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in fields)
        set_clause = f"{assignments}, updated_at = %s" if assignments else "updated_at = %s"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {set_clause} WHERE id = %s RETURNING *",
                    (*fields.values(), now, account_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _violation(exc, "email") from exc
        return self._account_from_row(row) if row else None

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
        allowed = [AccountStatus(s).value for s in from_statuses]
        sql = """
            UPDATE account
            SET status = %s,
                locked_until = %s,
                failed_login_attempts = CASE WHEN %s THEN 0 ELSE failed_login_attempts END,
                updated_at = %s
            WHERE id = %s AND status = ANY(%s)
        """
        params: list[Any] = [
            AccountStatus(to_status).value,
            locked_until,
            reset_failed_logins,
            now,
            account_id,
            allowed,
        ]
        if lock_expired_before is not None:
            sql += " AND (locked_until IS NULL OR locked_until < %s)"
            params.append(lock_expired_before)
        sql += " RETURNING *"
        with self._connect() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return self._account_from_row(row) if row else None

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = CASE WHEN failed_login_attempts + 1 >= %s
                                                 THEN 0 ELSE failed_login_attempts + 1 END,
                    status = CASE WHEN failed_login_attempts + 1 >= %s
                                  THEN 'locked' ELSE status END,
                    locked_until = CASE WHEN failed_login_attempts + 1 >= %s
                                        THEN %s ELSE locked_until END,
                    updated_at = %s
                WHERE id = %s AND status = 'active'
                RETURNING *
                """,
                (max_attempts, max_attempts, max_attempts, lock_until, now, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_successful_login(
        self, account_id: str, *, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = 0, last_login_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # external identities -------------------------------------------------------

    def link_identity(
        self, account_id: str, provider: str, provider_uid: str
    ) -> ExternalIdentity:
        try:
            with self._connect() as conn, conn.transaction():
                existing = conn.execute(
                    """
                    SELECT * FROM external_identity
                    WHERE provider = %s AND provider_uid = %s
                    FOR UPDATE
                    """,
                    (provider, provider_uid),
                ).fetchone()
                if existing:
                    if str(existing["account_id"]) != account_id:
                        raise ConstraintViolation(
                            "identity already linked", {"field": "provider_uid"}
                        )
                    return self._identity_from_row(existing)
                replaced = conn.execute(
                    "DELETE FROM external_identity WHERE account_id = %s AND provider = %s",
                    (account_id, provider),
                )
                if replaced.rowcount:
                    self.logger.info(
                        "identity_mapping_replaced",
                        account_id=account_id,
                        provider=provider,
                    )
                row = conn.execute(
                    """
                    INSERT INTO external_identity (account_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, provider, provider_uid),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"field": "account_id"}
            ) from exc
        except errors.UniqueViolation as exc:
            raise _violation(exc, "provider_uid") from exc
        return self._identity_from_row(row)

    def unlink_identity(self, account_id: str, provider: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM external_identity WHERE account_id = %s AND provider = %s",
                (account_id, provider),
            )
        return cur.rowcount > 0

    def list_identities(self, account_id: str) -> List[ExternalIdentity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM external_identity WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    # one-time codes ---------------------------------------------------------

    def create_otp(
        self,
        otp: OneTimeCode,
        *,
        window_start: Optional[datetime] = None,
        max_requests: Optional[int] = None,
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            if window_start is not None and max_requests is not None:
                # serialize issuance per identifier so count-then-insert is atomic
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))", (otp.identifier,)
                )
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS recent FROM one_time_code
                    WHERE identifier = %s AND created_at > %s
                    """,
                    (otp.identifier, window_start),
                ).fetchone()
                if row and int(row["recent"]) >= max_requests:
                    return False
            conn.execute(
                """
                INSERT INTO one_time_code (
                    id, identifier, purpose, code, created_at, expires_at,
                    attempts, max_attempts, verified_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    otp.id,
                    otp.identifier,
                    otp.purpose.value,
                    otp.code,
                    otp.created_at,
                    otp.expires_at,
                    otp.attempts,
                    otp.max_attempts,
                    otp.verified_at,
                ),
            )
        return True

    def find_valid_otp(
        self, identifier: str, purpose: OtpPurpose, now: datetime
    ) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM one_time_code
                WHERE identifier = %s AND purpose = %s
                  AND verified_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (identifier, OtpPurpose(purpose).value, now),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def get_otp(self, otp_id: str) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_code WHERE id = %s", (otp_id,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def increment_otp_attempts(self, otp_id: str) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_code SET attempts = attempts + 1
                WHERE id = %s AND verified_at IS NULL AND attempts < max_attempts
                RETURNING *
                """,
                (otp_id,),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def mark_otp_verified(self, otp_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE one_time_code SET verified_at = %s
                WHERE id = %s AND verified_at IS NULL AND expires_at > %s
                """,
                (now, otp_id, now),
            )
        return cur.rowcount > 0

    def count_recent_otps(self, identifier: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS recent FROM one_time_code
                WHERE identifier = %s AND created_at > %s
                """,
                (identifier, since),
            ).fetchone()
        return int(row["recent"]) if row else 0

    def delete_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM one_time_code WHERE expires_at <= %s", (now,))
        return cur.rowcount

    # sessions ---------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, account_id, refresh_token_hash, created_at, last_activity_at,
                        expires_at, device_type, device_name, ip_address, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.refresh_token_hash,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.device_type,
                        session.device_name,
                        session.ip_address,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"field": "account_id"}
            ) from exc
        except errors.UniqueViolation as exc:
            raise _violation(exc, "refresh_token_hash") from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, account_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s",
                (now, session_id),
            )
        return cur.rowcount > 0

    def rotate_session_refresh_hash(
        self, session_id: str, old_hash: str, new_hash: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, last_activity_at = %s
                WHERE id = %s AND refresh_token_hash = %s
                """,
                (new_hash, now, session_id, old_hash),
            )
        return cur.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        return cur.rowcount > 0

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
            )
        return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
        return cur.rowcount
