from __future__ import annotations

import hashlib
from typing import List, Optional

from authkernel.clock import Clock, SystemClock
from authkernel.logging import get_logger
from authkernel.storage.common import AuthStore
from authkernel.storage.models import DeviceInfo, Session


def hash_refresh_token(token: str) -> str:
    """Refresh tokens are only ever stored as their SHA-256 hex digest."""

    return hashlib.sha256(token.encode()).hexdigest()


class SessionLedger:
    """Tracks signed-in devices.

    Expired sessions are treated as absent by every lookup; the one exception
    is ``find_by_refresh_hash(include_expired=True)``, which lets the refresh
    flow tell an expired session apart from an unknown token.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Clock] = None,
        ttl_minutes: int = 7 * 24 * 60,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ttl_minutes = ttl_minutes
        self.logger = get_logger(__name__)

    def create(
        self,
        account_id: str,
        refresh_token_hash: str,
        device: Optional[DeviceInfo] = None,
        *,
        ttl_minutes: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            account_id,
            refresh_token_hash,
            ttl_minutes=ttl_minutes or self.ttl_minutes,
            now=self.clock.now(),
            device=device,
            session_id=session_id,
        )
        created = self.store.create_session(session)
        self.logger.info(
            "session_created",
            account_id=account_id,
            session_id=created.id,
            device_type=created.device_type,
        )
        return created

    def find_by_refresh_hash(
        self, refresh_token_hash: str, *, include_expired: bool = False
    ) -> Optional[Session]:
        session = self.store.get_session_by_refresh_hash(refresh_token_hash)
        if session is None:
            return None
        if not include_expired and not session.is_active(self.clock.now()):
            return None
        return session

    def get(self, session_id: str) -> Optional[Session]:
        session = self.store.get_session(session_id)
        if session is None or not session.is_active(self.clock.now()):
            return None
        return session

    def find_all_active(self, account_id: str) -> List[Session]:
        return self.store.list_sessions(account_id, self.clock.now())

    def touch(self, session_id: str) -> bool:
        return self.store.touch_session(session_id, self.clock.now())

    def rotate(self, session_id: str, old_hash: str, new_hash: str) -> bool:
        rotated = self.store.rotate_session_refresh_hash(
            session_id, old_hash, new_hash, self.clock.now()
        )
        if not rotated:
            self.logger.warning("session_rotation_conflict", session_id=session_id)
        return rotated

    def delete(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            self.logger.info("session_deleted", session_id=session_id)
        return removed

    def delete_all(self, account_id: str) -> int:
        removed = self.store.delete_account_sessions(account_id)
        self.logger.info("sessions_revoked", account_id=account_id, removed=removed)
        return removed

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self.clock.now())
        if removed:
            self.logger.info("sessions_purged", removed=removed)
        return removed
