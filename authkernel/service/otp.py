from __future__ import annotations

import hmac
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from authkernel.clock import Clock, SystemClock
from authkernel.logging import get_logger, hash_identifier
from authkernel.service.codes import generate_code
from authkernel.service.errors import (
    OtpExpiredError,
    OtpInvalidError,
    OtpLockedError,
    RateLimitedError,
)
from authkernel.storage.common import AuthStore, normalize_identifier
from authkernel.storage.models import OneTimeCode, OtpPurpose


class OtpLedger:
    """Issues and verifies one-time codes.

    Issuance is rate limited per identifier across all purposes. Verification
    always targets the newest unconsumed, unexpired code for the
    (identifier, purpose) pair; each wrong guess consumes one attempt and a
    code with no attempts left refuses even the correct value.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Clock] = None,
        ttl_minutes: int = 5,
        max_attempts: int = 5,
        max_requests_per_window: int = 3,
        request_window_minutes: int = 5,
        code_generator: Callable[[], str] = generate_code,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self.max_requests_per_window = max_requests_per_window
        self.request_window_minutes = request_window_minutes
        self._generate = code_generator
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(
        cls, store: AuthStore, settings, clock: Optional[Clock] = None
    ) -> "OtpLedger":
        return cls(
            store,
            clock=clock,
            ttl_minutes=settings.otp_ttl_minutes,
            max_attempts=settings.otp_max_attempts,
            max_requests_per_window=settings.otp_max_requests_per_window,
            request_window_minutes=settings.otp_request_window_minutes,
        )

    def issue(
        self,
        identifier: str,
        purpose: OtpPurpose,
        *,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> OneTimeCode:
        identifier = normalize_identifier(identifier)
        now = self.clock.now()
        otp = OneTimeCode.new(
            identifier,
            OtpPurpose(purpose),
            self._generate(),
            ttl_minutes=ttl_minutes or self.ttl_minutes,
            max_attempts=max_attempts or self.max_attempts,
            now=now,
        )
        window = timedelta(minutes=self.request_window_minutes)
        created = self.store.create_otp(
            otp,
            window_start=now - window,
            max_requests=self.max_requests_per_window,
        )
        if not created:
            self.logger.warning(
                "otp_rate_limited",
                identifier_hash=hash_identifier(identifier),
                purpose=otp.purpose.value,
            )
            raise RateLimitedError(
                "Too many code requests, try again later",
                retry_after_seconds=int(window.total_seconds()),
            )
        self.logger.info(
            "otp_issued",
            identifier_hash=hash_identifier(identifier),
            purpose=otp.purpose.value,
            otp_id=otp.id,
        )
        return otp

    def verify(self, identifier: str, purpose: OtpPurpose, code: str) -> OneTimeCode:
        identifier = normalize_identifier(identifier)
        purpose = OtpPurpose(purpose)
        now = self.clock.now()
        otp = self.store.find_valid_otp(identifier, purpose, now)
        if otp is None:
            raise OtpExpiredError("Code is invalid or has expired")
        if otp.is_locked:
            raise self._locked(otp, now)

        if not hmac.compare_digest(otp.code.encode(), str(code).encode()):
            updated = self.store.increment_otp_attempts(otp.id)
            if updated is None:
                current = self.store.get_otp(otp.id)
                if current is None or not current.is_valid(now):
                    raise OtpExpiredError("Code is invalid or has expired")
                raise self._locked(current, now)
            self.logger.info(
                "otp_mismatch",
                identifier_hash=hash_identifier(identifier),
                purpose=purpose.value,
                remaining_attempts=updated.remaining_attempts,
            )
            raise OtpInvalidError(
                "Incorrect code", remaining_attempts=updated.remaining_attempts
            )

        if not self.store.mark_otp_verified(otp.id, now):
            raise OtpExpiredError("Code is invalid or has expired")
        otp.verified_at = now
        self.logger.info(
            "otp_verified",
            identifier_hash=hash_identifier(identifier),
            purpose=purpose.value,
        )
        return otp

    @staticmethod
    def _locked(otp: OneTimeCode, now: datetime) -> OtpLockedError:
        # a fresh code is the only way in until this one expires
        remaining = (otp.expires_at - now).total_seconds()
        return OtpLockedError(
            "Too many failed attempts, request a new code",
            retry_after_seconds=max(math.ceil(remaining), 1),
        )

    def count_recent(self, identifier: str, window_minutes: Optional[int] = None) -> int:
        minutes = window_minutes or self.request_window_minutes
        since = self.clock.now() - timedelta(minutes=minutes)
        return self.store.count_recent_otps(normalize_identifier(identifier), since)

    def is_rate_limited(self, identifier: str) -> bool:
        return self.count_recent(identifier) >= self.max_requests_per_window

    def is_locked(self, identifier: str, purpose: OtpPurpose) -> bool:
        otp = self.store.find_valid_otp(
            normalize_identifier(identifier), OtpPurpose(purpose), self.clock.now()
        )
        return bool(otp and otp.is_locked)

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_otps(self.clock.now())
        if removed:
            self.logger.info("otp_purged", removed=removed)
        return removed
