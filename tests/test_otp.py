"""Tests for one-time code issuance, verification and rate limiting."""

import threading
from itertools import count

import pytest

from authkernel.service.errors import (
    OtpExpiredError,
    OtpInvalidError,
    OtpLockedError,
    RateLimitedError,
)
from authkernel.service.otp import OtpLedger
from authkernel.storage.models import OtpPurpose


@pytest.fixture
def ledger(memory_store, clock):
    sequence = count(111111)
    return OtpLedger(
        memory_store,
        clock=clock,
        code_generator=lambda: str(next(sequence)),
    )


class TestIssue:
    def test_issue_persists_code(self, ledger, memory_store, clock):
        otp = ledger.issue("User@Example.com", OtpPurpose.LOGIN)
        assert otp.identifier == "user@example.com"
        assert otp.code == "111111"
        assert otp.max_attempts == 5
        assert (otp.expires_at - clock.now()).total_seconds() == 300
        assert memory_store.get_otp(otp.id).code == "111111"

    def test_phone_identifiers_are_normalized(self, ledger):
        otp = ledger.issue("0901 234 567", OtpPurpose.REGISTRATION)
        assert otp.identifier == "+84901234567"

    def test_fourth_request_in_window_is_rate_limited(self, ledger, memory_store):
        for _ in range(3):
            ledger.issue("user@example.com", OtpPurpose.LOGIN)
        with pytest.raises(RateLimitedError) as excinfo:
            ledger.issue("user@example.com", OtpPurpose.PASSWORD_RESET)
        assert excinfo.value.detail["retry_after_seconds"] == 300
        assert len(memory_store.otps) == 3
        assert ledger.is_rate_limited("user@example.com")

    def test_window_slides(self, ledger, clock):
        for _ in range(3):
            ledger.issue("user@example.com", OtpPurpose.LOGIN)
        clock.advance(minutes=5, seconds=1)
        assert ledger.count_recent("user@example.com") == 0
        ledger.issue("user@example.com", OtpPurpose.LOGIN)

    def test_rate_limit_is_per_identifier(self, ledger):
        for _ in range(3):
            ledger.issue("a@example.com", OtpPurpose.LOGIN)
        ledger.issue("b@example.com", OtpPurpose.LOGIN)

    def test_concurrent_issue_respects_ceiling(self, memory_store, clock):
        ledger = OtpLedger(memory_store, clock=clock)
        barrier = threading.Barrier(8)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                ledger.issue("race@example.com", OtpPurpose.LOGIN)
                outcomes.append("ok")
            except RateLimitedError:
                outcomes.append("limited")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 3
        assert outcomes.count("limited") == 5


class TestVerify:
    def test_correct_code_is_consumed(self, ledger):
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        verified = ledger.verify("user@example.com", OtpPurpose.LOGIN, "111111")
        assert verified.verified_at is not None
        with pytest.raises(OtpExpiredError):
            ledger.verify("user@example.com", OtpPurpose.LOGIN, "111111")

    def test_purpose_must_match(self, ledger):
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        with pytest.raises(OtpExpiredError):
            ledger.verify("user@example.com", OtpPurpose.PASSWORD_RESET, "111111")

    def test_newest_code_wins(self, ledger, clock):
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        clock.advance(seconds=30)
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        with pytest.raises(OtpInvalidError):
            ledger.verify("user@example.com", OtpPurpose.LOGIN, "111111")
        ledger.verify("user@example.com", OtpPurpose.LOGIN, "111112")

    def test_expired_code(self, ledger, clock):
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        clock.advance(minutes=5)
        with pytest.raises(OtpExpiredError):
            ledger.verify("user@example.com", OtpPurpose.LOGIN, "111111")

    def test_wrong_code_reports_remaining_attempts(self, ledger):
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        remaining = []
        for _ in range(5):
            with pytest.raises(OtpInvalidError) as excinfo:
                ledger.verify("user@example.com", OtpPurpose.LOGIN, "000000")
            remaining.append(excinfo.value.detail["remaining_attempts"])
        assert remaining == [4, 3, 2, 1, 0]

    def test_sixth_attempt_is_locked_even_when_correct(self, ledger, memory_store, clock):
        otp = ledger.issue("user@example.com", OtpPurpose.LOGIN)
        for _ in range(5):
            with pytest.raises(OtpInvalidError):
                ledger.verify("user@example.com", OtpPurpose.LOGIN, "000000")
        assert ledger.is_locked("user@example.com", OtpPurpose.LOGIN)
        clock.advance(minutes=1)
        with pytest.raises(OtpLockedError) as excinfo:
            ledger.verify("user@example.com", OtpPurpose.LOGIN, "111111")
        assert excinfo.value.retry_after_seconds == 240
        assert excinfo.value.detail == {"retry_after_seconds": 240}
        stored = memory_store.get_otp(otp.id)
        assert stored.verified_at is None
        assert stored.attempts == 5

    def test_concurrent_correct_submissions_verify_once(self, ledger):
        ledger.issue("user@example.com", OtpPurpose.LOGIN)
        barrier = threading.Barrier(6)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                ledger.verify("user@example.com", OtpPurpose.LOGIN, "111111")
                outcomes.append("ok")
            except OtpExpiredError:
                outcomes.append("expired")

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("expired") == 5


    def test_wrong_guess_after_concurrent_success_reports_expired(
        self, ledger, memory_store, clock, monkeypatch
    ):
        otp = ledger.issue("user@example.com", OtpPurpose.LOGIN)
        increment = memory_store.increment_otp_attempts

        def verified_first(otp_id):
            memory_store.mark_otp_verified(otp_id, clock.now())
            return increment(otp_id)

        monkeypatch.setattr(memory_store, "increment_otp_attempts", verified_first)
        with pytest.raises(OtpExpiredError):
            ledger.verify("user@example.com", OtpPurpose.LOGIN, "000000")
        assert memory_store.get_otp(otp.id).attempts == 0

    def test_last_attempt_taken_concurrently_reports_lock(
        self, ledger, memory_store, monkeypatch
    ):
        otp = ledger.issue("user@example.com", OtpPurpose.LOGIN)
        memory_store.otps[otp.id].attempts = 4
        increment = memory_store.increment_otp_attempts

        def other_guess_first(otp_id):
            increment(otp_id)
            return increment(otp_id)

        monkeypatch.setattr(memory_store, "increment_otp_attempts", other_guess_first)
        with pytest.raises(OtpLockedError) as excinfo:
            ledger.verify("user@example.com", OtpPurpose.LOGIN, "000000")
        assert excinfo.value.retry_after_seconds == 300

def test_purge_expired_removes_only_stale_codes(ledger, memory_store, clock):
    ledger.issue("old@example.com", OtpPurpose.LOGIN)
    clock.advance(minutes=10)
    fresh = ledger.issue("new@example.com", OtpPurpose.LOGIN)
    assert ledger.purge_expired() == 1
    assert list(memory_store.otps) == [fresh.id]
