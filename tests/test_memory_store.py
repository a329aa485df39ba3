import json
from datetime import datetime, timedelta, timezone

import pytest

from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import (
    Account,
    AccountStatus,
    CustomerProfile,
    DeviceInfo,
    OneTimeCode,
    OtpPurpose,
    PartnerProfile,
    Session,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _account(store, email="a@example.com", phone=None, status=AccountStatus.ACTIVE):
    return store.create_account(
        Account.new(CustomerProfile(), status, email=email, phone=phone, now=NOW)
    )


def test_reads_return_copies():
    store = MemoryStore()
    account = _account(store)
    fetched = store.get_account(account.id)
    fetched.full_name = "mutated"
    assert store.get_account(account.id).full_name is None


def test_unique_email_and_phone():
    store = MemoryStore()
    _account(store, email="a@example.com", phone="+84901000001")
    with pytest.raises(ConstraintViolation) as excinfo:
        _account(store, email="a@example.com")
    assert excinfo.value.detail == {"field": "email"}
    with pytest.raises(ConstraintViolation) as excinfo:
        _account(store, email="b@example.com", phone="+84901000001")
    assert excinfo.value.detail == {"field": "phone"}


def test_update_account_rejects_unknown_fields_and_duplicates():
    store = MemoryStore()
    first = _account(store, email="a@example.com")
    _account(store, email="b@example.com")
    with pytest.raises(ValueError):
        store.update_account(first.id, now=NOW, status=AccountStatus.LOCKED)
    with pytest.raises(ConstraintViolation):
        store.update_account(first.id, now=NOW, email="b@example.com")
    assert store.update_account("missing", now=NOW, full_name="x") is None


class TestStatusTransitions:
    def test_transition_is_conditional(self):
        store = MemoryStore()
        account = _account(store, status=AccountStatus.PENDING)
        assert store.transition_account_status(
            account.id, [AccountStatus.PENDING], AccountStatus.ACTIVE, now=NOW
        )
        assert (
            store.transition_account_status(
                account.id, [AccountStatus.PENDING], AccountStatus.INACTIVE, now=NOW
            )
            is None
        )
        assert store.get_account(account.id).status == AccountStatus.ACTIVE

    def test_unlock_requires_lock_in_the_past(self):
        store = MemoryStore()
        account = _account(store)
        lock_until = NOW + timedelta(minutes=30)
        for _ in range(3):
            store.record_failed_login(account.id, max_attempts=3, lock_until=lock_until, now=NOW)
        assert store.get_account(account.id).status == AccountStatus.LOCKED
        assert (
            store.transition_account_status(
                account.id,
                [AccountStatus.LOCKED],
                AccountStatus.ACTIVE,
                now=lock_until,
                lock_expired_before=lock_until,
            )
            is None
        )
        later = lock_until + timedelta(seconds=1)
        unlocked = store.transition_account_status(
            account.id,
            [AccountStatus.LOCKED],
            AccountStatus.ACTIVE,
            now=later,
            lock_expired_before=later,
            reset_failed_logins=True,
        )
        assert unlocked.locked_until is None
        assert unlocked.failed_login_attempts == 0

    def test_failed_login_ignored_unless_active(self):
        store = MemoryStore()
        account = _account(store, status=AccountStatus.PENDING)
        assert (
            store.record_failed_login(
                account.id, max_attempts=5, lock_until=NOW, now=NOW
            )
            is None
        )


class TestIdentities:
    def test_link_is_idempotent_and_exclusive(self):
        store = MemoryStore()
        first = _account(store, email="a@example.com")
        second = _account(store, email="b@example.com")
        store.link_identity(first.id, "google", "g-1")
        store.link_identity(first.id, "google", "g-1")
        assert len(store.list_identities(first.id)) == 1
        with pytest.raises(ConstraintViolation) as excinfo:
            store.link_identity(second.id, "google", "g-1")
        assert excinfo.value.detail == {"field": "provider_uid"}

    def test_relink_replaces_old_provider_account(self):
        store = MemoryStore()
        account = _account(store)
        store.link_identity(account.id, "google", "g-old")
        store.link_identity(account.id, "google", "g-new")
        assert store.get_account_by_provider("google", "g-old") is None
        assert store.get_account_by_provider("google", "g-new").id == account.id

    def test_link_to_missing_account(self):
        store = MemoryStore()
        with pytest.raises(ConstraintViolation) as excinfo:
            store.link_identity("missing", "google", "g-1")
        assert excinfo.value.detail == {"field": "account_id"}

    def test_unlink(self):
        store = MemoryStore()
        account = _account(store)
        store.link_identity(account.id, "facebook", "fb-1")
        assert store.unlink_identity(account.id, "facebook")
        assert store.unlink_identity(account.id, "facebook") is False


class TestOtpRows:
    def _otp(self, identifier="a@example.com", now=NOW):
        return OneTimeCode.new(
            identifier, OtpPurpose.LOGIN, "123456", ttl_minutes=5, max_attempts=2, now=now
        )

    def test_create_respects_window_ceiling(self):
        store = MemoryStore()
        window_start = NOW - timedelta(minutes=5)
        assert store.create_otp(self._otp(), window_start=window_start, max_requests=1)
        assert not store.create_otp(self._otp(), window_start=window_start, max_requests=1)
        assert store.create_otp(self._otp("b@example.com"), window_start=window_start, max_requests=1)

    def test_attempts_stop_at_max(self):
        store = MemoryStore()
        otp = self._otp()
        store.create_otp(otp)
        assert store.increment_otp_attempts(otp.id).attempts == 1
        assert store.increment_otp_attempts(otp.id).attempts == 2
        assert store.increment_otp_attempts(otp.id) is None

    def test_verify_once_and_not_after_expiry(self):
        store = MemoryStore()
        otp = self._otp()
        store.create_otp(otp)
        assert store.mark_otp_verified(otp.id, NOW) is True
        assert store.mark_otp_verified(otp.id, NOW) is False
        stale = self._otp("b@example.com")
        store.create_otp(stale)
        assert store.mark_otp_verified(stale.id, NOW + timedelta(minutes=5)) is False


def test_refresh_hash_rotation_is_compare_and_set():
    store = MemoryStore()
    account = _account(store)
    session = store.create_session(
        Session.new(account.id, "h1", ttl_minutes=60, now=NOW, device=DeviceInfo())
    )
    assert store.rotate_session_refresh_hash(session.id, "h1", "h2", NOW)
    assert not store.rotate_session_refresh_hash(session.id, "h1", "h3", NOW)
    assert store.get_session_by_refresh_hash("h2").id == session.id


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    partner = store.create_account(
        Account.new(
            PartnerProfile(business_name="Shop", tax_id="42"),
            AccountStatus.PENDING,
            email="shop@example.com",
            password_hash="hash",
            now=NOW,
        )
    )
    store.link_identity(partner.id, "google", "g-1")
    store.create_otp(
        OneTimeCode.new(
            "shop@example.com", OtpPurpose.REGISTRATION, "654321",
            ttl_minutes=5, max_attempts=5, now=NOW,
        )
    )
    store.create_session(Session.new(partner.id, "h1", ttl_minutes=60, now=NOW))

    state = json.loads((tmp_path / "state" / "auth_store.json").read_text())
    assert state["accounts"][0]["profile"] == {"business_name": "Shop", "tax_id": "42"}

    reloaded = MemoryStore(fs_root=str(tmp_path))
    account = reloaded.get_account(partner.id)
    assert account == partner
    assert reloaded.get_account_by_provider("google", "g-1").id == partner.id
    assert reloaded.find_valid_otp("shop@example.com", OtpPurpose.REGISTRATION, NOW).code == "654321"
    assert reloaded.get_session_by_refresh_hash("h1").account_id == partner.id


def test_state_path_requires_fs_root():
    with pytest.raises(RuntimeError):
        MemoryStore()._state_path()
