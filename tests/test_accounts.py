"""Tests for registration and the account status machine."""

import threading

import pytest

from authkernel.service.errors import (
    AccountNotFoundError,
    DuplicateIdentifierError,
    ForbiddenError,
    InvalidStateError,
    ValidationError,
)
from authkernel.service.notify import AccountEvent
from authkernel.storage.common import normalize_phone
from authkernel.storage.models import (
    AccountStatus,
    OtpPurpose,
    PartnerProfile,
    Role,
    ShipperProfile,
)

PASSWORD = "Sup3rSecret"


def _partner(accounts, email="shop@example.com", phone="0901000001"):
    return accounts.register_partner(
        email=email,
        phone=phone,
        password=PASSWORD,
        full_name="Shop Owner",
        business_name="Corner Shop",
        tax_id="0312345678",
    )


def _shipper(accounts, phone="0902000002"):
    return accounts.register_shipper(
        phone=phone,
        password=PASSWORD,
        full_name="Rider",
        id_card_number="079123456789",
        vehicle_type="motorcycle",
        vehicle_plate="59A-12345",
    )


class TestPhoneNormalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("0901234567", "+84901234567"),
            ("84901234567", "+84901234567"),
            ("+84 901-234-567", "+84901234567"),
            ("(090) 123 4567", "+84901234567"),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestRegistration:
    def test_customer_by_phone_gets_code_on_phone(self, accounts, notifier):
        account = accounts.register_customer(
            phone="0901234567",
            email="Buyer@Example.com",
            password=PASSWORD,
            full_name="Buyer",
        )
        assert account.status == AccountStatus.PENDING
        assert account.role == Role.CUSTOMER
        assert account.email == "buyer@example.com"
        assert account.phone == "+84901234567"
        assert account.password_hash and account.password_hash != PASSWORD
        identifier, _, purpose = notifier.codes[-1]
        assert identifier == "+84901234567"
        assert purpose == OtpPurpose.REGISTRATION

    def test_customer_needs_a_contact(self, accounts):
        with pytest.raises(ValidationError):
            accounts.register_customer(password=PASSWORD, full_name="Nobody")

    def test_weak_password_is_rejected_before_create(self, accounts, memory_store):
        with pytest.raises(ValidationError) as excinfo:
            accounts.register_customer(
                email="weak@example.com", password="weak", full_name="Weak"
            )
        assert len(excinfo.value.detail["errors"]) == 3
        assert memory_store.accounts == {}

    def test_registration_code_activates_customer(self, accounts, notifier):
        account = accounts.register_customer(
            email="buyer@example.com", password=PASSWORD, full_name="Buyer"
        )
        activated = accounts.verify_registration_otp(
            "buyer@example.com", notifier.last_code("buyer@example.com")
        )
        assert activated.id == account.id
        assert activated.status == AccountStatus.ACTIVE

    def test_duplicate_email_leaves_existing_untouched(self, accounts, active_customer):
        before = accounts.get_account(active_customer.id)
        with pytest.raises(DuplicateIdentifierError) as excinfo:
            accounts.register_customer(
                email="BUYER@example.com", password="Other1234", full_name="Impostor"
            )
        assert excinfo.value.detail == {"field": "email"}
        assert accounts.get_account(active_customer.id) == before

    def test_duplicate_phone_across_roles(self, accounts):
        _shipper(accounts, phone="0903000003")
        with pytest.raises(DuplicateIdentifierError):
            _partner(accounts, phone="+84903000003")

    def test_partner_is_pending_with_profile(self, accounts, notifier):
        account = _partner(accounts)
        assert account.status == AccountStatus.PENDING
        assert account.profile == PartnerProfile(
            business_name="Corner Shop", tax_id="0312345678"
        )
        assert notifier.statuses == [(account.id, AccountEvent.REGISTERED, None)]

    def test_shipper_vehicle_type_is_checked(self, accounts):
        with pytest.raises(ValidationError):
            accounts.register_shipper(
                phone="0904000004",
                password=PASSWORD,
                full_name="Rider",
                id_card_number="1",
                vehicle_type="spaceship",
                vehicle_plate="X",
            )
        account = _shipper(accounts)
        assert isinstance(account.profile, ShipperProfile)
        assert account.role == Role.SHIPPER

    def test_identity_provider_customer_is_active_without_password(self, accounts):
        account = accounts.register_identity_provider_customer(
            email="social@example.com", full_name="Social", avatar_url="http://a/b.png"
        )
        assert account.status == AccountStatus.ACTIVE
        assert account.has_password is False

    def test_notifier_failures_do_not_break_registration(self, accounts, notifier):
        def explode(*args, **kwargs):
            raise RuntimeError("smtp down")

        notifier.send_account_status = explode
        account = _partner(accounts)
        assert accounts.get_account(account.id).status == AccountStatus.PENDING


class TestApproval:
    def test_approve_partner(self, accounts, admin_account, notifier):
        partner = _partner(accounts)
        approved = accounts.approve(partner.id, admin_account.id)
        assert approved.status == AccountStatus.ACTIVE
        assert (partner.id, AccountEvent.APPROVED, None) in notifier.statuses

    def test_approve_requires_pending(self, accounts, admin_account):
        partner = _partner(accounts)
        accounts.approve(partner.id, admin_account.id)
        with pytest.raises(InvalidStateError):
            accounts.approve(partner.id, admin_account.id)
        assert accounts.get_account(partner.id).status == AccountStatus.ACTIVE

    def test_pending_customer_cannot_be_approved(self, accounts, admin_account):
        customer = accounts.register_customer(
            email="c@example.com", password=PASSWORD, full_name="C"
        )
        with pytest.raises(ForbiddenError):
            accounts.approve(customer.id, admin_account.id)
        assert accounts.get_account(customer.id).status == AccountStatus.PENDING

    def test_approve_unknown_account(self, accounts, admin_account):
        with pytest.raises(AccountNotFoundError):
            accounts.approve("missing", admin_account.id)

    def test_concurrent_approvals_only_one_wins(self, accounts, admin_account):
        shipper = _shipper(accounts)
        barrier = threading.Barrier(5)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                accounts.approve(shipper.id, admin_account.id)
                outcomes.append("ok")
            except InvalidStateError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1

    def test_reject_requires_reason(self, accounts, admin_account):
        shipper = _shipper(accounts)
        with pytest.raises(ValidationError):
            accounts.reject(shipper.id, admin_account.id, "   ")
        assert accounts.get_account(shipper.id).status == AccountStatus.PENDING

    def test_reject_sets_inactive_and_notifies(self, accounts, admin_account, notifier):
        shipper = _shipper(accounts)
        rejected = accounts.reject(shipper.id, admin_account.id, "Blurry documents")
        assert rejected.status == AccountStatus.INACTIVE
        assert notifier.statuses[-1] == (
            shipper.id,
            AccountEvent.REJECTED,
            "Blurry documents",
        )

    def test_list_pending_paginates(self, accounts, clock):
        for i in range(3):
            _partner(accounts, email=f"p{i}@example.com", phone=f"090100000{i}")
            clock.advance(seconds=1)
        _shipper(accounts)
        page = accounts.list_pending(role=Role.PARTNER, page=2, limit=2)
        assert page.total == 3
        assert page.total_pages == 2
        assert [a.email for a in page.items] == ["p2@example.com"]
        assert accounts.list_pending().total == 4
        with pytest.raises(ValidationError):
            accounts.list_pending(role=Role.CUSTOMER)


class TestDeactivation:
    def test_deactivate_revokes_sessions(self, accounts, auth_service, active_customer, admin_account):
        auth_service.login_with_password("buyer@example.com", PASSWORD)
        auth_service.login_with_password("buyer@example.com", PASSWORD)
        accounts.deactivate(active_customer.id, admin_account.id, "abuse")
        assert accounts.get_account(active_customer.id).status == AccountStatus.INACTIVE
        assert auth_service.list_sessions(active_customer.id) == []

    def test_admins_cannot_be_deactivated(self, accounts, admin_account):
        with pytest.raises(ForbiddenError):
            accounts.deactivate(admin_account.id, admin_account.id)

    def test_pending_accounts_cannot_be_deactivated(self, accounts, admin_account):
        partner = _partner(accounts)
        with pytest.raises(InvalidStateError):
            accounts.deactivate(partner.id, admin_account.id)

    def test_reactivate_only_from_inactive(self, accounts, active_customer, admin_account):
        with pytest.raises(InvalidStateError):
            accounts.reactivate(active_customer.id, admin_account.id)
        accounts.deactivate(active_customer.id, admin_account.id)
        reactivated = accounts.reactivate(active_customer.id, admin_account.id)
        assert reactivated.status == AccountStatus.ACTIVE


class TestLoginBookkeeping:
    def test_fifth_failure_locks(self, accounts, active_customer, clock):
        outcomes = [accounts.record_failed_login(active_customer.id) for _ in range(5)]
        assert [o.remaining_attempts for o in outcomes] == [4, 3, 2, 1, 0]
        assert [o.locked for o in outcomes] == [False] * 4 + [True]
        locked = accounts.get_account(active_customer.id)
        assert locked.status == AccountStatus.LOCKED
        assert locked.failed_login_attempts == 0
        assert (locked.locked_until - clock.now()).total_seconds() == 30 * 60

    def test_unlock_only_after_lock_expires(self, accounts, active_customer, clock):
        for _ in range(5):
            accounts.record_failed_login(active_customer.id)
        clock.advance(minutes=30)
        assert accounts.unlock_if_expired(active_customer.id).status == AccountStatus.LOCKED
        clock.advance(seconds=1)
        assert accounts.unlock_if_expired(active_customer.id).status == AccountStatus.ACTIVE

    def test_success_resets_counter(self, accounts, active_customer, clock):
        accounts.record_failed_login(active_customer.id)
        account = accounts.record_successful_login(active_customer.id)
        assert account.failed_login_attempts == 0
        assert account.last_login_at == clock.now()

    def test_concurrent_failures_are_all_counted(self, accounts, active_customer):
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            accounts.record_failed_login(active_customer.id)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert accounts.get_account(active_customer.id).failed_login_attempts == 4


def test_create_admin(accounts):
    admin = accounts.create_admin(
        email="Root@Example.com", password=PASSWORD, full_name="Root"
    )
    assert admin.role == Role.ADMIN
    assert admin.status == AccountStatus.ACTIVE
    assert admin.email == "root@example.com"
