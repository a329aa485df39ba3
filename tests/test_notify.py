import smtplib

from authkernel.service import notify
from authkernel.service.notify import AccountEvent, NotificationService, dispatch
from authkernel.storage.models import Account, AccountStatus, OtpPurpose, ShipperProfile


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        if password == "bad":
            raise smtplib.SMTPAuthenticationError(535, b"denied")

    def sendmail(self, sender, recipient, body):
        FakeSMTP.sent.append((sender, recipient, body))


def _shipper(phone="+84902000002"):
    return Account.new(
        ShipperProfile(id_card_number="1", vehicle_type="motorcycle", vehicle_plate="X"),
        AccountStatus.PENDING,
        phone=phone,
        full_name="Rider",
    )


def test_dev_mode_logs_instead_of_sending(monkeypatch):
    monkeypatch.setattr(notify.smtplib, "SMTP", None)
    service = NotificationService()
    assert service.is_configured is False
    assert service.send_code("a@example.com", "123456", OtpPurpose.LOGIN) is True
    assert service.send_code("+84901234567", "123456", OtpPurpose.REGISTRATION) is True


def test_email_goes_through_smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(notify.smtplib, "SMTP", FakeSMTP)
    service = NotificationService(
        smtp_host="smtp.local", smtp_user="mailer", smtp_password="pw", from_email="no-reply@shop.test"
    )
    assert service.send_code("a@example.com", "654321", OtpPurpose.PASSWORD_RESET)
    [(sender, recipient, body)] = FakeSMTP.sent
    assert sender == "no-reply@shop.test"
    assert recipient == "a@example.com"
    assert "Reset your password" in body


def test_smtp_auth_failure_returns_false(monkeypatch):
    monkeypatch.setattr(notify.smtplib, "SMTP", FakeSMTP)
    service = NotificationService(
        smtp_host="smtp.local", smtp_user="mailer", smtp_password="bad", from_email="x@shop.test"
    )
    assert service.send_code("a@example.com", "654321", OtpPurpose.LOGIN) is False


def test_status_notice_falls_back_to_phone():
    service = NotificationService()
    assert service.send_account_status(_shipper(), AccountEvent.APPROVED) is True
    assert service.send_account_status(_shipper(phone=None), AccountEvent.REJECTED, "x") is False


def test_dispatch_swallows_delivery_errors():
    def broken(*args):
        raise ConnectionError("gateway down")

    assert dispatch("send_code", broken, "a@example.com") is False
    assert dispatch("send_code", lambda *a: True, "a@example.com") is True
