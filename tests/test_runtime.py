import importlib.util
from pathlib import Path

import pytest

from authkernel.service import runtime as runtime_module
from authkernel.service.runtime import _mask_url_password, build_runtime
from authkernel.storage.memory import MemoryStore


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql://app:s3cret@db:5432/auth", "postgresql://app:***@db:5432/auth"),
        ("postgresql://db/auth", "postgresql://db/auth"),
        (None, None),
        ("", ""),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_build_runtime_uses_memory_store(settings, clock, notifier):
    rt = build_runtime(settings, clock=clock, notifier=notifier)
    assert isinstance(rt.store, MemoryStore)
    assert rt.auth.accounts is rt.accounts
    assert rt.auth.tokens.access_ttl_seconds == settings.access_token_ttl_minutes * 60


def test_store_failure_is_logged_and_raised(settings, monkeypatch):
    def fail(_settings):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(runtime_module, "_build_store", fail)
    with pytest.raises(RuntimeError, match="database unavailable"):
        build_runtime(settings)


def _load_bootstrap_script():
    spec = importlib.util.spec_from_file_location(
        "bootstrap_admin", Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_bootstrap_admin_is_idempotent(monkeypatch, tmp_path):
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("PASSWORD_TIME_COST", "1")
    monkeypatch.setenv("PASSWORD_MEMORY_COST_KIB", "8192")
    script = _load_bootstrap_script()

    assert script.bootstrap_admin("ops@example.com", "Sup3rSecret", "Ops", dry_run=True)["status"] == "dry_run"
    created = script.bootstrap_admin("ops@example.com", "Sup3rSecret", "Ops")
    assert created["status"] == "created"
    again = script.bootstrap_admin("OPS@example.com", "Sup3rSecret", "Ops")
    assert again == {"account_id": created["account_id"], "email": "OPS@example.com", "status": "already_admin"}
