from repohub.core.config import AppConfig
from repohub.sync.auth import AuthGate


def test_sync_allowed_when_server_only_disabled():
    gate = AuthGate(server_only=False, secret_key="")
    assert gate.is_sync_allowed(None).allowed is True
    assert gate.is_sync_allowed("anything").allowed is True


def test_sync_denied_when_server_only_and_secret_not_configured():
    decision = AuthGate(server_only=True, secret_key="").is_sync_allowed("guess")
    assert decision.allowed is False
    assert decision.reason == "Sync secret key not configured on server"


def test_sync_denied_without_presented_secret():
    decision = AuthGate(server_only=True, secret_key="s3cret").is_sync_allowed(None)
    assert decision.allowed is False
    assert decision.reason == "Sync secret key required in server-only mode"


def test_sync_denied_on_mismatch_and_allowed_on_exact_match():
    gate = AuthGate(server_only=True, secret_key="s3cret")

    mismatch = gate.is_sync_allowed("s3cret ")
    assert mismatch.allowed is False
    assert mismatch.reason == "Invalid sync secret key"

    assert gate.is_sync_allowed("S3CRET").allowed is False
    assert gate.is_sync_allowed("s3cret").allowed is True


def test_write_requires_secret_regardless_of_server_only():
    for server_only in (False, True):
        gate = AuthGate(server_only=server_only, secret_key="s3cret")
        assert gate.is_write_allowed(None).allowed is False
        assert gate.is_write_allowed("nope").reason == "Write operations require authentication"
        assert gate.is_write_allowed("s3cret").allowed is True


def test_write_denied_when_secret_not_configured():
    decision = AuthGate(server_only=False, secret_key="").is_write_allowed("")
    assert decision.allowed is False
    assert decision.reason == "Secret key not configured on server"


def test_from_config_reads_auth_section():
    cfg = AppConfig()
    cfg.auth.server_only = True
    cfg.auth.secret_key = "k"
    gate = AuthGate.from_config(cfg)
    assert gate.server_only is True
    assert gate.is_sync_allowed("k").allowed is True
