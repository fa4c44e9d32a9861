import hashlib
from datetime import timedelta

from riskgate.config import get_settings
from riskgate.service.tokens import DeviceContext, DeviceFingerprint, TokenService
from riskgate.storage.models import utcnow

FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0"
CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


def test_tokens_are_hex_with_expected_entropy():
    service = TokenService(get_settings())
    access = service.generate_access_token()
    refresh = service.generate_refresh_token()
    assert len(access) == 64
    assert len(refresh) == 128
    int(access, 16)
    int(refresh, 16)
    assert service.generate_access_token() != access


def test_hash_is_sha256_hex_and_matches_compares():
    service = TokenService(get_settings())
    token = service.generate_refresh_token()
    digest = service.hash(token)
    assert digest == hashlib.sha256(token.encode()).hexdigest()
    assert service.matches(token, digest)
    assert not service.matches(token + "0", digest)
    assert not service.matches(token, "")


def test_issue_uses_configured_ttls(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_MINUTES", "60")
    from riskgate.config import reset_settings_cache

    reset_settings_cache()
    service = TokenService(get_settings())
    now = utcnow()
    issued = service.issue(now)
    assert issued.access_token_expires_at == now + timedelta(minutes=5)
    assert issued.refresh_token_expires_at == now + timedelta(minutes=60)
    assert issued.refresh_token_hash == service.hash(issued.refresh_token)
    assert issued.refresh_token_hash != issued.refresh_token


def test_device_id_is_stable_per_agent_and_address():
    fingerprint = DeviceFingerprint()
    device = DeviceContext(user_agent=FIREFOX_LINUX, ip_address="10.0.0.1")
    expected = hashlib.sha256(f"{FIREFOX_LINUX}-10.0.0.1".encode()).hexdigest()
    assert fingerprint.device_id(device) == expected
    assert fingerprint.device_id(DeviceContext()) == hashlib.sha256(b"unknown-unknown").hexdigest()
    assert fingerprint.device_id(device) != fingerprint.device_id(
        DeviceContext(user_agent=FIREFOX_LINUX, ip_address="10.0.0.2")
    )


def test_device_name_labels_browser_and_os():
    fingerprint = DeviceFingerprint()
    assert fingerprint.device_name(FIREFOX_LINUX) == "Firefox on Linux"
    assert fingerprint.device_name(CHROME_WINDOWS) == "Chrome on Windows"
    assert fingerprint.device_name(None) == "Unknown Device"
    assert fingerprint.device_name("curl/8.0") == "Unknown Browser on Unknown OS"


def test_client_ip_prefers_proxy_headers():
    assert (
        DeviceFingerprint.client_ip({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}, "127.0.0.1")
        == "203.0.113.9"
    )
    assert DeviceFingerprint.client_ip({"x-real-ip": "198.51.100.4"}, "127.0.0.1") == "198.51.100.4"
    assert DeviceFingerprint.client_ip({}, "127.0.0.1") == "127.0.0.1"
    assert DeviceFingerprint.client_ip({}) == "unknown"
