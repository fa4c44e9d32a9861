import time

import pyotp
import pytest

from riskgate.service.errors import ErrorKind, ServiceError


def _wrong_code(secret: str) -> str:
    totp = pyotp.TOTP(secret)
    now = time.time()
    accepted = {totp.at(now + 30 * step) for step in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in accepted)


async def test_generate_stores_encrypted_secret_disabled(runtime, make_user):
    user = make_user()
    enrollment = await runtime.two_factor.generate(user.id)

    stored = runtime.store.get_user(user.id)
    assert stored.totp_enabled is False
    assert stored.totp_secret and stored.totp_secret != enrollment.secret
    assert enrollment.provisioning_uri.startswith("otpauth://totp/")
    assert "issuer=RiskRegisterApp" in enrollment.provisioning_uri
    assert "alice" in enrollment.provisioning_uri


async def test_enable_requires_valid_code(runtime, make_user):
    user = make_user()
    enrollment = await runtime.two_factor.generate(user.id)

    with pytest.raises(ServiceError) as excinfo:
        await runtime.two_factor.enable(user.id, _wrong_code(enrollment.secret))
    assert excinfo.value.kind is ErrorKind.VALIDATION
    assert runtime.store.get_user(user.id).totp_enabled is False

    await runtime.two_factor.enable(user.id, pyotp.TOTP(enrollment.secret).now())
    assert runtime.store.get_user(user.id).totp_enabled is True


async def test_enable_without_generate_is_rejected(runtime, make_user):
    user = make_user()
    with pytest.raises(ServiceError) as excinfo:
        await runtime.two_factor.enable(user.id, "123456")
    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "2FA setup not initiated"


async def test_regenerate_switches_enrollment_off(runtime, make_user):
    user = make_user()
    first = await runtime.two_factor.generate(user.id)
    await runtime.two_factor.enable(user.id, pyotp.TOTP(first.secret).now())

    second = await runtime.two_factor.generate(user.id)
    stored = runtime.store.get_user(user.id)
    assert stored.totp_enabled is False
    assert second.secret != first.secret


async def test_disable_clears_secret(runtime, make_user):
    user = make_user()
    enrollment = await runtime.two_factor.generate(user.id)
    await runtime.two_factor.enable(user.id, pyotp.TOTP(enrollment.secret).now())

    await runtime.two_factor.disable(user.id)
    stored = runtime.store.get_user(user.id)
    assert stored.totp_enabled is False
    assert stored.totp_secret is None


async def test_generate_for_missing_user_is_not_found(runtime):
    with pytest.raises(ServiceError) as excinfo:
        await runtime.two_factor.generate("no-such-user")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


async def test_verify_during_login(runtime, make_user):
    user = make_user()
    enrollment = await runtime.two_factor.generate(user.id)
    stored_secret = runtime.store.get_user(user.id).totp_secret

    assert await runtime.two_factor.verify_during_login(
        stored_secret, pyotp.TOTP(enrollment.secret).now()
    )
    assert not await runtime.two_factor.verify_during_login(
        stored_secret, _wrong_code(enrollment.secret)
    )
    assert not await runtime.two_factor.verify_during_login(stored_secret, "abcdef")
    assert not await runtime.two_factor.verify_during_login(None, "123456")
    assert not await runtime.two_factor.verify_during_login("not-a-fernet-token", "123456")
