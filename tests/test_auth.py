import asyncio
import logging
from datetime import timedelta

import pyotp
import pytest

from doubt_solver import config
from doubt_solver.errors import AccountLockedError, AuthError, NotFoundError, UpstreamError, ValidationError
from doubt_solver.models.documents import utcnow
from doubt_solver.models.users import UserRecord, generate_backup_codes
from doubt_solver.services import security
from doubt_solver.services.auth import (
    AuthService,
    Authenticated,
    AwaitingEmailOtp,
    AwaitingTwoFactor,
)
from doubt_solver.services.email import EmailSender

from fakes import FakeEmailSender, FakeUserRepository

PASSWORD = "correct-horse"


def _service(email_sender=None):
    users = FakeUserRepository()
    sender = email_sender or FakeEmailSender()
    return AuthService(users, sender), users, sender


async def _add_user(users, **extra):
    return await users.create(UserRecord(
        email="grace@example.com",
        password_hash=security.hash_password(PASSWORD),
        first_name="Grace",
        last_name="Hopper",
        **extra,
    ))


def test_password_then_email_otp_logs_in():
    service, users, sender = _service()

    async def run():
        user = await _add_user(users)
        first = await service.login("Grace@Example.com ", PASSWORD)
        otp = sender.last_code("login_otp")
        second = await service.login("grace@example.com", PASSWORD, email_otp=otp)
        return user, first, second, await users.find_by_id(user.id)

    user, first, second, stored = asyncio.run(run())
    assert isinstance(first, AwaitingEmailOtp)
    assert security.decode_token(first.temp_token, expected_scope=security.LOGIN_SCOPE) == user.id
    assert isinstance(second, Authenticated)
    assert security.decode_token(second.access_token) == user.id
    assert security.decode_token(
        second.refresh_token, config.JWT_REFRESH_SECRET, security.REFRESH_SCOPE
    ) == user.id
    assert stored.last_login is not None
    assert stored.email_otp.code is None


def test_login_token_is_not_an_access_token():
    token = security.create_login_token("64b7f0c2a1b2c3d4e5f60718")
    with pytest.raises(AuthError):
        security.decode_token(token)


def test_unknown_email():
    service, _, _ = _service()
    with pytest.raises(AuthError, match="Invalid email or password"):
        asyncio.run(service.login("nobody@example.com", PASSWORD))


def test_five_wrong_passwords_lock_the_account():
    service, users, sender = _service()

    async def run():
        user = await _add_user(users)
        for _ in range(5):
            with pytest.raises(AuthError, match="Invalid email or password"):
                await service.login(user.email, "wrong-password")
        stored = await users.find_by_id(user.id)
        assert stored.login_attempts == 5
        assert stored.is_locked()
        await service.login(user.email, PASSWORD)

    with pytest.raises(AccountLockedError):
        asyncio.run(run())
    assert sender.sent == []


def test_wrong_email_otp_is_400_and_counted():
    service, users, sender = _service()

    async def run():
        user = await _add_user(users)
        await service.login(user.email, PASSWORD)
        code = sender.last_code("login_otp")
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(3):
            with pytest.raises(ValidationError, match="Invalid OTP"):
                await service.login(user.email, PASSWORD, email_otp=wrong)
        await service.login(user.email, PASSWORD, email_otp=code)

    with pytest.raises(ValidationError, match="Too many OTP attempts"):
        asyncio.run(run())


def test_two_factor_step_then_totp():
    service, users, sender = _service()
    secret = pyotp.random_base32()

    async def run():
        user = await _add_user(users, two_factor_enabled=True, two_factor_secret=secret)
        await service.login(user.email, PASSWORD)
        state = await service.login(user.email, PASSWORD, email_otp=sender.last_code("login_otp"))
        assert isinstance(state, AwaitingTwoFactor)
        done = await service.verify_2fa(
            user.id, code=pyotp.TOTP(secret).now(), login_token=state.temp_token
        )
        return user, state, done

    user, state, done = asyncio.run(run())
    assert security.decode_token(
        state.temp_token, expected_scope=security.LOGIN_SCOPE, expected_step=security.TWO_FACTOR_STEP
    ) == user.id
    assert isinstance(done, Authenticated)


def test_email_step_token_cannot_finish_two_factor():
    token = security.create_login_token("64b7f0c2a1b2c3d4e5f60718")
    with pytest.raises(AuthError):
        security.decode_token(token, expected_scope=security.LOGIN_SCOPE, expected_step=security.TWO_FACTOR_STEP)


def test_all_factors_in_one_request():
    service, users, sender = _service()
    secret = pyotp.random_base32()

    async def run():
        user = await _add_user(users, two_factor_enabled=True, two_factor_secret=secret)
        await service.login(user.email, PASSWORD)
        return await service.login(
            user.email,
            PASSWORD,
            email_otp=sender.last_code("login_otp"),
            two_factor_code=pyotp.TOTP(secret).now(),
        )

    assert isinstance(asyncio.run(run()), Authenticated)


def test_wrong_two_factor_code_counts_as_failed_login():
    service, users, sender = _service()
    secret = pyotp.random_base32()

    async def run():
        user = await _add_user(users, two_factor_enabled=True, two_factor_secret=secret)
        await service.login(user.email, PASSWORD)
        with pytest.raises(AuthError, match="Invalid two-factor authentication code"):
            await service.login(
                user.email, PASSWORD, email_otp=sender.last_code("login_otp"), two_factor_code="12345x"
            )
        return await users.find_by_id(user.id)

    assert asyncio.run(run()).login_attempts == 1


def test_backup_code_completes_login_once():
    service, users, sender = _service()
    codes = generate_backup_codes()

    async def run():
        user = await _add_user(
            users, two_factor_enabled=True, two_factor_secret=pyotp.random_base32(), two_factor_backup_codes=codes
        )
        token = security.create_login_token(user.id, security.TWO_FACTOR_STEP)
        first = await service.verify_2fa(user.id, backup_code=codes[0].code.lower(), login_token=token)
        assert isinstance(first, Authenticated)
        await service.verify_2fa(user.id, backup_code=codes[0].code, login_token=token)

    with pytest.raises(AuthError):
        asyncio.run(run())


def test_email_failure_outside_production_still_issues_code(monkeypatch):
    monkeypatch.setattr(config, "ENVIRONMENT", "development")
    service, users, _ = _service(FakeEmailSender(fail=True))

    async def run():
        user = await _add_user(users)
        state = await service.login(user.email, PASSWORD)
        return state, await users.find_by_id(user.id)

    state, stored = asyncio.run(run())
    assert isinstance(state, AwaitingEmailOtp)
    assert stored.email_otp.code is not None


def test_email_failure_in_production_is_an_error(monkeypatch):
    monkeypatch.setattr(config, "ENVIRONMENT", "production")
    service, users, _ = _service(FakeEmailSender(fail=True))

    async def run():
        user = await _add_user(users)
        await service.login(user.email, PASSWORD)

    with pytest.raises(UpstreamError, match="Failed to send verification code"):
        asyncio.run(run())


def test_unconfigured_smtp_in_production_refuses_and_keeps_code_out_of_logs(monkeypatch, caplog):
    monkeypatch.setattr(config, "ENVIRONMENT", "production")
    caplog.set_level(logging.DEBUG)
    service, users, _ = _service(EmailSender(host=None))

    async def run():
        user = await _add_user(users)
        with pytest.raises(UpstreamError, match="Failed to send verification code"):
            await service.login(user.email, PASSWORD)
        return await users.find_by_id(user.id)

    stored = asyncio.run(run())
    assert stored.email_otp.code is not None
    assert stored.email_otp.code not in caplog.text
    assert "Email service is not configured" in caplog.text


def test_unconfigured_smtp_in_development_logs_the_message(monkeypatch, caplog):
    monkeypatch.setattr(config, "ENVIRONMENT", "development")
    caplog.set_level(logging.WARNING)
    service, users, _ = _service(EmailSender(host=None))

    async def run():
        user = await _add_user(users)
        state = await service.login(user.email, PASSWORD)
        return state, await users.find_by_id(user.id)

    state, stored = asyncio.run(run())
    assert isinstance(state, AwaitingEmailOtp)
    assert stored.email_otp.code in caplog.text


def test_register_validates_and_rejects_duplicates():
    service, users, sender = _service()

    async def run():
        state = await service.register("New@Example.com", "secret1", "Alan", "Turing")
        assert state.user.email == "new@example.com"
        assert security.check_password("secret1", state.user.password_hash)
        with pytest.raises(ValidationError, match="already exists"):
            await service.register("new@example.com", "secret1", "Alan", "Turing")
        with pytest.raises(ValidationError, match="at least 6 characters"):
            await service.register("other@example.com", "123", "A", "B")
        with pytest.raises(ValidationError, match="valid email"):
            await service.register("not-an-email", "secret1", "A", "B")
        return state.user

    user = asyncio.run(run())
    assert [kind for kind, _, _ in sender.sent] == ["verification"]
    assert user.is_email_verified is False
    assert sender.last_code("verification") == users.users[user.id].email_verification_token


def test_password_reset_flow():
    service, users, sender = _service()

    async def run():
        user = await _add_user(users)
        await service.forgot_password(user.email)
        otp = sender.last_code("reset_otp")
        await service.reset_password(user.email, otp, "brand-new-pass")
        with pytest.raises(ValidationError, match="OTP has expired"):
            await service.reset_password(user.email, otp, "another-pass")
        return await users.find_by_id(user.id)

    stored = asyncio.run(run())
    assert security.check_password("brand-new-pass", stored.password_hash)


def test_forgot_password_does_not_reveal_unknown_email():
    service, _, sender = _service()
    asyncio.run(service.forgot_password("ghost@example.com"))
    assert sender.sent == []


def test_two_factor_setup_enable_disable():
    service, users, sender = _service()

    async def run():
        user = await _add_user(users)
        secret, uri = await service.setup_2fa(user.id)
        assert uri.startswith("otpauth://totp/")
        with pytest.raises(ValidationError, match="Invalid verification code"):
            await service.enable_2fa(user.id, "000000" if pyotp.TOTP(secret).now() != "000000" else "111111")

        backup_codes = await service.enable_2fa(user.id, pyotp.TOTP(secret).now())
        assert len(backup_codes) == 10
        with pytest.raises(ValidationError, match="already enabled"):
            await service.setup_2fa(user.id)

        with pytest.raises(AuthError, match="Invalid password"):
            await service.disable_2fa(user.id, "wrong", pyotp.TOTP(secret).now())
        with pytest.raises(ValidationError, match="Password and verification token are required"):
            await service.disable_2fa(user.id, PASSWORD, "")

        await service.disable_2fa(user.id, PASSWORD, pyotp.TOTP(secret).now())
        return await users.find_by_id(user.id)

    stored = asyncio.run(run())
    assert not stored.two_factor_enabled
    assert stored.two_factor_secret is None
    assert stored.two_factor_backup_codes == []
    assert ("two_factor_enabled", "grace@example.com", None) in sender.sent


def test_regenerate_backup_codes_requires_password():
    service, users, _ = _service()

    async def run():
        user = await _add_user(users, two_factor_enabled=True, two_factor_secret=pyotp.random_base32())
        with pytest.raises(AuthError):
            await service.regenerate_backup_codes(user.id, "wrong")
        return await service.regenerate_backup_codes(user.id, PASSWORD)

    assert len(asyncio.run(run())) == 10


def test_update_profile_merges_preferences():
    service, users, _ = _service()

    async def run():
        user = await _add_user(users)
        return await service.update_profile(
            user.id, first_name=" Amazing ", preferences={"theme": "dark", "notifications": {"email": False}}
        )

    updated = asyncio.run(run())
    assert updated.first_name == "Amazing"
    assert updated.last_name == "Hopper"
    assert updated.preferences.theme == "dark"
    assert updated.preferences.notifications.email is False
    assert updated.preferences.notifications.browser is True


def test_verify_email_with_token_from_registration():
    service, users, sender = _service()

    async def run():
        state = await service.register("ada@example.com", "engine1", "Ada", "Lovelace")
        token = sender.last_code("verification")
        verified = await service.verify_email(token)
        with pytest.raises(ValidationError, match="Invalid or expired verification token"):
            await service.verify_email(token)
        return state.user, verified, await users.find_by_id(state.user.id)

    user, verified, stored = asyncio.run(run())
    assert len(sender.last_code("verification")) == 64
    assert verified.id == user.id
    assert stored.is_email_verified is True
    assert stored.email_verification_token is None
    assert [kind for kind, _, _ in sender.sent] == ["verification", "welcome"]


def test_expired_or_missing_verification_token():
    service, users, _ = _service()

    async def run():
        user = UserRecord(email="old@example.com", password_hash="x")
        token = user.issue_verification_token(now=utcnow() - timedelta(hours=25))
        await users.create(user)
        with pytest.raises(ValidationError, match="Invalid or expired verification token"):
            await service.verify_email(token)
        with pytest.raises(ValidationError, match="Verification token is required"):
            await service.verify_email("")

    asyncio.run(run())


def test_resend_verification():
    service, users, sender = _service()

    async def run():
        user = await _add_user(users)
        await service.resend_verification(user.email)
        first = sender.last_code("verification")
        await service.resend_verification(user.email)
        second = sender.last_code("verification")
        await service.verify_email(second)
        with pytest.raises(ValidationError, match="Email is already verified"):
            await service.resend_verification(user.email)
        with pytest.raises(NotFoundError, match="User not found"):
            await service.resend_verification("nobody@example.com")
        return first, second

    first, second = asyncio.run(run())
    assert first != second
