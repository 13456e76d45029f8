from datetime import timedelta

from doubt_solver.models.documents import utcnow
from doubt_solver.models.users import (
    LOCK_DURATION,
    OneTimeCode,
    UserRecord,
    generate_backup_codes,
)


def _user(**extra):
    return UserRecord(email="ada@example.com", password_hash="x", first_name="Ada", last_name="Lovelace", **extra)


def test_otp_is_six_digits_and_ten_minutes():
    now = utcnow()
    otp = OneTimeCode()
    code = otp.issue(now)
    assert len(code) == 6 and code.isdigit()
    assert otp.expires_at == now + timedelta(minutes=10)
    assert otp.attempts == 0


def test_otp_is_single_use():
    otp = OneTimeCode()
    code = otp.issue()
    assert otp.verify(code).success
    assert otp.code is None and otp.expires_at is None and otp.attempts == 0

    again = otp.verify(code)
    assert not again.success
    assert again.message == "OTP has expired"


def test_otp_expires():
    now = utcnow()
    otp = OneTimeCode()
    code = otp.issue(now - timedelta(minutes=11))
    result = otp.verify(code, now)
    assert not result.success
    assert result.message == "OTP has expired"


def test_non_ascii_otp_is_just_wrong():
    otp = OneTimeCode()
    otp.issue()
    # full-width digits
    result = otp.verify("\uff11\uff12\uff13\uff14\uff15\uff16")
    assert not result.success
    assert result.message == "Invalid OTP"
    assert otp.attempts == 1

    assert otp.verify("\u00e912345").message == "Invalid OTP"
    assert otp.attempts == 2


def test_fourth_attempt_rejected_even_when_correct():
    otp = OneTimeCode()
    code = otp.issue()
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(3):
        assert otp.verify(wrong).message == "Invalid OTP"
    assert otp.attempts == 3

    result = otp.verify(code)
    assert not result.success
    assert result.message == "Too many OTP attempts. Please request a new OTP."


def test_reissue_resets_attempts():
    otp = OneTimeCode()
    otp.issue()
    otp.verify("bogus")
    code = otp.issue()
    assert otp.attempts == 0
    assert otp.verify(code).success


def test_fifth_failure_locks_account():
    now = utcnow()
    user = _user()
    for _ in range(4):
        user.register_failed_login(now)
    assert not user.is_locked(now)

    user.register_failed_login(now)
    assert user.login_attempts == 5
    assert user.is_locked(now)
    assert user.lock_until == now + LOCK_DURATION
    assert not user.is_locked(now + LOCK_DURATION + timedelta(seconds=1))


def test_expired_lock_restarts_counter():
    now = utcnow()
    user = _user(login_attempts=5, lock_until=now - timedelta(minutes=1))
    user.register_failed_login(now)
    assert user.login_attempts == 1
    assert user.lock_until is None


def test_naive_lock_timestamps_are_treated_as_utc():
    now = utcnow()
    user = _user(login_attempts=5, lock_until=(now + timedelta(hours=1)).replace(tzinfo=None))
    assert user.is_locked(now)


def test_reset_login_attempts():
    user = _user(login_attempts=5, lock_until=utcnow() + LOCK_DURATION)
    user.reset_login_attempts()
    assert user.login_attempts == 0
    assert not user.is_locked()


def test_backup_codes_shape():
    codes = generate_backup_codes()
    assert len(codes) == 10
    assert len({c.code for c in codes}) == 10
    for backup in codes:
        assert len(backup.code) == 8
        assert backup.code == backup.code.upper()
        int(backup.code, 16)


def test_backup_code_single_use_and_case_insensitive():
    user = _user(two_factor_backup_codes=generate_backup_codes())
    code = user.two_factor_backup_codes[3].code
    assert user.use_backup_code(f"  {code.lower()} ")
    assert user.two_factor_backup_codes[3].used
    assert not user.use_backup_code(code)
    assert not user.use_backup_code("NOTACODE")


def test_non_ascii_backup_code_is_rejected():
    user = _user(two_factor_backup_codes=generate_backup_codes())
    assert user.use_backup_code("\u00c9T\u00c912345") is False
    assert not any(backup.used for backup in user.two_factor_backup_codes)


def test_full_name():
    assert _user().full_name == "Ada Lovelace"
