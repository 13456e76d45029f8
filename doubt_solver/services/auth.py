"""Password, email-OTP and TOTP login, plus the account operations around it.

A login request walks through explicit states::

    AwaitingPassword -> AwaitingEmailOtp -> [AwaitingTwoFactor] -> Authenticated

Clients resend the password on every step, so each request replays the
flow from the start and stops at the first state it cannot leave.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from doubt_solver import config
from doubt_solver.database.user_crud import UserRepository
from doubt_solver.errors import AccountLockedError, AuthError, NotFoundError, UpstreamError, ValidationError
from doubt_solver.models.documents import utcnow
from doubt_solver.models.users import Preferences, UserRecord, generate_backup_codes
from doubt_solver.services import security
from doubt_solver.services.email import EmailSender

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6
INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_LOCKED = "Account is temporarily locked due to too many failed login attempts"
RESET_SENT = "If an account with that email exists, you will receive a verification code."


# ================== login states =====================

@dataclass(frozen=True)
class AwaitingPassword:
    email: str


@dataclass(frozen=True)
class AwaitingEmailOtp:
    user_id: str
    temp_token: str


@dataclass(frozen=True)
class AwaitingTwoFactor:
    user_id: str
    temp_token: str


@dataclass(frozen=True)
class Authenticated:
    user: UserRecord
    access_token: str
    refresh_token: str


LoginState = Union[AwaitingPassword, AwaitingEmailOtp, AwaitingTwoFactor, Authenticated]


def _validate_password(password: str, label: str = "Password") -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"{label} must be at least {MIN_PASSWORD_LENGTH} characters long")


class LoginFlow:
    """One transition per login state. Every transition persists the user it touches."""

    def __init__(self, users: UserRepository):
        self.users = users

    async def _fail(self, user: UserRecord, message: str) -> None:
        user.register_failed_login()
        await self.users.save(user)
        raise AuthError(message)

    async def authenticate(self, user: UserRecord) -> Authenticated:
        user.reset_login_attempts()
        user.last_login = utcnow()
        await self.users.save(user)
        return Authenticated(
            user=user,
            access_token=security.create_access_token(user.id),
            refresh_token=security.create_refresh_token(user.id),
        )

    async def submit_password(self, state: AwaitingPassword, user: Optional[UserRecord], password: str) -> AwaitingEmailOtp:
        if user is None or not user.is_active:
            raise AuthError(INVALID_CREDENTIALS)
        if user.is_locked():
            raise AccountLockedError(ACCOUNT_LOCKED)
        if not security.check_password(password, user.password_hash):
            logger.info("Failed password for %s", state.email)
            await self._fail(user, INVALID_CREDENTIALS)
        return AwaitingEmailOtp(user_id=user.id, temp_token=security.create_login_token(user.id))

    async def submit_email_otp(self, state: AwaitingEmailOtp, user: UserRecord, otp: str) -> Union[AwaitingTwoFactor, Authenticated]:
        check = user.email_otp.verify(otp)
        # attempts and the cleared code are stored either way
        await self.users.save(user)
        if not check.success:
            raise ValidationError(check.message)
        if user.two_factor_enabled:
            return AwaitingTwoFactor(
                user_id=state.user_id,
                temp_token=security.create_login_token(user.id, security.TWO_FACTOR_STEP),
            )
        return await self.authenticate(user)

    async def submit_second_factor(
        self,
        state: AwaitingTwoFactor,
        user: UserRecord,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> Authenticated:
        if code and security.verify_totp(user.two_factor_secret, code):
            return await self.authenticate(user)
        if backup_code and user.use_backup_code(backup_code):
            logger.info("Backup code used by user %s", user.id)
            return await self.authenticate(user)
        await self._fail(user, "Invalid two-factor authentication code")


class AuthService:
    def __init__(self, users: UserRepository, email_sender: EmailSender):
        self.users = users
        self.email_sender = email_sender
        self.flow = LoginFlow(users)

    async def _user(self, user_id: str) -> UserRecord:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _deliver_otp(self, send, user: UserRecord, otp: str, purpose: str) -> None:
        try:
            await send(user.email, user.first_name, otp)
        except Exception:
            if config.is_production():
                logger.exception("Failed to send %s code to %s", purpose, user.email)
                raise UpstreamError("Failed to send verification code. Please try again.")
            logger.warning("Email delivery failed, %s code for %s is %s", purpose, user.email, otp)

    async def _send_login_otp(self, user: UserRecord) -> None:
        otp = user.email_otp.issue()
        await self.users.save(user)
        await self._deliver_otp(self.email_sender.send_login_otp, user, otp, "login")

    async def _send_reset_otp(self, user: UserRecord) -> None:
        otp = user.password_reset_otp.issue()
        await self.users.save(user)
        await self._deliver_otp(self.email_sender.send_password_reset_otp, user, otp, "password reset")

    # ================== login =====================

    async def login(
        self,
        email: str,
        password: str,
        email_otp: Optional[str] = None,
        two_factor_code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> LoginState:
        if not email or not password:
            raise ValidationError("Email and password are required")

        state = AwaitingPassword(email=email.strip().lower())
        user = await self.users.find_by_email(state.email)
        state = await self.flow.submit_password(state, user, password)

        if not email_otp:
            await self._send_login_otp(user)
            return state

        state = await self.flow.submit_email_otp(state, user, email_otp)
        if isinstance(state, AwaitingTwoFactor) and (two_factor_code or backup_code):
            state = await self.flow.submit_second_factor(state, user, two_factor_code, backup_code)
        return state

    async def resend_login_otp(self, email: str) -> None:
        if not email:
            raise ValidationError("Email is required")
        user = await self.users.find_by_email(email)
        if user is None or not user.is_active:
            return
        await self._send_login_otp(user)

    async def verify_2fa(
        self,
        user_id: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
        login_token: Optional[str] = None,
    ):
        """Check a TOTP or backup code.

        A caller holding the ``login_token`` from the ``AwaitingTwoFactor``
        step gets an ``Authenticated`` state back.
        """
        if not code and not backup_code:
            raise ValidationError("Verification token or backup code is required")
        user = await self._user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")

        if login_token:
            if user.is_locked():
                raise AccountLockedError(ACCOUNT_LOCKED)
            state = AwaitingTwoFactor(user_id=user_id, temp_token=login_token)
            return await self.flow.submit_second_factor(state, user, code, backup_code)

        if code and security.verify_totp(user.two_factor_secret, code):
            return None
        if backup_code and user.use_backup_code(backup_code):
            await self.users.save(user)
            return None
        raise ValidationError("Invalid verification code or backup code")

    async def refresh(self, refresh_token: str) -> tuple[str, str]:
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        user_id = security.decode_token(refresh_token, config.JWT_REFRESH_SECRET, security.REFRESH_SCOPE)
        user = await self.users.find_by_id(user_id)
        if user is None or not user.is_active:
            raise AuthError("Invalid refresh token")
        return security.create_access_token(user.id), security.create_refresh_token(user.id)

    # ================== registration / passwords =====================

    async def register(self, email: str, password: str, first_name: str, last_name: str) -> Authenticated:
        email = (email or "").strip().lower()
        if not email or not password or not first_name or not last_name:
            raise ValidationError("All fields are required")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Please enter a valid email")
        _validate_password(password)
        if await self.users.find_by_email(email):
            raise ValidationError("User with this email already exists")

        user = UserRecord(
            email=email,
            password_hash=security.hash_password(password),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
        )
        token = user.issue_verification_token()
        user = await self.users.create(user)
        logger.info("Registered user %s", user.id)
        await self._send_verification(user, token)

        return Authenticated(
            user=user,
            access_token=security.create_access_token(user.id),
            refresh_token=security.create_refresh_token(user.id),
        )

    async def _send_verification(self, user: UserRecord, token: str) -> None:
        try:
            await self.email_sender.send_verification(user.email, user.first_name, token)
        except Exception:
            logger.exception("Failed to send verification email to %s", user.email)

    async def verify_email(self, token: str) -> UserRecord:
        if not token:
            raise ValidationError("Verification token is required")
        user = await self.users.find_by_verification_token(token)
        if user is None or user.verification_expired():
            raise ValidationError("Invalid or expired verification token")

        user.confirm_email()
        await self.users.save(user)
        logger.info("Email verified for user %s", user.id)

        try:
            await self.email_sender.send_welcome(user.email, user.first_name)
        except Exception:
            logger.exception("Failed to send welcome email to %s", user.email)
        return user

    async def resend_verification(self, email: str) -> None:
        if not email:
            raise ValidationError("Email is required")
        user = await self.users.find_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        if user.is_email_verified:
            raise ValidationError("Email is already verified")

        token = user.issue_verification_token()
        await self.users.save(user)
        try:
            await self.email_sender.send_verification(user.email, user.first_name, token)
        except Exception:
            logger.exception("Failed to resend verification email to %s", user.email)
            raise UpstreamError("Failed to send verification email")

    async def forgot_password(self, email: str) -> None:
        if not email:
            raise ValidationError("Email is required")
        user = await self.users.find_by_email(email)
        if user is None:
            return
        await self._send_reset_otp(user)

    async def resend_password_reset_otp(self, email: str) -> None:
        await self.forgot_password(email)

    async def reset_password(self, email: str, otp: str, new_password: str) -> None:
        if not email or not otp or not new_password:
            raise ValidationError("Email, OTP, and new password are required")
        _validate_password(new_password)
        user = await self.users.find_by_email(email)
        if user is None:
            raise ValidationError("Invalid email or OTP")

        check = user.password_reset_otp.verify(otp)
        if check.success:
            user.password_hash = security.hash_password(new_password)
            user.reset_login_attempts()
        await self.users.save(user)
        if not check.success:
            raise ValidationError(check.message)
        logger.info("Password reset for user %s", user.id)

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required")
        _validate_password(new_password, "New password")
        user = await self._user(user_id)
        if not security.check_password(current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        user.password_hash = security.hash_password(new_password)
        await self.users.save(user)

    # ================== profile =====================

    async def get_profile(self, user_id: str) -> UserRecord:
        return await self._user(user_id)

    async def update_profile(
        self,
        user_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        preferences: Optional[dict] = None,
    ) -> UserRecord:
        user = await self._user(user_id)
        if first_name is not None and first_name.strip():
            user.first_name = first_name.strip()
        if last_name is not None and last_name.strip():
            user.last_name = last_name.strip()
        if preferences:
            merged = user.preferences.model_dump()
            for key, value in preferences.items():
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key].update(value)
                else:
                    merged[key] = value
            try:
                user.preferences = Preferences.model_validate(merged)
            except ValueError as e:
                raise ValidationError(f"Invalid preferences: {e}")
        await self.users.save(user)
        return user

    # ================== two-factor =====================

    async def setup_2fa(self, user_id: str) -> tuple[str, str]:
        user = await self._user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        user.two_factor_secret = security.new_totp_secret()
        await self.users.save(user)
        return user.two_factor_secret, security.provisioning_uri(user.two_factor_secret, user.email)

    async def enable_2fa(self, user_id: str, token: str) -> list[str]:
        if not token:
            raise ValidationError("Verification token is required")
        user = await self._user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        if not user.two_factor_secret:
            raise ValidationError("No 2FA setup found. Please setup 2FA first.")
        if not security.verify_totp(user.two_factor_secret, token):
            raise ValidationError("Invalid verification code")

        user.two_factor_enabled = True
        user.two_factor_backup_codes = generate_backup_codes()
        await self.users.save(user)
        logger.info("Two-factor authentication enabled for user %s", user.id)

        try:
            await self.email_sender.send_two_factor_enabled(user.email, user.first_name)
        except Exception:
            logger.exception("Failed to send 2FA confirmation to %s", user.email)
        return [backup.code for backup in user.two_factor_backup_codes]

    async def disable_2fa(self, user_id: str, password: str, token: str) -> None:
        if not password or not token:
            raise ValidationError("Password and verification token are required")
        user = await self._user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if not security.check_password(password, user.password_hash):
            raise AuthError("Invalid password")
        if not security.verify_totp(user.two_factor_secret, token):
            raise ValidationError("Invalid verification code")

        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_backup_codes = []
        await self.users.save(user)
        logger.info("Two-factor authentication disabled for user %s", user.id)

    async def regenerate_backup_codes(self, user_id: str, password: str) -> list[str]:
        if not password:
            raise ValidationError("Password is required")
        user = await self._user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if not security.check_password(password, user.password_hash):
            raise AuthError("Invalid password")
        user.two_factor_backup_codes = generate_backup_codes()
        await self.users.save(user)
        return [backup.code for backup in user.two_factor_backup_codes]
