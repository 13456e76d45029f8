import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from doubt_solver.models.documents import utcnow

OTP_LIFETIME = timedelta(minutes=10)
OTP_MAX_ATTEMPTS = 3
MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(hours=2)
BACKUP_CODE_COUNT = 10
VERIFICATION_LIFETIME = timedelta(hours=24)


@dataclass(frozen=True)
class OtpCheck:
    success: bool
    message: str


def _same_code(expected: str, candidate: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # mongo hands datetimes back naive (UTC)
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OneTimeCode(BaseModel):
    code: Optional[str] = None
    expires_at: Optional[datetime] = None
    attempts: int = 0

    def issue(self, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        self.code = f"{secrets.randbelow(900000) + 100000}"
        self.expires_at = now + OTP_LIFETIME
        self.attempts = 0
        return self.code

    def clear(self) -> None:
        self.code = None
        self.expires_at = None
        self.attempts = 0

    def verify(self, candidate: str, now: Optional[datetime] = None) -> OtpCheck:
        now = now or utcnow()
        expires_at = _aware(self.expires_at)
        if not self.code or expires_at is None or expires_at < now:
            return OtpCheck(False, "OTP has expired")

        if self.attempts >= OTP_MAX_ATTEMPTS:
            return OtpCheck(False, "Too many OTP attempts. Please request a new OTP.")

        if _same_code(self.code, str(candidate).strip()):
            self.clear()
            return OtpCheck(True, "OTP verified successfully")

        self.attempts += 1
        return OtpCheck(False, "Invalid OTP")


class BackupCode(BaseModel):
    code: str
    used: bool = False


class NotificationPreferences(BaseModel):
    email: bool = True
    browser: bool = True


class Preferences(BaseModel):
    theme: Literal["light", "dark", "auto"] = "light"
    language: str = "en"
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[BackupCode]:
    return [BackupCode(code=secrets.token_hex(4).upper()) for _ in range(count)]


class UserRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    email_otp: OneTimeCode = Field(default_factory=OneTimeCode)
    password_reset_otp: OneTimeCode = Field(default_factory=OneTimeCode)
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_backup_codes: list[BackupCode] = Field(default_factory=list)
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    preferences: Preferences = Field(default_factory=Preferences)
    created_at: datetime = Field(default_factory=utcnow)

    def to_mongo(self) -> dict:
        return self.model_dump(exclude={"id"})

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        lock_until = _aware(self.lock_until)
        return bool(lock_until and lock_until > (now or utcnow()))

    def register_failed_login(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        lock_until = _aware(self.lock_until)
        if lock_until and lock_until < now:
            self.lock_until = None
            self.login_attempts = 1
            return

        self.login_attempts += 1
        if self.login_attempts >= MAX_LOGIN_ATTEMPTS and not self.is_locked(now):
            self.lock_until = now + LOCK_DURATION

    def reset_login_attempts(self) -> None:
        self.login_attempts = 0
        self.lock_until = None

    def issue_verification_token(self, now: Optional[datetime] = None) -> str:
        self.email_verification_token = secrets.token_hex(32)
        self.email_verification_expires = (now or utcnow()) + VERIFICATION_LIFETIME
        return self.email_verification_token

    def confirm_email(self) -> None:
        self.is_email_verified = True
        self.email_verification_token = None
        self.email_verification_expires = None

    def verification_expired(self, now: Optional[datetime] = None) -> bool:
        expires = _aware(self.email_verification_expires)
        return expires is None or expires <= (now or utcnow())

    def use_backup_code(self, candidate: str) -> bool:
        normalized = str(candidate).strip().upper()
        for backup in self.two_factor_backup_codes:
            if not backup.used and _same_code(backup.code, normalized):
                backup.used = True
                return True
        return False


# ============== request bodies ===============

class RegisterRequest(BaseModel):
    email: str
    password: str
    firstName: str = Field(..., min_length=1, max_length=50)
    lastName: str = Field(..., min_length=1, max_length=50)


class LoginRequest(BaseModel):
    email: str
    password: str
    emailOTP: Optional[str] = None
    twoFactorCode: Optional[str] = None
    backupCode: Optional[str] = None


class EmailRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    email: str
    otp: str
    newPassword: str


class VerifyEmailRequest(BaseModel):
    token: Optional[str] = None


class RefreshTokenRequest(BaseModel):
    refreshToken: str


class ChangePasswordRequest(BaseModel):
    currentPassword: str
    newPassword: str


class UpdateProfileRequest(BaseModel):
    firstName: Optional[str] = Field(default=None, max_length=50)
    lastName: Optional[str] = Field(default=None, max_length=50)
    preferences: Optional[dict] = None


class TwoFactorTokenRequest(BaseModel):
    token: str


class DisableTwoFactorRequest(BaseModel):
    password: str
    token: str


class VerifyTwoFactorRequest(BaseModel):
    token: Optional[str] = None
    backupCode: Optional[str] = None


class PasswordRequest(BaseModel):
    password: str


# ============== responses ===============

class UserOut(BaseModel):
    id: str
    email: str
    firstName: str
    lastName: str
    fullName: str
    isEmailVerified: bool = False
    twoFactorEnabled: bool
    preferences: Preferences
    createdAt: Optional[datetime] = None
    lastLogin: Optional[datetime] = None

    @classmethod
    def from_record(cls, user: UserRecord) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            firstName=user.first_name,
            lastName=user.last_name,
            fullName=user.full_name,
            isEmailVerified=user.is_email_verified,
            twoFactorEnabled=user.two_factor_enabled,
            preferences=user.preferences,
            createdAt=user.created_at,
            lastLogin=user.last_login,
        )
