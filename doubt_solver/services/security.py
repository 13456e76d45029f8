import base64
import io
from datetime import timedelta
from typing import Optional

import bcrypt
import pyotp
import qrcode
from jose import JWTError, jwt

from doubt_solver import config
from doubt_solver.errors import AuthError
from doubt_solver.models.documents import utcnow

ISSUER_NAME = "DoubtNix"
TOTP_VALID_WINDOW = 2
ACCESS_SCOPE = "access"
REFRESH_SCOPE = "refresh"
LOGIN_SCOPE = "login"
EMAIL_OTP_STEP = "email_otp"
TWO_FACTOR_STEP = "two_factor"


# ================== passwords =====================

def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=12)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


# ================== tokens =====================

def _encode(user_id: str, scope: str, secret: str, minutes: int, **extra) -> str:
    now = utcnow()
    claims = {
        "sub": user_id,
        "scope": scope,
        "iat": now,
        "exp": now + timedelta(minutes=minutes),
        **extra,
    }
    return jwt.encode(claims, secret, algorithm=config.JWT_ALGORITHM)


def create_access_token(user_id: str) -> str:
    return _encode(user_id, ACCESS_SCOPE, config.JWT_SECRET, config.JWT_EXPIRES_MINUTES)


def create_refresh_token(user_id: str) -> str:
    return _encode(user_id, REFRESH_SCOPE, config.JWT_REFRESH_SECRET, config.JWT_REFRESH_EXPIRES_MINUTES)


def create_login_token(user_id: str, step: str = EMAIL_OTP_STEP) -> str:
    """Short-lived token handed out between login steps. Not valid as a bearer token.

    ``step`` names the login step the holder has reached, so a token from the
    email-code step cannot be used to finish the two-factor step.
    """
    return _encode(user_id, LOGIN_SCOPE, config.JWT_SECRET, config.LOGIN_TOKEN_EXPIRES_MINUTES, step=step)


def decode_token(
    token: str,
    secret: Optional[str] = None,
    expected_scope: str = ACCESS_SCOPE,
    expected_step: Optional[str] = None,
) -> str:
    """Return the user id carried by ``token``, raising ``AuthError`` otherwise."""
    try:
        claims = jwt.decode(token, secret or config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise AuthError("Invalid or expired token")
    if claims.get("scope") != expected_scope or not claims.get("sub"):
        raise AuthError("Invalid or expired token")
    if expected_step is not None and claims.get("step") != expected_step:
        raise AuthError("Invalid or expired token")
    return claims["sub"]


# ================== totp =====================

def new_totp_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, email: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=ISSUER_NAME)


def qr_code_data_url(data: str) -> str:
    """Render ``data`` as a PNG QR code and return it as a data URL."""
    buffer = io.BytesIO()
    qrcode.make(data).save(buffer)
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def verify_totp(secret: Optional[str], code: Optional[str]) -> bool:
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(code.strip(), valid_window=TOTP_VALID_WINDOW)
