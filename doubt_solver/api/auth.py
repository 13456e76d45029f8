from fastapi import APIRouter, Depends, HTTPException

from doubt_solver.api.deps import Services, bearer_token, get_current_user, get_services
from doubt_solver.errors import AuthError
from doubt_solver.models.users import (
    ChangePasswordRequest,
    DisableTwoFactorRequest,
    EmailRequest,
    LoginRequest,
    PasswordRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TwoFactorTokenRequest,
    UpdateProfileRequest,
    UserOut,
    UserRecord,
    VerifyEmailRequest,
    VerifyTwoFactorRequest,
)
from doubt_solver.services import security
from doubt_solver.services.auth import (
    RESET_SENT,
    AwaitingEmailOtp,
    AwaitingTwoFactor,
    Authenticated,
    LoginState,
)

router = APIRouter()


def _session(state: Authenticated, message: str) -> dict:
    return {
        "message": message,
        "user": UserOut.from_record(state.user).model_dump(),
        "token": state.access_token,
        "refreshToken": state.refresh_token,
    }


def _login_response(state: LoginState) -> dict:
    if isinstance(state, AwaitingEmailOtp):
        return {
            "message": "Verification code sent to your email",
            "requiresEmailOTP": True,
            "tempToken": state.temp_token,
        }
    if isinstance(state, AwaitingTwoFactor):
        return {
            "message": "Two-factor authentication required",
            "requiresTwoFactor": True,
            "tempToken": state.temp_token,
        }
    if isinstance(state, Authenticated):
        return _session(state, "Login successful")
    raise HTTPException(status_code=500, detail="Login did not reach a known state")


# ================== login / registration =====================

@router.post("/register", response_model=dict, status_code=201)
async def register(request: RegisterRequest, services: Services = Depends(get_services)):
    state = await services.auth.register(
        email=request.email,
        password=request.password,
        first_name=request.firstName,
        last_name=request.lastName,
    )
    return _session(state, "User registered successfully")


@router.post("/login", response_model=dict)
async def login(request: LoginRequest, services: Services = Depends(get_services)):
    state = await services.auth.login(
        email=request.email,
        password=request.password,
        email_otp=request.emailOTP,
        two_factor_code=request.twoFactorCode,
        backup_code=request.backupCode,
    )
    return _login_response(state)


@router.post("/verify-email", response_model=dict)
async def verify_email(request: VerifyEmailRequest, services: Services = Depends(get_services)):
    await services.auth.verify_email(request.token)
    return {"message": "Email verified successfully"}


@router.post("/resend-verification", response_model=dict)
async def resend_verification(request: EmailRequest, services: Services = Depends(get_services)):
    await services.auth.resend_verification(request.email)
    return {"message": "Verification email sent successfully"}


@router.post("/resend-login-otp", response_model=dict)
async def resend_login_otp(request: EmailRequest, services: Services = Depends(get_services)):
    await services.auth.resend_login_otp(request.email)
    return {"message": "If an account with that email exists, a new verification code has been sent."}


@router.post("/refresh-token", response_model=dict)
async def refresh_token(request: RefreshTokenRequest, services: Services = Depends(get_services)):
    try:
        token, refresh = await services.auth.refresh(request.refreshToken)
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    return {"token": token, "refreshToken": refresh}


# ================== passwords =====================

@router.post("/forgot-password", response_model=dict)
async def forgot_password(request: EmailRequest, services: Services = Depends(get_services)):
    await services.auth.forgot_password(request.email)
    return {"message": RESET_SENT}


@router.post("/resend-password-reset-otp", response_model=dict)
async def resend_password_reset_otp(request: EmailRequest, services: Services = Depends(get_services)):
    await services.auth.resend_password_reset_otp(request.email)
    return {"message": RESET_SENT}


@router.post("/reset-password", response_model=dict)
async def reset_password(request: ResetPasswordRequest, services: Services = Depends(get_services)):
    await services.auth.reset_password(request.email, request.otp, request.newPassword)
    return {"message": "Password reset successfully"}


@router.put("/change-password", response_model=dict)
async def change_password(
    request: ChangePasswordRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.auth.change_password(user.id, request.currentPassword, request.newPassword)
    return {"message": "Password changed successfully"}


# ================== profile =====================

@router.get("/profile", response_model=UserOut)
async def get_profile(user: UserRecord = Depends(get_current_user)):
    return UserOut.from_record(user)


@router.put("/profile", response_model=UserOut)
async def update_profile(
    request: UpdateProfileRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    updated = await services.auth.update_profile(
        user.id,
        first_name=request.firstName,
        last_name=request.lastName,
        preferences=request.preferences,
    )
    return UserOut.from_record(updated)


# ================== two-factor =====================

@router.post("/2fa/setup", response_model=dict)
async def setup_two_factor(
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    secret, otpauth_url = await services.auth.setup_2fa(user.id)
    return {
        "message": "2FA setup initiated",
        "secret": secret,
        "otpauthUrl": otpauth_url,
        "qrCode": security.qr_code_data_url(otpauth_url),
        "manualEntryKey": secret,
    }


@router.post("/2fa/enable", response_model=dict)
async def enable_two_factor(
    request: TwoFactorTokenRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    backup_codes = await services.auth.enable_2fa(user.id, request.token)
    return {
        "message": "Two-factor authentication enabled successfully",
        "backupCodes": backup_codes,
    }


@router.post("/2fa/disable", response_model=dict)
async def disable_two_factor(
    request: DisableTwoFactorRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.auth.disable_2fa(user.id, request.password, request.token)
    return {"message": "Two-factor authentication disabled successfully"}


@router.post("/2fa/verify", response_model=dict)
async def verify_two_factor(
    request: VerifyTwoFactorRequest,
    token: str = Depends(bearer_token),
    services: Services = Depends(get_services),
):
    """Accepts either the login token from the two-factor step or a normal access token.

    A login token finishes the sign-in and returns a session.
    """
    login_token = None
    try:
        user_id = security.decode_token(
            token, expected_scope=security.LOGIN_SCOPE, expected_step=security.TWO_FACTOR_STEP
        )
        login_token = token
    except AuthError:
        try:
            user_id = security.decode_token(token)
        except AuthError as e:
            raise HTTPException(status_code=401, detail=e.message)

    state = await services.auth.verify_2fa(
        user_id,
        code=request.token,
        backup_code=request.backupCode,
        login_token=login_token,
    )
    if isinstance(state, Authenticated):
        return _session(state, "Login successful")
    return {"message": "Two-factor authentication verified successfully"}


@router.post("/2fa/backup-codes", response_model=dict)
async def regenerate_backup_codes(
    request: PasswordRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    backup_codes = await services.auth.regenerate_backup_codes(user.id, request.password)
    return {"message": "New backup codes generated successfully", "backupCodes": backup_codes}
