"""
Two-Factor Authentication Routes

API endpoints for 2FA setup, verification, and management.
Domain errors raised by TwoFactorService are rendered by the global
exception handlers.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from marketauth.auth import get_current_user
from marketauth.models.user import User
from marketauth.services.backup_code_service import BACKUP_CODES_FILENAME
from marketauth.services.two_factor_service import TwoFactorService, get_two_factor_service

router = APIRouter(tags=["Two-Factor Authentication"])


# ============== Schemas ==============


class TwoFactorStatus(BaseModel):
    """2FA status response."""

    enabled: bool
    method: str
    state: str
    has_backup_codes: bool
    backup_codes_remaining: int
    phone_number: str | None = None  # masked
    enabled_at: str | None = None
    last_used_at: str | None = None


class TwoFactorSetupResponse(BaseModel):
    """Response for TOTP setup initiation."""

    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64 URL
    backup_codes: list[str]


class VerifyCodeRequest(BaseModel):
    """A TOTP, SMS or backup code."""

    code: str = Field(..., min_length=6, max_length=16)


class DisableRequest(BaseModel):
    """Request to disable 2FA; the code is only checked for TOTP."""

    code: str | None = Field(default=None, max_length=16)


class EnabledResponse(BaseModel):
    enabled: bool
    method: str


class VerifyResponse(BaseModel):
    valid: bool
    method: str
    backup_code_used: bool


class DisabledResponse(BaseModel):
    disabled: bool


class BackupCodesResponse(BaseModel):
    """Response with backup codes."""

    backup_codes: list[str]


class SmsSetupRequest(BaseModel):
    phone: str = Field(..., pattern=r"^\+?[0-9]{7,15}$")


class SmsVerifyRequest(BaseModel):
    otp: str = Field(..., min_length=4, max_length=10, pattern=r"^[0-9]+$")


class SmsSentResponse(BaseModel):
    sent: bool
    phone_number: str | None = None  # masked
    expires_in: int


# ============== Status & TOTP Setup ==============


@router.get("/status", response_model=TwoFactorStatus)
async def get_2fa_status(
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorStatus:
    """Get current 2FA status for the authenticated user."""
    return TwoFactorStatus(**await service.get_status(current_user.id))


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup_totp(
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorSetupResponse:
    """
    Initialize TOTP setup.

    Returns a secret, QR code and backup codes. 2FA stays off until
    /enable is called with a code from the authenticator app.
    """
    return TwoFactorSetupResponse(**await service.setup_totp(current_user))


@router.post("/enable", response_model=EnabledResponse)
async def enable_totp(
    data: VerifyCodeRequest,
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> EnabledResponse:
    """Complete TOTP setup by verifying a code."""
    return EnabledResponse(**await service.enable_totp(current_user.id, data.code))


# ============== Verification ==============


@router.post("/verify", response_model=VerifyResponse)
async def verify_2fa_code(
    data: VerifyCodeRequest,
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> VerifyResponse:
    """
    Verify a second-factor code at login.

    Accepts an authenticator code, the current SMS code or a backup code.
    A backup code is consumed on use.
    """
    return VerifyResponse(**await service.verify_login(current_user.id, data.code))


# ============== Management ==============


@router.post("/disable", response_model=DisabledResponse)
async def disable_2fa(
    data: DisableRequest,
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> DisabledResponse:
    """
    Disable 2FA for the current user.

    TOTP requires a valid authenticator code; SMS does not.
    """
    return DisabledResponse(**await service.disable(current_user.id, data.code))


@router.post("/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> BackupCodesResponse:
    """Regenerate backup codes. All existing backup codes stop working."""
    codes = await service.regenerate_backup_codes(current_user.id)
    return BackupCodesResponse(backup_codes=codes)


@router.get("/backup-codes/download", response_class=PlainTextResponse)
async def download_backup_codes(
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> PlainTextResponse:
    """Download remaining backup codes as a text file."""
    body = await service.backup_codes_download(current_user.id)
    return PlainTextResponse(
        content=body,
        headers={"Content-Disposition": f"attachment; filename={BACKUP_CODES_FILENAME}"},
    )


# ============== SMS ==============


@router.post("/sms/setup", response_model=SmsSentResponse)
async def setup_sms(
    data: SmsSetupRequest,
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> SmsSentResponse:
    """Register a phone number and text it a verification code."""
    return SmsSentResponse(**await service.setup_sms(current_user.id, data.phone))


@router.post("/sms/verify", response_model=EnabledResponse)
async def verify_sms(
    data: SmsVerifyRequest,
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> EnabledResponse:
    """Complete SMS setup. Codes expire after five minutes."""
    return EnabledResponse(**await service.verify_sms(current_user.id, data.otp))


@router.post("/sms/send", response_model=SmsSentResponse)
async def send_login_sms(
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> SmsSentResponse:
    """Text a login code to the registered phone."""
    return SmsSentResponse(**await service.send_login_sms(current_user.id))


@router.post("/sms/disable", response_model=DisabledResponse)
async def disable_sms(
    current_user: User = Depends(get_current_user),
    service: TwoFactorService = Depends(get_two_factor_service),
) -> DisabledResponse:
    """Disable SMS 2FA."""
    return DisabledResponse(**await service.disable_sms(current_user.id))
