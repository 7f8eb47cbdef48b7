"""
Two-Factor Authentication Service

The 2FA state machine: TOTP enrollment, SMS enrollment, login
verification with backup-code fallback, disabling and backup-code
management. State lives in the credential store; code checks are
delegated to the TOTP, backup-code and SMS challenge services.

States (see TwoFactorState):
    DISABLED -> PENDING_TOTP -> ENABLED_TOTP
    DISABLED -> PENDING_SMS  -> ENABLED_SMS
    ENABLED_* -> DISABLED
"""

import logging
from collections.abc import Callable
from datetime import datetime

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketauth.database import get_db
from marketauth.exceptions import (
    AlreadyDisabledError,
    AlreadyEnabledError,
    ChallengeExpiredError,
    InvalidCodeError,
    NoChallengeError,
    NotSetUpError,
    TwoFactorError,
)
from marketauth.models.user import User
from marketauth.models.user_security import TwoFactorMethod
from marketauth.services.attempt_limiter import AttemptLimiter, get_attempt_limiter
from marketauth.services.backup_code_service import BackupCodeService
from marketauth.services.credential_store import CredentialStore, TwoFactorState, UserSecurityRecord
from marketauth.services.sms_challenge_service import SmsChallengeService, get_challenge_store, utcnow
from marketauth.services.sms_gateway import get_sms_gateway, mask_phone_number
from marketauth.services.totp_service import TOTPService
from marketauth.utils.qr import as_data_url, render_provisioning_uri

logger = logging.getLogger(__name__)

ENABLED_STATES = (TwoFactorState.ENABLED_TOTP, TwoFactorState.ENABLED_SMS)


class TwoFactorService:
    """Service for managing two-factor authentication."""

    def __init__(
        self,
        db: AsyncSession,
        totp: TOTPService | None = None,
        backup_codes: BackupCodeService | None = None,
        sms: SmsChallengeService | None = None,
        limiter: AttemptLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.totp = totp or TOTPService()
        self.backup_codes = backup_codes or BackupCodeService()
        self.store = CredentialStore(db, backup_codes=self.backup_codes)
        self.limiter = limiter or get_attempt_limiter()
        self.clock = clock
        self._sms = sms

    @property
    def sms(self) -> SmsChallengeService:
        # Built on first use so TOTP-only requests never touch the SMS backend
        if self._sms is None:
            self._sms = SmsChallengeService(get_challenge_store(), get_sms_gateway(), clock=self.clock)
        return self._sms

    # ============== Status ==============

    async def get_status(self, user_id: int) -> dict:
        """
        Get 2FA status for a user.

        Returns:
            dict with enabled flag, method, derived state and backup-code info
        """
        record = await self._load(user_id)

        return {
            "enabled": record.enabled,
            "method": record.method.value,
            "state": record.state.value,
            "has_backup_codes": len(record.backup_codes) > 0,
            "backup_codes_remaining": len(record.backup_codes),
            "phone_number": mask_phone_number(record.phone_number),
            "enabled_at": record.enabled_at.isoformat() if record.enabled_at else None,
            "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
        }

    # ============== TOTP Enrollment ==============

    async def setup_totp(self, user: User) -> dict:
        """
        Start TOTP enrollment.

        Issues a fresh secret and backup codes, persisted unconfirmed.
        The user must prove possession with enable_totp before 2FA is on.

        Returns:
            dict with secret, provisioning URI, QR code and backup codes
        """
        record = await self._load(user.id)
        if record.state in ENABLED_STATES:
            raise AlreadyEnabledError()

        totp_secret = self.totp.generate_secret(user.email)
        backup_codes = self.backup_codes.generate()

        await self.store.save(
            user.id,
            enabled=False,
            method=TwoFactorMethod.TOTP,
            totp_secret=totp_secret.secret,
            backup_codes=backup_codes,
            phone_number=None,
        )

        logger.info(f"2FA setup initiated for user {user.id}")

        return {
            "secret": totp_secret.secret,
            "provisioning_uri": totp_secret.provisioning_uri,
            "qr_code": as_data_url(render_provisioning_uri(totp_secret.provisioning_uri)),
            "backup_codes": backup_codes,
        }

    async def enable_totp(self, user_id: int, code: str) -> dict:
        """
        Verify a TOTP code against the pending secret and enable 2FA.

        Raises:
            AlreadyEnabledError: 2FA is already on
            NotSetUpError: setup_totp was not called first
            InvalidCodeError: the code does not verify
        """
        record = await self._load(user_id)
        if record.state in ENABLED_STATES:
            raise AlreadyEnabledError("2FA is already enabled.")
        if record.state != TwoFactorState.PENDING_TOTP:
            raise NotSetUpError("2FA has not been set up. Call setup first.")

        key = self._reserve_attempt(user_id, "enable_totp")
        if not self.totp.verify(record.totp_secret, code):
            self._log_failure(key, user_id, "TOTP enable")
            raise InvalidCodeError()
        self.limiter.record_success(key)

        await self.store.save(
            user_id,
            enabled=True,
            method=TwoFactorMethod.TOTP,
            enabled_at=self.clock(),
        )

        logger.info(f"2FA enabled for user {user_id} (TOTP)")
        return {"enabled": True, "method": TwoFactorMethod.TOTP.value}

    # ============== SMS Enrollment ==============

    async def setup_sms(self, user_id: int, phone: str) -> dict:
        """
        Start SMS enrollment: store the phone number and text it a code.

        The phone and pending method are persisted before sending, so a
        delivery failure leaves the user in PENDING_SMS and the recorded
        code still verifies.
        """
        record = await self._load(user_id)
        if record.state in ENABLED_STATES:
            raise AlreadyEnabledError()

        await self.store.save(user_id, enabled=False, method=TwoFactorMethod.SMS, phone_number=phone)
        await self.sms.issue(user_id, phone)

        logger.info(f"SMS 2FA setup initiated for user {user_id}")
        return self._sent_response(phone)

    async def verify_sms(self, user_id: int, otp: str) -> dict:
        """
        Verify the enrollment code and enable SMS 2FA.

        Raises:
            AlreadyEnabledError: 2FA is already on
            NotSetUpError: setup_sms was not called first (or no code issued)
            ChallengeExpiredError: the code is past its validity window
            InvalidCodeError: the code does not match
        """
        record = await self._load(user_id)
        if record.state in ENABLED_STATES:
            raise AlreadyEnabledError("2FA is already enabled.")
        if record.state != TwoFactorState.PENDING_SMS:
            raise NotSetUpError("SMS 2FA has not been set up. Call SMS setup first.")

        key = self._reserve_attempt(user_id, "verify_sms")
        try:
            await self.sms.verify(user_id, otp)
        except InvalidCodeError:
            self._log_failure(key, user_id, "SMS enable")
            raise
        except TwoFactorError:
            self.limiter.release(key)
            raise
        self.limiter.record_success(key)

        await self.store.save(
            user_id,
            enabled=True,
            method=TwoFactorMethod.SMS,
            totp_secret=None,
            enabled_at=self.clock(),
        )

        logger.info(f"2FA enabled for user {user_id} (SMS)")
        return {"enabled": True, "method": TwoFactorMethod.SMS.value}

    async def send_login_sms(self, user_id: int) -> dict:
        """Text a fresh login code to the phone of an SMS-enabled user."""
        record = await self._load(user_id)
        if record.state != TwoFactorState.ENABLED_SMS:
            raise NotSetUpError("SMS 2FA is not enabled.")

        await self.sms.issue(user_id, record.phone_number)

        logger.info(f"Login SMS sent for user {user_id}")
        return self._sent_response(record.phone_number)

    # ============== Verification ==============

    async def verify_login(self, user_id: int, code: str) -> dict:
        """
        Verify a second-factor code during login.

        The authenticator code is tried first (TOTP users), then the
        outstanding SMS code (SMS users), then backup codes. A matching
        backup code is consumed.

        Raises:
            NotSetUpError: 2FA is not enabled
            ChallengeExpiredError: the SMS code is past its window and no backup code matched
            InvalidCodeError: nothing matched
        """
        record = await self._load(user_id)
        if record.state not in ENABLED_STATES:
            raise NotSetUpError()

        key = self._reserve_attempt(user_id, "verify_login")
        backup_code_used = False
        expired: ChallengeExpiredError | None = None

        if record.state == TwoFactorState.ENABLED_TOTP:
            matched = self.totp.verify(record.totp_secret, code)
        else:
            try:
                matched = await self._verify_login_sms(user_id, code)
            except ChallengeExpiredError as e:
                expired = e
                matched = False

        if not matched:
            if (await self.store.consume_backup_code(user_id, code)).consumed:
                backup_code_used = True
            elif expired is not None:
                self.limiter.release(key)
                raise expired
            else:
                self._log_failure(key, user_id, "login")
                raise InvalidCodeError()

        self.limiter.record_success(key)
        await self.store.save(user_id, last_used_at=self.clock())

        logger.info(f"2FA login verified for user {user_id}" + (" with backup code" if backup_code_used else ""))
        return {"valid": True, "method": record.method.value, "backup_code_used": backup_code_used}

    # ============== Disabling ==============

    async def disable(self, user_id: int, code: str | None = None) -> dict:
        """Disable whichever method is active."""
        record = await self._load(user_id)
        if record.state == TwoFactorState.ENABLED_SMS:
            return await self.disable_sms(user_id)
        return await self.disable_totp(user_id, code)

    async def disable_totp(self, user_id: int, code: str | None) -> dict:
        """
        Disable TOTP 2FA. Requires a valid authenticator code.

        Clears the secret and all backup codes.
        """
        record = await self._load(user_id)
        if record.state not in ENABLED_STATES:
            raise AlreadyDisabledError()
        if record.state != TwoFactorState.ENABLED_TOTP:
            raise NotSetUpError("TOTP is not the active 2FA method.")

        key = self._reserve_attempt(user_id, "disable_totp")
        if not self.totp.verify(record.totp_secret, code):
            self._log_failure(key, user_id, "TOTP disable")
            raise InvalidCodeError()
        self.limiter.record_success(key)

        await self.store.save(
            user_id,
            enabled=False,
            method=TwoFactorMethod.NONE,
            totp_secret=None,
            backup_codes=None,
            enabled_at=None,
        )

        logger.info(f"2FA disabled for user {user_id} (TOTP)")
        return {"disabled": True}

    async def disable_sms(self, user_id: int) -> dict:
        """
        Disable SMS 2FA.

        Unlike TOTP, no code is re-checked here; the caller is already
        authenticated. Backup codes are left in place.
        """
        record = await self._load(user_id)
        if record.state not in ENABLED_STATES:
            raise AlreadyDisabledError()
        if record.state != TwoFactorState.ENABLED_SMS:
            raise NotSetUpError("SMS is not the active 2FA method.")

        await self.store.save(
            user_id,
            enabled=False,
            method=TwoFactorMethod.NONE,
            phone_number=None,
            enabled_at=None,
        )
        await self.sms.cancel(user_id)

        logger.info(f"2FA disabled for user {user_id} (SMS)")
        return {"disabled": True}

    # ============== Backup Codes ==============

    async def regenerate_backup_codes(self, user_id: int) -> list[str]:
        """
        Replace all backup codes with a fresh set.

        Every previously issued code stops working.
        """
        record = await self._load(user_id)
        if record.state not in ENABLED_STATES:
            raise NotSetUpError("2FA is not enabled.")

        backup_codes = self.backup_codes.generate()
        await self.store.save(user_id, backup_codes=backup_codes)

        logger.info(f"Backup codes regenerated for user {user_id}")
        return backup_codes

    async def backup_codes_download(self, user_id: int) -> str:
        """Remaining backup codes as a plain-text file body."""
        record = await self._load(user_id)
        if not record.backup_codes:
            raise NotSetUpError("No backup codes available.")
        return self.backup_codes.render_download(record.backup_codes)

    # ============== Private Methods ==============

    async def _load(self, user_id: int) -> UserSecurityRecord:
        """Get the security record, treating a missing row as DISABLED."""
        return await self.store.load_or_none(user_id) or UserSecurityRecord(user_id=user_id)

    async def _verify_login_sms(self, user_id: int, code: str) -> bool:
        """Check the outstanding login SMS code. An expired code propagates."""
        try:
            await self.sms.verify(user_id, code)
        except (InvalidCodeError, NoChallengeError) as e:
            logger.debug(f"Login SMS check failed for user {user_id}: {e.message}")
            return False
        return True

    def _reserve_attempt(self, user_id: int, purpose: str) -> str:
        key = self.limiter.key(user_id, purpose)
        self.limiter.check_and_reserve(key)
        return key

    def _log_failure(self, key: str, user_id: int, action: str) -> None:
        # the attempt itself was counted by _reserve_attempt
        logger.warning(f"Invalid 2FA code for user {user_id} ({action})")

    def _sent_response(self, phone: str) -> dict:
        return {
            "sent": True,
            "phone_number": mask_phone_number(phone),
            "expires_in": self.sms.ttl_seconds,
        }


# Dependency for FastAPI
async def get_two_factor_service(db: AsyncSession = Depends(get_db)) -> TwoFactorService:
    """FastAPI dependency for TwoFactorService."""
    return TwoFactorService(db)
