"""
Tests for the two-factor state machine.
"""

import asyncio
from collections import Counter

import pyotp
import pytest

from marketauth.exceptions import (
    AlreadyDisabledError,
    AlreadyEnabledError,
    ChallengeExpiredError,
    InvalidCodeError,
    NotSetUpError,
    SmsDeliveryError,
    TooManyAttemptsError,
    TwoFactorError,
)
from marketauth.services.credential_store import CredentialStore, TwoFactorState
from marketauth.services.sms_challenge_service import SmsChallengeService
from marketauth.services.sms_gateway import MockSmsGateway
from marketauth.services.two_factor_service import TwoFactorService

PHONE = "+15551234567"


async def enable_totp(service: TwoFactorService, user) -> dict:
    setup = await service.setup_totp(user)
    await service.enable_totp(user.id, pyotp.TOTP(setup["secret"]).now())
    return setup


async def enable_sms(service: TwoFactorService, user, gateway: MockSmsGateway) -> None:
    await service.setup_sms(user.id, PHONE)
    await service.verify_sms(user.id, otp_from(gateway))


def otp_from(gateway: MockSmsGateway) -> str:
    return gateway.last_message.body.rsplit(" ", 1)[-1]


async def state_of(service: TwoFactorService, user) -> str:
    return (await service.get_status(user.id))["state"]


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_without_record(self, two_factor_service, test_user):
        status = await two_factor_service.get_status(test_user.id)

        assert status["enabled"] is False
        assert status["method"] == "NONE"
        assert status["state"] == "DISABLED"
        assert status["has_backup_codes"] is False
        assert status["phone_number"] is None


class TestTotpEnrollment:
    @pytest.mark.asyncio
    async def test_setup_totp(self, two_factor_service, test_user):
        result = await two_factor_service.setup_totp(test_user)

        assert len(result["secret"]) == 32
        assert "AZsubay.dev" in result["provisioning_uri"]
        assert result["qr_code"].startswith("data:image/png;base64,")
        assert len(result["backup_codes"]) == 5
        assert len(set(result["backup_codes"])) == 5

        status = await two_factor_service.get_status(test_user.id)
        assert status["state"] == "PENDING_TOTP"
        assert status["enabled"] is False
        assert status["backup_codes_remaining"] == 5

    @pytest.mark.asyncio
    async def test_enable_with_current_code(self, two_factor_service, test_user, test_db):
        setup = await two_factor_service.setup_totp(test_user)

        result = await two_factor_service.enable_totp(test_user.id, pyotp.TOTP(setup["secret"]).now())

        assert result == {"enabled": True, "method": "TOTP"}
        record = await CredentialStore(test_db).load(test_user.id)
        assert record.enabled is True
        assert record.state == TwoFactorState.ENABLED_TOTP
        assert record.enabled_at is not None

    @pytest.mark.asyncio
    async def test_enable_before_setup(self, two_factor_service, test_user):
        with pytest.raises(NotSetUpError):
            await two_factor_service.enable_totp(test_user.id, "123456")

    @pytest.mark.asyncio
    async def test_enable_with_wrong_code_stays_pending(self, two_factor_service, test_user, wrong_totp_code):
        setup = await two_factor_service.setup_totp(test_user)

        with pytest.raises(InvalidCodeError):
            await two_factor_service.enable_totp(test_user.id, wrong_totp_code(setup["secret"]))

        assert await state_of(two_factor_service, test_user) == "PENDING_TOTP"

    @pytest.mark.asyncio
    async def test_setup_again_while_pending_replaces_secret(self, two_factor_service, test_user, wrong_totp_code):
        first = await two_factor_service.setup_totp(test_user)
        second = await two_factor_service.setup_totp(test_user)

        assert first["secret"] != second["secret"]
        with pytest.raises(InvalidCodeError):
            await two_factor_service.enable_totp(test_user.id, wrong_totp_code(second["secret"]))
        await two_factor_service.enable_totp(test_user.id, pyotp.TOTP(second["secret"]).now())

    @pytest.mark.asyncio
    async def test_setup_when_enabled(self, two_factor_service, test_user):
        await enable_totp(two_factor_service, test_user)

        with pytest.raises(AlreadyEnabledError):
            await two_factor_service.setup_totp(test_user)
        with pytest.raises(AlreadyEnabledError):
            await two_factor_service.enable_totp(test_user.id, "123456")
        with pytest.raises(AlreadyEnabledError):
            await two_factor_service.setup_sms(test_user.id, PHONE)


class TestVerifyLogin:
    @pytest.mark.asyncio
    async def test_totp_code(self, two_factor_service, test_user):
        setup = await enable_totp(two_factor_service, test_user)

        result = await two_factor_service.verify_login(test_user.id, pyotp.TOTP(setup["secret"]).now())

        assert result["valid"] is True
        assert result["backup_code_used"] is False
        assert (await two_factor_service.get_status(test_user.id))["last_used_at"] is not None

    @pytest.mark.asyncio
    async def test_backup_code_is_consumed(self, two_factor_service, test_user):
        setup = await enable_totp(two_factor_service, test_user)
        code = setup["backup_codes"][0]

        result = await two_factor_service.verify_login(test_user.id, code)

        assert result["backup_code_used"] is True
        status = await two_factor_service.get_status(test_user.id)
        assert status["backup_codes_remaining"] == 4

        with pytest.raises(InvalidCodeError):
            await two_factor_service.verify_login(test_user.id, code)

    @pytest.mark.asyncio
    async def test_wrong_code(self, two_factor_service, test_user, wrong_totp_code):
        setup = await enable_totp(two_factor_service, test_user)

        with pytest.raises(InvalidCodeError):
            await two_factor_service.verify_login(test_user.id, wrong_totp_code(setup["secret"]))

    @pytest.mark.asyncio
    async def test_not_enabled(self, two_factor_service, test_user):
        with pytest.raises(NotSetUpError):
            await two_factor_service.verify_login(test_user.id, "123456")

        await two_factor_service.setup_totp(test_user)
        with pytest.raises(NotSetUpError):
            await two_factor_service.verify_login(test_user.id, "123456")


class TestDisableTotp:
    @pytest.mark.asyncio
    async def test_disable_with_valid_code(self, two_factor_service, test_user, test_db):
        setup = await enable_totp(two_factor_service, test_user)

        result = await two_factor_service.disable(test_user.id, pyotp.TOTP(setup["secret"]).now())

        assert result == {"disabled": True}
        record = await CredentialStore(test_db).load(test_user.id)
        assert record.state == TwoFactorState.DISABLED
        assert record.totp_secret is None
        assert record.backup_codes == []

    @pytest.mark.asyncio
    async def test_disable_with_wrong_code_stays_enabled(self, two_factor_service, test_user, wrong_totp_code):
        setup = await enable_totp(two_factor_service, test_user)

        with pytest.raises(InvalidCodeError):
            await two_factor_service.disable(test_user.id, wrong_totp_code(setup["secret"]))

        assert await state_of(two_factor_service, test_user) == "ENABLED_TOTP"

    @pytest.mark.asyncio
    async def test_disable_without_code(self, two_factor_service, test_user):
        await enable_totp(two_factor_service, test_user)

        with pytest.raises(InvalidCodeError):
            await two_factor_service.disable(test_user.id)

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled(self, two_factor_service, test_user):
        with pytest.raises(AlreadyDisabledError):
            await two_factor_service.disable(test_user.id, "123456")
        with pytest.raises(AlreadyDisabledError):
            await two_factor_service.disable_sms(test_user.id)


class TestSmsEnrollment:
    @pytest.mark.asyncio
    async def test_setup_sms_sends_code(self, two_factor_service, test_user, sms_gateway):
        result = await two_factor_service.setup_sms(test_user.id, PHONE)

        assert result["sent"] is True
        assert result["phone_number"] == "+1******4567"
        assert result["expires_in"] == 300
        assert sms_gateway.last_message.to == PHONE
        assert await state_of(two_factor_service, test_user) == "PENDING_SMS"

    @pytest.mark.asyncio
    async def test_verify_sms_enables(self, two_factor_service, test_user, sms_gateway, test_db):
        await two_factor_service.setup_sms(test_user.id, PHONE)

        result = await two_factor_service.verify_sms(test_user.id, otp_from(sms_gateway))

        assert result == {"enabled": True, "method": "SMS"}
        record = await CredentialStore(test_db).load(test_user.id)
        assert record.state == TwoFactorState.ENABLED_SMS
        assert record.totp_secret is None
        assert record.phone_number == PHONE

    @pytest.mark.asyncio
    async def test_verify_sms_after_expiry(self, two_factor_service, test_user, sms_gateway, clock):
        await two_factor_service.setup_sms(test_user.id, PHONE)
        clock.advance(5 * 60 + 1)

        with pytest.raises(ChallengeExpiredError):
            await two_factor_service.verify_sms(test_user.id, otp_from(sms_gateway))

        assert await state_of(two_factor_service, test_user) == "PENDING_SMS"

    @pytest.mark.asyncio
    async def test_verify_sms_wrong_code(self, two_factor_service, test_user, sms_gateway):
        await two_factor_service.setup_sms(test_user.id, PHONE)
        wrong = "000000" if otp_from(sms_gateway) != "000000" else "111111"

        with pytest.raises(InvalidCodeError):
            await two_factor_service.verify_sms(test_user.id, wrong)

    @pytest.mark.asyncio
    async def test_verify_sms_without_setup(self, two_factor_service, test_user):
        with pytest.raises(NotSetUpError):
            await two_factor_service.verify_sms(test_user.id, "123456")

    @pytest.mark.asyncio
    async def test_gateway_failure_still_allows_verification(
        self, test_db, test_user, challenge_store, limiter, clock
    ):
        service = TwoFactorService(
            test_db,
            sms=SmsChallengeService(challenge_store, MockSmsGateway(fail=True), ttl_seconds=300, clock=clock),
            limiter=limiter,
            clock=clock,
        )

        with pytest.raises(SmsDeliveryError):
            await service.setup_sms(test_user.id, PHONE)

        recorded = await challenge_store.get(test_user.id)
        await service.verify_sms(test_user.id, recorded.otp)
        assert await state_of(service, test_user) == "ENABLED_SMS"

    @pytest.mark.asyncio
    async def test_switch_from_pending_totp_keeps_backup_codes(self, two_factor_service, test_user, sms_gateway):
        setup = await two_factor_service.setup_totp(test_user)
        await enable_sms(two_factor_service, test_user, sms_gateway)

        result = await two_factor_service.verify_login(test_user.id, setup["backup_codes"][0])

        assert result["backup_code_used"] is True


class TestSmsLogin:
    @pytest.mark.asyncio
    async def test_login_with_sms_code(self, two_factor_service, test_user, sms_gateway):
        await enable_sms(two_factor_service, test_user, sms_gateway)

        sent = await two_factor_service.send_login_sms(test_user.id)
        result = await two_factor_service.verify_login(test_user.id, otp_from(sms_gateway))

        assert sent["sent"] is True
        assert result == {"valid": True, "method": "SMS", "backup_code_used": False}

    @pytest.mark.asyncio
    async def test_send_login_sms_requires_sms(self, two_factor_service, test_user):
        await enable_totp(two_factor_service, test_user)

        with pytest.raises(NotSetUpError):
            await two_factor_service.send_login_sms(test_user.id)

    @pytest.mark.asyncio
    async def test_disable_sms_needs_no_code(self, two_factor_service, test_user, sms_gateway, test_db):
        await enable_sms(two_factor_service, test_user, sms_gateway)

        result = await two_factor_service.disable(test_user.id)

        assert result == {"disabled": True}
        record = await CredentialStore(test_db).load(test_user.id)
        assert record.state == TwoFactorState.DISABLED
        assert record.phone_number is None

    @pytest.mark.asyncio
    async def test_disable_totp_while_sms_active(self, two_factor_service, test_user, sms_gateway):
        await enable_sms(two_factor_service, test_user, sms_gateway)

        with pytest.raises(NotSetUpError):
            await two_factor_service.disable_totp(test_user.id, "123456")


class TestBackupCodes:
    @pytest.mark.asyncio
    async def test_regenerate_twice(self, two_factor_service, test_user):
        setup = await enable_totp(two_factor_service, test_user)

        first = await two_factor_service.regenerate_backup_codes(test_user.id)
        second = await two_factor_service.regenerate_backup_codes(test_user.id)

        assert len(first) == 5
        assert len(second) == 5
        assert set(first) != set(second)
        stale_codes = [c for c in (setup["backup_codes"][0], first[0]) if c not in second]
        for stale in stale_codes:
            with pytest.raises(InvalidCodeError):
                await two_factor_service.verify_login(test_user.id, stale)
        assert (await two_factor_service.verify_login(test_user.id, second[0]))["backup_code_used"] is True

    @pytest.mark.asyncio
    async def test_regenerate_requires_enabled(self, two_factor_service, test_user):
        with pytest.raises(NotSetUpError):
            await two_factor_service.regenerate_backup_codes(test_user.id)

    @pytest.mark.asyncio
    async def test_download(self, two_factor_service, test_user):
        setup = await enable_totp(two_factor_service, test_user)

        body = await two_factor_service.backup_codes_download(test_user.id)

        assert body == "\n".join(setup["backup_codes"])

    @pytest.mark.asyncio
    async def test_download_without_codes(self, two_factor_service, test_user):
        with pytest.raises(NotSetUpError):
            await two_factor_service.backup_codes_download(test_user.id)


class TestAttemptLimiting:
    @pytest.mark.asyncio
    async def test_lockout_after_repeated_failures(self, two_factor_service, test_user, wrong_totp_code):
        setup = await enable_totp(two_factor_service, test_user)
        wrong = wrong_totp_code(setup["secret"])

        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await two_factor_service.verify_login(test_user.id, wrong)

        with pytest.raises(TooManyAttemptsError):
            await two_factor_service.verify_login(test_user.id, pyotp.TOTP(setup["secret"]).now())

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, two_factor_service, test_user, wrong_totp_code):
        setup = await enable_totp(two_factor_service, test_user)
        totp = pyotp.TOTP(setup["secret"])
        wrong = wrong_totp_code(setup["secret"])

        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                await two_factor_service.verify_login(test_user.id, wrong)
        await two_factor_service.verify_login(test_user.id, totp.now())

        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                await two_factor_service.verify_login(test_user.id, wrong)
        await two_factor_service.verify_login(test_user.id, totp.now())

    @pytest.mark.asyncio
    async def test_parallel_wrong_codes_are_capped(
        self, two_factor_service, test_user, session_factory, sms_service, limiter, clock, wrong_totp_code
    ):
        setup = await enable_totp(two_factor_service, test_user)
        wrong = wrong_totp_code(setup["secret"])

        async def attempt() -> str:
            async with session_factory() as session:
                service = TwoFactorService(session, sms=sms_service, limiter=limiter, clock=clock)
                try:
                    await service.verify_login(test_user.id, wrong)
                except TwoFactorError as e:
                    return type(e).__name__
            return "verified"

        outcomes = Counter(await asyncio.gather(*(attempt() for _ in range(30))))

        assert outcomes == {"InvalidCodeError": 5, "TooManyAttemptsError": 25}

    @pytest.mark.asyncio
    async def test_expired_enrollment_sms_is_not_counted(self, two_factor_service, test_user, sms_gateway, clock):
        await two_factor_service.setup_sms(test_user.id, PHONE)
        clock.advance(5 * 60 + 1)

        for _ in range(7):
            with pytest.raises(ChallengeExpiredError):
                await two_factor_service.verify_sms(test_user.id, otp_from(sms_gateway))


class TestExpiredLoginSms:
    @pytest.mark.asyncio
    async def test_expired_code_is_reported_as_expired(self, two_factor_service, test_user, sms_gateway, clock):
        await enable_sms(two_factor_service, test_user, sms_gateway)
        await two_factor_service.send_login_sms(test_user.id)
        clock.advance(5 * 60 + 1)

        with pytest.raises(ChallengeExpiredError):
            await two_factor_service.verify_login(test_user.id, otp_from(sms_gateway))

    @pytest.mark.asyncio
    async def test_expired_code_does_not_count_towards_lockout(
        self, two_factor_service, test_user, sms_gateway, clock
    ):
        await enable_sms(two_factor_service, test_user, sms_gateway)
        await two_factor_service.send_login_sms(test_user.id)
        clock.advance(5 * 60 + 1)
        otp = otp_from(sms_gateway)

        for _ in range(7):
            with pytest.raises(ChallengeExpiredError):
                await two_factor_service.verify_login(test_user.id, otp)

    @pytest.mark.asyncio
    async def test_backup_code_still_works_while_sms_expired(
        self, two_factor_service, test_user, sms_gateway, clock
    ):
        await enable_sms(two_factor_service, test_user, sms_gateway)
        codes = await two_factor_service.regenerate_backup_codes(test_user.id)
        await two_factor_service.send_login_sms(test_user.id)
        clock.advance(5 * 60 + 1)

        result = await two_factor_service.verify_login(test_user.id, codes[0])

        assert result["backup_code_used"] is True

    @pytest.mark.asyncio
    async def test_wrong_code_after_fresh_sms_is_invalid(self, two_factor_service, test_user, sms_gateway):
        await enable_sms(two_factor_service, test_user, sms_gateway)
        await two_factor_service.send_login_sms(test_user.id)
        wrong = "000000" if otp_from(sms_gateway) != "000000" else "111111"

        with pytest.raises(InvalidCodeError):
            await two_factor_service.verify_login(test_user.id, wrong)
