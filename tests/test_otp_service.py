"""
Tests for the OTP lifecycle manager.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from security_engine.config import DEFAULT_OTP_HASH_SECRET, settings
from security_engine.exceptions import (
    AccountLocked,
    InvalidOTPFormat,
    InvalidPhoneNumber,
    MissingOTP,
    NoPendingChallenge,
    OTPExpired,
    RateLimitExceeded,
    ResendFailed,
)
from security_engine.services.face_profile_service import FACE_LOCKOUT_SCOPE
from security_engine.services.otp_service import OTPManager, generate_code, get_otp_manager, otp_lockout_scope

PHONE = "+15551234567"
WRONG_CODE = "000000"


class TestGenerateCode:

    def test_six_digits(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999


class TestOTPManager:
    """Test cases for OTPManager."""

    class TestGenerate:
        """Tests for code generation and delivery."""

        @pytest.mark.asyncio
        async def test_generate_success(self, otp_manager, sms_provider, db_manager, clock):
            result = await otp_manager.generate("user_1", "shift_start", PHONE)

            assert result.delivered
            assert result.expires_at == clock.now + otp_manager.ttl
            assert result.phone_number_masked.endswith("4567")
            assert "555123" not in result.phone_number_masked

            message = sms_provider.messages[0]
            assert message.phone_number == PHONE
            assert message.purpose == "shift_start"
            assert message.code in message.render()
            assert "start your shift" in message.render()

            challenge = await db_manager.otp_challenges.get("user_1", "shift_start")
            assert challenge.id == result.challenge_id
            assert challenge.attempts == 0
            assert challenge.max_attempts == 3

        @pytest.mark.asyncio
        async def test_only_hash_is_stored(self, otp_manager, sms_provider, db_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE)

            challenge = await db_manager.otp_challenges.get("user_1", "shift_start")
            assert challenge.code_hash != sms_provider.last_code
            assert sms_provider.last_code not in challenge.code_hash
            assert len(challenge.code_hash) == 64

        @pytest.mark.asyncio
        @pytest.mark.parametrize("phone", ["", "5551234567", "+0123456", "+1 555 123 4567", "+1234567890123456"])
        async def test_invalid_phone_number(self, otp_manager, sms_provider, phone):
            with pytest.raises(InvalidPhoneNumber):
                await otp_manager.generate("user_1", "shift_start", phone)

            assert sms_provider.messages == []

        @pytest.mark.asyncio
        async def test_new_code_supersedes_previous(self, otp_manager, sms_provider):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            first_code = sms_provider.last_code
            await otp_manager.generate("user_1", "shift_start", PHONE)
            second_code = sms_provider.last_code

            if first_code != second_code:
                result = await otp_manager.verify("user_1", first_code, "shift_start")
                assert not result.success

            assert (await otp_manager.verify("user_1", second_code, "shift_start")).success

        @pytest.mark.asyncio
        async def test_fourth_generation_rate_limited(self, otp_manager, clock):
            for _ in range(3):
                await otp_manager.generate("user_1", "shift_start", PHONE)

            clock.advance(minutes=10)
            with pytest.raises(RateLimitExceeded) as exc_info:
                await otp_manager.generate("user_1", "shift_start", PHONE)
            assert exc_info.value.retry_after == 300

            clock.advance(minutes=5)
            await otp_manager.generate("user_1", "shift_start", PHONE)

        @pytest.mark.asyncio
        async def test_rate_limit_is_per_purpose(self, otp_manager):
            for _ in range(3):
                await otp_manager.generate("user_1", "shift_start", PHONE)

            await otp_manager.generate("user_1", "shift_end", PHONE)

        @pytest.mark.asyncio
        async def test_delivery_failure_does_not_fail_generation(self, otp_manager, sms_provider, db_manager):
            sms_provider.fail = True

            result = await otp_manager.generate("user_1", "shift_start", PHONE)

            assert not result.delivered
            assert await db_manager.otp_challenges.get("user_1", "shift_start") is not None
            events = await db_manager.audit_events.list_for_owner("user_1")
            assert events[0].outcome == "delivery_failed"

        @pytest.mark.asyncio
        async def test_provider_exception_is_tolerated(self, otp_manager, sms_provider):
            sms_provider.send = AsyncMock(side_effect=RuntimeError("network down"))

            result = await otp_manager.generate("user_1", "shift_start", PHONE)

            assert not result.delivered

    class TestVerify:
        """Tests for code verification and lockout."""

        @pytest.mark.asyncio
        async def test_correct_code_succeeds_once(self, otp_manager, sms_provider, clock):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            code = sms_provider.last_code

            result = await otp_manager.verify("user_1", code, "shift_start")

            assert result.success
            assert result.authorized_until == clock.now + otp_manager.session_validity

            with pytest.raises(NoPendingChallenge):
                await otp_manager.verify("user_1", code, "shift_start")

        @pytest.mark.asyncio
        async def test_wrong_code_reports_remaining_attempts(self, otp_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE)

            first = await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            second = await otp_manager.verify("user_1", WRONG_CODE, "shift_start")

            assert not first.success
            assert first.remaining_attempts == 2
            assert second.remaining_attempts == 1

        @pytest.mark.asyncio
        async def test_third_wrong_code_locks(self, otp_manager, sms_provider, db_manager, clock):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            code = sms_provider.last_code

            await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            with pytest.raises(AccountLocked) as exc_info:
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            assert exc_info.value.retry_after == 900

            challenge = await db_manager.otp_challenges.get("user_1", "shift_start")
            assert challenge.attempts == 3
            assert challenge.lockout_until == clock.now + otp_manager.lockout_duration

            # The correct code is refused during the lockout
            with pytest.raises(AccountLocked):
                await otp_manager.verify("user_1", code, "shift_start")

        @pytest.mark.asyncio
        async def test_lockout_survives_new_challenge(self, otp_manager, clock):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            for _ in range(2):
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            with pytest.raises(AccountLocked):
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")

            with pytest.raises(AccountLocked):
                await otp_manager.generate("user_1", "shift_start", PHONE)

            clock.advance(minutes=15)
            await otp_manager.generate("user_1", "shift_start", PHONE)

        @pytest.mark.asyncio
        async def test_lockout_is_per_purpose(self, otp_manager, sms_provider):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            for _ in range(2):
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            with pytest.raises(AccountLocked):
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")

            await otp_manager.generate("user_1", "shift_end", PHONE)
            assert (await otp_manager.verify("user_1", sms_provider.last_code, "shift_end")).success

        @pytest.mark.asyncio
        async def test_lockout_is_independent_of_face_lockout(self, otp_manager, face_manager, sample_angles):
            await face_manager.register("user_1", sample_angles, consent=True)

            # An OTP purpose may share its name with the face verification purpose
            await otp_manager.generate("user_1", "face_verification", PHONE)
            for _ in range(2):
                await otp_manager.verify("user_1", WRONG_CODE, "face_verification")
            with pytest.raises(AccountLocked):
                await otp_manager.verify("user_1", WRONG_CODE, "face_verification")

            assert (await face_manager.verify("user_1", sample_angles[0]["vector"], 0.9)).success

            for _ in range(3):
                await face_manager.verify("user_1", [-0.1, -0.2, -0.3, -0.4], 0.9)
            await otp_manager.generate("user_1", "shift_start", PHONE)
            assert (await otp_manager.get_status("user_1", "shift_start"))["locked_until"] is None
            assert otp_lockout_scope("face_verification") != FACE_LOCKOUT_SCOPE

        @pytest.mark.asyncio
        async def test_concurrent_wrong_codes_lock_exactly_once(self, otp_manager, db_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE)

            results = await asyncio.gather(
                *[otp_manager.verify("user_1", WRONG_CODE, "shift_start") for _ in range(3)],
                return_exceptions=True
            )

            assert sum(isinstance(r, AccountLocked) for r in results) == 1
            challenge = await db_manager.otp_challenges.get("user_1", "shift_start")
            assert challenge.attempts == 3

        @pytest.mark.asyncio
        async def test_expired_code(self, otp_manager, sms_provider, clock):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            clock.advance(minutes=5)

            with pytest.raises(OTPExpired):
                await otp_manager.verify("user_1", sms_provider.last_code, "shift_start")

        @pytest.mark.asyncio
        async def test_no_challenge(self, otp_manager):
            with pytest.raises(NoPendingChallenge):
                await otp_manager.verify("user_1", "123456", "shift_start")

        @pytest.mark.asyncio
        @pytest.mark.parametrize("code", [None, "", "   "])
        async def test_missing_code(self, otp_manager, db_manager, code):
            db_manager.otp_challenges.get = AsyncMock()

            with pytest.raises(MissingOTP):
                await otp_manager.verify("user_1", code, "shift_start")

            db_manager.otp_challenges.get.assert_not_called()

        @pytest.mark.asyncio
        @pytest.mark.parametrize("code", ["12345", "1234567", "12a456", " 123456", "١٢٣٤٥٦"])
        async def test_bad_format_rejected_before_storage(self, otp_manager, db_manager, code):
            db_manager.otp_challenges.get = AsyncMock()

            with pytest.raises(InvalidOTPFormat):
                await otp_manager.verify("user_1", code, "shift_start")

            db_manager.otp_challenges.get.assert_not_called()

        @pytest.mark.asyncio
        async def test_bad_format_does_not_count_as_attempt(self, otp_manager, db_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE)

            with pytest.raises(InvalidOTPFormat):
                await otp_manager.verify("user_1", "12345", "shift_start")

            challenge = await db_manager.otp_challenges.get("user_1", "shift_start")
            assert challenge.attempts == 0

    class TestLifecycle:
        """Tests for resend, invalidate, status and administration."""

        @pytest.mark.asyncio
        async def test_resend_uses_stored_phone_number(self, otp_manager, sms_provider):
            await otp_manager.generate("user_1", "shift_start", PHONE)

            result = await otp_manager.resend("user_1", "shift_start")

            assert result.delivered
            assert len(sms_provider.messages) == 2
            assert sms_provider.messages[1].phone_number == PHONE
            assert (await otp_manager.verify("user_1", sms_provider.last_code, "shift_start")).success

        @pytest.mark.asyncio
        async def test_resend_without_challenge(self, otp_manager):
            with pytest.raises(ResendFailed):
                await otp_manager.resend("user_1", "shift_start")

        @pytest.mark.asyncio
        async def test_resend_shares_generation_limit(self, otp_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            await otp_manager.resend("user_1", "shift_start")
            await otp_manager.resend("user_1", "shift_start")

            with pytest.raises(RateLimitExceeded):
                await otp_manager.resend("user_1", "shift_start")

        @pytest.mark.asyncio
        async def test_invalidate_is_idempotent(self, otp_manager, sms_provider):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            code = sms_provider.last_code

            assert await otp_manager.invalidate("user_1", "shift_start")
            assert not await otp_manager.invalidate("user_1", "shift_start")

            with pytest.raises(NoPendingChallenge):
                await otp_manager.verify("user_1", code, "shift_start")

        @pytest.mark.asyncio
        async def test_status(self, otp_manager, clock):
            assert (await otp_manager.get_status("user_1", "shift_start"))["exists"] is False

            await otp_manager.generate("user_1", "shift_start", PHONE)
            await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            clock.advance(seconds=60)

            status = await otp_manager.get_status("user_1", "shift_start")

            assert status["exists"] is True
            assert status["verified"] is False
            assert status["expired"] is False
            assert status["attempts"] == 1
            assert status["remaining_attempts"] == 2
            assert status["expires_in_seconds"] == 240
            assert "code_hash" not in status

        @pytest.mark.asyncio
        async def test_authorization_window(self, otp_manager, sms_provider, clock):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            assert not await otp_manager.is_authorized("user_1", "shift_start")

            await otp_manager.verify("user_1", sms_provider.last_code, "shift_start")
            assert await otp_manager.is_authorized("user_1", "shift_start")
            assert not await otp_manager.is_authorized("user_1", "shift_end")

            clock.advance(minutes=30)
            assert not await otp_manager.is_authorized("user_1", "shift_start")

        @pytest.mark.asyncio
        async def test_unlock(self, otp_manager, sms_provider, db_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            for _ in range(2):
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")
            with pytest.raises(AccountLocked):
                await otp_manager.verify("user_1", WRONG_CODE, "shift_start")

            assert await otp_manager.unlock("user_1", "shift_start", performed_by="admin_7")

            assert await db_manager.otp_challenges.get("user_1", "shift_start") is None
            with pytest.raises(NoPendingChallenge):
                await otp_manager.verify("user_1", "123456", "shift_start")

        @pytest.mark.asyncio
        async def test_cleanup_expired_keeps_locked_challenges(self, otp_manager, db_manager, clock):
            await otp_manager.generate("user_1", "shift_start", PHONE)
            await otp_manager.generate("user_2", "shift_start", PHONE)
            for _ in range(2):
                await otp_manager.verify("user_2", WRONG_CODE, "shift_start")
            with pytest.raises(AccountLocked):
                await otp_manager.verify("user_2", WRONG_CODE, "shift_start")

            clock.advance(minutes=6)
            deleted = await otp_manager.cleanup_expired()

            assert deleted == 1
            assert await db_manager.otp_challenges.get("user_1", "shift_start") is None
            assert await db_manager.otp_challenges.get("user_2", "shift_start") is not None

        @pytest.mark.asyncio
        async def test_audit_trail(self, otp_manager, sms_provider, db_manager):
            await otp_manager.generate("user_1", "shift_start", PHONE, device={"platform": "web"})
            await otp_manager.verify("user_1", sms_provider.last_code, "shift_start", device={"platform": "web"})

            events = await db_manager.audit_events.list_for_owner("user_1")
            actions = {(e.action, e.outcome) for e in events}

            assert ("otp_generate", "success") in actions
            assert ("otp_verify", "accepted") in actions
            assert all("code" not in e.detail for e in events)
            assert all(e.fingerprint is not None for e in events)


def test_get_otp_manager_singleton():
    assert get_otp_manager() is get_otp_manager()


class TestHashSecret:

    def test_default_secret_warns(self, db_manager, sms_provider, caplog):
        with patch.object(settings, "otp_hash_secret", DEFAULT_OTP_HASH_SECRET):
            OTPManager(db_manager=db_manager, sms_provider=sms_provider)

        assert "OTP_HASH_SECRET not configured" in caplog.text

    def test_configured_secret_is_silent(self, db_manager, sms_provider, caplog):
        OTPManager(db_manager=db_manager, sms_provider=sms_provider, hash_secret="deployment-secret")

        assert "OTP_HASH_SECRET" not in caplog.text
