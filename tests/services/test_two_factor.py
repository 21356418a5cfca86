"""Tests for 2FA provisioning, verification and the credential lifecycle."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pyotp
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from twofactor.core.exceptions import (
    AlreadyEnabledError,
    InvalidCodeError,
    InvalidTransitionError,
    MalformedInputError,
    NotConfiguredError,
    StorageFailureError,
)
from twofactor.db.base import Base
from twofactor.services.backup_codes import hash_backup_code
from twofactor.services.credential_state import VerifyAction
from twofactor.services.credential_store import CredentialStore
from twofactor.services.totp import decode_base32
from twofactor.services.two_factor import TwoFactorService, normalize_candidate


def totp_at(secret: str, timestamp: float) -> str:
    return pyotp.TOTP(secret).at(timestamp)


async def enable(service: TwoFactorService, user_id: str, clock):
    provisioned = await service.setup(user_id, "test@example.com")
    await service.verify(user_id, totp_at(provisioned.secret, clock()), VerifyAction.ENABLE)
    return provisioned


class TestNormalizeCandidate:
    def test_totp_code(self):
        assert normalize_candidate(" 123456 ") == "123456"

    def test_backup_code_is_uppercased(self):
        assert normalize_candidate("abcd1234") == "ABCD1234"

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "ABCD-1234", "XYZW1234", "123456789"])
    def test_malformed(self, code):
        with pytest.raises(MalformedInputError):
            normalize_candidate(code)


class TestSetup:
    @pytest.mark.asyncio
    async def test_setup_creates_pending_credential(self, service, store, user_id):
        provisioned = await service.setup(user_id, "test@example.com")

        assert len(provisioned.secret) == 32
        assert len(decode_base32(provisioned.secret)) == 20
        assert provisioned.otp_auth_uri.startswith("otpauth://totp/")
        assert "test%40example.com" in provisioned.otp_auth_uri
        assert f"secret={provisioned.secret}" in provisioned.otp_auth_uri
        assert provisioned.qr_code_url.startswith("https://api.qrserver.com/v1/create-qr-code/?size=200x200&data=otpauth")
        assert len(provisioned.backup_codes) == 10

        credential = await store.get(user_id)
        assert credential.totp_secret == provisioned.secret
        assert credential.totp_enabled is False
        assert credential.version == 1
        assert credential.backup_codes == [hash_backup_code(c) for c in provisioned.backup_codes]

    @pytest.mark.asyncio
    async def test_store_never_holds_plaintext_backup_codes(self, service, store, user_id):
        provisioned = await service.setup(user_id)

        credential = await store.get(user_id)
        assert not set(provisioned.backup_codes) & set(credential.backup_codes)

    @pytest.mark.asyncio
    async def test_setup_without_account_uses_generic_label(self, service, user_id):
        provisioned = await service.setup(user_id)
        assert ":user?" in provisioned.otp_auth_uri

    @pytest.mark.asyncio
    async def test_setup_again_overwrites_secret_and_codes(self, service, store, user_id):
        first = await service.setup(user_id)
        second = await service.setup(user_id)

        credential = await store.get(user_id)
        assert second.secret != first.secret
        assert credential.totp_secret == second.secret
        assert credential.backup_codes == [hash_backup_code(c) for c in second.backup_codes]
        assert credential.version == 2

    @pytest.mark.asyncio
    async def test_reprovision_while_enabled_returns_to_pending(self, service, store, user_id, clock):
        await enable(service, user_id, clock)

        provisioned = await service.setup(user_id)

        credential = await store.get(user_id)
        assert credential.totp_enabled is False
        assert credential.totp_secret == provisioned.secret

    @pytest.mark.asyncio
    async def test_reprovision_while_enabled_can_be_refused(self, store, user_id, clock):
        service = TwoFactorService(store, clock=clock, allow_reprovision=False)
        original = await enable(service, user_id, clock)

        with pytest.raises(AlreadyEnabledError):
            await service.setup(user_id)

        credential = await store.get(user_id)
        assert credential.totp_enabled is True
        assert credential.totp_secret == original.secret


class TestVerifyTotp:
    @pytest.mark.asyncio
    async def test_enable_with_correct_code(self, service, store, user_id, clock):
        provisioned = await service.setup(user_id)

        result = await service.verify(user_id, totp_at(provisioned.secret, clock()), VerifyAction.ENABLE)

        assert result.verified is True
        assert result.used_backup_code is False
        assert result.remaining_backup_codes is None
        credential = await store.get(user_id)
        assert credential.totp_enabled is True
        assert credential.totp_secret == provisioned.secret
        assert len(credential.backup_codes) == 10

    @pytest.mark.asyncio
    async def test_enable_with_wrong_code_stays_pending(self, service, store, user_id, clock):
        provisioned = await service.setup(user_id)
        wrong = totp_at(provisioned.secret, clock() + 300)

        with pytest.raises(InvalidCodeError):
            await service.verify(user_id, wrong, VerifyAction.ENABLE)

        credential = await store.get(user_id)
        assert credential.totp_enabled is False
        assert credential.version == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("drift", [-30, -1, 0, 29, 30, 59])
    async def test_accepts_adjacent_steps(self, service, user_id, clock, drift):
        provisioned = await service.setup(user_id)
        code = totp_at(provisioned.secret, clock() + drift)

        result = await service.verify(user_id, code)

        assert result.verified is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("elapsed", [0, 29, 30, 59])
    async def test_code_stays_valid_through_next_step(self, service, user_id, clock, elapsed):
        provisioned = await service.setup(user_id)
        code = totp_at(provisioned.secret, clock())

        clock.now += elapsed
        result = await service.verify(user_id, code)

        assert result.verified is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("drift", [-60, -31, 60, 89])
    async def test_rejects_codes_outside_window(self, service, user_id, clock, drift):
        provisioned = await service.setup(user_id)
        code = totp_at(provisioned.secret, clock() + drift)

        with pytest.raises(InvalidCodeError):
            await service.verify(user_id, code)

    @pytest.mark.asyncio
    async def test_plain_challenge_does_not_write(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        before = await store.get(user_id)
        version = before.version

        result = await service.verify(user_id, totp_at(provisioned.secret, clock()))

        assert result.verified is True
        after = await store.get(user_id)
        assert after.version == version

    @pytest.mark.asyncio
    async def test_enable_when_already_enabled_is_a_no_op(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        version = (await store.get(user_id)).version

        result = await service.verify(user_id, totp_at(provisioned.secret, clock()), VerifyAction.ENABLE)

        assert result.verified is True
        credential = await store.get(user_id)
        assert credential.totp_enabled is True
        assert credential.version == version

    @pytest.mark.asyncio
    async def test_not_configured(self, service, user_id):
        with pytest.raises(NotConfiguredError):
            await service.verify(user_id, "123456")

    @pytest.mark.asyncio
    async def test_malformed_input_checked_before_store(self, service, user_id):
        # Unknown user: shape is rejected before the row is looked up
        with pytest.raises(MalformedInputError):
            await service.verify(user_id, "not-a-code")

    @pytest.mark.asyncio
    async def test_corrupt_secret_falls_through_to_invalid_code(self, service, store, user_id):
        await store.upsert_provisioned(user_id, "!!!!", [])

        with pytest.raises(InvalidCodeError):
            await service.verify(user_id, "123456")


class TestVerifyBackupCode:
    @pytest.mark.asyncio
    async def test_consumes_code_on_plain_challenge(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        code = provisioned.backup_codes[3]

        result = await service.verify(user_id, code)

        assert result.verified is True
        assert result.used_backup_code is True
        assert result.remaining_backup_codes == 9
        credential = await store.get(user_id)
        expected = [hash_backup_code(c) for c in provisioned.backup_codes if c != code]
        assert credential.backup_codes == expected
        assert credential.totp_enabled is True

    @pytest.mark.asyncio
    async def test_backup_code_is_single_use(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        code = provisioned.backup_codes[0]

        await service.verify(user_id, code)
        with pytest.raises(InvalidCodeError):
            await service.verify(user_id, code)

        credential = await store.get(user_id)
        assert len(credential.backup_codes) == 9

    @pytest.mark.asyncio
    async def test_lowercase_backup_code_accepted(self, service, user_id, clock):
        provisioned = await enable(service, user_id, clock)

        result = await service.verify(user_id, provisioned.backup_codes[1].lower())

        assert result.used_backup_code is True

    @pytest.mark.asyncio
    async def test_unknown_backup_code_rejected(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        unknown = "00000000" if "00000000" not in provisioned.backup_codes else "11111111"

        with pytest.raises(InvalidCodeError):
            await service.verify(user_id, unknown)

        credential = await store.get(user_id)
        assert len(credential.backup_codes) == 10

    @pytest.mark.asyncio
    async def test_enable_with_backup_code_is_one_write(self, service, store, user_id):
        provisioned = await service.setup(user_id)

        result = await service.verify(user_id, provisioned.backup_codes[0], VerifyAction.ENABLE)

        assert result.used_backup_code is True
        assert result.remaining_backup_codes == 9
        credential = await store.get(user_id)
        assert credential.totp_enabled is True
        assert len(credential.backup_codes) == 9
        assert credential.version == 2


class TestDisable:
    @pytest.mark.asyncio
    async def test_disable_with_totp_clears_credential(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)

        result = await service.verify(user_id, totp_at(provisioned.secret, clock()), VerifyAction.DISABLE)

        assert result.verified is True
        credential = await store.get(user_id)
        assert credential.totp_enabled is False
        assert credential.totp_secret is None
        assert credential.backup_codes == []

    @pytest.mark.asyncio
    async def test_disable_with_backup_code(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)

        result = await service.verify(user_id, provisioned.backup_codes[0], VerifyAction.DISABLE)

        assert result.used_backup_code is True
        assert result.remaining_backup_codes == 0
        credential = await store.get(user_id)
        assert credential.totp_secret is None
        assert credential.backup_codes == []

    @pytest.mark.asyncio
    async def test_disable_with_wrong_code_keeps_enabled(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)

        with pytest.raises(InvalidCodeError):
            await service.verify(user_id, totp_at(provisioned.secret, clock() + 600), VerifyAction.DISABLE)

        credential = await store.get(user_id)
        assert credential.totp_enabled is True
        assert credential.totp_secret == provisioned.secret

    @pytest.mark.asyncio
    async def test_disable_from_pending_is_rejected_without_consuming(self, service, store, user_id):
        provisioned = await service.setup(user_id)

        with pytest.raises(InvalidTransitionError):
            await service.verify(user_id, provisioned.backup_codes[0], VerifyAction.DISABLE)

        credential = await store.get(user_id)
        assert len(credential.backup_codes) == 10
        assert credential.totp_secret == provisioned.secret

    @pytest.mark.asyncio
    async def test_verify_after_disable_requires_setup(self, service, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        await service.verify(user_id, totp_at(provisioned.secret, clock()), VerifyAction.DISABLE)

        with pytest.raises(NotConfiguredError):
            await service.verify(user_id, totp_at(provisioned.secret, clock()))

    @pytest.mark.asyncio
    async def test_setup_after_disable_starts_over(self, service, store, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        await service.verify(user_id, totp_at(provisioned.secret, clock()), VerifyAction.DISABLE)

        again = await service.setup(user_id)

        credential = await store.get(user_id)
        assert credential.totp_secret == again.secret
        assert credential.totp_enabled is False
        assert len(credential.backup_codes) == 10


class TestStatus:
    @pytest.mark.asyncio
    async def test_unknown_user(self, service, user_id):
        status = await service.status(user_id)
        assert status.enabled is False
        assert status.backup_codes_count == 0
        assert status.has_backup_codes is False

    @pytest.mark.asyncio
    async def test_enabled_user_with_consumed_code(self, service, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        await service.verify(user_id, provisioned.backup_codes[0])

        status = await service.status(user_id)
        assert status.enabled is True
        assert status.backup_codes_count == 9
        assert status.has_backup_codes is True


class TestConcurrentConsumption:
    @pytest.mark.asyncio
    async def test_stale_snapshot_cannot_reuse_backup_code(self, service, store, test_session, user_id, clock):
        provisioned = await enable(service, user_id, clock)
        code = provisioned.backup_codes[0]

        # Both "requests" read the row before either writes
        snapshot = await store.get(user_id)
        test_session.expunge(snapshot)

        first = await service.verify_credential(snapshot, code)
        assert first.used_backup_code is True

        # The guarded write does not refresh the detached row
        assert len(snapshot.backup_codes) == 10
        with pytest.raises(InvalidCodeError):
            await service.verify_credential(snapshot, code)

        credential = await store.get(user_id)
        assert len(credential.backup_codes) == 9

    @pytest.mark.asyncio
    async def test_stale_snapshot_with_other_code_succeeds_after_reload(
        self, service, store, test_session, user_id, clock
    ):
        provisioned = await enable(service, user_id, clock)
        snapshot = await store.get(user_id)
        test_session.expunge(snapshot)

        await service.verify(user_id, provisioned.backup_codes[0])

        result = await service.verify_credential(snapshot, provisioned.backup_codes[1])

        assert result.used_backup_code is True
        assert result.remaining_backup_codes == 8

    @pytest.mark.asyncio
    async def test_compare_and_set_rejects_stale_version(self, service, store, user_id):
        await service.setup(user_id)

        assert await store.compare_and_set(user_id, 1, {"totp_enabled": True}) is True
        assert await store.compare_and_set(user_id, 1, {"totp_enabled": False}) is False

        credential = await store.get(user_id)
        assert credential.totp_enabled is True
        assert credential.version == 2

    @pytest.mark.asyncio
    async def test_simultaneous_requests_same_backup_code(self, tmp_path, clock, user_id):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        try:
            async with sessions() as setup_session:
                setup_service = TwoFactorService(CredentialStore(setup_session), clock=clock)
                provisioned = await enable(setup_service, user_id, clock)
            code = provisioned.backup_codes[0]

            async def attempt():
                async with sessions() as session:
                    return await TwoFactorService(CredentialStore(session), clock=clock).verify(user_id, code)

            results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

            successes = [r for r in results if not isinstance(r, Exception)]
            failures = [r for r in results if isinstance(r, Exception)]
            assert len(successes) == 1
            assert successes[0].remaining_backup_codes == 9
            assert len(failures) == 1
            assert isinstance(failures[0], InvalidCodeError)

            async with sessions() as check_session:
                credential = await CredentialStore(check_session).get(user_id)
                assert len(credential.backup_codes) == 9
        finally:
            await engine.dispose()


class TestStorageFailure:
    @pytest.mark.asyncio
    async def test_read_failure_is_storage_failure(self, service, test_session, user_id):
        error = OperationalError("SELECT", {}, Exception("connection lost"))
        with patch.object(test_session, "execute", AsyncMock(side_effect=error)):
            with pytest.raises(StorageFailureError):
                await service.verify(user_id, "123456")

    @pytest.mark.asyncio
    async def test_setup_write_failure_is_storage_failure(self, service, test_session, user_id):
        no_row = MagicMock()
        no_row.scalar_one_or_none.return_value = None
        error = OperationalError("INSERT", {}, Exception("disk full"))
        with patch.object(test_session, "execute", AsyncMock(side_effect=[no_row, error])):
            with pytest.raises(StorageFailureError):
                await service.setup(user_id)
