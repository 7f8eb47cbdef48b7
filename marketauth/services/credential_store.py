"""
Credential Store

Durable per-user 2FA configuration on top of the ``user_security`` table.

Records are returned as immutable ``UserSecurityRecord`` snapshots so the
state machine never works on a live ORM row. Writes are partial: only the
fields passed to ``save`` are overwritten, everything else is kept.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketauth.exceptions import CredentialsNotFoundError
from marketauth.models.user_security import TwoFactorMethod, UserSecurity
from marketauth.services.backup_code_service import BackupCodeConsumption, BackupCodeService

logger = logging.getLogger(__name__)

# Conditional backup-code updates that lose a race are re-read this many times
MAX_CONSUME_RETRIES = 3

# Record field -> column attribute on UserSecurity
FIELD_COLUMNS = {
    "enabled": "two_factor_enabled",
    "method": "two_factor_method",
    "totp_secret": "two_factor_secret",
    "backup_codes": "two_factor_backup_codes",
    "phone_number": "phone_number",
    "enabled_at": "enabled_at",
    "last_used_at": "last_used_at",
}


class TwoFactorState(str, enum.Enum):
    DISABLED = "DISABLED"
    PENDING_TOTP = "PENDING_TOTP"
    PENDING_SMS = "PENDING_SMS"
    ENABLED_TOTP = "ENABLED_TOTP"
    ENABLED_SMS = "ENABLED_SMS"


@dataclass(frozen=True)
class UserSecurityRecord:
    user_id: int
    enabled: bool = False
    method: TwoFactorMethod = TwoFactorMethod.NONE
    totp_secret: str | None = None
    backup_codes: list[str] = field(default_factory=list)
    phone_number: str | None = None
    enabled_at: datetime | None = None
    last_used_at: datetime | None = None

    @classmethod
    def from_model(cls, row: UserSecurity) -> "UserSecurityRecord":
        return cls(
            user_id=row.user_id,
            enabled=bool(row.two_factor_enabled),
            method=TwoFactorMethod(row.two_factor_method or TwoFactorMethod.NONE.value),
            totp_secret=row.two_factor_secret,
            backup_codes=BackupCodeService.deserialize(row.two_factor_backup_codes),
            phone_number=row.phone_number,
            enabled_at=row.enabled_at,
            last_used_at=row.last_used_at,
        )

    @property
    def state(self) -> TwoFactorState:
        """Derive the state machine position from the stored columns."""
        if self.enabled:
            if self.method == TwoFactorMethod.TOTP:
                return TwoFactorState.ENABLED_TOTP
            if self.method == TwoFactorMethod.SMS:
                return TwoFactorState.ENABLED_SMS
            return TwoFactorState.DISABLED

        if self.method == TwoFactorMethod.TOTP and self.totp_secret:
            return TwoFactorState.PENDING_TOTP
        if self.method == TwoFactorMethod.SMS and self.phone_number:
            return TwoFactorState.PENDING_SMS
        return TwoFactorState.DISABLED


class CredentialStore:
    """Reads and writes UserSecurity rows."""

    def __init__(self, db: AsyncSession, backup_codes: BackupCodeService | None = None):
        self.db = db
        self.backup_codes = backup_codes or BackupCodeService()

    async def load(self, user_id: int) -> UserSecurityRecord:
        record = await self.load_or_none(user_id)
        if record is None:
            raise CredentialsNotFoundError(user_id)
        return record

    async def load_or_none(self, user_id: int) -> UserSecurityRecord | None:
        row = await self._get_row(user_id)
        return UserSecurityRecord.from_model(row) if row else None

    async def save(self, user_id: int, **fields) -> UserSecurityRecord:
        """
        Upsert the security record for ``user_id``.

        Only the given fields are written; passing None clears a column.

        Raises:
            ValueError: if a field name is not a record field
        """
        unknown = set(fields) - set(FIELD_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown credential fields: {', '.join(sorted(unknown))}")

        row = await self._get_row(user_id)
        if row is None:
            row = UserSecurity(user_id=user_id, two_factor_enabled=False, two_factor_method=TwoFactorMethod.NONE.value)
            self.db.add(row)

        for name, value in fields.items():
            if name == "backup_codes":
                value = BackupCodeService.serialize(value)
            elif name == "method" and value is not None:
                value = TwoFactorMethod(value).value
            setattr(row, FIELD_COLUMNS[name], value)

        await self.db.commit()
        await self.db.refresh(row)
        return UserSecurityRecord.from_model(row)

    async def consume_backup_code(self, user_id: int, code: str | None) -> BackupCodeConsumption:
        """
        Atomically remove ``code`` from the user's backup codes.

        The write only lands if the stored list is still the one that was
        read, so two concurrent requests can never both consume one code.
        """
        for attempt in range(1, MAX_CONSUME_RETRIES + 1):
            raw = await self._read_backup_codes(user_id)
            consumption = self.backup_codes.consume(BackupCodeService.deserialize(raw), code)
            if not consumption.consumed:
                return consumption

            if await self._compare_and_set_backup_codes(user_id, raw, consumption.remaining_codes):
                logger.info(f"Backup code used for user {user_id}, {len(consumption.remaining_codes)} remaining")
                return consumption

            logger.info(f"Backup codes for user {user_id} changed concurrently, retrying ({attempt})")

        logger.warning(f"Giving up on backup code consumption for user {user_id} after {MAX_CONSUME_RETRIES} conflicts")
        return BackupCodeConsumption(consumed=False, remaining_codes=[])

    # ============== Private Methods ==============

    async def _get_row(self, user_id: int) -> UserSecurity | None:
        result = await self.db.execute(
            select(UserSecurity).where(UserSecurity.user_id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _read_backup_codes(self, user_id: int) -> str | None:
        result = await self.db.execute(
            select(UserSecurity.two_factor_backup_codes).where(UserSecurity.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _compare_and_set_backup_codes(self, user_id: int, expected: str | None, codes: list[str]) -> bool:
        stmt = (
            update(UserSecurity)
            .where(
                UserSecurity.user_id == user_id,
                UserSecurity.two_factor_backup_codes == expected,
            )
            .values(two_factor_backup_codes=BackupCodeService.serialize(codes))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1
