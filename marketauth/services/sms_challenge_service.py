"""
SMS Challenge Service

Issues short-lived numeric OTPs keyed by user, delivers them through the
SMS gateway and verifies submissions before expiry.

Challenges are ephemeral and live in a ChallengeStore, never in the
relational database. Only one challenge exists per user; issuing a new
one replaces the previous one.
"""

import abc
import hmac
import json
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import redis.asyncio as redis

from marketauth.config import Settings, settings
from marketauth.exceptions import ChallengeExpiredError, InvalidCodeError, NoChallengeError, SmsDeliveryError
from marketauth.services.sms_gateway import SmsGateway, mask_phone_number

logger = logging.getLogger(__name__)

SMS_MESSAGE_TEMPLATE = "Your {issuer} 2FA code is: {otp}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SmsChallenge:
    otp: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_json(self) -> str:
        return json.dumps({"otp": self.otp, "expires_at": self.expires_at.isoformat()})

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SmsChallenge":
        data = json.loads(raw)
        return cls(otp=data["otp"], expires_at=datetime.fromisoformat(data["expires_at"]))


# ============== Challenge Stores ==============


class ChallengeStore(abc.ABC):
    """Keyed storage for the single live challenge of each user."""

    @abc.abstractmethod
    async def put(self, user_id: int, challenge: SmsChallenge, ttl_seconds: int) -> None: ...

    @abc.abstractmethod
    async def get(self, user_id: int) -> SmsChallenge | None: ...

    @abc.abstractmethod
    async def delete(self, user_id: int) -> None: ...


class InMemoryChallengeStore(ChallengeStore):
    """
    Process-local store.

    Challenges are lost on restart and are not shared between workers,
    use RedisChallengeStore for multi-instance deployments.
    """

    def __init__(self):
        self._challenges: dict[int, SmsChallenge] = {}
        self._lock = threading.Lock()

    async def put(self, user_id: int, challenge: SmsChallenge, ttl_seconds: int) -> None:
        # Expiry is checked at verification time, ttl is not enforced here
        with self._lock:
            self._challenges[user_id] = challenge

    async def get(self, user_id: int) -> SmsChallenge | None:
        with self._lock:
            return self._challenges.get(user_id)

    async def delete(self, user_id: int) -> None:
        with self._lock:
            self._challenges.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._challenges.clear()


class RedisChallengeStore(ChallengeStore):
    """Redis-backed store with a key TTL matching the challenge lifetime."""

    KEY_PREFIX = "2fa:sms:"

    # Keep expired challenges around briefly so late submissions report "expired"
    GRACE_SECONDS = 60

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisChallengeStore":
        return cls(redis.from_url(url, decode_responses=True))

    def _key(self, user_id: int) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def put(self, user_id: int, challenge: SmsChallenge, ttl_seconds: int) -> None:
        await self._redis.set(self._key(user_id), challenge.to_json(), ex=ttl_seconds + self.GRACE_SECONDS)

    async def get(self, user_id: int) -> SmsChallenge | None:
        raw = await self._redis.get(self._key(user_id))
        if raw is None:
            return None
        return SmsChallenge.from_json(raw)

    async def delete(self, user_id: int) -> None:
        await self._redis.delete(self._key(user_id))


_default_store: ChallengeStore | None = None


def get_challenge_store(config: Settings | None = None) -> ChallengeStore:
    """Return the process-wide challenge store selected by configuration."""
    global _default_store
    if _default_store is None:
        config = config or settings
        if config.sms_challenge_backend.lower() == "redis":
            logger.info("Using Redis SMS challenge store")
            _default_store = RedisChallengeStore.from_url(config.redis_url)
        else:
            _default_store = InMemoryChallengeStore()
    return _default_store


# ============== Challenge Service ==============


class SmsChallengeService:
    """Service for issuing and verifying SMS one-time passwords."""

    def __init__(
        self,
        store: ChallengeStore,
        gateway: SmsGateway,
        ttl_seconds: int | None = None,
        otp_length: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.ttl_seconds = settings.sms_otp_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.otp_length = settings.sms_otp_length if otp_length is None else otp_length
        self.clock = clock

    def generate_otp(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.otp_length))

    async def issue(self, user_id: int, phone: str) -> SmsChallenge:
        """
        Create a challenge for ``user_id`` and text it to ``phone``.

        The challenge is stored before sending, so a delivery failure
        (SmsDeliveryError) still leaves a verifiable challenge behind.
        """
        challenge = SmsChallenge(
            otp=self.generate_otp(),
            expires_at=self.clock() + timedelta(seconds=self.ttl_seconds),
        )
        await self.store.put(user_id, challenge, self.ttl_seconds)

        body = SMS_MESSAGE_TEMPLATE.format(issuer=settings.two_factor_issuer, otp=challenge.otp)
        try:
            await self.gateway.send(phone, body)
        except SmsDeliveryError:
            logger.warning(f"SMS challenge recorded for user {user_id} but delivery to {mask_phone_number(phone)} failed")
            raise

        logger.info(f"SMS challenge issued for user {user_id}")
        return challenge

    async def verify(self, user_id: int, submitted_otp: str | None) -> None:
        """
        Verify and consume the user's challenge.

        Raises:
            NoChallengeError: nothing was issued
            ChallengeExpiredError: the challenge is past its expiry
            InvalidCodeError: the code does not match
        """
        challenge = await self.store.get(user_id)
        if challenge is None:
            raise NoChallengeError()

        if challenge.is_expired(self.clock()):
            raise ChallengeExpiredError()

        if not hmac.compare_digest(challenge.otp, (submitted_otp or "").strip()):
            raise InvalidCodeError("Invalid OTP")

        await self.store.delete(user_id)
        logger.info(f"SMS challenge verified for user {user_id}")

    async def cancel(self, user_id: int) -> None:
        """Drop any outstanding challenge for the user."""
        await self.store.delete(user_id)
