"""
TOTP Service

Issues shared secrets and checks time-based codes using pyotp.
"""

import binascii
import logging
from dataclasses import dataclass
from datetime import datetime

import pyotp

from marketauth.config import settings

logger = logging.getLogger(__name__)

# 32 base32 characters = 160 bits
SECRET_LENGTH = 32
CODE_DIGITS = 6
TIME_STEP = 30  # seconds


@dataclass(frozen=True)
class TotpSecret:
    secret: str
    provisioning_uri: str


class TOTPService:
    """Service for TOTP secret issuance and code verification."""

    def __init__(self, issuer: str | None = None, valid_window: int | None = None):
        self.issuer = issuer or settings.two_factor_issuer
        self.valid_window = settings.totp_valid_window if valid_window is None else valid_window

    def generate_secret(self, label: str) -> TotpSecret:
        """
        Generate a new random secret and its provisioning URI.

        Args:
            label: Account name shown in the authenticator app (usually the e-mail)
        """
        secret = pyotp.random_base32(length=SECRET_LENGTH)
        provisioning_uri = pyotp.TOTP(secret, digits=CODE_DIGITS, interval=TIME_STEP).provisioning_uri(
            name=label,
            issuer_name=self.issuer,
        )
        return TotpSecret(secret=secret, provisioning_uri=provisioning_uri)

    def verify(
        self,
        secret: str | None,
        submitted_code: str | None,
        time_skew_window: int | None = None,
        at: datetime | None = None,
    ) -> bool:
        """
        Check a submitted code against the current 30-second step.

        Steps within ``time_skew_window`` on either side are accepted.
        Malformed input never raises, it simply does not verify.
        """
        if not secret or not submitted_code:
            return False

        code = submitted_code.strip()
        if len(code) != CODE_DIGITS or not code.isdigit():
            return False

        window = self.valid_window if time_skew_window is None else time_skew_window
        try:
            totp = pyotp.TOTP(secret, digits=CODE_DIGITS, interval=TIME_STEP)
            return totp.verify(code, for_time=at, valid_window=window)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"TOTP verification failed on malformed secret: {e}")
            return False

    def code_at(self, secret: str, at: datetime | None = None) -> str:
        """Return the code valid for the step containing ``at`` (now by default)."""
        totp = pyotp.TOTP(secret, digits=CODE_DIGITS, interval=TIME_STEP)
        return totp.at(at) if at is not None else totp.now()
