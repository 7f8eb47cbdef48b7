"""
User Security Model

Stores the two-factor configuration of a user: the active method,
the TOTP secret, the remaining backup codes and the SMS phone number.
"""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from marketauth.database import Base


class TwoFactorMethod(str, enum.Enum):
    NONE = "NONE"
    TOTP = "TOTP"
    SMS = "SMS"


class UserSecurity(Base):
    """
    Two-factor authentication record for a user (one row per user).

    While a setup is pending, ``two_factor_method`` already names the
    method being configured and ``two_factor_enabled`` stays False.
    """

    __tablename__ = "user_security"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    two_factor_method = Column(String(8), default=TwoFactorMethod.NONE.value, nullable=False)

    # Base32 TOTP secret
    two_factor_secret = Column(String(64), nullable=True)

    # JSON array of unused backup codes
    two_factor_backup_codes = Column(Text, nullable=True)

    phone_number = Column(String(32), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    enabled_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="security")

    def __repr__(self) -> str:
        return (
            f"<UserSecurity(user_id={self.user_id}, method={self.two_factor_method}, "
            f"enabled={self.two_factor_enabled})>"
        )
