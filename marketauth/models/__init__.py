from .user import User
from .user_security import TwoFactorMethod, UserSecurity

__all__ = [
    "User",
    "UserSecurity",
    "TwoFactorMethod",
]
