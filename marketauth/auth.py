from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketauth.config import settings
from marketauth.database import get_db
from marketauth.exceptions import AuthenticationError
from marketauth.models.user import User

logger = logging.getLogger(__name__)

# Tokens are issued by the marketplace login flow; only validated here
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


# Function to create an access token with an expiration time
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if "sub" not in to_encode:
        raise ValueError("Missing 'sub' claim (user id) in token data.")

    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"sub": str(to_encode["sub"]), "exp": expire})

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


# Function to decode an access token, returns the user id in 'sub'
def decode_access_token(token: str) -> int:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        logger.warning("Token expired")
        raise AuthenticationError("Token has expired")
    except JWTError as e:
        logger.warning(f"JWT decoding failed: {str(e)}")
        raise AuthenticationError("Invalid token")

    subject = payload.get("sub")
    if subject is None:
        logger.warning("Token is missing 'sub' claim")
        raise AuthenticationError("Token does not contain 'sub' field.")

    try:
        return int(subject)
    except (TypeError, ValueError):
        logger.warning(f"Token 'sub' is not a user id: {subject!r}")
        raise AuthenticationError("Invalid token subject")


async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token to a user row."""
    user_id = decode_access_token(token)

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        logger.warning(f"Token subject {user_id} does not match any user")
        raise AuthenticationError()

    # Picked up by the access log
    request.state.user_id = user.id
    return user
