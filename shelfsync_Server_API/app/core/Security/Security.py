# /shelfsync_Server_API/app/core/Security/Security.py
#
# Description: Creation and validation of the JWT bearer tokens that scope sync requests to one user.
#
# Imports
from datetime import datetime, timedelta, timezone
from typing import Optional

# 3rd-Party Libraries
import jwt  # PyJWT
from loguru import logger
from pydantic import BaseModel

# Local Imports
from shelfsync_Server_API.app.core.config import settings

#######################################################################################################################


# Pydantic model for data extracted from the token payload
class TokenData(BaseModel):
    user_id: Optional[str] = None


def create_access_token(user_id: str, expires_delta_minutes: Optional[int] = None) -> str:
    """
    Creates a JWT access token whose subject is the user id.

    Raises:
        ValueError: If user_id is empty.
    """
    if not user_id:
        logger.error("Attempted to create token without a user id.")
        raise ValueError("A user id is required to create an access token.")

    minutes = expires_delta_minutes if expires_delta_minutes is not None else settings["ACCESS_TOKEN_EXPIRE_MINUTES"]
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "exp": now + timedelta(minutes=minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings["JWT_SECRET_KEY"], algorithm=settings["JWT_ALGORITHM"])


def decode_access_token(token: str) -> Optional[TokenData]:
    """Decodes and validates a JWT. Returns None when the token is expired or invalid."""
    try:
        payload = jwt.decode(token, settings["JWT_SECRET_KEY"], algorithms=[settings["JWT_ALGORITHM"]])
    except jwt.ExpiredSignatureError:
        logger.info("Token has expired.")
        return None
    except jwt.PyJWTError as e:
        logger.warning(f"JWT validation error: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Token payload missing 'sub' (user_id).")
        return None
    return TokenData(user_id=str(user_id))

#
# End of Security.py
#######################################################################################################################
