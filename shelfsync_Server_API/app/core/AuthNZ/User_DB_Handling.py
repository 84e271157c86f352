# User_DB_Handling.py
# Description: Resolves the bearer token on a request to the user every sync operation is scoped to.
#
# Imports
import hmac
from typing import Optional
#
# 3rd-Party Libraries
from fastapi import Depends
from loguru import logger
from pydantic import BaseModel
#
# Local Imports
from shelfsync_Server_API.app.api.v1.API_Deps.v1_endpoint_deps import oauth2_scheme
from shelfsync_Server_API.app.core.config import settings
from shelfsync_Server_API.app.core.Security.Security import decode_access_token
from shelfsync_Server_API.app.core.Sync.exceptions import AuthenticationError

#######################################################################################################################


# --- User Model ---
class User(BaseModel):
    id: str
    username: str
    is_active: bool = True


def _single_user() -> User:
    return User(id=settings["SINGLE_USER_FIXED_ID"], username="single_user")


def resolve_user_from_token(token: Optional[str]) -> User:
    """
    Maps a bearer token to a User.

    - Single-user mode: the token must equal settings["SINGLE_USER_API_KEY"].
    - Multi-user mode: the token must be a valid JWT whose subject is the user id.

    Raises:
        AuthenticationError: token absent or invalid.
    """
    if not token:
        logger.warning("Request without a bearer token.")
        raise AuthenticationError()

    if settings["SINGLE_USER_MODE"]:
        if not hmac.compare_digest(token.encode("utf-8"), settings["SINGLE_USER_API_KEY"].encode("utf-8")):
            logger.warning(f"Single-User Mode: invalid bearer token '{token[:5]}...'")
            raise AuthenticationError()
        return _single_user()

    token_data = decode_access_token(token)
    if token_data is None or not token_data.user_id:
        logger.warning("Multi-User Mode: token decoding failed or user id missing.")
        raise AuthenticationError()
    logger.debug(f"Authenticated user {token_data.user_id} from JWT.")
    return User(id=token_data.user_id, username=token_data.user_id)


async def get_request_user(token: Optional[str] = Depends(oauth2_scheme)) -> User:
    """FastAPI dependency returning the authenticated User for the request."""
    return resolve_user_from_token(token)

#
# End of User_DB_Handling.py
#######################################################################################################################
