"""
Bearer-token verification (HS256 JWT signed with settings.secret_key).

Tokens are issued by the account service; this API only checks them and reads
the user id from the `userId` claim (falling back to `sub`).
"""
import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from callqa.config import settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def verify_bearer(authorization: str | None) -> int:
    """Return the user id carried by an `Authorization: Bearer <jwt>` header."""
    if not authorization:
        raise ValueError("missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise ValueError("invalid Authorization header")

    try:
        claims = jwt.decode(parts[1].strip(), settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info("JWT decode failed: %s", e)
        raise ValueError("invalid token") from e

    user_id = claims.get("userId", claims.get("sub"))
    try:
        return int(user_id)
    except (TypeError, ValueError) as e:
        raise ValueError("invalid token: missing user id") from e


def create_access_token(user_id: int, expires_in: timedelta = timedelta(hours=24)) -> str:
    now = datetime.now(timezone.utc)
    claims = {"userId": user_id, "sub": str(user_id), "iat": now, "exp": now + expires_in}
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)
