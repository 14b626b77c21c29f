"""Bearer token verification for the relay.

Tokens are issued elsewhere; the relay only checks the signature and
expiry and reads the identity out of the claims:

    sub   -> user id
    name  -> display name (optional)
"""
import logging
from typing import Optional

from jose import JWTError, jwt

from teamchat.config import get_config
from teamchat.errors import AuthError
from teamchat.schemas import Identity

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    if authorization.lower().startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX):].strip()
        return token or None
    return None


def verify_token(
    token: Optional[str],
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> Identity:
    """Decode a bearer token into the identity it carries.

    Args:
        token: The raw JWT.
        secret_key: Signing key. Defaults to ``secrets.jwt.secret_key``.
        algorithm: Signing algorithm. Defaults to ``secrets.jwt.algorithm``.

    Returns:
        Identity built from the ``sub`` and ``name`` claims.

    Raises:
        AuthError: If the token is missing, malformed, expired, or has no subject.
    """
    if not token:
        raise AuthError("Authentication error: no token provided")

    jwt_secrets = get_config().secrets.jwt
    try:
        claims = jwt.decode(
            token,
            secret_key or jwt_secrets.secret_key,
            algorithms=[algorithm or jwt_secrets.algorithm],
        )
    except JWTError as e:
        logger.info("[Auth] Rejected token: %s", e)
        raise AuthError(f"Authentication error: {e}") from e

    user_id = claims.get("sub")
    if not user_id:
        raise AuthError("Authentication error: token has no subject")

    return Identity(userId=str(user_id), userName=claims.get("name", ""))
