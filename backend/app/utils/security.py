from typing import Any, Dict

import jwt

from app.config import Settings
from app.schemas.user import TokenPayload


def decode_access_token(token: str, settings: Settings) -> TokenPayload:
    """Verify a bearer token issued by the identity service.

    Raises ``jwt.InvalidTokenError`` (or a subclass) when the token is not valid.
    """
    payload: Dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    if not payload.get("sub"):
        raise jwt.InvalidTokenError("token has no subject")
    return TokenPayload(sub=str(payload["sub"]), exp=payload.get("exp"))


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials.strip()
