from typing import Any, Dict

from jose import ExpiredSignatureError, JWTError, jwt

from moto_chat.config import get_settings
from moto_chat.errors import AuthenticationError
from moto_chat.schemas.user import Principal
from moto_chat.services.access_policy import normalize_role


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except JWTError as exc:
        raise AuthenticationError("Invalid token") from exc


def principal_from_claims(claims: Dict[str, Any]) -> Principal:
    """Normalize verified claims into a Principal.

    Older tokens carry the user id as ``id`` or ``userId`` and the role as
    ``roles``; this is the only place those spellings are understood.
    """
    user_id = claims.get("sub") or claims.get("id") or claims.get("userId")
    if not user_id:
        raise AuthenticationError("Token has no subject")
    raw_role = claims.get("role", claims.get("roles"))
    return Principal(user_id=str(user_id), role=normalize_role(raw_role))


def authenticate_token(token: str | None) -> Principal:
    if not token or not token.strip():
        raise AuthenticationError("No token provided")
    return principal_from_claims(decode_access_token(token.strip()))


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None
