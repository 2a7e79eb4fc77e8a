# services/auth.py
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from config.settings import AgentSettings, get_settings

ALGORITHM = "HS256"


@dataclass(frozen=True)
class RequestUser:
    id: str
    currency: str = "USD"


def _get_bearer_token(request: Request) -> str:
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth.split(" ", 1)[1].strip()


def decode_access_token(token: str, settings: AgentSettings) -> Dict[str, Any]:
    """
    Decode & verify JWT. Raises HTTPException(401) on failure.
    """
    if not settings.auth_jwt_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication is not configured")

    options: Dict[str, Any] = {}
    audience: Optional[str] = settings.auth_jwt_audience
    if not audience:
        options["verify_aud"] = False
    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[ALGORITHM],
            audience=audience,
            options=options,
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_user(
    request: Request,
    settings: AgentSettings = Depends(get_settings),
) -> RequestUser:
    payload = decode_access_token(_get_bearer_token(request), settings)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    currency = payload.get("currency")
    return RequestUser(id=str(sub), currency=currency if isinstance(currency, str) and currency else "USD")
