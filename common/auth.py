from __future__ import annotations

from typing import Any, Dict

import jwt
from fastapi import Header, HTTPException, status

from .secrets import get_json_secret, get_secret


def _forbidden() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def _decode_jwt(token: str) -> Dict[str, Any]:
    secret = get_secret("JWT_SECRET")
    if not secret:
        raise _forbidden()
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.PyJWTError as exc:
        raise _forbidden() from exc


def require_token(authorization: str | None = Header(None)) -> Dict[str, Any]:
    """Validate an operator Bearer token (static per-operator token or HS256 JWT)."""

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _forbidden()

    if token.count(".") == 2:
        return _decode_jwt(token)

    tokens: Dict[str, str] = get_json_secret("API_TOKENS", {}) or {}
    for operator, expected in tokens.items():
        if token == expected:
            return {"sub": operator}
    raise _forbidden()
