import json
import logging
import secrets

from fastapi import HTTPException, status

from .config import get_settings

logger = logging.getLogger("windwatch.auth")


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Authorization header")
    return token.strip()


def _check_token(authorization: str | None, expected: str, scope: str) -> None:
    token = _bearer_token(authorization)
    if not secrets.compare_digest(token.encode(), expected.encode()):
        logger.warning(json.dumps({"event": "auth_rejected", "scope": scope}))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_service_token(authorization: str | None) -> None:
    """Gateways relaying anemometer packets over HTTP share this token."""
    _check_token(authorization, get_settings().ingest_service_token, "ingest")


def require_admin_token(authorization: str | None) -> None:
    _check_token(authorization, get_settings().admin_token, "admin")
