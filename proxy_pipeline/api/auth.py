import secrets
from typing import Optional

from fastapi import HTTPException, Request


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def is_authorized(request: Request) -> bool:
    expected = request.app.state.services.settings.api_secret
    token = bearer_token(request)
    if not expected or token is None:
        return False
    return secrets.compare_digest(token.encode(), expected.encode())


def require_api_secret(request: Request) -> None:
    """Dependency guarding privileged routes. An unset secret locks them all."""
    if not is_authorized(request):
        raise HTTPException(status_code=401, detail="Unauthorized")
