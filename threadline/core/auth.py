"""
Request pipeline: bearer token -> viewer id -> request context.

Tokens are issued by the auth service; this module only verifies them. Each
stage is a FastAPI dependency consuming the previous stage's output:

1. ``oauth2_scheme`` extracts the raw bearer token, if any
2. ``get_optional_viewer_id`` verifies it into a user id (None when absent)
3. ``get_request_context`` wraps the result in a typed ``RequestContext``
4. ``require_viewer`` narrows the context to a signed-in, existing user
"""
from __future__ import annotations

from typing import Annotated, Optional
from uuid import UUID, uuid4

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from threadline.config_secrets import JWT_ALGORITHM, JWT_SECRET_KEY
from threadline.core import store
from threadline.core.db import get_connection
from threadline.models.models import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class AuthError(HTTPException):
    """Authentication exception with WWW-Authenticate header."""

    def __init__(self, detail: str = "Could not validate credentials") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class RequestContext(BaseModel):
    """Per-request state handed from the pipeline to route handlers."""

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    viewer_id: Optional[UUID] = None
    viewer: Optional[User] = None


def decode_viewer_id(token: str) -> UUID:
    """Verify a signed JWT and return its subject as a user id."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise AuthError() from exc

    subject = payload.get("sub")
    if not isinstance(subject, str):
        raise AuthError()

    try:
        return UUID(subject)
    except ValueError as exc:
        raise AuthError("Invalid token subject") from exc


async def get_optional_viewer_id(token: Annotated[Optional[str], Depends(oauth2_scheme)]) -> Optional[UUID]:
    """Anonymous requests get None; a token that is present must be valid."""
    if token is None:
        return None
    return decode_viewer_id(token)


async def get_request_context(
    viewer_id: Annotated[Optional[UUID], Depends(get_optional_viewer_id)],
) -> RequestContext:
    return RequestContext(viewer_id=viewer_id)


async def require_viewer(context: Annotated[RequestContext, Depends(get_request_context)]) -> RequestContext:
    """Require a signed-in viewer whose account still exists."""
    if context.viewer_id is None:
        raise AuthError("Not authenticated")

    async with get_connection() as conn:
        viewer = await store.get_user(conn, context.viewer_id)
    if viewer is None:
        raise AuthError()
    return context.model_copy(update={"viewer": viewer})
