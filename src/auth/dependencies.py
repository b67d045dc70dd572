"""FastAPI dependencies for authentication.

Provides dependency injection for:
- Access context extraction from JWT
- Persona checks
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from pydantic import ValidationError

from src.auth.permissions import Persona, has_permission
from src.auth.schemas import AccessContext
from src.auth.security import decode_access_token
from src.core.context import set_tenant_id, set_user_id


def get_token_from_header(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    expected_parts = 2
    parts = auth_header.split()
    if len(parts) != expected_parts or parts[0].lower() != "bearer":
        return None

    return parts[1]


async def get_current_user(
    token: Annotated[str | None, Depends(get_token_from_header)],
) -> AccessContext:
    """Get the caller's access context from the JWT.

    Raises:
        HTTPException(401): If token is missing, invalid, or expired
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token not provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_access_token(token)
        context = AccessContext(
            user_id=UUID(payload["sub"]),
            tenant_id=UUID(payload["tenant_id"]),
            persona=payload["persona"],
        )
    except (JWTError, ValueError, ValidationError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    # For logging
    set_user_id(context.user_id)
    set_tenant_id(context.tenant_id)

    return context


CurrentUser = Annotated[AccessContext, Depends(get_current_user)]


def require_persona(required: Persona):
    """Create dependency requiring at least a persona level.

    Example:
        @router.get("/admin-only")
        async def endpoint(user: Annotated[AccessContext, Depends(require_persona(Persona.ADMIN))]):
            ...
    """

    async def persona_checker(user: CurrentUser) -> AccessContext:
        if not has_permission(user.persona, required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return persona_checker


InstructorOrAbove = Annotated[AccessContext, Depends(require_persona(Persona.INSTRUCTOR))]
