"""
FastAPI dependencies for authentication.

Only identifies the principal and its tenant; access decisions are made
by ``app.features.permissions.dependencies.require_permission``.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import verify_jwt_token, get_appwrite_user, tenant_from_account
from app.utils import get_logger, utcnow


log = get_logger(__name__)
security = HTTPBearer()


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from JWT token.

    This dependency:
    1. Extracts JWT from Authorization header
    2. Decodes the Appwrite JWT
    3. Looks up the user locally, or fetches the account (and its tenant) from Appwrite
    4. Updates last_login_at timestamp

    Usage:
        @router.get("/status")
        async def status(user: User = Depends(get_current_user)):
            return {"tenant_id": user.tenant_id}
    """
    payload = verify_jwt_token(credentials.credentials)
    appwrite_user_id = payload.get("userId")

    if not appwrite_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    result = await db.execute(
        select(User).where(User.appwrite_id == appwrite_user_id)
    )
    user = result.scalar_one_or_none()

    if user is None or user.tenant_id is None:
        appwrite_user = await get_appwrite_user(appwrite_user_id)
        if user is None:
            user = User(
                appwrite_id=appwrite_user_id,
                email=appwrite_user.get("email", ""),
                name=appwrite_user.get("name", "Unknown"),
            )
            db.add(user)
            log.info(f"Registered principal for Appwrite account {appwrite_user_id}")
        user.tenant_id = tenant_from_account(appwrite_user)

    user.last_login_at = utcnow()
    await db.commit()
    await db.refresh(user)

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user


async def get_tenant_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """Require the principal to belong to a tenant."""
    if not user.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not associated with a tenant",
        )
    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_tenant_user)]
) -> User:
    """
    Require admin privileges.

    Used only to bootstrap a tenant before any role exists to grant
    management permissions.
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user


def get_authorization_header(request: Request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
