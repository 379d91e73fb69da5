"""
Authentication dependencies for FastAPI.

SECURITY: account-scoped routes MUST check the caller's account_id.
Admins may act on any account.
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from wa_gateway.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str
    role: str
    account_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.
    """
    jwt_service = JWTService()

    payload = jwt_service.verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = TokenPayload(**payload)

    # Picked up by LoggingMiddleware
    request.state.user_id = token.sub
    request.state.account_id = token.account_id

    return token


def require_admin(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """Dependency that requires admin role, raises 403 otherwise."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user


def require_account_access(
    account_id: str,
    current_user: TokenPayload = Depends(get_current_user)
) -> TokenPayload:
    """
    Dependency for routes with an {account_id} path parameter.

    Admins pass; other callers must own the account.
    """
    if current_user.is_admin or current_user.account_id == account_id:
        return current_user

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Access to this account is not allowed"
    )
