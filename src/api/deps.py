"""FastAPI dependency injection functions."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from src.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt
from src.api.middleware.error_handler import AuthorizationError
from src.core.config import get_settings
from src.schemas.auth import UserContext
from src.services.fulfillment_service import FulfillmentService
from src.services.stock_monitor_service import StockMonitorService
from src.services.unit_pool_service import UnitPoolService


async def get_current_user(
    authorization: Annotated[str, Header(description="Bearer token")] = "",
) -> UserContext:
    """Extract and validate the current user from the Authorization header.

    This dependency requires a valid JWT token in the Authorization header.

    Args:
        authorization: The Authorization header value (Bearer token).

    Returns:
        UserContext: The authenticated user's context.

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired.
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_jwt(parts[1])
        return payload.to_user_context()

    except AuthError as e:
        if e.code == AuthErrorCode.TOKEN_EXPIRED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def require_admin(user: Annotated[UserContext, Depends(get_current_user)]) -> UserContext:
    """Require the authenticated user to carry the admin role.

    Raises:
        AuthorizationError: If the user is not an administrator.
    """
    if user.role != get_settings().admin_role:
        raise AuthorizationError("Administrator access required")
    return user


def get_fulfillment_service() -> FulfillmentService:
    """Provide a fulfillment service for a request."""
    return FulfillmentService()


def get_unit_pool_service() -> UnitPoolService:
    """Provide a unit pool service for a request."""
    return UnitPoolService()


def get_stock_monitor_service() -> StockMonitorService:
    """Provide a stock monitor service for a request."""
    return StockMonitorService()


# Type aliases for cleaner dependency injection
CurrentUser = Annotated[UserContext, Depends(get_current_user)]
AdminUser = Annotated[UserContext, Depends(require_admin)]
Fulfillment = Annotated[FulfillmentService, Depends(get_fulfillment_service)]
UnitPool = Annotated[UnitPoolService, Depends(get_unit_pool_service)]
StockMonitor = Annotated[StockMonitorService, Depends(get_stock_monitor_service)]
