"""Unit tests for FastAPI dependency injection functions."""

import time
from unittest.mock import patch
from uuid import UUID

import pytest
from fastapi import HTTPException

from src.api.deps import get_current_user, require_admin
from src.api.middleware.auth import AuthError, AuthErrorCode
from src.api.middleware.error_handler import AuthorizationError
from src.schemas.auth import TokenPayload, UserContext
from tests.tokens import TEST_USER_ID


class TestGetCurrentUser:
    """Tests for get_current_user dependency."""

    @patch("src.api.deps.decode_jwt")
    async def test_extracts_user_context_correctly(self, mock_decode: any) -> None:
        """Test get_current_user extracts UserContext from valid token."""
        mock_decode.return_value = TokenPayload(
            sub=TEST_USER_ID,
            email="test@example.com",
            role="authenticated",
            exp=int(time.time()) + 3600,
            iat=int(time.time()),
        )

        user = await get_current_user("Bearer valid-token")

        assert isinstance(user, UserContext)
        assert str(user.user_id) == TEST_USER_ID
        mock_decode.assert_called_once_with("valid-token")

    async def test_missing_header(self) -> None:
        """An empty header is a 401."""
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("")

        assert exc_info.value.status_code == 401

    async def test_wrong_scheme(self) -> None:
        """Only Bearer tokens are accepted."""
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("Basic abc")

        assert exc_info.value.status_code == 401

    @patch("src.api.deps.decode_jwt")
    async def test_expired_token(self, mock_decode: any) -> None:
        """Expired tokens are a 401 with a specific message."""
        mock_decode.side_effect = AuthError("Token has expired", AuthErrorCode.TOKEN_EXPIRED)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("Bearer old-token")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token has expired"


class TestRequireAdmin:
    """Tests for require_admin dependency."""

    async def test_admin_passes(self) -> None:
        """Users with the admin role are returned."""
        user = UserContext(user_id=UUID(TEST_USER_ID), role="admin")

        assert await require_admin(user) is user

    async def test_non_admin_rejected(self) -> None:
        """Other roles are refused."""
        user = UserContext(user_id=UUID(TEST_USER_ID), role="authenticated")

        with pytest.raises(AuthorizationError):
            await require_admin(user)
