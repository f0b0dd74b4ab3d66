"""
Tests for FastAPI dependencies: bearer token decoding and admin gating.
"""

import time

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from helpers import JWT_SECRET, make_token
from token_ledger.api.dependencies import (
    UserIdentity,
    decode_user_token,
    get_current_user,
    require_admin,
)
from token_ledger.exceptions import AuthenticationError


class TestDecodeUserToken:
    def test_valid_token(self):
        identity = decode_user_token(make_token("user-7", role="admin"), JWT_SECRET)

        assert identity.user_id == "user-7"
        assert identity.is_admin

    def test_role_defaults_to_user(self):
        token = jwt.encode({"sub": "user-7"}, JWT_SECRET, algorithm="HS256")

        assert decode_user_token(token, JWT_SECRET).role == "user"

    def test_expired_token(self):
        token = jwt.encode(
            {"sub": "user-7", "exp": int(time.time()) - 60}, JWT_SECRET, algorithm="HS256"
        )

        with pytest.raises(AuthenticationError) as exc_info:
            decode_user_token(token, JWT_SECRET)
        assert exc_info.value.message == "token expired"

    def test_wrong_secret(self):
        with pytest.raises(AuthenticationError):
            decode_user_token(make_token(secret="x" * 40), JWT_SECRET)

    def test_missing_subject(self):
        token = jwt.encode({"role": "user"}, JWT_SECRET, algorithm="HS256")

        with pytest.raises(AuthenticationError) as exc_info:
            decode_user_token(token, JWT_SECRET)
        assert "subject" in exc_info.value.message

    def test_unconfigured_secret(self):
        with pytest.raises(AuthenticationError):
            decode_user_token(make_token(), "")


class TestGetCurrentUser:
    async def test_missing_credentials(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)
        assert exc_info.value.status_code == 401

    async def test_invalid_token(self):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="garbage")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(credentials)
        assert exc_info.value.detail == "Invalid or expired token"

    async def test_valid_token(self):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token())

        identity = await get_current_user(credentials)

        assert identity.user_id == "user-1"


class TestRequireAdmin:
    async def test_admin_passes(self):
        user = UserIdentity(user_id="ops", role="admin")
        assert await require_admin(user) is user

    async def test_user_forbidden(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin(UserIdentity(user_id="user-1"))
        assert exc_info.value.status_code == 403
