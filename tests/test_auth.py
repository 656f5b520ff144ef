"""Tests for token issuance and verification."""

from __future__ import annotations

import time

import jwt as pyjwt
import pytest

from rallypoint.auth.jwt import (
    DEFAULT_SECRET,
    TokenExpiredError,
    TokenInvalidError,
    create_token,
    issue_token_for,
    principal_from_token,
    verify_token,
)
from rallypoint.auth.roles import Role
from rallypoint.errors import Forbidden
from rallypoint.models.user import User

SECRET = "unit-test-secret"


class TestJWT:
    def test_create_and_verify(self) -> None:
        token = create_token("user-1", Role.CITY_ORGANISER, secret=SECRET)
        payload = verify_token(token, SECRET)
        assert payload["sub"] == "user-1"
        assert payload["role"] == "CITY_ORGANISER"
        assert payload["managed_region_id"] is None

    def test_custom_expiry(self) -> None:
        token = create_token("user-1", Role.ACTIVIST, secret=SECRET, exp_minutes=120)
        payload = verify_token(token, SECRET)
        assert payload["exp"] > int(time.time()) + 3600

    def test_expired(self) -> None:
        token = create_token("user-1", Role.ACTIVIST, secret=SECRET, exp_minutes=-1)
        with pytest.raises(TokenExpiredError):
            verify_token(token, SECRET)

    def test_wrong_secret(self) -> None:
        token = create_token("user-1", Role.ACTIVIST, secret=SECRET)
        with pytest.raises(TokenInvalidError):
            verify_token(token, "another-secret")

    def test_garbage(self) -> None:
        with pytest.raises(TokenInvalidError):
            verify_token("not-a-token", SECRET)

    def test_env_secret(self, monkeypatch) -> None:
        monkeypatch.setenv("RALLYPOINT_JWT_SECRET", "from-env")
        token = create_token("user-1", Role.ACTIVIST)
        assert verify_token(token, "from-env")["sub"] == "user-1"

    def test_default_secret(self, monkeypatch) -> None:
        monkeypatch.delenv("RALLYPOINT_JWT_SECRET", raising=False)
        token = create_token("user-1", Role.ACTIVIST)
        assert verify_token(token, DEFAULT_SECRET)["sub"] == "user-1"


class TestPrincipal:
    def test_principal_from_token(self) -> None:
        token = create_token(
            "user-2", Role.REGIONAL_ORGANISER, managed_region_id="r1", secret=SECRET
        )
        principal = principal_from_token(token, SECRET)
        assert principal.id == "user-2"
        assert principal.role is Role.REGIONAL_ORGANISER
        assert principal.managed_region_id == "r1"

    def test_missing_subject(self) -> None:
        token = pyjwt.encode({"role": "ACTIVIST", "exp": int(time.time()) + 60}, SECRET)
        with pytest.raises(TokenInvalidError, match="user ID"):
            principal_from_token(token, SECRET)

    def test_unknown_role(self) -> None:
        token = create_token("user-3", "EMPEROR", secret=SECRET)
        with pytest.raises(TokenInvalidError, match="unknown role"):
            principal_from_token(token, SECRET)


class TestIssue:
    def test_pending_activist_refused(self) -> None:
        user = User(email="n@example.org", name="Nina")
        with pytest.raises(Forbidden, match="pending approval"):
            issue_token_for(user, 0, secret=SECRET)

    def test_member_gets_token(self) -> None:
        user = User(email="p@example.org", name="Pablo")
        token = issue_token_for(user, 1, secret=SECRET)
        assert principal_from_token(token, SECRET).id == user.id

    def test_organisers_need_no_membership(self) -> None:
        user = User(
            email="r@example.org",
            name="Rosa",
            role=Role.REGIONAL_ORGANISER,
            managed_region_id="r1",
        )
        token = issue_token_for(user, 0, secret=SECRET)
        assert principal_from_token(token, SECRET).managed_region_id == "r1"
