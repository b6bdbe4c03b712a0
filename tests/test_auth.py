"""
בדיקות ל-JWT של משתמשי tenant — app/core/auth.py
"""
import jwt as pyjwt
import pytest

from app.core.auth import TokenPayload, create_access_token, verify_token
from app.core.config import settings


class TestAccessTokens:

    @pytest.mark.unit
    def test_round_trip(self):
        token = create_access_token("parent-1", "tenant-1", "parent")
        payload = verify_token(token)

        assert payload is not None
        assert (payload.user_id, payload.tenant_id, payload.role) == ("parent-1", "tenant-1", "parent")
        assert payload.is_admin is False

    @pytest.mark.unit
    @pytest.mark.parametrize("role,expected", [("admin", True), ("owner", True), ("staff", False), ("parent", False)])
    def test_is_admin(self, role, expected):
        assert TokenPayload(user_id="u", tenant_id="t", role=role, exp=0).is_admin is expected

    @pytest.mark.unit
    def test_expired_token_rejected(self):
        token = create_access_token("parent-1", "tenant-1", "parent", expires_minutes=-1)
        assert verify_token(token) is None

    @pytest.mark.unit
    def test_wrong_secret_rejected(self):
        forged = pyjwt.encode(
            {"user_id": "admin-1", "tenant_id": "tenant-1", "role": "admin", "exp": 4102444800},
            "not-the-server-secret",
            algorithm="HS256",
        )
        assert verify_token(forged) is None

    @pytest.mark.unit
    def test_missing_claims_rejected(self):
        token = pyjwt.encode(
            {"user_id": "parent-1", "exp": 4102444800},
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
        )
        assert verify_token(token) is None

    @pytest.mark.unit
    def test_garbage_token(self):
        assert verify_token("not.a.jwt") is None

    @pytest.mark.unit
    def test_create_requires_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "JWT_SECRET_KEY", "")
        with pytest.raises(ValueError):
            create_access_token("parent-1", "tenant-1", "parent")

    @pytest.mark.unit
    def test_verify_without_secret_returns_none(self, monkeypatch):
        token = create_access_token("parent-1", "tenant-1", "parent")
        monkeypatch.setattr(settings, "JWT_SECRET_KEY", "")
        assert verify_token(token) is None
