"""
Tests for API key authentication and RBAC.
"""
import pytest
from fastapi import status

from audit_engine.core.auth import hash_api_key
from audit_engine.core.roles import has_permission, normalize_role
from audit_engine.models.api_key import APIKey

ACTIVITY = {"type": "login", "module": "auth", "user_id": 7, "risk_level": 1}


def add_db_key(db_session, raw_key, role, is_active=True):
    db_key = APIKey(key_hash=hash_api_key(raw_key), label=f"{role} key", role=role, is_active=is_active)
    db_session.add(db_key)
    db_session.commit()
    return db_key


def test_request_without_api_key_fails(client_with_auth):
    """Requests without a key are rejected when API_KEY is configured."""
    response = client_with_auth.get("/api/v1/activity/")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["detail"] == "Missing API key"


def test_request_with_invalid_api_key_fails(client_with_auth):
    response = client_with_auth.get("/api/v1/activity/", headers={"X-API-Key": "invalid-key"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["detail"] == "Invalid API key"


def test_static_api_key_is_admin(client_with_auth):
    response = client_with_auth.post("/api/v1/activity/", json=ACTIVITY, headers={"X-API-Key": "test-key"})

    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["activity"]["signature"] is not None


def test_viewer_key_can_read_but_not_ingest(client_with_auth, db_session):
    add_db_key(db_session, "viewer-key-123", "viewer")
    headers = {"X-API-Key": "viewer-key-123"}

    assert client_with_auth.get("/api/v1/activity/", headers=headers).status_code == status.HTTP_200_OK

    response = client_with_auth.post("/api/v1/activity/", json=ACTIVITY, headers=headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert "security_analyst" in response.json()["detail"]


def test_security_analyst_key_can_ingest(client_with_auth, db_session):
    add_db_key(db_session, "analyst-key-123", "security_analyst")

    response = client_with_auth.post(
        "/api/v1/activity/", json=ACTIVITY, headers={"X-API-Key": "analyst-key-123"}
    )

    assert response.status_code == status.HTTP_201_CREATED


def test_inactive_db_key_is_rejected(client_with_auth, db_session):
    add_db_key(db_session, "old-key-123", "admin", is_active=False)

    response = client_with_auth.get("/api/v1/activity/", headers={"X-API-Key": "old-key-123"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_db_key_use_is_stamped(client_with_auth, db_session):
    db_key = add_db_key(db_session, "stamped-key-123", "viewer")
    assert db_key.last_used_at is None

    client_with_auth.get("/api/v1/activity/", headers={"X-API-Key": "stamped-key-123"})

    db_session.expire_all()
    assert db_session.get(APIKey, db_key.id).last_used_at is not None


def test_legacy_read_only_key_maps_to_viewer(client_with_auth, db_session):
    db_key = add_db_key(db_session, "legacy-key-123", "read_only")

    response = client_with_auth.get("/api/v1/auth/me", headers={"X-API-Key": "legacy-key-123"})

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "role": "viewer",
        "source": "db",
        "is_admin": False,
        "api_key_id": db_key.id,
        "label": "read_only key",
    }


def test_me_with_static_key(client_with_auth):
    response = client_with_auth.get("/api/v1/auth/me", headers={"X-API-Key": "test-key"})

    assert response.json()["role"] == "admin"
    assert response.json()["source"] == "static"


def test_auth_disabled_treats_everyone_as_admin(client):
    response = client.get("/api/v1/auth/me")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["is_admin"] is True


@pytest.mark.parametrize("role,required,allowed", [
    ("viewer", "viewer", True),
    ("viewer", "operator", False),
    ("operator", "viewer", True),
    ("security_analyst", "operator", True),
    ("auditor", "admin", False),
    ("admin", "auditor", True),
    ("scheduler", "operator", True),
])
def test_role_hierarchy(role, required, allowed):
    assert has_permission(role, required) is allowed


def test_unknown_role_falls_back_to_viewer():
    assert normalize_role("superuser") == "viewer"
    assert normalize_role(" Admin ") == "admin"
