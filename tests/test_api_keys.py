"""
Tests for API key management endpoints.
"""
from fastapi import status

from audit_engine.core.auth import hash_api_key
from audit_engine.models.activity_log import ActivityLog
from audit_engine.models.api_key import APIKey

ADMIN = {"X-API-Key": "test-key"}


def create_key(client, name="scheduler", role="operator"):
    response = client.post("/api/v1/api-keys/", json={"name": name, "role": role}, headers=ADMIN)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def test_create_returns_full_key_once(client_with_auth, db_session):
    created = create_key(client_with_auth)

    assert created["key"].startswith("ae_")
    assert created["role"] == "operator"
    stored = db_session.get(APIKey, created["id"])
    assert stored.key_hash == hash_api_key(created["key"])

    listed = client_with_auth.get("/api/v1/api-keys/", headers=ADMIN).json()
    assert listed["total"] == 1
    assert "key" not in listed["items"][0]
    assert listed["items"][0]["key_masked"].endswith("...")


def test_created_key_authenticates_with_its_role(client_with_auth):
    created = create_key(client_with_auth, role="viewer")

    response = client_with_auth.get("/api/v1/auth/me", headers={"X-API-Key": created["key"]})

    assert response.json()["role"] == "viewer"
    assert response.json()["api_key_id"] == created["id"]


def test_legacy_role_is_normalized_on_create(client_with_auth):
    assert create_key(client_with_auth, role="scheduler")["role"] == "operator"


def test_key_management_requires_admin(client_with_auth):
    created = create_key(client_with_auth, role="auditor")
    headers = {"X-API-Key": created["key"]}

    assert client_with_auth.get("/api/v1/api-keys/", headers=headers).status_code == status.HTTP_403_FORBIDDEN
    response = client_with_auth.post("/api/v1/api-keys/", json={"name": "x", "role": "admin"}, headers=headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_update_key(client_with_auth):
    created = create_key(client_with_auth)

    response = client_with_auth.patch(
        f"/api/v1/api-keys/{created['id']}", json={"label": "nightly sweeps", "role": "security_analyst"}, headers=ADMIN
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["name"] == "nightly sweeps"
    assert response.json()["role"] == "security_analyst"


def test_update_unknown_key_is_404(client_with_auth):
    response = client_with_auth.patch("/api/v1/api-keys/999", json={"label": "x"}, headers=ADMIN)

    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_delete_deactivates_key(client_with_auth, db_session):
    created = create_key(client_with_auth)

    response = client_with_auth.delete(f"/api/v1/api-keys/{created['id']}", headers=ADMIN)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["is_active"] is False
    assert db_session.get(APIKey, created["id"]).is_active is False
    me = client_with_auth.get("/api/v1/auth/me", headers={"X-API-Key": created["key"]})
    assert me.status_code == status.HTTP_401_UNAUTHORIZED


def test_key_changes_are_recorded_as_sealed_activity(client_with_auth, db_session, integrity):
    created = create_key(client_with_auth, name="ops")
    client_with_auth.delete(f"/api/v1/api-keys/{created['id']}", headers=ADMIN)

    rows = db_session.query(ActivityLog).order_by(ActivityLog.id).all()

    assert [row.type for row in rows] == ["api_key_create", "api_key_deactivate"]
    assert rows[0].module == "audit_engine"
    assert rows[0].subject_type == "api_key"
    assert rows[0].subject_id == created["id"]
    assert rows[0].properties["label"] == "ops"
    assert rows[0].properties["actor_role"] == "admin"
    verify = client_with_auth.get(f"/api/v1/activity/{rows[0].id}/verify", headers=ADMIN).json()
    assert verify["valid"] is True


def test_unknown_role_is_rejected(client_with_auth, db_session):
    response = client_with_auth.post("/api/v1/api-keys/", json={"name": "x", "role": "superuser"}, headers=ADMIN)

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert db_session.query(APIKey).count() == 0
