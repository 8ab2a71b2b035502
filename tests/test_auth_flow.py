import uuid
from datetime import timedelta

from app.surplus.core.security import create_access_token
from app.surplus.db.models import User
from app.surplus.db.seed import run_seed
from tests.surplus_helpers import auth_headers, create_organization, create_user, login


def test_login_success_returns_identity_claims(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    user = create_user(db_session, organization, email="jane@example.com")

    response = client.post("/surplus/auth/login", json={"email": "Jane@Example.com", "password": "Pass1234!"})
    assert response.status_code == 200
    token = response.json()["access_token"]
    assert response.json()["token_type"] == "bearer"

    me = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert me.status_code == 200
    payload = me.json()
    assert payload["user_id"] == str(user.id)
    assert payload["organization_id"] == str(organization.id)
    assert payload["organization_category"] == "MANUFACTURING_CLUSTER"
    assert payload["role"] == "ORG_ADMIN"

    db_session.expire_all()
    assert db_session.get(User, user.id).last_login_at is not None


def test_login_invalid_password(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    create_user(db_session, organization, email="jane@example.com")

    response = client.post("/surplus/auth/login", json={"email": "jane@example.com", "password": "wrong-pass"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_CREDENTIALS"


def test_login_unknown_email(client):
    response = client.post("/surplus/auth/login", json={"email": "nobody@example.com", "password": "Pass1234!"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_CREDENTIALS"


def test_login_blocked_inactive_user(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    create_user(db_session, organization, email="jane@example.com", is_active=False)

    response = client.post("/surplus/auth/login", json={"email": "jane@example.com", "password": "Pass1234!"})
    assert response.status_code == 403
    assert response.json()["code"] == "USER_INACTIVE"


def test_login_blocked_inactive_organization(client, db_session):
    organization = create_organization(db_session, name="Dormant Works", is_active=False)
    create_user(db_session, organization, email="jane@example.com")

    response = client.post("/surplus/auth/login", json={"email": "jane@example.com", "password": "Pass1234!"})
    assert response.status_code == 403
    assert response.json()["code"] == "ORGANIZATION_INACTIVE"


def test_seeded_platform_admin_can_login(client, db_session):
    run_seed(db_session)
    token = login(client, "admin@example.com", "change-me")

    me = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert me.status_code == 200
    assert me.json()["role"] == "PLATFORM_ADMIN"


def test_me_requires_token(client):
    response = client.get("/surplus/auth/me")
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


def test_me_rejects_malformed_token(client):
    response = client.get("/surplus/auth/me", headers=auth_headers("not-a-jwt"))
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


def test_me_rejects_expired_token(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    user = create_user(db_session, organization, email="jane@example.com")
    token = create_access_token(
        {
            "sub": str(user.id),
            "organization_id": str(organization.id),
            "organization_category": organization.category,
            "role": user.role,
        },
        expires_delta=timedelta(minutes=-5),
    )

    response = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert response.status_code == 401
    assert response.json()["code"] == "TOKEN_EXPIRED"


def test_me_rejects_token_missing_claims(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    user = create_user(db_session, organization, email="jane@example.com")
    token = create_access_token({"sub": str(user.id)})

    response = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


def test_me_rejects_unknown_subject(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    token = create_access_token(
        {
            "sub": str(uuid.uuid4()),
            "organization_id": str(organization.id),
            "organization_category": organization.category,
            "role": "ORG_ADMIN",
        }
    )

    response = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert response.status_code == 401
    assert response.json()["code"] == "UNKNOWN_SUBJECT"


def test_deactivated_user_token_stops_working(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    user = create_user(db_session, organization, email="jane@example.com")
    token = login(client, "jane@example.com")

    user.is_active = False
    db_session.commit()

    response = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert response.status_code == 403
    assert response.json()["code"] == "USER_INACTIVE"


def test_role_is_read_from_stored_user(client, db_session):
    organization = create_organization(db_session, name="Acme Fabrication")
    user = create_user(db_session, organization, email="jane@example.com")
    token = login(client, "jane@example.com")

    user.role = "ORG_USER"
    db_session.commit()

    response = client.get("/surplus/auth/me", headers=auth_headers(token))
    assert response.status_code == 200
    assert response.json()["role"] == "ORG_USER"
