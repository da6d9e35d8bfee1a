from conftest import PASSWORD, activity_payload

from fittrack.audit import EventType
from fittrack.tokens import TokenService


def _token(client, username="alice", password=PASSWORD):
    return client.post("/api/auth/token", json={"username": username, "password": password})


def test_issue_token(client, make_user, app):
    make_user("alice")
    resp = _token(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == app.state.tokens.expires_seconds
    assert app.state.tokens.user_id(body["access_token"]) is not None

    [entry] = app.state.audit.by_event_type(EventType.API_TOKEN_ISSUED)
    assert entry["username"] == "alice"


def test_token_request_with_wrong_password(client, make_user, app):
    make_user("alice")
    resp = _token(client, password="Wrong!Pass1")
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid username or password"
    assert app.state.audit.by_event_type(EventType.LOGIN_FAILURE)[0]["username"] == "alice"


def test_token_request_validates_payload(client):
    resp = client.post("/api/auth/token", json={"username": ""})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_bearer_token_drives_the_api_without_session(client, make_user):
    make_user("alice")
    token = _token(client).json()["access_token"]
    client.cookies.clear()
    headers = {"Authorization": f"Bearer {token}"}

    created = client.post("/api/activities", json=activity_payload(), headers=headers)
    assert created.status_code == 201
    activity_id = created.json()["activity"]["id"]

    assert client.get(f"/api/activities/{activity_id}", headers=headers).status_code == 200
    updated = client.patch(f"/api/activities/{activity_id}", json={"notes": "via api"}, headers=headers)
    assert updated.json()["activity"]["notes"] == "via api"
    assert client.delete(f"/api/activities/{activity_id}", headers=headers).status_code == 200


def test_bearer_token_does_not_open_session_only_endpoints(client, make_user):
    make_user("alice")
    token = _token(client).json()["access_token"]
    client.cookies.clear()
    resp = client.get("/internal/activities/stats", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_invalid_token_is_rejected(client):
    resp = client.get("/api/activities", headers={"Authorization": "Bearer not.a.jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "Invalid or expired token"


def test_expired_token_is_rejected(client, make_user, settings):
    user = make_user("alice")
    token = TokenService(settings.token_secret, expires_seconds=-60).create(user)
    resp = client.get("/api/activities", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_token_for_deleted_user_is_rejected(client, make_user, db_session, app):
    user = make_user("alice")
    token = app.state.tokens.create(user)
    db_session.delete(user)
    db_session.commit()
    resp = client.get("/api/activities", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_token_signed_with_other_secret_is_rejected(make_user):
    user = make_user("alice")
    token = TokenService("one-secret").create(user)
    assert TokenService("another-secret").verify(token) is None
