from datetime import datetime, timedelta

from conftest import login, post_json

from fittrack import models
from fittrack.audit import EventType

JSON = {"Accept": "application/json"}


def test_default_admin_is_seeded(client, db_session):
    admin = db_session.query(models.User).filter_by(username="admin").one()
    assert admin.is_admin
    assert login(client, "admin", "ChangeMe123!").status_code == 303


def test_admin_pages_require_login(client):
    assert client.get("/admin/audit-logs", headers=JSON).status_code == 401


def test_admin_pages_forbid_regular_users(client, make_user, app):
    make_user("alice")
    login(client, "alice")
    resp = client.get("/admin/users")
    assert resp.status_code == 403

    [entry] = app.state.audit.by_event_type(EventType.UNAUTHORIZED_ACCESS)
    assert entry["username"] == "alice"
    assert entry["path"] == "/admin/users"


def test_audit_log_page_and_filters(client, make_user):
    make_user("alice")
    login(client, "alice", "Wrong!Pass1")
    login(client, "admin", "ChangeMe123!")

    resp = client.get("/admin/audit-logs")
    assert resp.status_code == 200
    assert "LOGIN_FAILURE" in resp.text

    body = client.get("/admin/audit-logs", params={"username": "alice"}, headers=JSON).json()
    assert body["total"] == 1
    assert body["items"][0]["event_type"] == "LOGIN_FAILURE"

    body = client.get(
        "/admin/audit-logs", params={"event_type": "LOGIN_SUCCESS", "date_from": ""}, headers=JSON
    ).json()
    assert {item["username"] for item in body["items"]} == {"admin"}


def test_purge_audit_logs(client, db_session, app):
    db_session.add(models.AuditLog(event_type="LOGOUT", created_at=models.utcnow() - timedelta(days=400)))
    db_session.commit()
    login(client, "admin", "ChangeMe123!")

    resp = post_json(client, "/admin/audit-logs/purge", {"days": 365})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Removed 1 audit entries"

    [entry] = app.state.audit.by_event_type(EventType.AUDIT_PURGE)
    assert entry["changes"] == {"days": 365, "deleted": 1}


def test_purge_rejects_out_of_range_days(client):
    login(client, "admin", "ChangeMe123!")
    assert post_json(client, "/admin/audit-logs/purge", {"days": 0}).status_code == 400


def test_user_list_includes_activity_counts(client, make_user, db_session):
    alice = make_user("alice")
    db_session.add(
        models.FitnessActivity(
            user_id=alice.id,
            activity_type="Hiking",
            duration_minutes=120,
            calories_burned=700,
            activity_time=datetime(2024, 6, 1, 9, 0),
        )
    )
    db_session.commit()
    login(client, "admin", "ChangeMe123!")

    users = {u["username"]: u for u in client.get("/admin/users", headers=JSON).json()["users"]}
    assert users["alice"]["activity_count"] == 1
    assert users["admin"]["is_admin"] is True
    assert "alice@x.com" in client.get("/admin/users").text


def test_toggle_admin(client, make_user, db_session, app):
    alice = make_user("alice")
    login(client, "admin", "ChangeMe123!")

    resp = post_json(client, f"/admin/users/{alice.id}/toggle-admin", {})
    assert resp.status_code == 200
    db_session.refresh(alice)
    assert alice.is_admin

    [entry] = app.state.audit.by_event_type(EventType.ADMIN_ACTION)
    assert entry["changes"]["action"] == "toggle_admin"
    assert entry["resource_id"] == alice.id


def test_delete_user(client, make_user, db_session):
    alice = make_user("alice")
    alice_id = alice.id
    login(client, "admin", "ChangeMe123!")

    resp = post_json(client, f"/admin/users/{alice_id}/delete", {})
    assert resp.status_code == 200
    db_session.expire_all()
    assert db_session.get(models.User, alice_id) is None

    assert post_json(client, f"/admin/users/{alice_id}/delete", {}).status_code == 404


def test_admin_cannot_act_on_own_account(client, db_session):
    admin = db_session.query(models.User).filter_by(username="admin").one()
    login(client, "admin", "ChangeMe123!")

    resp = post_json(client, f"/admin/users/{admin.id}/toggle-admin", {})
    assert resp.status_code == 400
    assert resp.json()["error"] == "You cannot perform this action on your own account"
    db_session.refresh(admin)
    assert admin.is_admin


def test_html_admin_action_redirects(client, make_user):
    alice = make_user("alice")
    login(client, "admin", "ChangeMe123!")
    token = client.get("/auth/csrf-token").json()["csrfToken"]
    resp = client.post(f"/admin/users/{alice.id}/toggle-admin", data={"_csrf": token}, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/admin/users"
