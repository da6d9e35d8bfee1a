from conftest import PASSWORD, csrf, login, register

from fittrack import models
from fittrack.audit import EventType


def test_register_and_login_flow(client, db_session):
    resp = register(client, "alice")
    assert resp.status_code == 303
    assert resp.headers["location"] == "/my-activities"

    user = db_session.query(models.User).filter_by(username="alice").first()
    assert user is not None
    assert user.email == "alice@x.com"
    assert user.password_hash != PASSWORD
    assert not user.is_admin

    # Registration logs the user in
    assert client.get("/my-activities", follow_redirects=False).status_code == 200

    client.post("/auth/logout", data={"_csrf": csrf(client)}, follow_redirects=False)
    assert client.get("/my-activities", follow_redirects=False).status_code == 401

    login_resp = login(client, "alice")
    assert login_resp.status_code == 303
    assert client.get("/my-activities", follow_redirects=False).status_code == 200


def test_login_accepts_email(client, make_user):
    make_user("carol")
    resp = login(client, "carol@x.com")
    assert resp.status_code == 303


def test_login_with_wrong_password_rerenders_form(client, make_user):
    make_user("dave")
    resp = login(client, "dave", "Wrong!Pass1")
    assert resp.status_code == 401
    assert "Invalid username or password" in resp.text


def test_register_rejects_weak_password(client, db_session):
    resp = register(client, "weakling", password="password")
    assert resp.status_code == 400
    assert "uppercase" in resp.text
    assert db_session.query(models.User).filter_by(username="weakling").first() is None


def test_register_rejects_mismatched_confirmation(client):
    resp = register(client, "erin", confirm_password="Other!Pass1")
    assert resp.status_code == 400
    assert "Passwords do not match" in resp.text


def test_register_rejects_duplicate_username_and_email(client, make_user):
    make_user("frank")
    resp = register(client, "frank")
    assert resp.status_code == 400
    assert "Username is already taken" in resp.text
    assert "Email is already registered" in resp.text


def test_login_regenerates_session_cookie(client, make_user, app):
    make_user("gina")
    csrf(client)
    # Signed cookie layout is "<session id>.<timestamp>.<signature>"
    before = client.cookies.get("fittrack_session").split(".")[0]

    login(client, "gina")
    after = client.cookies.get("fittrack_session").split(".")[0]
    assert after != before
    assert app.state.session_store.load(after) is not None
    assert app.state.session_store.load(before) is None


def test_login_and_logout_are_audited(client, make_user, app):
    make_user("hank")
    login(client, "hank", "Bad!Pass123")
    login(client, "hank")
    client.post("/auth/logout", data={"_csrf": csrf(client)})

    events = [entry["event_type"] for entry in app.state.audit.by_user("hank")]
    assert EventType.LOGIN_FAILURE.value in events
    assert EventType.LOGIN_SUCCESS.value in events
    assert EventType.LOGOUT.value in events


def test_change_password(client, make_user, db_session):
    make_user("ivy")
    login(client, "ivy")

    resp = client.post(
        "/auth/change-password",
        data={
            "current_password": PASSWORD,
            "new_password": "N3w!Password",
            "confirm_password": "N3w!Password",
            "_csrf": csrf(client),
        },
    )
    assert resp.status_code == 200
    assert "Your password has been changed" in resp.text

    client.post("/auth/logout", data={"_csrf": csrf(client)})
    assert login(client, "ivy").status_code == 401
    assert login(client, "ivy", "N3w!Password").status_code == 303


def test_change_password_requires_current_password(client, make_user):
    make_user("jack")
    login(client, "jack")
    resp = client.post(
        "/auth/change-password",
        data={
            "current_password": "Wrong!Pass1",
            "new_password": "N3w!Password",
            "confirm_password": "N3w!Password",
            "_csrf": csrf(client),
        },
    )
    assert resp.status_code == 400
    assert "Current password is incorrect" in resp.text


def test_logged_in_user_is_redirected_from_login_page(client, make_user):
    make_user("kate")
    login(client, "kate")
    resp = client.get("/auth/login", follow_redirects=False)
    assert resp.status_code == 303
