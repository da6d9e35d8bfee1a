from fastapi.testclient import TestClient

JSON = {"Accept": "application/json"}


def test_unknown_page_renders_html_404(client):
    resp = client.get("/no-such-page")
    assert resp.status_code == 404
    assert resp.headers["content-type"].startswith("text/html")
    assert "Page not found" in resp.text


def test_unknown_api_route_returns_json_404(client):
    resp = client.get("/api/no-such-thing")
    assert resp.status_code == 404
    body = resp.json()
    assert body == {"success": False, "error": "Page not found", "csrfToken": body["csrfToken"]}


def test_missing_activity_is_json_404(client):
    resp = client.get("/api/activities/9999")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Activity not found"


def test_path_parameter_validation_is_400(client):
    resp = client.get("/api/activities/not-a-number")
    assert resp.status_code == 400
    assert resp.json()["errors"]


def test_malformed_json_body_is_400(client):
    token = client.get("/auth/csrf-token").json()["csrfToken"]
    resp = client.post(
        "/api/auth/token",
        content="{not json",
        headers={"Content-Type": "application/json", "X-CSRF-Token": token},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Request body is not valid JSON"


def test_unauthenticated_html_page_offers_login_link(client):
    resp = client.get("/my-activities")
    assert resp.status_code == 401
    assert 'href="/auth/login' in resp.text


def test_unhandled_errors_are_sanitized(app):
    def boom():
        raise RuntimeError("database password is hunter2")

    app.add_api_route("/api/boom", boom)
    app.add_api_route("/boom", boom)

    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.get("/api/boom")
        assert resp.status_code == 500
        assert resp.json()["success"] is False
        assert "hunter2" not in resp.text

        resp = client.get("/boom")
        assert resp.status_code == 500
        assert "hunter2" not in resp.text


def test_json_body_with_invalid_utf8_is_400(client):
    token = client.get("/auth/csrf-token").json()["csrfToken"]
    resp = client.post(
        "/auth/login",
        content=b'{"username": "\xff\xfe"}',
        headers={"Content-Type": "application/json", "X-CSRF-Token": token},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Request body is not valid JSON"
