import csv
import io
from datetime import datetime, timedelta

import pytest
from conftest import activity_payload, csrf, login, post_json, register

from fittrack import models
from fittrack.activities import daily_trend
from fittrack.audit import EventType

JSON = {"Accept": "application/json"}


@pytest.fixture()
def add_activity(db_session):
    def _add(owner, **fields):
        values = {
            "activity_type": "Running",
            "duration_minutes": 30,
            "calories_burned": 300,
            "activity_time": datetime(2024, 1, 1, 10, 0),
            "is_public": False,
        }
        values.update(fields)
        activity = models.FitnessActivity(user_id=owner.id, **values)
        db_session.add(activity)
        db_session.commit()
        db_session.refresh(activity)
        return activity

    return _add


def test_private_activity_is_hidden_from_anonymous_visitors(client, anon_client):
    register(client, "alice")
    resp = post_json(client, "/api/activities", activity_payload())
    assert resp.status_code == 201
    body = resp.json()
    activity_id = body["activity"]["id"]
    assert body["activity"]["user_id"] is not None
    assert body["activity"]["is_public"] is False

    assert client.get(f"/api/activities/{activity_id}").status_code == 200
    assert anon_client.get(f"/api/activities/{activity_id}").status_code == 404


def test_public_activity_is_visible_to_everyone(client, anon_client):
    register(client, "alice")
    resp = post_json(client, "/api/activities", activity_payload(is_public=True))
    activity_id = resp.json()["activity"]["id"]

    resp = anon_client.get(f"/api/activities/{activity_id}")
    assert resp.status_code == 200
    assert resp.json()["activity"]["username"] == "alice"


def test_create_rejects_invalid_payload(client):
    register(client, "alice")
    resp = post_json(
        client,
        "/api/activities",
        activity_payload(activity_type="Jousting", duration_minutes=0),
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert any(error.startswith("Activity type") for error in body["errors"])
    assert any(error.startswith("Duration minutes") for error in body["errors"])


def test_create_requires_authentication(client):
    resp = post_json(client, "/api/activities", activity_payload())
    assert resp.status_code == 401


def test_list_shows_public_and_own_activities(client, make_user, add_activity):
    alice = make_user("alice")
    bob = make_user("bob")
    add_activity(alice, notes="alice private")
    add_activity(bob, notes="bob public", is_public=True)
    add_activity(bob, notes="bob private")

    login(client, "alice")
    notes = {a["notes"] for a in client.get("/api/activities").json()["activities"]}
    assert notes == {"alice private", "bob public"}


def test_admin_sees_every_activity(client, make_user, add_activity):
    make_user("root", is_admin=True)
    bob = make_user("bob")
    private = add_activity(bob)

    login(client, "root")
    assert client.get(f"/api/activities/{private.id}").status_code == 200


def test_other_users_cannot_modify_activities(client, make_user, add_activity, db_session):
    make_user("alice")
    bob = make_user("bob")
    public = add_activity(bob, is_public=True)
    private = add_activity(bob)

    login(client, "alice")
    resp = post_json(client, f"/api/activities/{public.id}", {"duration_minutes": 99}, method="PATCH")
    assert resp.status_code == 403
    assert post_json(client, f"/api/activities/{private.id}", {}, method="DELETE").status_code == 404
    assert post_json(client, f"/my-activities/{public.id}", {}, method="DELETE").status_code == 403

    db_session.refresh(public)
    assert public.duration_minutes == 30
    assert db_session.get(models.FitnessActivity, private.id) is not None


def test_owner_updates_activity_and_change_is_audited(client, make_user, add_activity, app):
    alice = make_user("alice")
    activity = add_activity(alice)
    login(client, "alice")

    resp = post_json(
        client,
        f"/my-activities/{activity.id}/edit",
        {"duration_minutes": 45, "notes": "tempo run"},
        method="PATCH",
    )
    assert resp.status_code == 200
    assert resp.json()["activity"]["duration_minutes"] == 45

    [entry] = app.state.audit.by_event_type(EventType.ACTIVITY_UPDATE)
    assert entry["changes"]["duration_minutes"] == {"old": 30, "new": 45}
    assert entry["changes"]["notes"] == {"old": None, "new": "tempo run"}


def test_admin_may_edit_any_activity(client, make_user, add_activity):
    make_user("root", is_admin=True)
    bob = make_user("bob")
    activity = add_activity(bob)
    login(client, "root")

    resp = post_json(client, f"/api/activities/{activity.id}", {"calories_burned": 10}, method="PATCH")
    assert resp.status_code == 200
    assert resp.json()["activity"]["calories_burned"] == 10


def test_owner_deletes_activity(client, make_user, add_activity, db_session, app):
    alice = make_user("alice")
    activity_id = add_activity(alice).id
    login(client, "alice")

    resp = post_json(client, f"/my-activities/{activity_id}", {}, method="DELETE")
    assert resp.status_code == 200
    db_session.expire_all()
    assert db_session.get(models.FitnessActivity, activity_id) is None
    assert app.state.audit.by_resource("fitness_activity", activity_id)[0]["event_type"] == "ACTIVITY_DELETE"


def test_search_filters_sort_and_paginate(client, make_user, add_activity):
    bob = make_user("bob")
    for i in range(12):
        add_activity(
            bob,
            is_public=True,
            duration_minutes=10 + i,
            calories_burned=100 * (i + 1),
            activity_time=datetime(2024, 3, 1 + i, 7, 0),
            activity_type="Cycling" if i % 2 else "Running",
        )

    resp = client.get("/search", params={"activity_type": "Cycling", "sort": "calories_desc"}, headers=JSON)
    body = resp.json()
    calories = [a["calories_burned"] for a in body["activities"]]
    assert len(calories) == 6
    assert calories == sorted(calories, reverse=True)

    resp = client.get(
        "/search",
        params={"date_from": "2024-03-05", "date_to": "2024-03-06", "duration_min": 0},
        headers=JSON,
    )
    assert resp.json()["pagination"]["totalItems"] == 2

    resp = client.get("/search", params={"page": 2, "pageSize": 5, "sort": "date_asc"}, headers=JSON)
    pagination = resp.json()["pagination"]
    assert pagination == {
        "page": 2,
        "pageSize": 5,
        "totalItems": 12,
        "totalPages": 3,
        "hasNextPage": True,
        "hasPreviousPage": True,
    }
    assert resp.json()["activities"][0]["activity_time"].startswith("2024-03-06")


def test_search_blank_filters_and_oversized_page(client, make_user, add_activity):
    bob = make_user("bob")
    add_activity(bob, is_public=True)

    resp = client.get(
        "/search",
        params={"activity_type": "all", "date_from": "", "pageSize": 500},
        headers=JSON,
    )
    assert resp.status_code == 200
    assert resp.json()["pagination"]["pageSize"] == 50


def test_search_rejects_bad_filter_values(client):
    resp = client.get("/search", params={"duration_min": "-5"}, headers=JSON)
    assert resp.status_code == 400


def test_search_page_renders_html(client, make_user, add_activity):
    bob = make_user("bob")
    add_activity(bob, is_public=True, notes="<script>alert(1)</script>")
    resp = client.get("/search")
    assert resp.status_code == 200
    assert "<script>alert(1)</script>" not in resp.text
    assert "&lt;script&gt;" in resp.text


def test_add_activity_form_flow(client, make_user, db_session):
    alice = make_user("alice")
    login(client, "alice")
    assert client.get("/add-activity").status_code == 200

    resp = client.post(
        "/add-activity",
        data={
            "activity_type": "Swimming",
            "duration_minutes": "",
            "calories_burned": "200",
            "activity_time": "2024-02-02T08:00",
            "_csrf": csrf(client),
        },
    )
    assert resp.status_code == 400
    assert "Swimming" in resp.text

    resp = client.post(
        "/add-activity",
        data={
            "activity_type": "Swimming",
            "duration_minutes": "40",
            "calories_burned": "200",
            "activity_time": "2024-02-02T08:00",
            "is_public": "on",
            "_csrf": csrf(client),
        },
        follow_redirects=False,
    )
    assert resp.status_code == 303
    stored = db_session.query(models.FitnessActivity).filter_by(user_id=alice.id).one()
    assert stored.is_public


def test_my_activities_only_lists_own(client, make_user, add_activity):
    alice = make_user("alice")
    bob = make_user("bob")
    add_activity(alice)
    add_activity(bob, is_public=True)
    login(client, "alice")

    body = client.get("/my-activities", headers=JSON).json()
    assert [a["username"] for a in body["activities"]] == ["alice"]


def test_stats_and_type_distribution(client, make_user, add_activity):
    alice = make_user("alice")
    add_activity(alice, duration_minutes=30, calories_burned=300, distance_km=5.0)
    add_activity(alice, duration_minutes=60, calories_burned=500, activity_type="Cycling")
    add_activity(alice, duration_minutes=20, calories_burned=100)
    login(client, "alice")

    stats = client.get("/internal/activities/stats").json()["stats"]
    assert stats["totalActivities"] == 3
    assert stats["totalDuration"] == 110
    assert stats["totalCalories"] == 900
    assert stats["totalDistance"] == 5.0

    data = client.get("/internal/activities/charts/type-distribution").json()["data"]
    assert data[0] == {"activity_type": "Running", "count": 2, "totalDuration": 50, "totalCalories": 400}


def test_daily_trend_fills_empty_days(db_session, make_user, add_activity):
    alice = make_user("alice")
    today = datetime(2024, 5, 10, 12, 0)
    add_activity(alice, activity_time=today - timedelta(days=1), calories_burned=250)
    add_activity(alice, activity_time=today - timedelta(days=30))

    trend = daily_trend(db_session, alice.id, 7, today=today)
    assert len(trend) == 7
    assert trend[0]["date"] == "2024-05-04"
    assert trend[-2] == {"date": "2024-05-09", "count": 1, "duration": 30, "calories": 250}
    assert sum(day["count"] for day in trend) == 1


def test_daily_trend_endpoint_validates_days(client, make_user):
    make_user("alice")
    login(client, "alice")
    assert client.get("/internal/activities/charts/daily-trend", params={"days": 7}).json()["days"] == 7
    assert client.get("/internal/activities/charts/daily-trend", params={"days": 0}).status_code == 400


def test_internal_endpoints_require_a_session(client):
    assert client.get("/internal/activities/stats").status_code == 401


def test_export_csv(client, make_user, add_activity):
    alice = make_user("alice")
    add_activity(alice, notes="easy, recovery")
    add_activity(alice, activity_type="Yoga")
    login(client, "alice")

    resp = client.get("/internal/activities/export", params={"activity_type": "Running"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]

    rows = list(csv.reader(io.StringIO(resp.text)))
    assert rows[0][:2] == ["id", "activity_type"]
    assert len(rows) == 2
    assert rows[1][6] == "easy, recovery"


@pytest.mark.filterwarnings("error:datetime.datetime.utcnow:DeprecationWarning")
def test_daily_trend_defaults_to_today(db_session, make_user, add_activity):
    alice = make_user("alice")
    add_activity(alice, activity_time=models.utcnow())

    trend = daily_trend(db_session, alice.id, 3)
    assert trend[-1]["date"] == models.utcnow().date().isoformat()
    assert trend[-1]["count"] == 1


def test_utcnow_is_naive():
    assert models.utcnow().tzinfo is None


def test_private_activity_of_another_user_is_not_found_over_api(client, make_user, add_activity, db_session):
    make_user("alice")
    bob = make_user("bob")
    private = add_activity(bob)

    login(client, "alice")
    resp = post_json(client, f"/api/activities/{private.id}", {"duration_minutes": 99}, method="PATCH")
    assert resp.status_code == 404

    db_session.refresh(private)
    assert private.duration_minutes == 30
