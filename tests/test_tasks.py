from datetime import datetime, timedelta

from app import db
from models import Task, TaskParticipation, User


def make_task(**fields):
    defaults = {"title": "Task", "type": "photo", "xp_reward": 10, "lat": 40.0, "lon": -73.0, "radius_m": 30}
    defaults.update(fields)
    task = Task(**defaults)
    db.session.add(task)
    db.session.commit()
    return task


class TestListTasks:
    def test_published_only_newest_first(self, client, app):
        make_task(title="old", created_at=datetime.utcnow() - timedelta(days=1))
        make_task(title="new")
        make_task(title="hidden", status="draft")

        titles = [t["title"] for t in client.get("/api/tasks").get_json()["tasks"]]
        assert titles == ["new", "old"]

    def test_status_and_city_filters(self, client, app):
        make_task(title="drafted", status="draft", city="Brooklyn")
        make_task(title="nyc", city="New York")
        make_task(title="sf", city="San Francisco")

        drafts = client.get("/api/tasks?status=draft").get_json()["tasks"]
        assert [t["title"] for t in drafts] == ["drafted"]
        by_city = client.get("/api/tasks?city=york").get_json()["tasks"]
        assert [t["title"] for t in by_city] == ["nyc"]

    def test_partner_location_used_as_center(self, client, task):
        listed = client.get("/api/tasks").get_json()["tasks"][0]
        assert (listed["lat"], listed["lon"], listed["radius_m"]) == (40.0, -73.0, 50)
        assert listed["partner_location"]["name"] == "Cafe"


class TestNearbyTasks:
    def test_sorted_by_distance_within_radius(self, client, app):
        make_task(title="far", lat=40.05)
        make_task(title="near", lat=40.001)
        make_task(title="out", lat=41.0)

        tasks = client.post("/api/tasks/nearby", json={"lat": 40.0, "lon": -73.0, "radius_km": 10}).get_json()["tasks"]
        assert [t["title"] for t in tasks] == ["near", "far"]
        assert tasks[0]["distance_meters"] == 111

    def test_inactive_and_full_tasks_excluded(self, client, app):
        now = datetime.utcnow()
        make_task(title="future", active_from=now + timedelta(hours=1))
        make_task(title="ended", active_to=now - timedelta(hours=1))
        make_task(title="full", max_participants=2, current_participants=2)
        make_task(title="open", active_from=now - timedelta(hours=1), active_to=now + timedelta(hours=1))

        tasks = client.post("/api/tasks/nearby", json={"lat": 40.0, "lon": -73.0}).get_json()["tasks"]
        assert [t["title"] for t in tasks] == ["open"]

    def test_zero_coordinates_are_valid(self, client, app):
        make_task(title="null island", lat=0.0, lon=0.0)
        response = client.post("/api/tasks/nearby", json={"lat": 0, "lon": 0})
        assert [t["title"] for t in response.get_json()["tasks"]] == ["null island"]

    def test_missing_coordinates(self, client, app):
        response = client.post("/api/tasks/nearby", json={"lat": 40.0})
        assert response.status_code == 400
        assert response.get_json() == {"error": "Missing lon"}


class TestJoinTask:
    def test_join(self, client, auth_headers, user):
        task = make_task()
        response = client.post(f"/api/tasks/{task.id}/join", headers=auth_headers)
        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["remaining_today"] == 2
        assert body["participation"]["status"] == "pending"
        assert db.session.get(Task, task.id).current_participants == 1

    def test_join_twice(self, client, auth_headers, user):
        task = make_task()
        client.post(f"/api/tasks/{task.id}/join", headers=auth_headers)
        response = client.post(f"/api/tasks/{task.id}/join", headers=auth_headers)
        assert response.status_code == 400
        assert response.get_json() == {"error": "Already joined this task", "status": "pending"}
        assert TaskParticipation.query.count() == 1

    def test_daily_limit(self, client, auth_headers, user):
        tasks = [make_task(title=f"t{i}") for i in range(4)]
        for task in tasks[:3]:
            assert client.post(f"/api/tasks/{task.id}/join", headers=auth_headers).status_code == 200

        response = client.post(f"/api/tasks/{tasks[3].id}/join", headers=auth_headers)
        assert response.status_code == 429
        assert response.get_json() == {"error": "Daily acceptance limit reached (3/day)", "limit_reached": True}

    def test_daily_limit_resets_next_day(self, client, auth_headers, user):
        user.daily_task_accept_count = 3
        user.last_accept_date = datetime.utcnow().date() - timedelta(days=1)
        db.session.commit()

        task = make_task()
        response = client.post(f"/api/tasks/{task.id}/join", headers=auth_headers)
        assert response.status_code == 200
        assert db.session.get(User, user.id).daily_task_accept_count == 1

    def test_unknown_task(self, client, auth_headers, user):
        response = client.post("/api/tasks/missing/join", headers=auth_headers)
        assert response.status_code == 404

    def test_unavailable_tasks(self, client, auth_headers, user):
        now = datetime.utcnow()
        cases = {
            "Task not yet active": make_task(active_from=now + timedelta(days=1)),
            "Task has expired": make_task(active_to=now - timedelta(days=1)),
            "Task is full": make_task(max_participants=1, current_participants=1),
        }
        for message, task in cases.items():
            response = client.post(f"/api/tasks/{task.id}/join", headers=auth_headers)
            assert response.status_code == 400
            assert response.get_json() == {"error": message}

    def test_requires_identity(self, client, app):
        task = make_task()
        assert client.post(f"/api/tasks/{task.id}/join").status_code == 401


class TestCoordinateValidation:
    def test_non_finite_radius_rejected(self, client, app):
        for raw in ('{"lat": 40.0, "lon": -73.0, "radius_km": Infinity}',
                    '{"lat": 40.0, "lon": -73.0, "radius_km": NaN}'):
            response = client.post("/api/tasks/nearby", data=raw, content_type="application/json")
            assert response.status_code == 400
            assert response.get_json() == {"error": "Invalid radius_km"}

    def test_non_finite_coordinates_rejected(self, client, app):
        response = client.post(
            "/api/tasks/nearby", data='{"lat": Infinity, "lon": -73.0}', content_type="application/json"
        )
        assert response.status_code == 400
        assert response.get_json() == {"error": "Invalid lat"}
