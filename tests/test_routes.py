"""
End-to-end route tests: FastAPI TestClient against a stubbed Strava API.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from stravawesome.config import settings
from stravawesome.container import build_services
from stravawesome.database import SessionLocal
from stravawesome.main import create_app
from stravawesome.models import Account, Goal, User
from stravawesome.security import SESSION_COOKIE, create_access_token
from stravawesome.services.retry import RetryPolicy

from conftest import no_sleep

ACTIVITIES_PATH = "/api/v3/athlete/activities"

ACTIVITIES = [
    {"id": 1, "name": "Tempo", "type": "Run", "distance": 16093.4, "moving_time": 3600,
     "start_date": "2024-01-02T07:00:00Z"},
    {"id": 2, "name": "Spin", "type": "Ride", "trainer": True, "moving_time": 3600,
     "start_date": "2024-01-03T07:00:00Z"},
]


class FakeLLM:
    def __init__(self, reply="Nice consistency this month!", error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    async def generate(self, prompt, system_instruction, temperature=0.7, max_tokens=1000):
        self.prompts.append((prompt, system_instruction))
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def client(db_session, strava_stub, llm):
    services = build_services(
        settings,
        SessionLocal,
        http=strava_stub.client(),
        llm_factory=lambda: llm,
        retry_policy=RetryPolicy(sleep=no_sleep),
    )
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def user(db_session):
    user = User(name="Test Runner", email="runner@example.com")
    db_session.add(user)
    db_session.flush()
    db_session.add(Account(
        user_id=user.id, provider="strava", provider_account_id="12345",
        access_token="strava-access", refresh_token="strava-refresh", expires_at=4_000_000_000,
    ))
    db_session.commit()
    return user


@pytest.fixture
def auth_client(client, user):
    client.cookies.set(SESSION_COOKIE, create_access_token({"sub": str(user.id)}))
    return client


@pytest.fixture
def strava_activities(strava_stub):
    strava_stub.on(ACTIVITIES_PATH, httpx.Response(200, json=ACTIVITIES))
    strava_stub.on("/api/v3/activities/1", httpx.Response(200, json={
        "id": 1, "map": {"summary_polyline": "abc"}, "start_latlng": [37.7, -122.4],
    }))
    strava_stub.on("/api/v3/activities/2", httpx.Response(200, json={"id": 2, "map": None}))
    return strava_stub


class TestHealthAndAuth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == "connected"

    def test_me_requires_session(self, client):
        response = client.get("/api/me")
        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Not authenticated", "code": "UNAUTHORIZED"}

    def test_me(self, auth_client):
        body = auth_client.get("/api/me").json()
        assert body["success"] is True
        assert body["data"]["strava_connected"] is True
        assert body["data"]["strava_id"] == "12345"

    def test_start_is_rate_limited(self, client):
        for _ in range(5):
            response = client.post("/api/auth/strava/start")
            assert response.status_code == 200
            assert response.json()["data"]["url"].startswith("https://www.strava.com/oauth/authorize?")

        response = client.post("/api/auth/strava/start")
        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) > 0

    def test_callback_creates_user_and_session(self, client, strava_stub, db_session):
        strava_stub.on("/oauth/token", httpx.Response(200, json={
            "access_token": "a", "refresh_token": "r", "expires_at": 4_000_000_000,
            "athlete": {"id": 999, "firstname": "Ana", "lastname": "Lopez", "profile": "https://img"},
        }))
        response = client.get("/api/auth/strava/callback", params={"code": "xyz"}, follow_redirects=False)

        assert response.status_code in (302, 307)
        assert response.headers["location"] == f"{settings.FRONTEND_URL}/dashboard?connected=true"
        assert SESSION_COOKIE in response.headers["set-cookie"]

        account = db_session.query(Account).filter_by(provider_account_id="999").one()
        assert account.access_token == "a"
        assert account.user.name == "Ana Lopez"

    def test_callback_denied(self, client):
        response = client.get("/api/auth/strava/callback", params={"error": "access_denied"},
                              follow_redirects=False)
        assert response.headers["location"].endswith("/dashboard?error=strava_denied")


class TestStravaRoutes:

    def test_activities_are_enriched_and_shared(self, auth_client, strava_activities):
        body = auth_client.get("/api/strava/activities").json()
        assert body["success"] is True
        assert [a["id"] for a in body["data"]] == [1, 2]
        assert body["data"][0]["map"] == {"summary_polyline": "abc"}

        auth_client.get("/api/strava/activities")
        assert strava_activities.count(ACTIVITIES_PATH) == 1

    def test_not_connected(self, client, db_session):
        user = User(name="No Strava")
        db_session.add(user)
        db_session.commit()
        client.cookies.set(SESSION_COOKIE, create_access_token({"sub": str(user.id)}))

        response = client.get("/api/strava/activities")
        assert response.status_code == 400
        assert response.json()["code"] == "STRAVA_NOT_CONNECTED"

    def test_revoked_strava_token_requires_reauth(self, auth_client, strava_stub):
        strava_stub.on(ACTIVITIES_PATH, httpx.Response(401, json={"message": "Authorization Error"}))
        response = auth_client.get("/api/strava/activities")
        assert response.status_code == 401
        assert response.json()["code"] == "STRAVA_REAUTH_REQUIRED"

    def test_weekly(self, auth_client, strava_activities):
        body = auth_client.get("/api/strava/activities/weekly", params={"year": 2024}).json()
        assert body["data"]["labels"][0] == "Jan 1"
        assert body["data"]["datasets"]["running"][0]["running"] == 10
        assert body["data"]["datasets"]["cycling"][0]["indoor"] == 15

        params = strava_activities.calls[0].url.params
        assert params["after"] == "1704067200"
        assert params["before"] == "1735689600"
        assert params["per_page"] == "200"

    def test_insights_are_cached(self, auth_client, strava_activities):
        first = auth_client.get("/api/strava/insights").json()
        assert "weeklySummary" in first["data"]
        assert set(first["data"]["insights"]) == {"consistency", "performance", "goals"}

        second = auth_client.get("/api/strava/insights").json()
        assert second == first
        assert strava_activities.count(ACTIVITIES_PATH) == 1

    def test_rate_limited_list_is_not_pinned(self, auth_client, strava_activities):
        limited = {"on": True}
        strava_activities.on(ACTIVITIES_PATH, lambda r: (
            httpx.Response(429, headers={"Retry-After": "1"}) if limited["on"]
            else httpx.Response(200, json=ACTIVITIES)))

        first = auth_client.get("/api/strava/activities").json()
        assert first["success"] is True
        assert first["data"] == []

        limited["on"] = False
        second = auth_client.get("/api/strava/activities").json()
        assert [a["id"] for a in second["data"]] == [1, 2]

    def test_rate_limited_insights_are_not_pinned(self, auth_client, strava_activities):
        limited = {"on": True}
        strava_activities.on(ACTIVITIES_PATH, lambda r: (
            httpx.Response(429) if limited["on"] else httpx.Response(200, json=ACTIVITIES)))

        assert auth_client.get("/api/strava/insights").status_code == 200
        limited_calls = strava_activities.count(ACTIVITIES_PATH)

        limited["on"] = False
        auth_client.get("/api/strava/insights")
        assert strava_activities.count(ACTIVITIES_PATH) == limited_calls + 1

        # The fresh result is cached as usual
        auth_client.get("/api/strava/insights")
        assert strava_activities.count(ACTIVITIES_PATH) == limited_calls + 1

    def test_photos(self, auth_client, strava_activities):
        strava_activities.on("/api/v3/activities/1/photos", httpx.Response(200, json=[
            {"unique_id": "p1", "urls": {"600": "https://img/p1.jpg"}},
        ]))
        strava_activities.on("/api/v3/activities/2/photos", httpx.Response(200, json=[]))

        data = auth_client.get("/api/strava/photos").json()["data"]
        assert data == [{"id": 1, "name": "Tempo", "photos": [
            {"unique_id": "p1", "urls": {"600": "https://img/p1.jpg"}},
        ]}]

    def test_disconnect(self, auth_client, db_session):
        body = auth_client.post("/api/strava/disconnect").json()
        assert body["data"] == {"disconnected": True}
        assert auth_client.get("/api/me").json()["data"]["strava_connected"] is False


class TestGoals:

    def test_upsert_and_list(self, auth_client):
        response = auth_client.post("/api/goals", json=[
            {"activityType": "Run", "targetDistance": 500},
            {"activityType": "Ride", "targetDistance": 1500},
        ])
        assert response.status_code == 200
        assert response.json()["message"] == "Goals saved"

        auth_client.post("/api/goals", json=[{"activityType": "Run", "targetDistance": 600}])

        goals = {g["activityType"]: g["targetDistance"] for g in auth_client.get("/api/goals").json()["data"]}
        assert goals == {"Run": 600, "Ride": 1500}

    def test_invalid_goal(self, auth_client, db_session):
        response = auth_client.post("/api/goals", json=[{"activityType": "Swim", "targetDistance": 5}])
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "BAD_REQUEST"
        assert body["details"]
        assert db_session.query(Goal).count() == 0

    def test_non_positive_distance(self, auth_client):
        response = auth_client.post("/api/goals", json=[{"activityType": "Run", "targetDistance": 0}])
        assert response.status_code == 400


class TestAIChat:

    def test_chat(self, auth_client, strava_activities, llm):
        response = auth_client.post("/api/ai/chat", json={"message": "How is my <training>?"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["response"] == "Nice consistency this month!"
        assert data["trainingData"]["totalActivities"] == 2

        prompt, system_instruction = llm.prompts[0]
        assert prompt == "How is my &lt;training&gt;?"
        assert "Training Data Summary" in system_instruction

    def test_blank_message(self, auth_client):
        response = auth_client.post("/api/ai/chat", json={"message": "   "})
        assert response.status_code == 400

    def test_llm_failure(self, auth_client, strava_activities, llm):
        llm.error = RuntimeError("provider down")
        response = auth_client.post("/api/ai/chat", json={"message": "hi"})
        assert response.status_code == 503
        assert response.json()["error"] == "AI service is unavailable"


class TestBilling:

    def test_checkout(self, auth_client):
        url = auth_client.post("/api/checkout/create").json()["data"]["url"]
        assert url.startswith("https://polar.sh/checkout?")
        assert "price=price_test" in url

    def test_webhook_then_status(self, auth_client, user):
        assert auth_client.get("/api/subscription/status").json()["data"]["isPremium"] is False

        response = auth_client.post("/api/webhooks/polar", json={
            "type": "order.created",
            "data": {"id": "ord_1", "subscription_id": "sub_1", "metadata": {"userId": str(user.id)}},
        })
        assert response.json() == {"received": True}

        status = auth_client.get("/api/subscription/status").json()["data"]
        assert status["isPremium"] is True
        assert status["subscription"]["polarSubscriptionId"] == "sub_1"
