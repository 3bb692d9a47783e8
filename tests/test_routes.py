"""
End-to-end tests through the FastAPI app with collaborators overridden.
"""
from apptrack.core.errors import StoreUnavailable
from apptrack.models.anonymous_usage import AnonymousUsageRecord
from apptrack.models.preview_session import PreviewSession
from apptrack.models.user import User

from conftest import JOB_FIT_ANALYSIS, VALID_PAYLOAD


def try_body(fingerprint="fp1", **overrides):
    body = {"fingerprint": fingerprint, **VALID_PAYLOAD}
    body.update(overrides)
    return body


class TestAnonymousTryFlow:
    def test_try_then_signup_then_convert_once(self, client, db, auth_headers):
        response = client.post("/api/try/job-fit", json=try_body())
        assert response.status_code == 200
        data = response.json()
        session_id = data["sessionId"]
        assert data["preview"]["fitScore"] == 78
        assert data["preview"]["gaps"] == []

        session = db.query(PreviewSession).filter(PreviewSession.id == session_id).one()
        assert session.user_id is None
        assert db.query(AnonymousUsageRecord).filter(AnonymousUsageRecord.fingerprint == "fp1").count() == 1

        denied = client.post("/api/try/job-fit", json=try_body())
        assert denied.status_code == 429
        assert denied.json()["allowed"] is False
        assert denied.json()["usedCount"] == 1
        assert denied.json()["resetAt"].endswith("Z")
        assert int(denied.headers["Retry-After"]) > 0

        headers = auth_headers("new-user-1", "new@example.com")
        converted = client.post("/api/try/convert-session", json={"sessionId": session_id}, headers=headers)
        assert converted.status_code == 200
        assert converted.json()["analysis"] == JOB_FIT_ANALYSIS
        assert converted.json()["featureType"] == "job_fit"
        assert converted.json()["inputData"] == VALID_PAYLOAD

        repeat = client.post("/api/try/convert-session", json={"sessionId": session_id}, headers=headers)
        assert repeat.status_code == 409

    def test_convert_database_failure_is_503(self, client, auth_headers, monkeypatch):
        from apptrack.services import preview_sessions

        def convert_fails(*args):
            raise StoreUnavailable("database", "convert", Exception("connection lost"))

        monkeypatch.setattr(preview_sessions, "convert", convert_fails)

        response = client.post(
            "/api/try/convert-session", json={"sessionId": "abc"}, headers=auth_headers("user-503")
        )

        assert response.status_code == 503
        assert repeat.json()["detail"]["error"] == "already_converted"

    def test_usage_endpoint(self, client):
        before = client.get("/api/try/usage", params={"fingerprint": "fp-usage", "feature": "cover-letter"})
        assert before.json() == {"canUse": True, "usedCount": 0, "resetAt": None}

        client.post("/api/try/cover-letter", json=try_body("fp-usage"))

        after = client.get("/api/try/usage", params={"fingerprint": "fp-usage", "feature": "cover-letter"})
        assert after.json()["canUse"] is False
        assert after.json()["usedCount"] == 1

    def test_client_ip_is_recorded(self, client, db):
        client.post("/api/try/job-fit", json=try_body("fp-ip"), headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})

        assert db.query(AnonymousUsageRecord).one().ip_address == "203.0.113.5"

    def test_generation_failure_returns_502_and_keeps_the_try(self, client, generator, db):
        generator.error = RuntimeError("upstream exploded")

        response = client.post("/api/try/job-fit", json=try_body("fp-fail"))

        assert response.status_code == 502
        assert db.query(AnonymousUsageRecord).count() == 0

    def test_feature_without_preview_is_400(self, client):
        response = client.post("/api/try/career-advice", json=try_body())
        assert response.status_code == 400

    def test_short_input_is_400(self, client):
        response = client.post("/api/try/job-fit", json=try_body(jobDescription="short"))
        assert response.status_code == 400

    def test_missing_fingerprint_is_422(self, client):
        response = client.post("/api/try/job-fit", json=VALID_PAYLOAD)
        assert response.status_code == 422

    def test_convert_requires_auth(self, client):
        response = client.post("/api/try/convert-session", json={"sessionId": "abc"})
        assert response.status_code == 401

    def test_convert_unknown_session_is_404(self, client, auth_headers):
        response = client.post("/api/try/convert-session", json={"sessionId": "missing"}, headers=auth_headers("user-1"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "session_not_found"

    def test_invalid_token_is_401(self, client, jwt_secret):
        response = client.post(
            "/api/try/convert-session",
            json={"sessionId": "abc"},
            headers={"Authorization": "Bearer not.a.token"},
        )
        assert response.status_code == 401


class TestAuthenticatedGeneration:
    def test_free_user_one_try_then_upgrade_required(self, client, auth_headers):
        headers = auth_headers("user-free")

        first = client.post("/api/ai/job-fit", json={**VALID_PAYLOAD, "actionId": "a1"}, headers=headers)
        assert first.status_code == 200
        assert first.json()["result"]["fitScore"] == 78
        assert first.headers["X-RateLimit-Limit"] == "3"
        assert first.headers["X-RateLimit-Remaining"] == "2"

        second = client.post("/api/ai/job-fit", json={**VALID_PAYLOAD, "actionId": "a2"}, headers=headers)
        assert second.status_code == 403
        assert second.json()["detail"]["error"] == "upgrade_required"
        assert second.json()["detail"]["requiresUpgrade"] is True

    def test_rate_limit_returns_429_with_headers(self, client, auth_headers, generator):
        generator.response = "Focus on scope and impact."
        headers = auth_headers("user-advice")
        body = {"question": "How do I get promoted to senior?"}

        statuses = [client.post("/api/ai/career-advice", json=body, headers=headers).status_code for _ in range(5)]
        assert statuses == [200] * 5

        denied = client.post("/api/ai/career-advice", json=body, headers=headers)
        assert denied.status_code == 429
        assert denied.json()["limit"] == 5
        assert denied.json()["remaining"] == 0
        assert denied.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in denied.headers
        assert "hourly limit of 5" in denied.json()["message"]

    def test_plan_name_sets_the_tier(self, client, db, auth_headers):
        db.add(User(id="user-pro", email="pro@example.com", plan_name="Pro Monthly"))
        db.commit()

        response = client.post("/api/ai/cover-letter", json=VALID_PAYLOAD, headers=auth_headers("user-pro"))

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert "allowance" in response.json()

    def test_user_row_is_created_on_first_request(self, client, db, auth_headers):
        client.get("/api/usage", headers=auth_headers("brand-new", "Brand.New@Example.com"))

        user = db.query(User).filter(User.id == "brand-new").one()
        assert user.email == "brand.new@example.com"

    def test_requires_auth(self, client):
        assert client.post("/api/ai/job-fit", json=VALID_PAYLOAD).status_code == 401


class TestUsageSummary:
    def test_reports_limits_and_allowances_without_consuming(self, client, auth_headers):
        headers = auth_headers("user-usage")
        client.post("/api/ai/job-fit", json={**VALID_PAYLOAD, "actionId": "a1"}, headers=headers)

        for _ in range(3):
            summary = client.get("/api/usage", headers=headers)
        data = summary.json()

        assert summary.status_code == 200
        assert data["tier"] == "free"
        job_fit = next(item for item in data["rateLimits"] if item["feature"] == "job_fit")
        assert job_fit["used"] == 1
        assert job_fit["remaining"] == 2
        assert [(w["windowSeconds"], w["used"], w["limit"]) for w in job_fit["windows"]] == [(3600, 1, 3), (86400, 1, 10)]
        assert data["allowances"]["job_fit"]["canUse"] is False
        assert data["allowances"]["cover_letter"]["canUse"] is True
        assert data["hasFreeTries"] is True


class TestHealth:
    def test_reports_counter_store_status(self, client, rate_limiter, monkeypatch):
        from apptrack.main import app

        monkeypatch.setattr(app.state, "rate_limit_engine", rate_limiter, raising=False)
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "rate_limit_store": rate_limiter.store.name,
            "rate_limit_store_available": True,
        }
