"""
Platform tests — dashboard, health checks, media serving, response headers
and the Flask CLI commands.
"""

from civiclens.ai.task_runner import get_triage_queue
from civiclens.models import db
from civiclens.models.issue import ASSIGNED, IN_PROGRESS, PENDING, VALIDATED, Issue
from civiclens.models.profile import Profile
from civiclens.services.image_store import get_image_store
from civiclens.services.jwt_service import decode_access_token

from conftest import build_photo


# ═══════════════════════════════════════════════════════════════
# DASHBOARD
# ═══════════════════════════════════════════════════════════════

class TestDashboard:
    def test_empty_dashboard(self, client):
        body = client.get("/api/v1/dashboard").get_json()
        assert body["stats"]["total"] == 0
        assert body["map"] == []
        assert body["leaders"] == []

    def test_dashboard_aggregates(self, client, seed_issue):
        seed_issue(PENDING)
        seed_issue(VALIDATED)
        fix = seed_issue(ASSIGNED)
        seed_issue(IN_PROGRESS)
        db.session.add_all([
            Profile(id="citizen-2", username="ravi", role="citizen", civic_credits=150),
            Profile(id="officer-9", username="chief", role="officer", civic_credits=999),
        ])
        db.session.commit()

        body = client.get("/api/v1/dashboard").get_json()

        stats = body["stats"]
        assert stats["total"] == 4
        assert stats[PENDING] == 1
        assert stats[ASSIGNED] == 1
        assert stats["resolved"] == 0
        assert len(body["map"]) == 4
        assert {p["lat"] for p in body["map"]} == {28.6139}
        assert fix.id in {i["id"] for i in body["active_fixes"]}
        assert len(body["active_fixes"]) == 2
        # Officers are not on the civic leader board
        assert [p["username"] for p in body["leaders"]] == ["ravi", "citizen-1"]
        assert body["activity"][0]["issue_title"]
        assert len(body["activity"]) == 10


# ═══════════════════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════════════════

class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live_reports_dependencies(self, client, oracle):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["oracle"] == {"status": "ok", "model": "gemini-2.5-flash", "providers": ["gemini"]}
        assert checks["triage_queue"]["mode"] == "deferred"
        assert checks["app"]["name"] == "CivicLens"

    def test_live_without_oracle(self, client):
        checks = client.get("/api/v1/health/live").get_json()["checks"]
        assert checks["oracle"]["status"] == "unconfigured"


# ═══════════════════════════════════════════════════════════════
# MEDIA + HEADERS
# ═══════════════════════════════════════════════════════════════

class TestMedia:
    def test_serves_stored_image(self, client):
        photo = build_photo(exif=False)
        ref = get_image_store().save(photo, "image/jpeg", "citizen-1")

        res = client.get(ref)

        assert res.status_code == 200
        assert res.data == photo
        assert res.mimetype == "image/jpeg"
        res.close()

    def test_path_traversal_is_404(self, client):
        assert client.get("/media/../config.py").status_code == 404

    def test_missing_image_is_404(self, client):
        assert client.get("/media/citizen-1/nothing.jpg").status_code == 404


class TestResponseHeaders:
    def test_request_id_and_timing(self, client):
        res = client.get("/api/v1/issues")
        assert res.headers.get("X-Request-ID")
        assert "X-Request-Duration-Ms" in res.headers

    def test_request_id_is_propagated(self, client):
        res = client.get("/api/v1/issues", headers={"X-Request-ID": "abc-123"})
        assert res.headers["X-Request-ID"] == "abc-123"

    def test_security_headers(self, client):
        res = client.get("/api/v1/dashboard")
        assert res.headers["X-Content-Type-Options"] == "nosniff"
        assert res.headers["X-Frame-Options"] == "DENY"

    def test_unknown_route(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404

    def test_wrong_content_type_is_415(self, client, citizen_headers):
        res = client.post("/api/v1/issues", data="category=roads", headers=citizen_headers,
                          content_type="text/plain")
        assert res.status_code == 415


# ═══════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════

class TestCli:
    def test_issue_token(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["issue-token", "officer-7", "--role", "officer", "--username", "meera"])
        assert result.exit_code == 0
        payload = decode_access_token(result.output.strip())
        assert payload["sub"] == "officer-7"
        assert payload["roles"] == ["officer"]
        assert payload["username"] == "meera"

    def test_triage_drain(self, app, seed_issue):
        issue = seed_issue(PENDING, with_image=False)
        get_triage_queue().enqueue(issue.id)

        result = app.test_cli_runner().invoke(args=["triage-drain"])

        assert result.exit_code == 0
        assert "Processed 1 triage job(s)." in result.output
        db.session.expire_all()
        assert db.session.get(Issue, issue.id).status == VALIDATED
