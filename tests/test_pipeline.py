"""
End-to-end tests for the security pipeline mounted on the FastAPI app,
plus direct tests of the pipeline's stage ordering.
"""
import pytest
from unittest.mock import AsyncMock, patch

from config import SecurityError, Settings
from main import create_app
from middleware.pipeline import RequestPipeline
from middleware.rate_limiting import RateLimitRegistry, SpeedThrottle
from middleware.ssrf_protection import URLGuard
from models.security import SecurityEventType, SecurityRequest


CLIENT_KEY = "testclient"


def flag_client(event_log, key=CLIENT_KEY, count=10):
    for _ in range(count):
        event_log.alert(SecurityEventType.SUSPICIOUS_PATTERN, {"pattern": "test"}, client=key)


@pytest.mark.integration
class TestRequestFlow:

    def test_health_is_served_with_security_headers(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_body_is_sanitized_before_the_handler(self, client):
        response = client.post(
            "/api/product/echo",
            json={"$where": "1==1", "name": "<script>alert(1)</script>Mug", "qty": 2},
        )

        assert response.status_code == 200
        received = response.json()["received"]
        assert "$where" not in received
        assert "<script" not in received["name"]
        assert received == {"name": "Mug", "qty": 2}

    def test_nested_operator_values_are_redacted(self, client):
        response = client.post("/api/product/echo", json={"filter": {"price": "{$gt: 0}"}})
        assert response.status_code == 200
        assert response.json()["received"] == {"filter": {"price": "{_BLOCKED_: 0}"}}

    def test_query_values_are_sanitized(self, client):
        response = client.get("/api/product/list", params={"category": "<b>shoes</b>"})
        assert response.status_code == 200
        assert response.json()["category"] == "shoes"

    def test_operator_query_keys_are_dropped(self, client, event_log):
        response = client.get("/api/product/list?$where=1&category=hats")
        assert response.status_code == 200
        assert response.json()["category"] == "hats"
        assert event_log.stats().eventsByType["blocked_query_parameter"] == 1

    def test_injection_in_url_is_rejected(self, client):
        response = client.get("/api/product/list?category=%3Cscript%3Ealert(1)%3C/script%3E")
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid request detected"}

    def test_invalid_json_is_rejected(self, client):
        response = client.post(
            "/api/product/echo", content=b'{"name": "mug"', headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid JSON in request body"}

    def test_sixth_login_in_window_is_rate_limited(self, client):
        statuses = []
        for _ in range(6):
            response = client.post("/api/user/login", json={"email": "a@example.com", "password": "pw"})
            statuses.append(response.status_code)

        assert statuses == [200] * 5 + [429]
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["details"]["limit"] == 5
        assert body["details"]["window"] == "15 minutes"
        assert body["details"]["retryAfter"] > 0
        assert body["details"]["retryAfterHuman"]
        assert body["details"]["suggestion"]
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_rate_limit_is_per_policy(self, client):
        for _ in range(6):
            client.post("/api/user/login", json={"email": "a@example.com", "password": "pw"})
        assert client.get("/api/product/list").status_code == 200

    def test_unsafe_url_parameter_is_rejected(self, client):
        response = client.get("/api/product/list", params={"redirect": "http://169.254.169.254/latest/meta-data/"})
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Invalid URL parameter"
        assert body["parameter"] == "redirect"
        assert "reason" not in body

    def test_payment_route_rejects_foreign_origin(self, client):
        response = client.post(
            "/api/order/stripe", json={"items": []}, headers={"Origin": "https://attacker.example"},
        )
        assert response.status_code == 400
        assert response.json() == {
            "success": False, "message": "Invalid origin", "error": "domain not whitelisted",
        }

    def test_payment_route_accepts_frontend_origin(self, client):
        response = client.post(
            "/api/order/stripe", json={"items": []}, headers={"Origin": "http://localhost:5173"},
        )
        assert response.status_code == 200

    def test_suspicious_client_is_blocked(self, client, event_log):
        flag_client(event_log)

        response = client.get("/api/product/list")
        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_error_responses_feed_the_event_log(self, client, event_log):
        client.get("/api/does-not-exist")
        assert event_log.stats().eventsByType["error_response"] == 1

    def test_successful_user_action_is_audited(self, client, event_log):
        with patch.object(event_log.sink, "audit") as audit_write:
            response = client.put("/api/user/profile", json={"name": "Alice"})

        assert response.status_code == 200
        actions = [call.kwargs.get("action") for call in audit_write.call_args_list]
        assert actions == ["profile_update"]

    def test_failed_user_action_is_not_audited(self, client, event_log):
        with patch.object(event_log.sink, "audit") as audit_write:
            response = client.put("/api/user/profile", content=b"[1, 2]", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        audit_write.assert_not_called()

    def test_throttle_delay_is_awaited(self, app, client):
        app.state.pipeline.rate_limits.throttle = SpeedThrottle(delay_after=1)

        with patch("middleware.security_middleware.asyncio") as fake_asyncio:
            fake_asyncio.sleep = AsyncMock()
            client.get("/api/does-not-exist")
            fake_asyncio.sleep.assert_not_awaited()
            client.get("/api/does-not-exist")

        fake_asyncio.sleep.assert_awaited_once_with(0.5)


@pytest.mark.integration
class TestClientAddress:

    def login(self, test_client, **headers):
        return test_client.post(
            "/api/user/login", json={"email": "a@example.com", "password": "pw"}, headers=headers,
        ).status_code

    def test_rotating_forwarded_headers_do_not_reset_rate_limits(self, client):
        statuses = [
            self.login(client, **{"X-Forwarded-For": f"203.0.113.{n}", "X-Real-IP": f"198.51.100.{n}"})
            for n in range(6)
        ]
        assert statuses == [200] * 5 + [429]

    def test_forwarded_trusted_address_does_not_bypass_rate_limits(self, make_client):
        test_client = make_client(TRUSTED_IPS="10.0.0.5")
        spoofed = {"X-Forwarded-For": "10.0.0.5", "X-Real-IP": "10.0.0.5"}
        statuses = [self.login(test_client, **spoofed) for _ in range(6)]
        assert statuses == [200] * 5 + [429]

    def test_forwarded_headers_do_not_evade_suspicious_block(self, client, event_log):
        flag_client(event_log)
        response = client.get("/api/product/list", headers={"X-Forwarded-For": "203.0.113.99"})
        assert response.status_code == 403

    def test_trusted_proxy_forwards_the_client_address(self, make_client):
        test_client = make_client(TRUSTED_PROXIES="testclient")
        forwarded = {"X-Forwarded-For": "203.0.113.77"}

        statuses = [self.login(test_client, **forwarded) for _ in range(6)]
        assert statuses == [200] * 5 + [429]
        assert self.login(test_client, **{"X-Forwarded-For": "203.0.113.78"}) == 200


@pytest.mark.integration
class TestSecurityAdminEndpoints:

    def test_stats_require_admin_token(self, client):
        response = client.get("/api/security/stats")
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Admin authentication required"}

        response = client.get("/api/security/stats", headers={"X-Admin-Token": "wrong"})
        assert response.status_code == 403

    def test_stats_report_suspicious_clients(self, client, event_log, admin_headers):
        flag_client(event_log, key="198.51.100.23")

        response = client.get("/api/security/stats", headers=admin_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["stats"]["suspiciousIPs"] == ["198.51.100.23"]
        assert body["stats"]["totalSuspiciousIPs"] == 1
        assert body["stats"]["eventsByType"]["suspicious_pattern_detected"] == 10

    def test_clear_logs_unblocks_clients(self, make_client, event_log, admin_headers):
        client = make_client(TRUSTED_PROXIES="testclient")
        flagged = {"X-Forwarded-For": "198.51.100.23"}
        flag_client(event_log, key="198.51.100.23")
        assert client.get("/api/product/list", headers=flagged).status_code == 403
        assert client.get("/api/product/list").status_code == 200

        response = client.post("/api/security/clear-logs", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Security logs cleared"}
        assert client.get("/api/product/list", headers=flagged).status_code == 200
        assert event_log.stats().totalSuspiciousIPs == 0

    def test_admin_calls_are_audited(self, client, event_log, admin_headers):
        with patch.object(event_log.sink, "audit") as audit_write:
            client.get("/api/security/stats", headers=admin_headers)
            client.post("/api/security/clear-logs", headers=admin_headers)

        actions = [call.kwargs.get("action") for call in audit_write.call_args_list]
        assert actions == ["security_stats_accessed", "security_logs_cleared"]


@pytest.mark.unit
class TestPipelineOrdering:

    @pytest.fixture
    def pipeline(self, event_log, clock):
        return RequestPipeline(
            event_log,
            URLGuard(["api.stripe.com"], event_log=event_log),
            rate_limits=RateLimitRegistry(
                event_log, trusted_addresses=["10.0.0.5"], clock=clock,
                throttle=SpeedThrottle(delay_after=1, clock=clock),
            ),
        )

    def login(self, address="203.0.113.50", url="/api/user/login"):
        return SecurityRequest(method="POST", path="/api/user/login", url=url,
                               body={"email": "a@example.com"}, client_address=address)

    def test_injection_is_reported_before_rate_limit(self, pipeline):
        for _ in range(5):
            assert pipeline.process(self.login()).allowed

        result = pipeline.process(self.login(url="/api/user/login?x=<script>"))
        assert result.decision.status_code == 400
        assert pipeline.process(self.login()).decision.status_code == 429

    def test_suspicious_block_precedes_rate_limit(self, pipeline, event_log):
        flag_client(event_log, key="203.0.113.50")
        result = pipeline.process(self.login())
        assert result.decision.status_code == 403
        assert result.rate_limit is None

    def test_trusted_addresses_bypass_rate_limits(self, pipeline):
        for _ in range(20):
            result = pipeline.process(self.login(address="10.0.0.5"))
            assert result.allowed
            assert result.delay == 0.0

    def test_throttle_delay_is_reported(self, pipeline):
        first = pipeline.process(self.login())
        second = pipeline.process(self.login())
        assert first.delay == 0.0
        assert second.delay == 0.5

    def test_after_response_releases_successful_throttle_hits(self, pipeline):
        for _ in range(3):
            request = self.login()
            result = pipeline.process(request)
            assert result.delay == 0.0
            pipeline.after_response(request, result, 200, 12)

    def test_sanitized_payload_is_returned(self, pipeline):
        request = SecurityRequest(method="POST", path="/api/product/echo",
                                  body={"$ne": 1, "name": "<i>Cap</i>"}, client_address="203.0.113.51")
        result = pipeline.process(request)
        assert result.allowed
        assert result.sanitized.body == {"name": "Cap"}

    def test_after_response_never_raises(self, pipeline):
        request = self.login()
        result = pipeline.process(request)
        with patch.object(pipeline.monitor, "observe_response", side_effect=RuntimeError("boom")):
            pipeline.after_response(request, result, 200, 0)


def test_production_misconfiguration_fails_fast():
    with pytest.raises(SecurityError):
        create_app(Settings(ENVIRONMENT="production", DEBUG=True, SECURITY_ADMIN_TOKEN="short"))
