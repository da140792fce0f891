"""
Integration tests for the HTTP API.

The app runs against an in-memory store and scripted providers; background
jobs run on the TestClient's event loop and are awaited through its portal.
"""
import pytest
from fastapi.testclient import TestClient

from consensus_ai.dependencies import build_services
from consensus_ai.main import create_app
from consensus_ai.services.scheduler import InMemoryLeaseManager

from conftest import SOURCES, TOPIC, FakeProviders

HEADERS = {"X-Account-ID": "acct-api", "X-Account-Email": "owner@example.com"}


def make_client(services):
    return TestClient(create_app(services=services))


@pytest.fixture
def providers():
    return FakeProviders({"openai": ["text"], "anthropic": ["text"], "google": ["text"]})


@pytest.fixture
def services(test_settings, providers):
    return build_services(test_settings, providers=providers, leases=InMemoryLeaseManager())


@pytest.fixture
def client(services):
    with make_client(services) as client:
        yield client


def generate(client, headers=HEADERS, **payload):
    body = {"topic": TOPIC, "sources": SOURCES}
    body.update(payload)
    return client.post("/consensus/generate", json=body, headers=headers)


class TestAuthentication:
    def test_missing_account_header(self, client):
        response = generate(client, headers={})

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing X-Account-ID header"

    def test_unknown_tier(self, client):
        response = client.get("/usage", headers={"X-Account-ID": "acct-x", "X-Account-Tier": "platinum"})

        assert response.status_code == 400
        assert "platinum" in response.json()["detail"]


class TestGenerate:
    def test_generate_then_poll_then_fetch_result(self, client, services, providers):
        response = generate(client)

        assert response.status_code == 202
        body = response.json()
        job_id = body["jobId"]
        assert body["estimatedTokens"] > 0

        client.portal.call(services.registry.wait, job_id)

        status = client.get(f"/consensus/status/{job_id}", headers=HEADERS).json()
        assert status["status"] == "completed"
        assert status["progress"] == 100
        # three drafts, three reviews, one arbitration at 150 tokens each
        assert status["actualTokens"] == 7 * 150

        result = client.get(f"/consensus/result/{job_id}", headers=HEADERS)
        assert result.status_code == 200
        report = result.json()
        assert report["jobId"] == job_id
        assert report["tokens"]["total"] == 7 * 150
        assert [trace["phase"] for trace in report["phaseTraces"]] == ["phase1", "phase2", "phase3"]

        compact = client.get(f"/consensus/result/{job_id}?includeTraces=false", headers=HEADERS).json()
        assert "phaseTraces" not in compact

        usage = client.get("/usage", headers=HEADERS).json()
        assert usage["used"] == 7 * 150
        assert usage["reportsGenerated"] == 1

    def test_invalid_topic_is_400(self, client, providers):
        response = generate(client, topic="short")

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert body["errors"][0]["field"] == "topic"
        assert providers.calls == []

    def test_unknown_depth_is_400(self, client):
        response = generate(client, options={"depth": "exhaustive"})

        assert response.status_code == 400

    def test_insufficient_tokens_is_402(self, client, services, providers):
        assert client.get("/usage", headers=HEADERS).status_code == 200
        client.portal.call(services.ledger.consume, "acct-api", 49000)

        response = generate(client)

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Insufficient tokens"
        assert body["code"] == "insufficient_tokens"
        assert body["available"] == 1000
        assert body["overage"] == body["required"] - 1000
        assert providers.calls == []

    def test_no_providers_is_503(self, test_settings):
        services = build_services(test_settings, providers=FakeProviders({}), leases=InMemoryLeaseManager())
        with make_client(services) as client:
            response = generate(client)

        assert response.status_code == 503


class TestJobAccess:
    def test_unknown_job_is_404(self, client):
        response = client.get("/consensus/status/does-not-exist", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "job_not_found"

    def test_other_accounts_job_is_404(self, client, services):
        job_id = generate(client).json()["jobId"]
        client.portal.call(services.registry.wait, job_id)

        response = client.get(f"/consensus/result/{job_id}", headers={"X-Account-ID": "acct-other"})

        assert response.status_code == 404

    def test_cancel_running_job(self, test_settings):
        providers = FakeProviders({"openai": [0.3], "anthropic": [0.3], "google": [0.3]})
        services = build_services(test_settings, providers=providers, leases=InMemoryLeaseManager())

        with make_client(services) as client:
            job_id = generate(client).json()["jobId"]

            cancelled = client.post(f"/consensus/cancel/{job_id}", headers=HEADERS)
            assert cancelled.status_code == 200
            assert cancelled.json() == {"jobId": job_id, "status": "failed", "phase": "failed"}

            client.portal.call(services.registry.wait, job_id)

            result = client.get(f"/consensus/result/{job_id}", headers=HEADERS)
            assert result.status_code == 409
            assert result.json()["failure"]["code"] == "cancelled"

            # drafts already in flight are charged
            usage = client.get("/usage", headers=HEADERS).json()
            assert usage["used"] == 3 * 150


class TestEstimate:
    def test_estimate_via_query(self, client):
        response = client.get(
            "/consensus/estimate",
            params={"topic": TOPIC, "sources": SOURCES, "depth": "detailed"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["estimatedTokens"] > 0
        assert body["available"] == 50000
        assert body["admissible"] is True
        assert set(body["breakdown"]) >= {"phase1", "phase2", "phase3"}

    def test_estimate_via_body_matches_query(self, client):
        via_body = client.post(
            "/consensus/estimate",
            json={"topic": TOPIC, "sources": SOURCES},
            headers=HEADERS,
        ).json()
        via_query = client.get(
            "/consensus/estimate",
            params={"topic": TOPIC, "sources": SOURCES},
            headers=HEADERS,
        ).json()

        assert via_body["estimatedTokens"] == via_query["estimatedTokens"]

    def test_estimate_invalid_topic(self, client):
        response = client.get("/consensus/estimate", params={"topic": "x"}, headers=HEADERS)

        assert response.status_code == 400


class TestUsage:
    def test_usage_stats_for_new_account(self, client):
        body = client.get("/usage", headers=HEADERS).json()

        assert body["accountId"] == "acct-api"
        assert body["tier"] == "starter"
        assert body["used"] == 0
        assert body["limit"] == 50000

    def test_usage_check(self, client):
        response = client.post("/usage/check", json={"estimatedTokens": 60000}, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["sufficient"] is False
        assert body["overage"] == 10000
        assert body["decision"] == "admitted_overage"

    def test_usage_check_rejects_non_positive(self, client):
        response = client.post("/usage/check", json={"estimatedTokens": 0}, headers=HEADERS)

        assert response.status_code == 400


class TestOperationalEndpoints:
    def test_health(self, client):
        body = client.get("/health/").json()

        assert body["status"] == "ok"
        assert body["providers"] == 3
        assert body["store"] == "InMemoryStore"
        assert body["scheduler"] is False

    def test_provider_health(self, client):
        body = client.get("/health/providers").json()

        assert body["status"] == "ok"
        assert body["quorum"] == 2
        assert sorted(body["usable"]) == ["anthropic", "google", "openai"]

    def test_trace_id_echoed(self, client):
        response = client.get("/health/", headers={"X-Trace-ID": "trace-abc"})

        assert response.headers["X-Trace-ID"] == "trace-abc"
        assert "X-Request-ID" in response.headers

    def test_metrics(self, client):
        client.get("/health/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_scheduler_status_and_manual_run(self, client):
        status = client.get("/admin/scheduler/status").json()
        assert status["enabled"] is False
        assert set(status["triggers"]) == {"daily_cleanup", "period_reset", "threshold_scan"}

        run = client.post("/admin/scheduler/daily_cleanup/run").json()
        assert run["trigger"] == "daily_cleanup"
        assert run["status"] == "completed"
        assert run["result"] == {"orphaned": 0, "purged": 0}

    def test_unknown_trigger_is_404(self, client):
        response = client.post("/admin/scheduler/hourly_backup/run")

        assert response.status_code == 404
