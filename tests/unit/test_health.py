"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from drip_engine.features.lifecycle_campaigns.jobs.campaign_worker import CampaignWorker
from drip_engine.main import app

client = TestClient(app)


def _healthy_db():
    return AsyncMock(return_value={"healthy": True, "pool_stats": {"pool_size": 2}})


def test_healthz_endpoint():
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "drip-engine"}


def test_readyz_all_checks_pass():
    with (
        patch("drip_engine.routes.health.db_health_check", _healthy_db()),
        patch("drip_engine.routes.health.get_campaign_worker", return_value=CampaignWorker(enabled=False)),
        patch("drip_engine.routes.health.settings.EMAIL_API_URL", "https://mail.example.com/send"),
        patch("drip_engine.routes.health.settings.EMAIL_API_KEY", "key"),
        patch("drip_engine.routes.health.settings.ADMIN_API_TOKEN", "token"),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_size"] == 2
    assert data["checks"]["drip_worker"]["campaigns_enabled"] is False


def test_readyz_database_down():
    with (
        patch(
            "drip_engine.routes.health.db_health_check",
            AsyncMock(return_value={"healthy": False, "error": "pool not initialized"}),
        ),
        patch("drip_engine.routes.health.get_campaign_worker", return_value=CampaignWorker(enabled=False)),
    ):
        response = client.get("/readyz")

    # Still 200, the body carries the verdict
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "pool not initialized"


def test_readyz_database_check_raises():
    with (
        patch("drip_engine.routes.health.db_health_check", AsyncMock(side_effect=RuntimeError("boom"))),
        patch("drip_engine.routes.health.get_campaign_worker", return_value=CampaignWorker(enabled=False)),
    ):
        response = client.get("/readyz")

    checks = response.json()["checks"]
    assert checks["database"]["ok"] is False
    assert checks["database"]["error"] == "RuntimeError: boom"


def test_readyz_flags_missing_email_outside_development():
    with (
        patch("drip_engine.routes.health.db_health_check", _healthy_db()),
        patch("drip_engine.routes.health.get_campaign_worker", return_value=CampaignWorker(enabled=False)),
        patch("drip_engine.routes.health.settings.environment", "production"),
        patch("drip_engine.routes.health.settings.EMAIL_API_URL", None),
        patch("drip_engine.routes.health.settings.ADMIN_API_TOKEN", "token"),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["configuration"]["issues"] == ["EMAIL_API_URL or EMAIL_API_KEY not set"]
