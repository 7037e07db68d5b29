"""
Tests for the health endpoints: liveness and readiness.
"""
import pytest
from unittest.mock import AsyncMock, patch

import httpx

from app.core.circuit_breaker import get_mercadopago_circuit_breaker


def _patch_checks(db: str = "ok", redis: str = "ok", celery: str = "ok"):
    return (
        patch("app.domain.services.health_service._check_db", new_callable=AsyncMock, return_value=db),
        patch("app.domain.services.health_service._check_redis", new_callable=AsyncMock, return_value=redis),
        patch(
            "app.domain.services.health_service._check_celery_broker",
            new_callable=AsyncMock,
            return_value=celery,
        ),
    )


# ============================================================================
# Liveness Probe: GET /health
# ============================================================================


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe: GET /health/ready
# ============================================================================


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        db, redis, celery = _patch_checks()
        with db, redis, celery:
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db"] == "ok"
        assert data["redis"] == "ok"
        assert data["celery"] == "ok"
        assert data["circuit_breakers"] == {"mercadopago": "closed", "email": "closed"}

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        db, redis, celery = _patch_checks(db="error: db_unavailable")
        with db, redis, celery:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"

    @pytest.mark.unit
    async def test_open_breaker_does_not_make_service_unready(self, test_client: httpx.AsyncClient) -> None:
        breaker = get_mercadopago_circuit_breaker()
        for _ in range(breaker.config.failure_threshold):
            with pytest.raises(RuntimeError):
                await breaker.execute(AsyncMock(side_effect=RuntimeError("down")))

        db, redis, celery = _patch_checks()
        with db, redis, celery:
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["circuit_breakers"]["mercadopago"] == "open"


class TestHealthCheckFunctions:

    @pytest.mark.unit
    async def test_check_redis_uses_shared_client(self, fake_redis) -> None:
        from app.domain.services.health_service import _check_redis

        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        from app.domain.services.health_service import _check_redis

        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("refused"),
        ):
            assert await _check_redis() == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_db_failure(self) -> None:
        from app.domain.services.health_service import _check_db

        with patch("app.domain.services.health_service.AsyncSessionLocal", side_effect=OSError("no db")):
            assert await _check_db() == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        from app.domain.services.health_service import _check_celery_broker

        with patch("app.domain.services.health_service.aioredis.from_url") as from_url:
            client = AsyncMock()
            client.ping.side_effect = ConnectionError("refused")
            from_url.return_value = client

            assert await _check_celery_broker() == "error: celery_unavailable"
        client.aclose.assert_awaited_once()
