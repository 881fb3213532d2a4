"""
Tests for src/main.py - FastAPI app creation, middleware, lifespan, and CORS.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.main import CorrelationIdMiddleware, _cors_origins, create_app, lifespan
from src.services.event_registry import EventHandlerRegistry


def _make_mock_settings(**overrides):
    """Build a mock Settings object."""
    defaults = {
        "app_env": "test",
        "app_base_url": "http://localhost:8000",
        "allowed_origins": "",
        "log_level": "WARNING",
        "sentry_dsn": "",
        "stripe_webhook_secret": "whsec_a",
        "stripe_connect_webhook_secret": "whsec_b",
        "run_workers_in_process": False,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


class TestCreateApp:
    def test_returns_fastapi_instance(self):
        with (
            patch("src.main.get_settings", return_value=_make_mock_settings()),
            patch("src.main.configure_structured_logging"),
        ):
            app = create_app()

        assert isinstance(app, FastAPI)
        assert app.title == "Blawby"

    def test_routes_registered(self):
        with (
            patch("src.main.get_settings", return_value=_make_mock_settings()),
            patch("src.main.configure_structured_logging"),
        ):
            app = create_app()

        paths = {route.path for route in app.routes}
        assert "/webhooks/{source}" in paths
        assert "/health" in paths
        assert "/health/ready" in paths
        assert "/health/queue" in paths

    def test_correlation_middleware_installed(self):
        with (
            patch("src.main.get_settings", return_value=_make_mock_settings()),
            patch("src.main.configure_structured_logging"),
        ):
            app = create_app()

        assert CorrelationIdMiddleware in [m.cls for m in app.user_middleware]


class TestCorsOrigins:
    def test_configured_origins_plus_base_url(self):
        settings = _make_mock_settings(
            allowed_origins="https://app.blawby.com, https://www.blawby.com",
            app_base_url="https://api.blawby.com",
        )
        assert _cors_origins(settings) == [
            "https://app.blawby.com",
            "https://www.blawby.com",
            "https://api.blawby.com",
        ]

    def test_development_adds_localhost(self):
        origins = _cors_origins(_make_mock_settings(app_env="development"))
        assert "http://localhost:3000" in origins


class TestCorrelationId:
    async def test_echoes_incoming_header(self):
        transport = ASGITransport(app=create_app())
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health", headers={"X-Correlation-ID": "abc123"})

        assert response.headers["X-Correlation-ID"] == "abc123"

    async def test_generates_when_missing(self):
        transport = ASGITransport(app=create_app())
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")

        assert len(response.headers["X-Correlation-ID"]) == 32


class TestLifespan:
    async def test_builds_frozen_registry(self):
        app = FastAPI()
        with (
            patch("src.main.get_settings", return_value=_make_mock_settings()),
            patch("src.utils.redis_client.close_redis", new_callable=AsyncMock) as mock_close,
            patch("src.database.dispose_engine", new_callable=AsyncMock) as mock_dispose,
        ):
            async with lifespan(app):
                registry = app.state.event_registry
                assert isinstance(registry, EventHandlerRegistry)
                assert registry.frozen is True
                assert "onboarding.completed" in registry.event_types()

        mock_close.assert_awaited_once()
        mock_dispose.assert_awaited_once()

    async def test_in_process_workers_started_and_stopped(self):
        app = FastAPI()
        started = asyncio.Event()
        received = {}

        async def fake_worker_process(registry, stop):
            received["registry"] = registry
            started.set()
            await stop.wait()

        with (
            patch("src.main.get_settings", return_value=_make_mock_settings(run_workers_in_process=True)),
            patch("src.workers.job_worker.run_worker_process", side_effect=fake_worker_process),
            patch("src.utils.redis_client.close_redis", new_callable=AsyncMock),
            patch("src.database.dispose_engine", new_callable=AsyncMock),
        ):
            async with lifespan(app):
                await asyncio.wait_for(started.wait(), timeout=2)

        assert received["registry"] is app.state.event_registry

    async def test_sentry_initialized_when_configured(self):
        app = FastAPI()
        with (
            patch("src.main.get_settings", return_value=_make_mock_settings(sentry_dsn="https://key@sentry.example/1")),
            patch("sentry_sdk.init") as mock_init,
            patch("src.utils.redis_client.close_redis", new_callable=AsyncMock),
            patch("src.database.dispose_engine", new_callable=AsyncMock),
        ):
            async with lifespan(app):
                pass

        mock_init.assert_called_once()
        assert mock_init.call_args.kwargs["environment"] == "test"
