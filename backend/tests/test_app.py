"""
Unit Tests for Application Runtime

Tests:
- Logging and Sentry configuration from settings
- Lifespan startup checks and shutdown

Run with: pytest tests/test_app.py -v
"""

from unittest.mock import AsyncMock, patch

import pytest

import app
from config import Settings
from reconciliation.bank_feed.cache import BankFeedCache


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


class TestConfigureObservability:
    """Test logging and error tracking setup."""

    def test_development_uses_plain_logs_without_sentry(self):
        with patch("app.setup_logging") as setup_logging, patch("app.init_sentry") as init_sentry:
            assert app.configure_observability(make_settings(LOG_LEVEL="DEBUG")) is False

        setup_logging.assert_called_once_with(
            level="DEBUG", json_format=False, service_name="bank-reconciliation"
        )
        init_sentry.assert_not_called()

    def test_production_uses_json_and_sentry(self):
        settings = make_settings(ENVIRONMENT="production", SENTRY_DSN="https://key@sentry.example.com/1")
        with patch("app.setup_logging") as setup_logging, \
                patch("app.init_sentry", return_value=True) as init_sentry:
            assert app.configure_observability(settings) is True

        assert setup_logging.call_args.kwargs["json_format"] is True
        init_sentry.assert_called_once_with(
            dsn="https://key@sentry.example.com/1", environment="production"
        )


class TestLifespan:
    """Test startup and shutdown."""

    @pytest.mark.asyncio
    async def test_yields_cache_and_disposes_engine(self):
        settings = make_settings(BANK_FEED_LOGIN="acme", BANK_FEED_SECRET="s")
        with patch("app.init_db", new=AsyncMock()) as init_db, \
                patch("app.dispose_engine", new=AsyncMock()) as dispose_engine:
            async with app.lifespan(settings) as cache:
                assert isinstance(cache, BankFeedCache)
                dispose_engine.assert_not_called()

        init_db.assert_awaited_once()
        dispose_engine.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_production_config_refuses_to_start(self):
        settings = make_settings(ENVIRONMENT="production")
        with patch("app.init_db", new=AsyncMock()) as init_db:
            with pytest.raises(RuntimeError):
                async with app.lifespan(settings):
                    pass

        init_db.assert_not_called()
