"""Tests for wiring the application context from settings."""

import pytest

from p2p_settlement.config import Settings
from p2p_settlement.context import build_context, build_settlement


def make_settings(**overrides):
    values = dict(
        database_url="sqlite+aiosqlite:///:memory:",
        bank_username="user",
        bank_password="secret",
        bank_account_number="0123456789",
        captcha_method="tesseract",
        settlement_provider="mock",
        telegram_bot_token="",
    )
    values.update(overrides)
    return Settings(**values)


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_retry_settings_reach_the_engine(self):
        context = build_context(make_settings(network_max_retries=5, network_retry_base_delay=0.25))
        try:
            assert context.engine._retry == {"max_retries": 5, "base_delay": 0.25}
            assert context.engine.account_number == "0123456789"
        finally:
            await context.close()

    def test_unknown_settlement_provider(self):
        with pytest.raises(ValueError):
            build_settlement(make_settings(settlement_provider="paypal"))
