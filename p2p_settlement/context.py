"""
Application wiring.

Every collaborator the engine needs is built once from Settings and carried
in an AppContext. Nothing below reads configuration from module globals; the
API layer reaches the context through ``app.state``.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from p2p_settlement.bank.captcha import build_captcha_solver
from p2p_settlement.bank.cipher import load_cipher_gateway
from p2p_settlement.bank.client import BankSessionClient
from p2p_settlement.bank.fetcher import TransactionFetcher
from p2p_settlement.config import Settings
from p2p_settlement.database import create_session_factory
from p2p_settlement.engine.reaper import ExpiryReaper
from p2p_settlement.engine.reconciler import ReconciliationEngine
from p2p_settlement.engine.scheduler import ReconciliationMonitor
from p2p_settlement.ledger.base import PaymentLedger
from p2p_settlement.ledger.redis_ledger import RedisPaymentLedger
from p2p_settlement.notifications.notifier import LoggingNotifier, Notifier, TelegramNotifier
from p2p_settlement.settlement.base import SettlementGateway
from p2p_settlement.settlement.basal_pay import BasalPayGateway
from p2p_settlement.settlement.mock_provider import MockSettlementGateway

logger = logging.getLogger("p2p_settlement.context")


@dataclass
class AppContext:
    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    ledger: PaymentLedger
    bank: BankSessionClient
    fetcher: TransactionFetcher
    settlement: SettlementGateway
    notifier: Notifier
    engine: ReconciliationEngine
    monitor: ReconciliationMonitor
    reaper: ExpiryReaper

    async def close(self) -> None:
        await self.bank.close()
        await self.settlement.close()
        await self.notifier.close()
        close_ledger = getattr(self.ledger, "close", None)
        if close_ledger is not None:
            await close_ledger()
        await self.db_engine.dispose()


def build_settlement(settings: Settings) -> SettlementGateway:
    if settings.settlement_provider == "mock":
        return MockSettlementGateway(
            failure_rate=settings.mock_failure_rate,
            latency_ms=settings.mock_latency_ms,
        )
    if settings.settlement_provider == "basal_pay":
        return BasalPayGateway(
            access_token=settings.settlement_access_token,
            base_url=settings.settlement_api_url,
            timeout=settings.http_timeout_seconds,
        )
    raise ValueError(f"Unknown settlement provider: {settings.settlement_provider}")


def build_notifier(settings: Settings) -> Notifier:
    if settings.telegram_bot_token:
        return TelegramNotifier(settings.telegram_bot_token, timeout=settings.http_timeout_seconds)
    logger.warning("No Telegram bot token configured, notifications will only be logged")
    return LoggingNotifier()


def build_context(settings: Settings) -> AppContext:
    """Construct every collaborator from ``settings``."""
    db_engine, session_factory = create_session_factory(settings.database_url)
    ledger = RedisPaymentLedger.from_url(settings.redis_url)

    captcha_solver = build_captcha_solver(
        settings.captcha_method,
        model_path=settings.captcha_model_path,
        callback_entrypoint=settings.captcha_custom_entrypoint,
    )
    bank = BankSessionClient(
        username=settings.bank_username,
        password=settings.bank_password,
        captcha_solver=captcha_solver,
        cipher=load_cipher_gateway(settings.cipher_entrypoint),
        base_url=settings.bank_base_url,
        basic_auth=settings.bank_basic_auth,
        timeout=settings.http_timeout_seconds,
        max_login_attempts=settings.max_login_attempts,
        login_backoff_base=settings.login_backoff_base,
        cipher_version=settings.cipher_version,
        key_material_path=settings.cipher_key_path,
    )
    fetcher = TransactionFetcher(bank)
    settlement = build_settlement(settings)
    notifier = build_notifier(settings)
    admin_chat_id = settings.admin_chat_id or None

    engine = ReconciliationEngine(
        ledger=ledger,
        fetcher=fetcher,
        settlement=settlement,
        notifier=notifier,
        session_factory=session_factory,
        account_number=settings.bank_account_number,
        tolerance_vnd=settings.match_tolerance_vnd,
        fund_password=settings.settlement_fund_password,
        admin_chat_id=admin_chat_id,
        network_max_retries=settings.network_max_retries,
        retry_base_delay=settings.network_retry_base_delay,
        bank_utc_offset_hours=settings.operating_utc_offset_hours,
    )
    monitor = ReconciliationMonitor(
        engine=engine,
        client=bank,
        notifier=notifier,
        admin_chat_id=admin_chat_id,
        max_consecutive_failures=settings.max_consecutive_failures,
        operating_hours=(settings.operating_hours_start, settings.operating_hours_end),
        utc_offset_hours=settings.operating_utc_offset_hours,
    )
    reaper = ExpiryReaper(ledger=ledger, notifier=notifier, session_factory=session_factory)

    logger.info(
        "Context built: captcha=%s, settlement=%s, account=%s",
        captcha_solver.name,
        settlement.name,
        settings.bank_account_number or "-",
    )
    return AppContext(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        ledger=ledger,
        bank=bank,
        fetcher=fetcher,
        settlement=settlement,
        notifier=notifier,
        engine=engine,
        monitor=monitor,
        reaper=reaper,
    )
