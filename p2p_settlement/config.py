"""Application configuration via environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./p2p_settlement.db"
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"

    # Bank (MB Bank retail web)
    bank_base_url: str = "https://online.mbbank.com.vn"
    bank_username: str = ""
    bank_password: str = ""
    bank_account_number: str = ""
    bank_basic_auth: str = "Basic RU1CUkVUQUlMV0VCOlNEMjM0ZGZnMzQlI0BGR0AzNHNmc2RmNDU4NDNm"
    http_timeout_seconds: float = 15.0
    max_login_attempts: int = 5
    login_backoff_base: float = 1.0
    network_max_retries: int = 3
    network_retry_base_delay: float = 1.0

    # Captcha: "model", "tesseract" or "custom"
    captcha_method: str = "model"
    captcha_model_path: str = "models/captcha.onnx"
    captcha_custom_entrypoint: Optional[str] = None  # "package.module:function"

    # Login payload cipher
    cipher_entrypoint: Optional[str] = None  # "package.module:function"
    cipher_version: str = "0"
    cipher_key_path: Optional[str] = "main.wasm"

    # Reconciliation
    poll_interval_seconds: float = 15.0
    match_tolerance_vnd: int = 1000
    max_consecutive_failures: int = 5
    operating_hours_start: int = 9
    operating_hours_end: int = 24
    operating_utc_offset_hours: int = 7
    reaper_interval_seconds: float = 3600.0

    # Payments
    payment_expiry_minutes: int = 30
    payment_markup_percent: float = 2.0

    # Settlement (Basal Pay)
    settlement_provider: str = "basal_pay"  # or "mock"
    settlement_api_url: str = "https://sandbox-api.basalpay.com/api/v1"
    settlement_access_token: str = ""
    settlement_fund_password: str = ""
    mock_failure_rate: float = 0.0
    mock_latency_ms: int = 100

    # Notifications
    telegram_bot_token: str = ""
    admin_chat_id: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
