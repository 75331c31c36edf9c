import json
from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, populate_by_name=True)
    db_path: str = Field(default="./data/custody.db", alias="DB_PATH")
    local_tz: str = Field(default="UTC", alias="LOCAL_TZ")
    low_balance_threshold_usd: float = Field(default=1000.0, alias="LOW_BALANCE_THRESHOLD_USD")
    allocation_drift_threshold_pct: float = Field(default=10.0, alias="ALLOCATION_DRIFT_THRESHOLD_PCT")
    failed_sync_alert_hours: int = Field(default=24, alias="FAILED_SYNC_ALERT_HOURS")
    cap_fixed_amount_valuation: bool = Field(default=False, alias="CAP_FIXED_AMOUNT_VALUATION")
    fx_rates_to_usd: str = Field(default='{"BRL": 0.20}', alias="FX_RATES_TO_USD")
    notify_webhook_url: str | None = Field(default=None, alias="NOTIFY_WEBHOOK_URL")
    http_timeout_seconds: float = Field(default=15.0, alias="HTTP_TIMEOUT_SECONDS")
    lock_ttl_seconds: int = Field(default=7200, alias="LOCK_TTL_SECONDS")
    scheduler_enabled: int = Field(default=1, alias="SCHEDULER_ENABLED")
    wallet_sync_cron: str = Field(default="*/5 * * * *", alias="WALLET_SYNC_CRON")
    account_sync_cron: str = Field(default="*/15 * * * *", alias="ACCOUNT_SYNC_CRON")
    portfolio_calculation_cron: str = Field(default="0 * * * *", alias="PORTFOLIO_CALCULATION_CRON")
    alert_generation_cron: str = Field(default="*/30 * * * *", alias="ALERT_GENERATION_CRON")

    def fx_rates(self) -> dict[str, float]:
        try:
            raw = json.loads(self.fx_rates_to_usd or "{}")
        except json.JSONDecodeError:
            return {}
        return {str(k).upper(): float(v) for k, v in raw.items()}

settings = Settings()
