import logging
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LEDGER_", env_file=".env", extra="ignore")

    # Empty means the process-local in-memory store.
    database_url: str = ""
    sql_echo: bool = False

    starting_balance: Decimal = Decimal("2500.00")
    verification_price: Decimal = Decimal("5000.00")
    verification_period_days: int = 30
    max_conflict_retries: int = 3

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
