from __future__ import annotations
from datetime import timedelta
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    # Backend REST API (NestJS service behind /apitest in every environment we run).
    api_base_url: str = Field(default="http://localhost:3000/apitest", alias="PARKFLOW_API_BASE_URL")
    api_token: str | None = Field(default=None, alias="PARKFLOW_API_TOKEN")
    request_timeout: int = Field(default=30, alias="REQUEST_TIMEOUT")

    # Checkout behaviour
    checkout_refresh_seconds: float = Field(default=30.0, alias="CHECKOUT_REFRESH_SECONDS")
    max_parking_days: int = Field(default=365, alias="MAX_PARKING_DAYS")
    currency_symbol: str = Field(default="₹", alias="CURRENCY_SYMBOL")
    zero_amount_requires_free: bool = Field(default=True, alias="ZERO_AMOUNT_REQUIRES_FREE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def normalized_base_url(self) -> str:
        url = self.api_base_url.strip().rstrip("/")
        if not url:
            raise RuntimeError("PARKFLOW_API_BASE_URL must not be empty")
        return url

    @property
    def refresh_interval(self) -> timedelta:
        if self.checkout_refresh_seconds <= 0:
            raise RuntimeError("CHECKOUT_REFRESH_SECONDS must be positive")
        return timedelta(seconds=self.checkout_refresh_seconds)

    @property
    def max_duration(self) -> timedelta:
        return timedelta(days=self.max_parking_days)

settings = Settings()
