import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

# Platform cut of every payment. The single source for commission math.
COMMISSION_RATE = Decimal("0.20")

DEFAULT_AMOUNT = 1000
AUTO_REFUND_WINDOW_HOURS = 72

PAYSTACK_BASE_URL = "https://api.paystack.co"
PAYSTACK_REDIRECT_PATTERN = r"^https://checkout\.paystack\.com/[A-Za-z0-9_\-]+/?$"


@dataclass(frozen=True)
class Settings:
    database_url: str
    rabbit_url: str | None = None
    redis_url: str | None = None

    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"

    gateway_base_url: str = PAYSTACK_BASE_URL
    gateway_secret_key: str | None = None
    gateway_callback_url: str | None = None
    gateway_webhook_secret: str | None = None
    gateway_redirect_pattern: str = PAYSTACK_REDIRECT_PATTERN
    gateway_timeout: float = 5.0
    breaker_failure_threshold: int = 5
    breaker_reset_seconds: int = 30

    currency: str = "NGN"
    currency_subunit: int = 100
    commission_rate: Decimal = COMMISSION_RATE

    auto_refund_window: timedelta = timedelta(hours=AUTO_REFUND_WINDOW_HOURS)
    duplicate_window: timedelta = timedelta(minutes=10)
    refund_tick_seconds: float = 60.0
    refund_batch_size: int = 50

    log_level: str = "INFO"


def load_settings() -> Settings:
    database_url = os.getenv("ESCROW_DB")
    if not database_url:
        raise RuntimeError("ESCROW_DB environment variable is not set")

    return Settings(
        database_url=database_url,
        rabbit_url=os.getenv("RABBIT_URL") or None,
        redis_url=os.getenv("REDIS_URL") or None,
        jwt_secret=os.getenv("JWT_SECRET") or None,
        jwt_algorithm=os.getenv("JWT_ALGORITHM") or "HS256",
        gateway_base_url=os.getenv("PAYSTACK_BASE_URL") or PAYSTACK_BASE_URL,
        gateway_secret_key=os.getenv("PAYSTACK_SECRET_KEY") or None,
        gateway_callback_url=os.getenv("PAYSTACK_CALLBACK_URL") or None,
        gateway_webhook_secret=os.getenv("PAYSTACK_WEBHOOK_SECRET") or None,
        gateway_redirect_pattern=os.getenv("GATEWAY_REDIRECT_PATTERN") or PAYSTACK_REDIRECT_PATTERN,
        gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT") or "5.0"),
        breaker_failure_threshold=int(os.getenv("BREAKER_FAILURE_THRESHOLD") or "5"),
        breaker_reset_seconds=int(os.getenv("BREAKER_RESET_SECONDS") or "30"),
        currency=os.getenv("CURRENCY") or "NGN",
        currency_subunit=int(os.getenv("CURRENCY_SUBUNIT") or "100"),
        commission_rate=Decimal(os.getenv("COMMISSION_RATE") or str(COMMISSION_RATE)),
        auto_refund_window=timedelta(
            hours=float(os.getenv("AUTO_REFUND_WINDOW_HOURS") or AUTO_REFUND_WINDOW_HOURS)
        ),
        duplicate_window=timedelta(seconds=int(os.getenv("DUPLICATE_WINDOW_SECONDS") or "600")),
        refund_tick_seconds=float(os.getenv("REFUND_TICK_SECONDS") or "60"),
        refund_batch_size=int(os.getenv("REFUND_BATCH_SIZE") or "50"),
        log_level=os.getenv("LOG_LEVEL") or "INFO",
    )
