from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Stockkeeper"
    DATABASE_URL: str = "sqlite:///./stockkeeper.db"
    LOG_LEVEL: str = "INFO"

    # Upper bound on waiting for a product row lock
    LOCK_TIMEOUT_SECONDS: float = 5.0

    # Order numbers look like TH-2026-00001
    ORDER_NUMBER_PREFIX: str = "TH"

    DEFAULT_REORDER_LEVEL: int = 10
    DEFAULT_LOW_STOCK_THRESHOLD: int = 5

    # Checkout session cache; empty REDIS_URL keeps it in-process
    IDEMPOTENCY_TTL_SECONDS: int = 86400
    IDEMPOTENCY_MAX_ENTRIES: int = 1000
    REDIS_URL: str = ""

    # Payment provider
    PAYMENT_API_BASE_URL: str = "https://api.payments.example.com/v1"
    PAYMENT_API_KEY: str = ""
    PAYMENT_WEBHOOK_SECRET: str = ""
    PAYMENT_TIMEOUT_SECONDS: float = 10.0
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/checkout/success"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/cart"
    CURRENCY: str = "USD"

    AUDIT_ENABLED: bool = True

    model_config = {"env_file": ".env"}


settings = Settings()
