import os
from dataclasses import dataclass


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./gatepass.db")
BOOKING_BACKEND = os.getenv("BOOKING_BACKEND", "pg").lower()  # 'pg' | 'redis'
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0"))  # 0: follow the pool
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "128"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

TICKET_SECRET = os.environ.get("TICKET_SECRET", "dev-ticket-secret")
TICKET_LIFETIME_DAYS = int(os.getenv("TICKET_LIFETIME_DAYS", "365"))

HOLD_TTL_SECONDS = int(os.getenv("HOLD_TTL_SECONDS", str(15 * 60)))
SERVICE_FEE_BPS = int(os.getenv("SERVICE_FEE_BPS", "0"))  # 250 = 2.5%
CURRENCY = os.getenv("CURRENCY", "INR")

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "mock").lower()
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

RETURN_POLL_INTERVAL = float(os.getenv("RETURN_POLL_INTERVAL", "2.0"))
RETURN_POLL_TIMEOUT = float(os.getenv("RETURN_POLL_TIMEOUT", "30.0"))
RETURN_POLL_MAX_ATTEMPTS = int(os.getenv("RETURN_POLL_MAX_ATTEMPTS", "15"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class GatewayConfig:
    """Credentials and endpoints for a payment gateway client."""
    app_id: str
    secret_key: str
    api_version: str = "2023-08-01"
    return_url: str = ""
    notify_url: str = ""
    sandbox: bool = True
    tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS
    timeout_seconds: float = 10.0

    @classmethod
    def cashfree_from_env(cls) -> "GatewayConfig":
        app_id = os.environ.get("CASHFREE_APP_ID")
        secret_key = os.environ.get("CASHFREE_SECRET_KEY")
        return_url = os.environ.get("CASHFREE_RETURN_URL")
        notify_url = os.environ.get("CASHFREE_NOTIFY_URL")
        if not app_id or not secret_key or not return_url or not notify_url:
            raise RuntimeError(
                "Cashfree environment variables are not configured"
            )
        return cls(
            app_id=app_id,
            secret_key=secret_key,
            api_version=os.getenv("CASHFREE_API_VERSION", "2023-08-01"),
            return_url=return_url,
            notify_url=notify_url,
            sandbox=os.getenv("CASHFREE_SANDBOX", "true").lower() == "true",
        )

    @classmethod
    def mock_from_env(cls) -> "GatewayConfig":
        return cls(
            app_id="mockpay",
            secret_key=MOCK_SECRET,
            notify_url=MOCK_WEBHOOK_URL,
            sandbox=True,
        )
