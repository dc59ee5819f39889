# payment_api/settings.py

from starlette.config import Config
from starlette.datastructures import Secret

config = Config(".env")

ENVIRONMENT = config("ENVIRONMENT", cast=str, default="development")

DATABASE_URL = config("DATABASE_URL", cast=Secret, default="sqlite:///./payments.db")
TEST_DATABASE_URL = config("TEST_DATABASE_URL", cast=Secret, default="sqlite://")

SECRET_KEY = config("SECRET_KEY", cast=str, default="default_jwt_secret_only_for_development")
SERVICE_SECRET = config("SERVICE_SECRET", cast=str, default="service_secret_key")
SERVICE_NAME = "payment-service"

KAFKA_BOOTSTRAP_SERVERS = config("KAFKA_BOOTSTRAP_SERVERS", cast=str, default="broker:19092")

ORDER_SERVICE_URL = config("ORDER_SERVICE_URL", cast=str, default="http://localhost:8083")
HTTP_TIMEOUT_SECONDS = config("HTTP_TIMEOUT_SECONDS", cast=float, default=10.0)
# attempts for the paid callback; safe because the order service rejects a second MarkPaid
ORDER_CALLBACK_ATTEMPTS = config("ORDER_CALLBACK_ATTEMPTS", cast=int, default=3)

# "simulated" or "stripe"
PAYMENT_GATEWAY = config("PAYMENT_GATEWAY", cast=str, default="simulated")
SIMULATED_SUCCESS_RATE = config("SIMULATED_SUCCESS_RATE", cast=float, default=0.9)
SIMULATED_REFUND_SUCCESS_RATE = config("SIMULATED_REFUND_SUCCESS_RATE", cast=float, default=0.95)
STRIPE_SECRET_KEY = config("STRIPE_SECRET_KEY", cast=Secret, default="")
STRIPE_CURRENCY = config("STRIPE_CURRENCY", cast=str, default="usd")
