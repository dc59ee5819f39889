# order_api/settings.py

from starlette.config import Config
from starlette.datastructures import Secret

config = Config(".env")

ENVIRONMENT = config("ENVIRONMENT", cast=str, default="development")

DATABASE_URL = config("DATABASE_URL", cast=Secret, default="sqlite:///./orders.db")
TEST_DATABASE_URL = config("TEST_DATABASE_URL", cast=Secret, default="sqlite://")

# End-user tokens are issued by the user service with this key
SECRET_KEY = config("SECRET_KEY", cast=str, default="default_jwt_secret_only_for_development")
SERVICE_SECRET = config("SERVICE_SECRET", cast=str, default="service_secret_key")
SERVICE_NAME = "order-service"

KAFKA_BOOTSTRAP_SERVERS = config("KAFKA_BOOTSTRAP_SERVERS", cast=str, default="broker:19092")
KAFKA_CONSUMER_GROUP_ID = config("KAFKA_CONSUMER_GROUP_ID", cast=str, default="order_service")

PRODUCT_SERVICE_URL = config("PRODUCT_SERVICE_URL", cast=str, default="http://localhost:8082")
USER_SERVICE_URL = config("USER_SERVICE_URL", cast=str, default="http://localhost:8081")
HTTP_TIMEOUT_SECONDS = config("HTTP_TIMEOUT_SECONDS", cast=float, default=10.0)
