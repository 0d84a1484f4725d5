"""
Configuration management for the cart reconciliation service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Optional

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "cartsync")
    REGION: str = os.getenv("REGION", "ap-southeast-2")

    # Shop backend settings
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:5000/api/")
    API_TOKEN: Optional[str] = os.getenv("API_TOKEN")
    BACKEND_TIMEOUT_SECONDS: float = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "10"))
    DEFAULT_PAYMENT_METHOD: str = os.getenv("DEFAULT_PAYMENT_METHOD", "credit-card")

    # Redis settings (local cart snapshots)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USE_TLS: bool = os.getenv("REDIS_USE_TLS", "false").lower() == "true"

    # Snapshot settings
    SNAPSHOT_TTL_SECONDS: int = int(os.getenv("SNAPSHOT_TTL_SECONDS", str(7 * 24 * 60 * 60)))  # 7 days default
    SNAPSHOT_KEY_PREFIX: str = os.getenv("SNAPSHOT_KEY_PREFIX", "cart_snapshot")

    # Placeholders for malformed cart detail entries
    PLACEHOLDER_TITLE: str = "No Title"
    PLACEHOLDER_GROUP: str = "N/A"
    PLACEHOLDER_IMAGE: str = "assets/img/placeholder.png"

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_MAX_RETRIES: int = int(os.getenv("REDIS_MAX_RETRIES", "3"))
    REDIS_INITIAL_BACKOFF_SECONDS: float = 0.1
    REDIS_MAX_BACKOFF_SECONDS: float = 2.0

    @classmethod
    def redis_url(cls) -> str:
        """Build the redis connection URL"""
        scheme = "rediss" if cls.REDIS_USE_TLS else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def load_secrets(cls) -> None:
        """Load API and Redis credentials from AWS Secrets Manager"""
        if cls.API_TOKEN and cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("CARTSYNC_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, run without credentials

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])

            cls.API_TOKEN = cls.API_TOKEN or secret_data.get("api_token")
            cls.REDIS_AUTH_TOKEN = cls.REDIS_AUTH_TOKEN or secret_data.get("redis_auth_token")
            if "redis_endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["redis_endpoint"]
        except Exception as e:
            logger.warning(f"Could not load secrets from Secrets Manager: {e}")
            # Continue without credentials (backend calls may be rejected)


# Load secrets at module import
Config.load_secrets()
