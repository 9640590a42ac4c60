from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./sms_relay.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Relay broker (MQTT)
    MQTT_BROKER_URL: str = "mqtt://localhost:1883"
    MQTT_CLIENT_ID: str = "sms-relay"
    MQTT_CONTROL_TOPIC: str = "sms/send"
    MQTT_STATUS_TOPIC: str = "sms/status"
    MQTT_INCOMING_TOPIC: str = "sms/incoming"
    MQTT_KEEPALIVE: int = 60
    MQTT_PUBLISH_TIMEOUT: float = 5.0
    MQTT_MAX_RECONNECT_ATTEMPTS: int = 5
    MQTT_RECONNECT_BASE_DELAY: float = 1.0
    MQTT_RECONNECT_MAX_DELAY: float = 30.0

    # Queue pacing - the modem handles one send at a time
    INTER_SEND_DELAY: float = 45.0
    QUEUE_TICK_INTERVAL: float = 5.0
    PUBLISH_MAX_ATTEMPTS: int = 3
    PUBLISH_RETRY_DELAY: float = 3.0

    # Intake limits
    MAX_PAYLOAD_LENGTH: int = 140
    MAX_BATCH_SIZE: int = 1000
    MAX_RETRIES: int = 3

    # Start the transport and queue processor with the app
    RELAY_AUTOSTART: bool = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
