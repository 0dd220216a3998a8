"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast on missing credentials)
- Type safety with Pydantic
- Secure defaults (no service account material in code)
"""

import json
import os
from functools import lru_cache
from typing import Any, Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()

DEFAULT_DATABASE_URL = "https://lamedtelemedicine-default-rtdb.europe-west1.firebasedatabase.app/"
DEFAULT_DELIVERY_URL = "https://lamed-notifierr.medatesfe21.workers.dev"


class ConfigurationError(RuntimeError):
    """Raised when required process configuration is missing or invalid."""


class FirebaseConfig(BaseModel):
    """Credentials and location of the realtime database feeding the notifier."""

    service_account: dict[str, Any] = Field(..., description="Parsed service account JSON")
    database_url: str = Field(default=DEFAULT_DATABASE_URL, description="Realtime DB URL")

    @field_validator("service_account", mode="before")
    @classmethod
    def parse_service_account(cls, v: Any) -> Any:
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("FIREBASE_SERVICE_ACCOUNT env variable not set")
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"FIREBASE_SERVICE_ACCOUNT is not valid JSON: {e}") from e
        if not isinstance(v, dict) or not v:
            raise ValueError("FIREBASE_SERVICE_ACCOUNT must be a JSON object")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("FIREBASE_DATABASE_URL must be an https URL")
        return v


class DeliveryConfig(BaseModel):
    """Push delivery endpoint settings."""

    endpoint_url: str = Field(default=DEFAULT_DELIVERY_URL, description="Delivery worker URL")
    timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Timeout for a single delivery call"
    )
    routing_key: str = Field(
        default="playerId", min_length=1, description="JSON key carrying the routing id"
    )


class ReminderConfig(BaseModel):
    """Reminder scanner and recipient lookup settings."""

    scan_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between appointment scans"
    )
    routing_id_field: str = Field(
        default="oneSignalPlayerId", min_length=1, description="Field under /users/{id}"
    )
    support_contact: str = Field(
        default="support@lamedtelemedicine.com",
        description="Contact shown in failed payment notifications",
    )


class HealthServerConfig(BaseModel):
    """Liveness endpoint configuration."""

    host: str = Field(default="0.0.0.0", description="Health server host")
    port: int = Field(default=3000, gt=0, lt=65536, description="Health server port")
    enabled: bool = Field(default=True, description="Serve the health endpoint")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    shutdown_drain_seconds: float = Field(
        default=5.0, ge=0.0, description="Max wait for queued events on shutdown"
    )
    route_retry_seconds: float = Field(
        default=30.0, gt=0.0, description="Delay between retries of unavailable routes"
    )

    firebase: FirebaseConfig
    delivery: DeliveryConfig
    reminders: ReminderConfig
    health: HealthServerConfig
    logging: LoggingConfig

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
    v = val.strip().lower()
    if v in {"dev", "development"}:
        return "development"
    if v in {"stage", "staging"}:
        return "staging"
    return "production"


def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    v = val.strip().upper()
    return cast(
        Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
    )


def _parse_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation.

    Raises:
        ConfigurationError: if the service account is missing or any value is invalid.
    """
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "production"))
    debug = environment == "development"

    try:
        firebase_config = FirebaseConfig(
            service_account=os.getenv("FIREBASE_SERVICE_ACCOUNT", ""),
            database_url=os.getenv("FIREBASE_DATABASE_URL", DEFAULT_DATABASE_URL),
        )

        delivery_config = DeliveryConfig(
            endpoint_url=os.getenv("DELIVERY_ENDPOINT_URL", DEFAULT_DELIVERY_URL),
            timeout_seconds=float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "10.0")),
            routing_key=os.getenv("DELIVERY_ROUTING_KEY", "playerId"),
        )

        reminder_config = ReminderConfig(
            scan_interval_seconds=float(os.getenv("REMINDER_SCAN_INTERVAL_SECONDS", "60.0")),
            routing_id_field=os.getenv("ROUTING_ID_FIELD", "oneSignalPlayerId"),
            support_contact=os.getenv("SUPPORT_CONTACT", "support@lamedtelemedicine.com"),
        )

        health_config = HealthServerConfig(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3000")),
            enabled=_parse_bool(os.getenv("HEALTH_SERVER_ENABLED"), True),
        )

        logging_config = LoggingConfig(
            level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
            format="console" if debug else "json",
        )

        return AppConfig(
            environment=environment,
            debug=debug,
            shutdown_drain_seconds=float(os.getenv("SHUTDOWN_DRAIN_SECONDS", "5.0")),
            route_retry_seconds=float(os.getenv("ROUTE_RETRY_SECONDS", "30.0")),
            firebase=firebase_config,
            delivery=delivery_config,
            reminders=reminder_config,
            health=health_config,
            logging=logging_config,
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(str(e)) from e


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> AppConfig:
    """Validate configuration at startup. Raises ConfigurationError on failure."""
    return get_config()


def config_summary(config: AppConfig) -> dict[str, Any]:
    """Non-secret view of the configuration, safe to log."""
    return {
        "environment": config.environment,
        "debug": config.debug,
        "database_url": config.firebase.database_url,
        "project_id": config.firebase.service_account.get("project_id"),
        "delivery_endpoint": config.delivery.endpoint_url,
        "delivery_timeout_seconds": config.delivery.timeout_seconds,
        "scan_interval_seconds": config.reminders.scan_interval_seconds,
        "health_port": config.health.port if config.health.enabled else None,
        "log_level": config.logging.level,
    }
