"""Application configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from campaign_bridge.core.exceptions import ConfigurationError


class VoiceAISettings(BaseModel):
    """Voice-AI provider (Vapi) configuration."""

    api_key: str = ""
    base_url: str = "https://api.vapi.ai"
    timeout: float = 30.0

    # Default assistant plus named assistants selectable per call
    assistant_id: str = ""
    assistants: dict[str, str] = Field(default_factory=dict)
    phone_number_id: str = ""

    # Hold assistant used inside conferences
    hold_assistant_id: str = ""
    hold_phone_number_id: str = ""

    # Public URL the provider posts events to
    webhook_url: str = ""
    webhook_secret: str = ""

    max_duration_seconds: int = 1800


class TwilioSettings(BaseModel):
    """Twilio REST API configuration."""

    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    server_base_url: str = ""
    agent_queue_number: str = ""
    timeout: float = 30.0

    # How far back to look for a customer's live call
    active_call_window_minutes: int = 30


class RedisSettings(BaseModel):
    """Shared state store configuration."""

    backend: str = "redis"  # redis, memory
    url: str = "redis://localhost:6379/0"

    campaign_ttl_seconds: int = 7 * 24 * 3600
    queue_ttl_seconds: int = 24 * 3600
    campaign_calls_ttl_seconds: int = 7 * 24 * 3600
    conference_ttl_seconds: int = 1800


class RegistrySettings(BaseModel):
    """Call registry timing configuration (seconds)."""

    transcript_limit: int = 100
    evidence_promotion: bool = True

    # Delayed cleanup after a call ends
    end_broadcast_delay: float = 300.0
    removal_delay: float = 600.0
    listener_recheck_delay: float = 300.0
    failed_removal_delay: float = 2.0
    no_answer_removal_delay: float = 180.0
    manual_end_removal_delay: float = 5.0

    # Periodic sweep
    cleanup_interval: float = 300.0
    max_age: float = 3600.0
    queued_max_age: float = 300.0


class AudioSettings(BaseModel):
    """Live audio stream monitoring configuration."""

    enabled: bool = True
    max_retries: int = 3
    base_delay: float = 1.0
    connect_timeout: float = 10.0
    buffer_limit_bytes: int = 1_048_576


class ConferenceSettings(BaseModel):
    """Conference bridging configuration."""

    hold_agent_goodbye_seconds: float = 5.0
    welcome_message: str = "Connecting you with a specialist now. Please hold."
    handoff_message: str = (
        "Senior consultant has joined. Please say goodbye and disconnect."
    )
    agent_whisper: str = (
        "Connecting you to {customer}. The customer is currently with our AI assistant."
    )


class WebhookSettings(BaseModel):
    """Inbound webhook security configuration."""

    validate_signatures: bool = True
    secret_header: str = "X-Vapi-Secret"

    # Twilio signs callbacks against the public request URL
    validate_twilio_signatures: bool = False


class Settings(BaseSettings):
    """Application settings.

    Loaded from:
    1. Environment variables (CB_*)
    2. configs/{environment}.yaml
    3. configs/default.yaml
    """

    model_config = SettingsConfigDict(
        env_prefix="CB_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = ""

    # Environment
    environment: str = "development"
    debug: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    cors_origins: list[str] = Field(default_factory=list)

    # Subsystems
    voice_ai: VoiceAISettings = Field(default_factory=VoiceAISettings)
    twilio: TwilioSettings = Field(default_factory=TwilioSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    conference: ConferenceSettings = Field(default_factory=ConferenceSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)

    @property
    def conference_webhook_url(self) -> str:
        """Status callback URL for Twilio conference events."""
        base = self.twilio.server_base_url.rstrip("/")
        if not base:
            return ""
        return f"{base}/api/v1/conference/webhook/twilio"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings object loaded from config files and environment.
    """
    import os
    from dynaconf import Dynaconf

    config_dir = Path("configs")
    env = os.getenv("CB_ENV", "development")

    settings_files = []
    if (config_dir / "default.yaml").exists():
        settings_files.append(str(config_dir / "default.yaml"))
    if (config_dir / f"{env}.yaml").exists():
        settings_files.append(str(config_dir / f"{env}.yaml"))

    dynaconf = Dynaconf(
        envvar_prefix="CB",
        settings_files=settings_files,
        load_dotenv=True,
    )

    config_dict: dict[str, Any] = {}
    for key in dynaconf.keys():
        if not key.startswith("_"):
            config_dict[key.lower()] = dynaconf[key]

    config_dict["environment"] = env

    if not config_dict.get("instance_id"):
        config_dict["instance_id"] = _generate_instance_id()

    return Settings(**config_dict)


def _generate_instance_id() -> str:
    """Generate a process identifier from the hostname and pid."""
    import os
    import socket

    return f"{socket.gethostname()}-{os.getpid()}"


def validate_production_settings(settings: Settings) -> list[str]:
    """Validate settings for production readiness.

    Args:
        settings: Application settings to validate.

    Returns:
        List of validation error messages (empty if all valid).
    """
    errors: list[str] = []

    if settings.environment not in ("production", "staging", "prod"):
        return errors

    if not settings.voice_ai.api_key:
        errors.append("CB_VOICE_AI__API_KEY must be set in production")

    if not settings.voice_ai.phone_number_id:
        errors.append("CB_VOICE_AI__PHONE_NUMBER_ID must be set in production")

    if settings.webhooks.validate_signatures and not settings.voice_ai.webhook_secret:
        errors.append(
            "CB_VOICE_AI__WEBHOOK_SECRET must be set when signature validation is enabled"
        )

    if not settings.twilio.account_sid:
        errors.append("CB_TWILIO__ACCOUNT_SID must be set in production")
    if not settings.twilio.auth_token:
        errors.append("CB_TWILIO__AUTH_TOKEN must be set in production")

    if settings.redis.backend == "memory":
        errors.append("CB_REDIS__BACKEND=memory is not shared across processes")

    return errors


def require_valid_settings(settings: Settings | None = None) -> Settings:
    """Get settings and raise if production validation fails.

    Args:
        settings: Settings to check (defaults to the cached settings)

    Raises:
        ConfigurationError: If production settings are invalid.

    Returns:
        Validated settings.
    """
    settings = settings or get_settings()
    errors = validate_production_settings(settings)

    if errors:
        raise ConfigurationError(
            "Production configuration errors",
            details={"environment": settings.environment, "errors": errors},
        )

    return settings
