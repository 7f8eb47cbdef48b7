from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "AZsubay.dev Auth"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./marketauth.db"

    # Security settings
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Two-factor settings
    two_factor_issuer: str = "AZsubay.dev"
    totp_valid_window: int = 1
    backup_code_count: int = 5
    sms_otp_length: int = 6
    sms_otp_ttl_seconds: int = 300

    # Verification attempt limiting (0 disables)
    two_factor_max_attempts: int = 5
    two_factor_lockout_base_seconds: float = 2.0
    two_factor_lockout_max_seconds: float = 300.0

    # SMS delivery: "log", "mock" or "twilio"
    sms_backend: str = "log"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"

    # SMS challenge storage: "memory" or "redis"
    sms_challenge_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


settings = Settings()
