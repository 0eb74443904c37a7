import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_SECRET_KEY = "change-me-in-production"


@dataclass(frozen=True)
class AccountDefaults:
    point_count: int
    token_count: int
    code_ttl_seconds: int


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Phone Auth Service"
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = DEFAULT_SECRET_KEY
    DATABASE_URL: str = "sqlite:///data/accounts.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    SECURITY_HEADERS_ENABLED: bool = True
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRES: str = "7d"
    REFRESH_TOKEN_EXPIRES: str = "14d"
    CACHE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_KEY_PREFIX: str = "verify"
    VERIFICATION_CODE_TTL_SECONDS: int = 60
    CAPTCHA_LENGTH: int = 4
    SMS_CODE_LENGTH: int = 4
    SMS_GATEWAY_URL: str = ""
    SMS_GATEWAY_API_KEY: str = ""
    SMS_SIGN_NAME: str = ""
    SMS_TEMPLATE_CODE: str = ""
    SMS_GATEWAY_TIMEOUT_SECONDS: int = 8
    SMS_CODE_IN_RESPONSE: bool = False
    ACCOUNT_FLOW: str = "password"  # password | phone_first
    PASSWORD_HASH_SCHEME: str = "bcrypt"  # bcrypt | sha256
    DEFAULT_POINT_COUNT: int = 100
    DEFAULT_TOKEN_COUNT: int = 10000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def account_defaults(self) -> AccountDefaults:
        return AccountDefaults(
            point_count=int(self.DEFAULT_POINT_COUNT),
            token_count=int(self.DEFAULT_TOKEN_COUNT),
            code_ttl_seconds=max(int(self.VERIFICATION_CODE_TTL_SECONDS), 1),
        )

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == DEFAULT_SECRET_KEY:
            errors.append("SECRET_KEY must be changed from the default value")
        if self.SMS_CODE_IN_RESPONSE:
            errors.append("SMS_CODE_IN_RESPONSE must be false in production-like environments")
        if (self.CACHE_BACKEND or "").strip().lower() != "redis":
            errors.append("CACHE_BACKEND must be redis in production-like environments")
        if (self.PASSWORD_HASH_SCHEME or "").strip().lower() == "sha256":
            logger.warning("PASSWORD_HASH_SCHEME=sha256 stores unsalted digests; switch to bcrypt when clients allow")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
