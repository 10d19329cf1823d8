import os
import logging
from typing import Optional
from pydantic import BaseModel, Field, field_validator
from dotenv import load_dotenv

from billing.constants import (
    DEFAULT_GATEWAY_BASE_URL,
    EXPIRATION_INTERVAL_SECONDS,
    GATEWAY_TIMEOUT_SECONDS,
    TOKEN_TTL_SECONDS,
)

# Загружаем переменные из .env файла (для локального запуска)
load_dotenv()


class Config(BaseModel):
    """Конфигурация сервиса биллинга с валидацией"""

    database_url: str = Field(..., description="PostgreSQL connection URL")

    # Платёжный шлюз
    gateway_base_url: str = Field(default=DEFAULT_GATEWAY_BASE_URL, description="Gateway API base URL")
    gateway_client_id: str = Field(..., description="Gateway client id")
    gateway_api_key: str = Field(..., description="Gateway API key")
    gateway_merchant_account_id: Optional[str] = Field(default=None, description="Merchant account id")
    gateway_timeout_seconds: float = Field(default=GATEWAY_TIMEOUT_SECONDS, gt=0, description="Timeout of every gateway call")
    gateway_token_ttl_seconds: int = Field(default=TOKEN_TTL_SECONDS, gt=0, description="Credential cache lifetime")

    expiration_interval_seconds: int = Field(default=EXPIRATION_INTERVAL_SECONDS, gt=0, description="Expiration engine cadence")

    web_host: str = Field(default="0.0.0.0", description="HTTP bind host")
    web_port: int = Field(default=8080, description="HTTP bind port")

    # Telegram-бот для уведомлений администраторов (необязателен)
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram Bot API Token")
    admin_chat_ids: list[int] = Field(default_factory=list, description="List of admin Telegram IDs")

    log_level: str = Field(default="INFO", description="Logging level")
    environment: str = Field(default="production", description="production | development")

    @field_validator('admin_chat_ids', mode='before')
    @classmethod
    def parse_admin_ids(cls, v):
        """Парсит ADMIN_CHAT_ID из строки в список чисел"""
        if v is None:
            return []
        if isinstance(v, str):
            return [int(id.strip()) for id in v.split(",") if id.strip()]
        return v

    @field_validator('gateway_base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @classmethod
    def from_env(cls) -> "Config":
        """Создает конфиг из переменных окружения с валидацией"""
        db_url = os.getenv("DATABASE_URL")
        client_id = os.getenv("GATEWAY_CLIENT_ID")
        api_key = os.getenv("GATEWAY_API_KEY")

        if not db_url:
            raise ValueError("DATABASE_URL не установлен")
        if not client_id:
            raise ValueError("GATEWAY_CLIENT_ID не установлен")
        if not api_key:
            raise ValueError("GATEWAY_API_KEY не установлен")

        return cls(
            database_url=db_url,
            gateway_base_url=os.getenv("GATEWAY_BASE_URL", DEFAULT_GATEWAY_BASE_URL),
            gateway_client_id=client_id,
            gateway_api_key=api_key,
            gateway_merchant_account_id=os.getenv("GATEWAY_MERCHANT_ACCOUNT_ID") or None,
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", GATEWAY_TIMEOUT_SECONDS)),
            gateway_token_ttl_seconds=int(os.getenv("GATEWAY_TOKEN_TTL_SECONDS", TOKEN_TTL_SECONDS)),
            expiration_interval_seconds=int(os.getenv("EXPIRATION_INTERVAL_SECONDS", EXPIRATION_INTERVAL_SECONDS)),
            web_host=os.getenv("WEB_HOST", "0.0.0.0"),
            web_port=int(os.getenv("WEB_PORT", "8080")),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            admin_chat_ids=cls.parse_admin_ids(os.getenv("ADMIN_CHAT_ID")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            environment=os.getenv("ENVIRONMENT", "production"),
        )


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Настраивает логирование для приложения"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return logging.getLogger("billing")
