from typing import Annotated, Any, List, Optional, Union

from pydantic import AnyUrl, BeforeValidator, HttpUrl, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> Union[List[str], str]:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, (list, str)):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "unillm"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "local"

    BACKEND_CORS_ORIGINS: Annotated[Union[List[AnyUrl], str], BeforeValidator(parse_cors)] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> List[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    SENTRY_DSN: Optional[HttpUrl] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Backend endpoints
    ANTHROPIC_API_URL: str = "https://api.anthropic.com"
    ANTHROPIC_API_VERSION: str = "2023-06-01"
    OPENAI_API_URL: str = "https://api.openai.com"
    GOOGLE_AI_API_URL: str = "https://generativelanguage.googleapis.com"
    OLLAMA_API_URL: str = "http://localhost:11434"
    COPILOT_CHAT_API_URL: str = "https://api.githubcopilot.com"
    COPILOT_TOKEN_URL: str = "https://api.github.com/copilot_internal/v2/token"
    COPILOT_EDITOR_VERSION: str = "unillm/0.1.0"
    CLOUD_API_URL: str = "https://llm.example.com"
    CLOUD_EXPIRED_TOKEN_HEADER: str = "x-llm-token-expired"
    CLOUD_MAX_SPEND_HEADER: str = "x-llm-monthly-spend-reached"

    # Transport
    CONNECT_TIMEOUT_SECONDS: float = 10.0
    READ_TIMEOUT_SECONDS: float = 60.0
    REQUEST_TIMEOUT_SECONDS: float = 300.0
    CANCEL_GRACE_SECONDS: float = 2.0
    MAX_CONNECTIONS: int = 100

    # Retry
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_INITIAL_SECONDS: float = 0.5
    RETRY_MAX_SECONDS: float = 30.0

    # Provider registry
    MODEL_CATALOG_TTL_SECONDS: Optional[float] = None  # None = process lifetime
    OLLAMA_DEFAULT_CONTEXT: int = 4096

    # HTTP gateway
    GATEWAY_API_KEY: Optional[str] = None
    RATE_LIMIT_PER_MINUTE: int = 60
    USAGE_CALLBACK_URL: Optional[str] = None
    USAGE_CALLBACK_AUTH: Optional[str] = None


settings = Settings()
