from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    fe_host: str                   # will read from .env
    supabase_service_key: str      # will read from .env
    supabase_url: str              # will read from .env
    supabase_jwt_secret: str       # will read from .env
    cors_origins: List[str] = []   # will be set from fe_host if not provided
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    gemini_api_key: str | None = None
    openai_base_url: str | None = None
    anthropic_base_url: str | None = None
    gemini_base_url: str | None = None
    ollama_base_url: str = "http://localhost:11434"
    llm_request_timeout: float = 60.0
    context_max_chars: int = 3000
    context_fallback_items: int = 10
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # set cors_origins default to fe_host if empty
        if not self.cors_origins:
            self.cors_origins = [self.fe_host]
