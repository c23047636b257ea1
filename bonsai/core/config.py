from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./bonsai.db"

    # Redis configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # OpenAI-compatible API configuration (Grok by default). An empty key disables
    # remote matching and branch generation.
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.x.ai/v1"
    OPENAI_MODEL: str = "grok-4-latest"
    BRANCH_TEMPERATURE: float = 0.3

    # Decision resolution
    MATCH_CONFIDENCE_THRESHOLD: float = 0.45
    HISTORY_CONTEXT_SIZE: int = 10
    RETURN_STACK_LIMIT: int = 64
    MAX_USER_PROMPT_CHARS: int = 1200
    MAX_CUSTOM_PROMPT_CHARS: int = 400

    # Inactive play session cleanup threshold (in hours)
    INACTIVE_SESSION_CLEANUP_HOURS: int = 24

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def remote_enabled(self) -> bool:
        return bool(self.OPENAI_API_KEY)

settings = Settings()
