from pydantic_settings import BaseSettings
import os
from pathlib import Path
from dotenv import load_dotenv

# Environment is resolved before any dotenv file is read.
# Set ENVIRONMENT=production to load .env.production instead of .env.
_project_dir = Path(__file__).resolve().parent.parent.parent
_is_production = os.environ.get("ENVIRONMENT") == "production"

if _is_production:
    load_dotenv(_project_dir / ".env.production", override=False)
else:
    load_dotenv(_project_dir / ".env", override=False)


def _get_version() -> str:
    """Get version from BUILD_VERSION file or package metadata."""
    version_file = _project_dir / "BUILD_VERSION"
    if version_file.exists():
        v = version_file.read_text().strip()
        if v:
            return v
    try:
        from importlib.metadata import version, PackageNotFoundError
        try:
            return version("agentable")
        except PackageNotFoundError:
            pass
    except ImportError:
        pass
    return "0.1.0"


class Settings(BaseSettings):
    APP_NAME: str = "agentable"
    SETTING_VERSION: str = _get_version()

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./agentable.db"
    DB_ECHO: bool = False

    # LLM settings
    ANTHROPIC_API_KEY: str | None = None
    DEFAULT_MODEL: str = "claude-sonnet-4-20250514"
    DEFAULT_MAX_TOKENS: int = 1024
    DEFAULT_TEMPERATURE: float = 0.7

    # Agent settings
    AGENT_MAX_ITERATIONS: int = 5
    AGENT_HISTORY_MESSAGES: int = 10

    # Table limits
    MAX_ROWS_PER_TABLE: int = 10000

    # Dataset export root (all export destinations are resolved beneath it)
    EXPORT_DIR: str = "exports"

    # CORS settings
    CORS_ORIGINS: list[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]
    CORS_EXPOSE_HEADERS: list[str] = ["X-Request-ID"]

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILENAME_PREFIX: str = "agentable"
    LOG_BACKUP_COUNT: int = 10
    LOG_FORMAT: str = "standard"  # Options: "standard" or "json"
    LOG_TO_FILE: bool = True
    LOG_SENSITIVE_FIELDS: list[str] = ["password", "token", "secret", "key", "authorization"]
    LOG_PERFORMANCE_THRESHOLD_MS: int = 500  # Log slow requests above this threshold
    LOG_REQUEST_BODY: bool = False
    LOG_RESPONSE_BODY: bool = False

    @property
    def anthropic_api_key(self) -> str | None:
        """Get the Anthropic API key"""
        return self.ANTHROPIC_API_KEY

    @property
    def export_root(self) -> Path:
        return Path(self.EXPORT_DIR).resolve()

    class Config:
        env_file = ".env"
        case_sensitive = True
        env_file_encoding = 'utf-8'
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        if self.LOG_FORMAT not in ("standard", "json"):
            raise ValueError(f"LOG_FORMAT must be 'standard' or 'json', got {self.LOG_FORMAT!r}")
        if self.AGENT_MAX_ITERATIONS < 1:
            raise ValueError("AGENT_MAX_ITERATIONS must be at least 1")


settings = Settings()
