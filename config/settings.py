from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FetchSettings(BaseSettings):
    """Tunables read from FETCH_* environment variables (or a .env file)"""

    # Request defaults
    timeout_ms: int = Field(default=30000, gt=0)
    max_redirects: int = Field(default=10, ge=0)
    content_size_limit: int = Field(default=50 * 1024, gt=0)

    # Chunked delivery
    chunk_ttl_seconds: int = Field(default=10 * 60, gt=0)

    # Browser transport
    browser_headless: bool = True
    browser_executable_path: Optional[str] = Field(default=None, alias="PUPPETEER_EXECUTABLE_PATH")
    browser_settle_ms: int = Field(default=5000, ge=0)
    browser_retries: int = Field(default=2, ge=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="FETCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("browser_executable_path")
    @classmethod
    def _blank_path_is_unset(cls, value: Optional[str]) -> Optional[str]:
        return value or None


settings = FetchSettings()


# ⚙️ Request defaults
DEFAULT_TIMEOUT_MS = settings.timeout_ms
DEFAULT_MAX_REDIRECTS = settings.max_redirects
DEFAULT_CONTENT_SIZE_LIMIT = settings.content_size_limit
REDIRECT_DELAY_RANGE = (0.5, 3.0)  # seconds
ERROR_BODY_PREVIEW_CHARS = 200

# 📦 Chunked delivery
CHUNK_TTL_SECONDS = settings.chunk_ttl_seconds

# 🌐 Browser transport
BROWSER_HEADLESS = settings.browser_headless
BROWSER_EXECUTABLE_PATH = settings.browser_executable_path
DEFAULT_WAIT_FOR_SELECTOR = "body"
DEFAULT_WAIT_FOR_TIMEOUT_MS = settings.browser_settle_ms
BROWSER_CONTENT_MAX_BYTES = 10 * 1024 * 1024
CHALLENGE_NAVIGATION_TIMEOUT_MS = 30000
BROWSER_RETRY_ATTEMPTS = settings.browser_retries + 1
BROWSER_RETRY_BACKOFF_SECONDS = 1.0

# 🔌 Proxy detection
SHELL_PROBE_TIMEOUT_SECONDS = 5.0

# 🧠 Memory governance (informational only)
MEMORY_CHECK_INTERVAL_SECONDS = 60
MEMORY_PROCESS_WARN_MB = 500
MEMORY_TOTAL_WARN_MB = 1000

# 📝 Logging
LOG_LEVEL = settings.log_level
LOG_JSON = settings.log_json
