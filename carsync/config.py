"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"
SPOOL_DIR = DATA_DIR / "spool"
STATE_DB = DATA_DIR / "state.db"
METRICS_FILE = DATA_DIR / "metrics.jsonl"

# Ensure directories exist
DATA_DIR.mkdir(exist_ok=True)
SPOOL_DIR.mkdir(exist_ok=True)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # External listings API
    API_BASE_URL: str | None = os.getenv("API_BASE_URL")
    API_KEY: str | None = os.getenv("API_KEY")
    USER_AGENT: str = os.getenv("USER_AGENT", "carsync/1.0")

    # Pipeline
    CONCURRENCY: int = int(os.getenv("CONCURRENCY", "4"))
    RPS: float = float(os.getenv("RPS", "10"))
    RATE_BURST: float = float(os.getenv("RATE_BURST", os.getenv("RPS", "10")))
    PAGE_SIZE: int = int(os.getenv("PAGE_SIZE", "30"))
    BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", "20"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "2"))
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "15"))
    MAX_PAGES: int = int(os.getenv("MAX_PAGES", "3000"))
    MAX_CONSECUTIVE_EMPTY: int = int(os.getenv("MAX_CONSECUTIVE_EMPTY", "5"))
    MAX_API_ERRORS: int = int(os.getenv("MAX_API_ERRORS", "20"))
    CIRCUIT_FAILURE_THRESHOLD: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    CIRCUIT_TIMEOUT: float = float(os.getenv("CIRCUIT_TIMEOUT", "60"))

    # Transform
    PRICE_MARKUP: float = float(os.getenv("PRICE_MARKUP", "2300"))
    STORE_RAW_PAYLOAD: bool = _env_bool("STORE_RAW_PAYLOAD")

    # Checkpoint
    CHECKPOINT_MAX_AGE_HOURS: float = float(os.getenv("CHECKPOINT_MAX_AGE_HOURS", "24"))

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    SUPABASE_STAGING_TABLE: str = os.getenv("SUPABASE_STAGING_TABLE", "cars_staging")
    SUPABASE_CACHE_TABLE: str = os.getenv("SUPABASE_CACHE_TABLE", "cars_cache")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Trigger API security
    API_KEY_HEADER_SECRET: str | None = os.getenv("API_KEY_HEADER_SECRET")

    def validate(self, require_supabase: bool = True) -> None:
        """Validate required configuration, including CLI overrides set on the instance."""
        errors = []
        if require_supabase:
            if not self.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not self.SUPABASE_SERVICE_ROLE_KEY:
                errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if not self.API_BASE_URL:
            errors.append("API_BASE_URL is required")
        if not self.API_KEY:
            errors.append("API_KEY is required")
        if self.CONCURRENCY < 1:
            errors.append("CONCURRENCY must be >= 1")
        if self.RPS <= 0:
            errors.append("RPS must be > 0")
        if self.PAGE_SIZE < 1:
            errors.append("PAGE_SIZE must be >= 1")
        if self.BATCH_SIZE < 1:
            errors.append("BATCH_SIZE must be >= 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
