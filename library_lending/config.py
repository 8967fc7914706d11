import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5.0"))  # seconds to wait on a locked database
    db_retries: int = int(os.getenv("DB_RETRIES", "3"))

    # Fallback fine configuration, used until an admin stores one
    fine_rate_per_day: float = float(os.getenv("FINE_RATE_PER_DAY", "10"))
    fine_grace_period_days: int = int(os.getenv("FINE_GRACE_PERIOD_DAYS", "0"))
    fine_max: float = float(os.getenv("FINE_MAX", "1000"))

    # Loan period policy
    min_loan_days: int = int(os.getenv("MIN_LOAN_DAYS", "1"))
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "30"))
    enforce_loan_period: bool = _env_bool("ENFORCE_LOAN_PERIOD", "True")
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
