import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # API settings
    app_name: str = os.getenv("APP_NAME", "Biblioteca API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "3000"))
    # The SPA dev server (Vite) runs on 5173
    cors_origins: List[str] = field(default_factory=lambda: _env_list("CORS_ORIGINS", "http://localhost:5173"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))

    # Circulation policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    max_renewals: int = int(os.getenv("MAX_RENEWALS", "3"))
    daily_fine: Decimal = Decimal(os.getenv("DAILY_FINE", "2.50"))
    reservation_hold_days: int = int(os.getenv("RESERVATION_HOLD_DAYS", "7"))
    auto_notify_on_return: bool = _env_bool("AUTO_NOTIFY_ON_RETURN", "True")
    # Seconds between eager expiry sweeps; 0 keeps expiry purely lazy
    expiry_sweep_interval: float = float(os.getenv("EXPIRY_SWEEP_INTERVAL", "0"))

    # Application settings
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()
