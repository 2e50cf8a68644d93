import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API Ayarları
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Veritabanı Ayarları
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///library.db")
    database_echo: bool = _env_bool("DATABASE_ECHO")
    # SQLite kilit beklemesi (saniye)
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "30"))

    # Önbellek Ayarları
    redis_url: Optional[str] = os.getenv("REDIS_URL")
    cache_max_entries: int = int(os.getenv("CACHE_MAX_ENTRIES", "1000"))
    cache_ttl_book: int = int(os.getenv("CACHE_TTL_BOOK", "300"))  # 5 dakika
    cache_ttl_borrower: int = int(os.getenv("CACHE_TTL_BORROWER", "600"))  # 10 dakika
    cache_ttl_borrowing: int = int(os.getenv("CACHE_TTL_BORROWING", "120"))  # 2 dakika
    cache_ttl_overdue: int = int(os.getenv("CACHE_TTL_OVERDUE", "60"))  # 1 dakika

    # Ödünç Ayarları
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))

    # Sayfalama Ayarları
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "500"))

    # Uygulama Ayarları
    app_name: str = os.getenv("APP_NAME", "Kütüphane Ödünç Sistemi")
    app_version: str = os.getenv("APP_VERSION", "2.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG")


settings = Settings()
