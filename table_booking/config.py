import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv("config.env")


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(val: str | None, default: int) -> int:
    if val is None or not val.strip():
        return default
    return int(val)


@dataclass
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./table_booking.db")
    sql_echo: bool = _as_bool(os.getenv("SQL_ECHO"), False)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    # Availability
    forward_search_days: int = _as_int(os.getenv("FORWARD_SEARCH_DAYS"), 30)
    # Confirmation codes
    confirmation_code_length: int = _as_int(os.getenv("CONFIRMATION_CODE_LENGTH"), 6)
    confirmation_code_attempts: int = _as_int(os.getenv("CONFIRMATION_CODE_ATTEMPTS"), 5)
    # Pagination
    default_page_limit: int = _as_int(os.getenv("DEFAULT_PAGE_LIMIT"), 20)
    max_page_limit: int = _as_int(os.getenv("MAX_PAGE_LIMIT"), 100)


settings = Settings()
