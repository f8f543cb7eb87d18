"""Runtime configuration, read from the environment (and a local .env file)."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .constants import ADMIN_ORDER_LIMIT

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_ALLOWED_ORIGINS = [
    "https://lelefongaming.com",
    "https://www.lelefongaming.com",
    "https://lelefon-gaming-store.pages.dev",
]


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Settings:
    database_path: Path = BASE_DIR / "data" / "storefront.db"
    log_file: Optional[Path] = None
    log_level: str = "INFO"
    allowed_origins: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    admin_password: str = ""
    admin_order_limit: int = ADMIN_ORDER_LIMIT
    ipay88_redirect_url: str = "https://payment.ipay88.com.my/epayment/entry.asp"

    @classmethod
    def from_env(cls) -> "Settings":
        log_file = os.getenv("STOREFRONT_LOG_FILE", "")
        origins = os.getenv("ALLOWED_ORIGINS", "")
        return cls(
            database_path=Path(os.getenv("STOREFRONT_DB_PATH", str(cls.database_path))),
            log_file=Path(log_file) if log_file else None,
            log_level=os.getenv("STOREFRONT_LOG_LEVEL", "INFO").upper(),
            allowed_origins=_split_csv(origins) if origins else list(DEFAULT_ALLOWED_ORIGINS),
            admin_password=os.getenv("ADMIN_PASSWORD", ""),
            admin_order_limit=int(os.getenv("ADMIN_ORDER_LIMIT", str(ADMIN_ORDER_LIMIT))),
            ipay88_redirect_url=os.getenv("IPAY88_REDIRECT_URL", cls.ipay88_redirect_url),
        )
