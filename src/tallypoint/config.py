from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

STORE_KINDS = ("sqlite", "memory")


def is_memory_path(path: str) -> bool:
    return path.strip() == ":memory:" or path.startswith("file::memory:")


def _split_origins(raw: str) -> List[str]:
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts or ["*"]


@dataclass
class Settings:
    token: str = "dev-secret"
    host: str = "127.0.0.1"
    port: int = 7000
    reload: bool = False
    log_level: str = "info"

    store: str = "sqlite"
    db_path: str = "./data/tallypoint.db"
    db_timeout_s: float = 5.0

    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    access_log: str = ""


def load_settings() -> Settings:
    """
    Reads TALLY_* environment variables:
      TALLY_TOKEN          shared bearer secret
      TALLY_STORE          sqlite | memory
      TALLY_DB_PATH        sqlite file (parent dir is created on first use)
      TALLY_DB_TIMEOUT_S   max seconds to wait on a locked database
      TALLY_CORS_ORIGINS   "*" or "https://a.example,https://b.example"
      TALLY_ACCESS_LOG     optional JSON-lines access log path
    """
    store = os.getenv("TALLY_STORE", "sqlite").strip().lower()
    if store not in STORE_KINDS:
        raise ValueError(f"TALLY_STORE must be one of {STORE_KINDS}, got {store!r}")

    db_path = os.getenv("TALLY_DB_PATH", "./data/tallypoint.db")
    if store == "sqlite" and is_memory_path(db_path):
        raise ValueError("TALLY_DB_PATH cannot be an in-memory SQLite database; set TALLY_STORE=memory instead")

    return Settings(
        token=os.getenv("TALLY_TOKEN", "dev-secret"),
        host=os.getenv("TALLY_HOST", "127.0.0.1"),
        port=int(os.getenv("TALLY_PORT", "7000")),
        reload=os.getenv("TALLY_RELOAD", "0") == "1",
        log_level=os.getenv("TALLY_LOG_LEVEL", "info"),
        store=store,
        db_path=db_path,
        db_timeout_s=float(os.getenv("TALLY_DB_TIMEOUT_S", "5.0")),
        cors_origins=_split_origins(os.getenv("TALLY_CORS_ORIGINS", "*")),
        access_log=os.getenv("TALLY_ACCESS_LOG", "").strip(),
    )
