from __future__ import annotations

from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from keyshop.database import engine
from keyshop.services.cache_service import CacheStore


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_cache_health(cache: Optional[CacheStore]) -> Dict[str, str]:
    if cache is None:
        return {"status": "UNKNOWN"}
    status = "UP" if cache.ping() else "DOWN"
    return {"status": status, "backend": type(cache).__name__}
