"""Responsiveness and file-size check for the checkpoint store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from wave_orchestrator.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)

LARGE_WAL_KB = 10 * 1024


@dataclass(slots=True)
class StoreHealth:
    """Result of one health check."""

    healthy: bool
    responsive_ms: int
    db_size_kb: int
    wal_size_kb: int
    shm_size_kb: int
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def check_store_health(
    db_path: Path,
    *,
    busy_timeout_ms: int = 5_000,
    slow_response_ms: int = 500,
) -> StoreHealth:
    """Time a ``SELECT 1`` round trip and report store/journal file sizes.

    Slow responses and an oversized WAL are reported as warnings only; the store
    is unhealthy when the check itself fails or exceeds the busy timeout.
    """

    error: str | None = None
    started = time.perf_counter()
    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1")).scalar_one()
    except SQLAlchemyError as exc:
        error = str(exc)
        logger.warning("Checkpoint store health check failed: %s", exc)
    finally:
        engine.dispose()
    responsive_ms = int((time.perf_counter() - started) * 1000)

    health = StoreHealth(
        healthy=error is None and responsive_ms <= busy_timeout_ms,
        responsive_ms=responsive_ms,
        db_size_kb=_size_kb(db_path),
        wal_size_kb=_size_kb(db_path.with_name(db_path.name + "-wal")),
        shm_size_kb=_size_kb(db_path.with_name(db_path.name + "-shm")),
        error=error,
    )
    if health.wal_size_kb > LARGE_WAL_KB:
        health.warnings.append(
            "Large WAL file detected. This may indicate checkpoint issues.",
        )
    if responsive_ms > slow_response_ms:
        health.warnings.append("Slow store response. This may indicate lock contention.")
    return health


def format_size_kb(kb: int) -> str:
    if kb == 0:
        return "0 KB (not found)"
    if kb < 1024:
        return f"{kb} KB"
    return f"{round(kb / 1024, 1)} MB"


def _size_kb(path: Path) -> int:
    try:
        return round(path.stat().st_size / 1024)
    except FileNotFoundError:
        return 0
