"""
Monitoring for the KYC Case Pipeline

Two things are measured:
- repository queries, timed per operation name (``list_cases_for_owner``,
  ``count_pending_checks``, ...) with slow ones logged
- pipeline outcomes, counted as (operation, outcome) pairs such as
  ("create_case", "success") or ("registry_search", "demo_fallback")

Both go to Prometheus and to an in-process summary read with get_db_metrics().
The health check also reports which pipeline tables are missing, so the CLI
``health`` command tells an unreachable database from one that was never
initialised.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter, Histogram
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from config_manager import MonitoringSettings

logger = logging.getLogger(__name__)

_settings = MonitoringSettings()


def configure_monitoring(settings: Optional[MonitoringSettings] = None) -> None:
    """Apply the ``monitoring`` config section; no argument restores the defaults."""
    global _settings
    _settings = settings or MonitoringSettings()


# ============================================
# PROMETHEUS METRICS
# ============================================

query_duration = Histogram(
    'kyc_db_query_duration_seconds',
    'Repository query duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

slow_queries_total = Counter(
    'kyc_db_slow_queries_total',
    'Repository queries slower than the configured threshold',
    ['operation']
)

pipeline_events_total = Counter(
    'kyc_pipeline_events_total',
    'Pipeline operation outcomes',
    ['operation', 'outcome']
)


# ============================================
# IN-PROCESS SUMMARY
# ============================================

@dataclass
class QueryTimings:
    count: int = 0
    errors: int = 0
    slow_queries: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'errors': self.errors,
            'slow_queries': self.slow_queries,
            'avg_ms': round(self.total_ms / self.count, 2) if self.count else 0.0,
            'max_ms': round(self.max_ms, 2),
        }


class PipelineStats:
    """Query timings and outcome counts since start-up or the last reset."""

    def __init__(self):
        self._lock = threading.Lock()
        self._queries: Dict[str, QueryTimings] = {}
        self._events: Dict[Tuple[str, str], int] = {}
        self._started = time.monotonic()

    def record_query(self, operation: str, duration_ms: float, failed: bool, slow: bool) -> None:
        with self._lock:
            timings = self._queries.setdefault(operation, QueryTimings())
            timings.count += 1
            timings.total_ms += duration_ms
            timings.max_ms = max(timings.max_ms, duration_ms)
            timings.errors += int(failed)
            timings.slow_queries += int(slow)

    def record_event(self, operation: str, outcome: str) -> None:
        with self._lock:
            key = (operation, outcome)
            self._events[key] = self._events.get(key, 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            events: Dict[str, Dict[str, int]] = {}
            for (operation, outcome), count in sorted(self._events.items()):
                events.setdefault(operation, {})[outcome] = count
            return {
                'uptime_seconds': round(time.monotonic() - self._started, 3),
                'operations': {op: t.to_dict() for op, t in self._queries.items()},
                'events': events,
            }

    def slow_operations(self) -> List[Dict[str, Any]]:
        with self._lock:
            slow = [(op, t) for op, t in self._queries.items() if t.slow_queries]
            slow.sort(key=lambda item: item[1].max_ms, reverse=True)
            return [{'operation': op, **t.to_dict()} for op, t in slow]

    def reset(self) -> None:
        with self._lock:
            self._queries.clear()
            self._events.clear()
            self._started = time.monotonic()


_stats = PipelineStats()


def get_db_metrics() -> Dict[str, Any]:
    """Per-query timings under ``operations`` and outcome counts under ``events``."""
    return _stats.snapshot()


def get_slow_query_report() -> List[Dict[str, Any]]:
    """Operations with at least one slow query, slowest first."""
    return _stats.slow_operations()


def reset_metrics() -> None:
    _stats.reset()


def record_pipeline_event(operation: str, outcome: str) -> None:
    """Count a pipeline operation outcome."""
    _stats.record_event(operation, outcome)
    if _settings.enable_prometheus:
        pipeline_events_total.labels(operation=operation, outcome=outcome).inc()


# ============================================
# QUERY TIMING
# ============================================

@contextmanager
def query_timer(operation: str):
    """Time the enclosed repository query under ``operation``."""
    started = time.perf_counter()
    failed = False
    try:
        yield
    except Exception:
        failed = True
        raise
    finally:
        duration = time.perf_counter() - started
        duration_ms = duration * 1000
        slow = duration_ms > _settings.slow_query_threshold_ms

        _stats.record_query(operation, duration_ms, failed, slow)

        if _settings.enable_prometheus:
            query_duration.labels(operation=operation, status="error" if failed else "success").observe(duration)
            if slow:
                slow_queries_total.labels(operation=operation).inc()

        if slow:
            logger.warning(
                f"SLOW QUERY: {operation} took {duration_ms:.2f}ms "
                f"(threshold: {_settings.slow_query_threshold_ms}ms)"
            )
        elif duration_ms > _settings.warning_threshold_ms and not failed:
            logger.info(f"Query {operation} took {duration_ms:.2f}ms")


def timed_query(operation: str):
    """
    Decorator form of :func:`query_timer` for repository methods.

    Usage:
        @timed_query("count_cases_by_status")
        def count_by_status(self, owner_id: int):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    """Whether the pipeline can reach its database and find its tables."""
    database_reachable: bool
    backend: str
    latency_ms: float
    missing_tables: List[str] = field(default_factory=list)
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy(self) -> bool:
        return self.database_reachable and not self.missing_tables

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'database_reachable': self.database_reachable,
            'backend': self.backend,
            'latency_ms': round(self.latency_ms, 2),
            'schema_ready': self.database_reachable and not self.missing_tables,
            'missing_tables': self.missing_tables,
            'error': self.error,
            'checked_at': self.checked_at.isoformat(),
        }


def check_health(engine, required_tables: Iterable[str]) -> HealthStatus:
    """
    Run ``SELECT 1`` and look for the pipeline tables.

    Args:
        engine: SQLAlchemy Engine
        required_tables: Table names the pipeline needs (normally
            ``Base.metadata.tables``)
    """
    started = time.perf_counter()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(
            database_reachable=False,
            backend=engine.dialect.name,
            latency_ms=(time.perf_counter() - started) * 1000,
            error=str(e)
        )

    missing = sorted(set(required_tables) - existing)
    if missing:
        logger.warning(f"Pipeline tables missing, run init-db: {', '.join(missing)}")
    return HealthStatus(
        database_reachable=True,
        backend=engine.dialect.name,
        latency_ms=(time.perf_counter() - started) * 1000,
        missing_tables=missing
    )
