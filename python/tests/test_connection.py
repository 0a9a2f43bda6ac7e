"""
Tests for the session provider, the connect retry and pipeline monitoring.
"""

from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from config_manager import MonitoringSettings
from database.connection import DatabaseSessionProvider, DatabaseSettings, create_retry_decorator
from database.models import Company, User
from database.monitoring import (
    configure_monitoring,
    get_db_metrics,
    get_slow_query_report,
    query_timer,
    record_pipeline_event,
    timed_query,
)


def _emails(db_provider):
    with db_provider.session_scope() as session:
        return [u.email for u in session.execute(select(User).order_by(User.id)).scalars()]


class TestSessionProvider:

    def test_session_scope_commits(self, db_provider):
        with db_provider.session_scope() as session:
            session.add(User(email="a@example.com", credential_hash="!"))
        assert _emails(db_provider) == ["a@example.com"]

    def test_session_scope_rolls_back_on_error(self, db_provider):
        with pytest.raises(RuntimeError):
            with db_provider.session_scope() as session:
                session.add(User(email="b@example.com", credential_hash="!"))
                session.flush()
                raise RuntimeError("boom")
        assert _emails(db_provider) == []

    def test_foreign_keys_enforced(self, db_provider):
        with pytest.raises(IntegrityError):
            with db_provider.session_scope() as session:
                session.add(Company(user_id=999, name="Orphan GmbH", normalized_name="ORPHAN GMBH"))

    def test_health_check(self, db_provider):
        health = db_provider.health_check().to_dict()
        assert health["healthy"] is True
        assert health["backend"] == "sqlite"
        assert health["missing_tables"] == []

    def test_health_reports_missing_tables(self, db_provider):
        db_provider.drop_tables()

        health = db_provider.health_check()

        assert health.database_reachable is True
        assert health.healthy is False
        assert "kyc_cases" in health.missing_tables
        assert health.to_dict()["schema_ready"] is False

    def test_sqlite_file_store_enforces_foreign_keys(self, tmp_path):
        provider = DatabaseSessionProvider(DatabaseSettings(url=f"sqlite:///{tmp_path / 'kyc.db'}"))
        try:
            provider.create_tables()
            with pytest.raises(IntegrityError):
                with provider.session_scope() as session:
                    session.add(Company(user_id=42, name="Orphan GmbH", normalized_name="ORPHAN GMBH"))
        finally:
            provider.close()


class TestRetry:

    def test_operational_errors_are_retried(self):
        calls = MagicMock(side_effect=[OperationalError("SELECT 1", {}, Exception("down")), "ok"])

        @create_retry_decorator(max_attempts=3, min_wait=0, max_wait=0)
        def connect():
            return calls()

        assert connect() == "ok"
        assert calls.call_count == 2

    def test_other_errors_are_not_retried(self):
        calls = MagicMock(side_effect=ValueError("bad url"))

        @create_retry_decorator(max_attempts=3, min_wait=0, max_wait=0)
        def connect():
            return calls()

        with pytest.raises(ValueError):
            connect()
        assert calls.call_count == 1


class TestMonitoring:

    def test_timed_query_records_stats(self):
        @timed_query("lookup")
        def lookup():
            return 42

        assert lookup() == 42
        assert get_db_metrics()["operations"]["lookup"]["count"] == 1

    def test_errors_are_counted(self):
        with pytest.raises(KeyError):
            with query_timer("broken"):
                raise KeyError("x")
        assert get_db_metrics()["operations"]["broken"]["errors"] == 1

    def test_slow_query_report(self):
        configure_monitoring(MonitoringSettings(slow_query_threshold_ms=-1, warning_threshold_ms=-1))
        try:
            with query_timer("slow_scan"):
                pass
            assert [r["operation"] for r in get_slow_query_report()] == ["slow_scan"]
        finally:
            configure_monitoring()

    def test_pipeline_events_are_summarised(self):
        before = REGISTRY.get_sample_value(
            "kyc_pipeline_events_total", {"operation": "run_check", "outcome": "degraded"}
        ) or 0.0

        record_pipeline_event("run_check", "degraded")
        record_pipeline_event("run_check", "degraded")
        record_pipeline_event("create_case", "success")

        assert get_db_metrics()["events"] == {
            "create_case": {"success": 1},
            "run_check": {"degraded": 2},
        }
        assert REGISTRY.get_sample_value(
            "kyc_pipeline_events_total", {"operation": "run_check", "outcome": "degraded"}
        ) == before + 2

    def test_prometheus_can_be_disabled(self):
        labels = {"operation": "save_company", "outcome": "success"}
        before = REGISTRY.get_sample_value("kyc_pipeline_events_total", labels) or 0.0
        configure_monitoring(MonitoringSettings(enable_prometheus=False))
        try:
            record_pipeline_event("save_company", "success")
        finally:
            configure_monitoring()

        assert (REGISTRY.get_sample_value("kyc_pipeline_events_total", labels) or 0.0) == before
        assert get_db_metrics()["events"]["save_company"] == {"success": 1}
