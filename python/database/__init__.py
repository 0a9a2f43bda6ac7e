"""
Database Package for the KYC Case Pipeline

This package provides:
- SQLAlchemy ORM models for users, companies, cases, checks, documents and UBOs
- An injectable session provider and Unit of Work for transaction management
- Repository pattern for data access
- Performance monitoring and query timing
"""

from database.models import (
    Base,
    User,
    Company,
    KycCase,
    ComplianceCheck,
    Document,
    UltimateBeneficialOwner,
    ActivityLog,
    PipelineStage,
    StageStatus,
    CaseStatus,
    RiskLevel,
    CheckType,
    CheckStatus,
    CompanySource,
    DocumentStatus,
    AuditAction,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)
from database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Models
    'User',
    'Company',
    'KycCase',
    'ComplianceCheck',
    'Document',
    'UltimateBeneficialOwner',
    'ActivityLog',
    # Enums
    'PipelineStage',
    'StageStatus',
    'CaseStatus',
    'RiskLevel',
    'CheckType',
    'CheckStatus',
    'CompanySource',
    'DocumentStatus',
    'AuditAction',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'init_db',
    'close_db',
    'create_test_provider',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
    'check_health',
    'HealthStatus',
]
