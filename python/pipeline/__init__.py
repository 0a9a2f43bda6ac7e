"""
KYC case pipeline services.

Each service takes a SQLAlchemy session (and optionally the ConfigManager)
and only flushes; the caller's session scope commits.
"""

from pipeline.exceptions import (
    KycError,
    ValidationError,
    NotFoundError,
    PersistenceError,
    CollaboratorUnavailable,
)
from pipeline.case_pipeline import CasePipelineService, CaseSummary, CaseDetail, generate_case_number
from pipeline.compliance_checks import ComplianceCheckService, EntityRef
from pipeline.company_registry import CompanyRegistryService, CompanyCandidate, RegistryLookupClient
from pipeline.dashboard import DashboardService, OverviewStats
from pipeline.screening import (
    ScreeningProvider,
    ScreeningSubject,
    ScreeningOutcome,
    StaticScreeningProvider,
    HttpScreeningProvider,
    build_screening_provider,
)

__all__ = [
    # Errors
    'KycError',
    'ValidationError',
    'NotFoundError',
    'PersistenceError',
    'CollaboratorUnavailable',
    # Services
    'CasePipelineService',
    'CaseSummary',
    'CaseDetail',
    'generate_case_number',
    'ComplianceCheckService',
    'EntityRef',
    'CompanyRegistryService',
    'CompanyCandidate',
    'RegistryLookupClient',
    'DashboardService',
    'OverviewStats',
    # Screening
    'ScreeningProvider',
    'ScreeningSubject',
    'ScreeningOutcome',
    'StaticScreeningProvider',
    'HttpScreeningProvider',
    'build_screening_provider',
]
