"""
SQLAlchemy ORM Models for the KYC Case Pipeline

This module defines the canonical schema, one table per entity:
- Integer surrogate keys, foreign keys with cascade or set-null semantics
- Timestamps for all mutable records (created_at, updated_at)
- JSON columns for semi-structured payloads (JSONB on PostgreSQL)
- Attribute validators that keep pipeline stage values inside 1..6

Tables:
1. users - Account records; the root owner of every other row
2. companies - Company records, manual or enriched from the registry
3. kyc_cases - Case pipeline state (status, current step, completed steps)
4. compliance_checks - One screening record per (case, check type)
5. documents - Uploaded document metadata and extracted text
6. ubos - Ultimate beneficial owners linked to a company and/or case
7. activity_logs - Append-only audit trail
"""

import re
import unicodedata
from datetime import date, datetime, timezone
from enum import Enum as PyEnum, IntEnum
from typing import Dict, Iterable, List, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, Date, DateTime, Text,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB, ARRAY
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column, validates
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Native integer array on PostgreSQL
StageListType = JSON().with_variant(ARRAY(Integer), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class PipelineStage(IntEnum):
    """The six fixed stages of a KYC case, in workflow order."""
    IDENTIFICATION = 1
    DOCUMENTS = 2
    REGISTRY_CHECK = 3
    UBO_DETERMINATION = 4
    COMPLIANCE_SCREENING = 5
    APPROVAL = 6

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()

    @classmethod
    def coerce(cls, value) -> 'PipelineStage':
        """
        Convert an int-like value to a stage.

        Raises:
            ValueError: If the value is not an integer in 1..6
        """
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ValueError(f"Invalid pipeline stage: {value!r}")
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ValueError(
                f"Invalid pipeline stage: {value!r} (expected {cls.first()}..{cls.last()})"
            ) from None

    @classmethod
    def first(cls) -> int:
        return min(stage.value for stage in cls)

    @classmethod
    def last(cls) -> int:
        return max(stage.value for stage in cls)


class StageStatus(str, PyEnum):
    """Status of a single pipeline stage within a case"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class CaseStatus(str, PyEnum):
    """Overall status of a KYC case"""
    PENDING = "pending"
    ACTIVE = "active"
    IN_REVIEW = "in_review"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RiskLevel(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Risk levels counted as "high risk" on the dashboard
HIGH_RISK_LEVELS = (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)


class CheckType(str, PyEnum):
    """Screening categories created for every new case"""
    PEP = "pep"
    SANCTIONS = "sanctions"
    ADVERSE_MEDIA = "adverse_media"


class CheckStatus(str, PyEnum):
    """Status of a compliance check"""
    PENDING = "pending"
    CLEAR = "clear"
    MATCH = "match"
    REVIEW = "review"
    ERROR = "error"


class CompanySource(str, PyEnum):
    """Where a company record came from"""
    MANUAL = "manual"
    EXTERNAL = "external"
    DEMO = "demo"
    CASE = "case"


class DocumentStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AuditAction(str, PyEnum):
    """Type of audited action"""
    CREATE = "CREATE"
    STATUS_CHANGE = "STATUS_CHANGE"
    STEP_ADVANCE = "STEP_ADVANCE"
    CHECK_RUN = "CHECK_RUN"
    LOGIN = "LOGIN"


def normalize_stage_set(values: Optional[Iterable]) -> List[int]:
    """
    Normalize a collection of stage ids to a sorted list without duplicates.

    Raises:
        ValueError: If any value is outside the stage domain
    """
    if not values:
        return []
    return sorted({PipelineStage.coerce(value).value for value in values})


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# ACCOUNT & COMPANY MODELS
# ============================================

class User(Base, TimestampMixin):
    """
    Account record.

    Authentication happens outside this package; the pipeline only uses
    the id as the owner of companies and cases.
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    credential_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    organisation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="user")
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    companies: Mapped[List["Company"]] = relationship(
        "Company",
        back_populates="owner",
        cascade="all, delete-orphan",
        lazy="dynamic"
    )
    cases: Mapped[List["KycCase"]] = relationship(
        "KycCase",
        back_populates="owner",
        cascade="all, delete-orphan",
        lazy="dynamic"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class Company(Base, TimestampMixin):
    """
    Company under due diligence.

    Created explicitly, from a registry search candidate, or implicitly
    when a case names a company that has no record yet.
    """
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Uppercase, accent-free copy of the name for searching
    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    registration_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    legal_form: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[str] = mapped_column(String(100), nullable=False, default="Germany")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=CompanySource.MANUAL.value)

    # Enrichment payloads from the trade register and beneficial-ownership register
    registry_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    beneficial_ownership_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    owner: Mapped["User"] = relationship("User", back_populates="companies")
    cases: Mapped[List["KycCase"]] = relationship("KycCase", back_populates="company")
    ubos: Mapped[List["UltimateBeneficialOwner"]] = relationship(
        "UltimateBeneficialOwner",
        back_populates="company"
    )

    __table_args__ = (
        Index('ix_company_owner_created', 'user_id', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<Company(id={self.id}, name='{self.name}', source='{self.source}')>"


# ============================================
# CASE PIPELINE MODELS
# ============================================

class KycCase(Base, TimestampMixin):
    """
    A KYC due-diligence workflow instance.

    case_number is assigned once at creation and never changes.
    steps_completed is kept as a sorted list of distinct stage ids and
    current_step always lies in the stage domain; both are enforced by
    the validators below before anything reaches the database.
    """
    __tablename__ = "kyc_cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    company_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    case_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=CaseStatus.PENDING.value)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, default=RiskLevel.MEDIUM.value)

    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=PipelineStage.IDENTIFICATION.value)
    steps_completed: Mapped[List[int]] = mapped_column(StageListType, nullable=False, default=list)
    # Stage id (as string key) -> StageStatus value
    step_status: Mapped[Dict[str, str]] = mapped_column(JSONType, nullable=False, default=dict)

    customer_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    owner: Mapped["User"] = relationship("User", back_populates="cases")
    company: Mapped[Optional["Company"]] = relationship("Company", back_populates="cases")
    compliance_checks: Mapped[List["ComplianceCheck"]] = relationship(
        "ComplianceCheck",
        back_populates="case",
        cascade="all, delete-orphan",
        order_by="ComplianceCheck.id"
    )
    documents: Mapped[List["Document"]] = relationship(
        "Document",
        back_populates="case",
        cascade="all, delete-orphan"
    )
    ubos: Mapped[List["UltimateBeneficialOwner"]] = relationship(
        "UltimateBeneficialOwner",
        back_populates="case",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            f'current_step BETWEEN {PipelineStage.first()} AND {PipelineStage.last()}',
            name='ck_case_current_step_range'
        ),
        Index('ix_case_owner_created', 'user_id', 'created_at'),
        Index('ix_case_owner_status', 'user_id', 'status'),
    )

    @validates("current_step")
    def _validate_current_step(self, key, value):
        return PipelineStage.coerce(value).value

    @validates("steps_completed")
    def _validate_steps_completed(self, key, value):
        return normalize_stage_set(value)

    @property
    def progress(self) -> float:
        """Fraction of stages completed (0.0 - 1.0)."""
        return round(len(self.steps_completed or []) / len(PipelineStage), 4)

    def __repr__(self) -> str:
        return f"<KycCase(id={self.id}, case_number='{self.case_number}', status='{self.status}')>"


class ComplianceCheck(Base, TimestampMixin):
    """
    Current outcome of one screening type for one case.

    Exactly one row per (case, check_type); re-running a check updates
    the row in place. The history of runs lives in activity_logs.
    """
    __tablename__ = "compliance_checks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("kyc_cases.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    check_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=CheckStatus.PENDING.value)
    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    case: Mapped["KycCase"] = relationship("KycCase", back_populates="compliance_checks")

    __table_args__ = (
        UniqueConstraint('case_id', 'check_type', name='uq_check_case_type'),
        CheckConstraint(
            'risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)',
            name='ck_check_risk_score_range'
        ),
        Index('ix_check_status', 'status'),
    )

    def __repr__(self) -> str:
        return f"<ComplianceCheck(id={self.id}, case_id={self.case_id}, type='{self.check_type}', status='{self.status}')>"


class Document(Base):
    """
    Document metadata for a case.

    Text and analysis come from the OCR collaborator; rows are never
    updated after insert.
    """
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("kyc_cases.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analysis: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=DocumentStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    case: Mapped["KycCase"] = relationship("KycCase", back_populates="documents")

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, case_id={self.case_id}, filename='{self.filename}')>"


class UltimateBeneficialOwner(Base):
    """
    Natural person with ownership or control over a company.

    Linked to the company, the case it was recorded in, or both.
    """
    __tablename__ = "ubos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    case_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("kyc_cases.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    nationality: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ownership_percentage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    voting_rights: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    is_pep: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pep_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    sanctions_hits: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    risk_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    company: Mapped[Optional["Company"]] = relationship("Company", back_populates="ubos")
    case: Mapped[Optional["KycCase"]] = relationship("KycCase", back_populates="ubos")

    __table_args__ = (
        CheckConstraint(
            'ownership_percentage IS NULL OR (ownership_percentage >= 0 AND ownership_percentage <= 100)',
            name='ck_ubo_ownership_range'
        ),
        CheckConstraint(
            'voting_rights IS NULL OR (voting_rights >= 0 AND voting_rights <= 100)',
            name='ck_ubo_voting_range'
        ),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<UltimateBeneficialOwner(id={self.id}, name='{self.full_name}', ownership={self.ownership_percentage})>"


# ============================================
# AUDIT MODEL
# ============================================

class ActivityLog(Base):
    """
    Append-only audit trail.

    Written by every mutating pipeline operation inside the same
    transaction, so a rolled back operation leaves no log entry either.
    """
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # No updated_at - activity logs are immutable
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True
    )

    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    old_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index('ix_activity_entity', 'entity_type', 'entity_id'),
        Index('ix_activity_user_timestamp', 'user_id', 'timestamp'),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog(id={self.id}, action='{self.action}', entity='{self.entity_type}:{self.entity_id}')>"


# ============================================
# HELPER FUNCTIONS
# ============================================

def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a company or person name for consistent storage and searching.

    Removes accents, converts to uppercase, normalizes whitespace.

    Args:
        name: The name to normalize (can be None)

    Returns:
        Normalized name string, or empty string if name is None/empty
    """
    if not name:
        return ""

    # Decompose accents, then drop the combining marks
    normalized = unicodedata.normalize('NFD', name)
    normalized = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')
    normalized = re.sub(r'[^\w\s]', ' ', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.upper().strip()
