"""
Case Pipeline Service

Owns the lifecycle of a KYC case: creation (with company resolution and
compliance check stubs), progress through the six pipeline stages, case
status changes, and the aggregated case view.

The service works on a session handed to it by the caller and never
commits; the caller's session scope decides when the transaction ends.
On a storage failure the service rolls the session back itself before
raising PersistenceError, so no partial write survives.

Owner ids come from the account/session component and are trusted as-is.
Every lookup is scoped by owner, and a case belonging to someone else is
reported exactly like a missing one.

Usage:
    with db_provider.session_scope() as session:
        service = CasePipelineService(session, config)
        case = service.create_case(owner_id, company_name="Acme GmbH")
        service.advance_step(case.id, owner_id, step=1)
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config_manager import PipelineConfig
from database.models import (
    AuditAction,
    CaseStatus,
    Company,
    CompanySource,
    ComplianceCheck,
    Document,
    KycCase,
    PipelineStage,
    StageStatus,
    UltimateBeneficialOwner,
    utcnow,
)
from database.monitoring import record_pipeline_event
from database.repositories import (
    ActivityLogRepository,
    CaseRepository,
    CompanyRepository,
    ComplianceCheckRepository,
    DocumentRepository,
    DuplicateEntityError,
    RepositoryError,
    UboRepository,
)
from log_utils import sanitize_for_logging
from pipeline.exceptions import NotFoundError, PersistenceError, ValidationError
from pipeline.schemas import CaseCreate, CompanyFields, DocumentCreate, UboCreate, parse_input
from pipeline.serializers import (
    case_state_snapshot,
    case_to_dict,
    check_to_dict,
    company_to_dict,
    document_to_dict,
    ubo_to_dict,
)

logger = logging.getLogger(__name__)

EnumT = TypeVar("EnumT", bound=Enum)


def generate_case_number(prefix: str = "KYC") -> str:
    """Build ``<prefix>-<epoch millis>-<8 hex chars>``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def coerce_stage(step: Any) -> PipelineStage:
    try:
        return PipelineStage.coerce(step)
    except ValueError as e:
        raise ValidationError(
            str(e),
            field="step",
            code="INVALID_STAGE",
            suggestion=f"Use a stage between {PipelineStage.first()} and {PipelineStage.last()}"
        ) from e


def coerce_choice(enum_cls: Type[EnumT], value: Any, field_name: str) -> EnumT:
    """Convert ``value`` to a member of ``enum_cls`` or raise ValidationError."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            field=field_name,
            code="INVALID_CHOICE",
            suggestion=f"Use one of: {allowed}"
        ) from None


@dataclass
class CaseSummary:
    """One row of a case listing."""
    id: int
    case_number: str
    status: str
    risk_level: str
    current_step: int
    steps_completed: List[int]
    company_id: Optional[int]
    company_name: Optional[str]
    registration_number: Optional[str]
    document_count: int
    ubo_count: int
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_row(cls, row: Tuple[KycCase, Optional[str], Optional[str], int, int]) -> 'CaseSummary':
        case, company_name, registration_number, document_count, ubo_count = row
        data = case_to_dict(case)
        return cls(
            id=case.id,
            case_number=case.case_number,
            status=case.status,
            risk_level=case.risk_level,
            current_step=case.current_step,
            steps_completed=data["steps_completed"],
            company_id=case.company_id,
            company_name=company_name,
            registration_number=registration_number,
            document_count=document_count or 0,
            ubo_count=ubo_count or 0,
            created_at=data["created_at"],
            updated_at=data["updated_at"]
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class CaseDetail:
    """A case with its company, UBOs, documents and compliance checks."""
    case: KycCase
    company: Optional[Company]
    ubos: List[UltimateBeneficialOwner] = field(default_factory=list)
    documents: List[Document] = field(default_factory=list)
    compliance_checks: List[ComplianceCheck] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = case_to_dict(self.case)
        company = company_to_dict(self.company) if self.company else {}
        # Company fields merged into the case view, prefixed where they clash
        data.update({
            "company_name": company.get("name"),
            "registration_number": company.get("registration_number"),
            "legal_form": company.get("legal_form"),
            "company_address": company.get("address"),
            "company_city": company.get("city"),
            "company_country": company.get("country"),
            "company_source": company.get("source"),
        })
        data["company"] = company or None
        data["ubos"] = [ubo_to_dict(ubo) for ubo in self.ubos]
        data["documents"] = [document_to_dict(doc) for doc in self.documents]
        data["compliance_checks"] = [check_to_dict(check) for check in self.compliance_checks]
        return data


class CasePipelineService:
    """
    Case creation and stage/status tracking.

    Follows the dependency injection pattern: the session and the
    configuration are passed in, nothing is looked up globally.
    """

    def __init__(self, session: Session, config: Optional[Any] = None):
        """
        Initialize the pipeline service.

        Args:
            session: SQLAlchemy database session
            config: Optional ConfigManager instance (defaults if omitted)
        """
        self.session = session
        self.config = config
        self._pipeline: PipelineConfig = config.pipeline if config is not None else PipelineConfig()

        self._cases = CaseRepository(session)
        self._companies = CompanyRepository(session)
        self._checks = ComplianceCheckRepository(session)
        self._documents = DocumentRepository(session)
        self._ubos = UboRepository(session)
        self._audit = ActivityLogRepository(session)

    # ----------------------------------------
    # Case creation
    # ----------------------------------------

    def create_case(
        self,
        owner_id: int,
        company_id: Optional[int] = None,
        company_name: Optional[str] = None,
        customer_info: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        risk_level: Optional[str] = None
    ) -> KycCase:
        """
        Create a case together with its company link and check stubs.

        An existing company is referenced by id; a bare name creates a
        placeholder company in the same transaction. One pending
        compliance check is created per configured check type.

        Raises:
            ValidationError: Missing owner or company, or invalid fields
            NotFoundError: company_id does not belong to the owner
            PersistenceError: Any write failed; nothing was persisted
        """
        if not owner_id:
            raise ValidationError(
                "An owner is required to create a case",
                field="owner_id",
                code="MISSING_OWNER"
            )

        data = parse_input(CaseCreate, {
            "company_id": company_id,
            "company_name": company_name,
            "customer_info": customer_info or {},
            "notes": notes,
            "risk_level": risk_level,
        })
        if data.company_id is None and not data.company_name:
            raise ValidationError(
                "Either company_id or company_name is required",
                field="company_name",
                code="MISSING_COMPANY",
                suggestion="Pass the id of a saved company or the name of a new one"
            )

        try:
            case_number = self._allocate_case_number()
            company, company_created = self._resolve_company(owner_id, data)

            case = self._cases.create(
                owner_id=owner_id,
                case_number=case_number,
                company_id=company.id,
                risk_level=data.risk_level.value if data.risk_level else self._pipeline.default_risk_level,
                customer_info=data.customer_info,
                notes=data.notes
            )
            checks = self._checks.create_pending(case.id, self._pipeline.check_types)

            self._audit.log(
                AuditAction.CREATE,
                entity_type="kyc_case",
                entity_id=case.id,
                user_id=owner_id,
                new_value=case_state_snapshot(case),
                details={
                    "case_number": case.case_number,
                    "company_id": company.id,
                    "company_created": company_created,
                    "check_types": [check.check_type for check in checks],
                }
            )
        except DuplicateEntityError as e:
            self._fail("create_case", e)
            raise PersistenceError(f"Case number collision: {e}", retryable=True) from e
        except (RepositoryError, SQLAlchemyError) as e:
            self._fail("create_case", e)
            raise PersistenceError(f"Failed to create case: {e}") from e

        record_pipeline_event("create_case", "success")
        logger.info(
            f"Created case {case.case_number} for owner {owner_id} "
            f"(company={company.id}, new_company={company_created})"
        )
        return case

    def _allocate_case_number(self) -> str:
        """Generate a case number not yet in use, trying a bounded number of times."""
        attempts = self._pipeline.case_number_attempts
        for attempt in range(1, attempts + 1):
            candidate = generate_case_number(self._pipeline.case_number_prefix)
            if not self._cases.case_number_exists(candidate):
                return candidate
            logger.warning(f"Case number collision on attempt {attempt}: {candidate}")

        raise PersistenceError(
            f"Could not allocate a unique case number after {attempts} attempts",
            retryable=True
        )

    def _resolve_company(self, owner_id: int, data: CaseCreate) -> Tuple[Company, bool]:
        if data.company_id is not None:
            company = self._companies.get_for_owner(data.company_id, owner_id)
            if company is None:
                raise NotFoundError("Company", data.company_id)
            return company, False

        fields = CompanyFields(
            name=data.company_name,
            registration_number=(
                f"{self._pipeline.placeholder_registration_prefix}{secrets.token_hex(4).upper()}"
            ),
            legal_form=self._pipeline.placeholder_legal_form,
            country=self._pipeline.placeholder_country,
            source=CompanySource.CASE
        )
        company = self._companies.create(owner_id, fields.to_columns())
        logger.debug(f"Created placeholder company {company.id}: {sanitize_for_logging(data.company_name)}")
        return company, True

    # ----------------------------------------
    # Stage and status tracking
    # ----------------------------------------

    def advance_step(
        self,
        case_id: int,
        owner_id: int,
        step: int,
        new_status: str = StageStatus.COMPLETED.value
    ) -> KycCase:
        """
        Move a case to ``step`` and record the stage status.

        current_step is set unconditionally (last write wins). A
        "completed" status adds the step to steps_completed, which has
        set semantics, so completing a step twice leaves one entry.

        Raises:
            ValidationError: Step outside 1..6 or unknown stage status
            NotFoundError: Case missing or owned by someone else
            PersistenceError: The update could not be written
        """
        stage = coerce_stage(step)
        status = coerce_choice(StageStatus, new_status, "new_status")
        case = self._get_owned_case(case_id, owner_id)

        before = case_state_snapshot(case)
        try:
            case.current_step = stage.value
            if status is StageStatus.COMPLETED:
                case.steps_completed = list(case.steps_completed or []) + [stage.value]

            step_status = dict(case.step_status or {})
            step_status[str(stage.value)] = status.value
            case.step_status = step_status
            case.updated_at = utcnow()
            self.session.flush()

            self._audit.log(
                AuditAction.STEP_ADVANCE,
                entity_type="kyc_case",
                entity_id=case.id,
                user_id=owner_id,
                old_value=before,
                new_value=case_state_snapshot(case),
                details={"step": stage.value, "stage": stage.label, "status": status.value}
            )
        except SQLAlchemyError as e:
            self._fail("advance_step", e)
            raise PersistenceError(f"Failed to update case {case_id}: {e}") from e

        logger.info(f"Case {case.case_number}: stage {stage.value} ({stage.label}) -> {status.value}")
        return case

    def set_status(
        self,
        case_id: int,
        owner_id: int,
        status: str,
        reason: Optional[str] = None
    ) -> KycCase:
        """
        Set the overall case status.

        Entering "completed" stamps completed_at once; setting the same
        status again changes nothing but updated_at.

        Raises:
            ValidationError: Unknown status
            NotFoundError: Case missing or owned by someone else
            PersistenceError: The update could not be written
        """
        new_status = coerce_choice(CaseStatus, status, "status")
        case = self._get_owned_case(case_id, owner_id)

        before = case_state_snapshot(case)
        try:
            case.status = new_status.value
            if new_status is CaseStatus.COMPLETED and case.completed_at is None:
                case.completed_at = utcnow()
            if reason is not None:
                case.status_reason = reason
            case.updated_at = utcnow()
            self.session.flush()

            self._audit.log(
                AuditAction.STATUS_CHANGE,
                entity_type="kyc_case",
                entity_id=case.id,
                user_id=owner_id,
                old_value=before,
                new_value=case_state_snapshot(case)
            )
        except SQLAlchemyError as e:
            self._fail("set_status", e)
            raise PersistenceError(f"Failed to update case {case_id}: {e}") from e

        logger.info(f"Case {case.case_number}: status {before['status']} -> {new_status.value}")
        return case

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    def get_case_detail(self, case_id: int, owner_id: int) -> CaseDetail:
        """
        Get a case with its company, UBOs, documents and checks.

        UBOs are ordered by ownership percentage (largest first) and
        documents by upload time (newest first).

        Raises:
            NotFoundError: Case missing or owned by someone else
        """
        case = self._get_owned_case(case_id, owner_id)
        return CaseDetail(
            case=case,
            company=case.company,
            ubos=self._ubos.list_for_case(case.id),
            documents=self._documents.list_for_case(case.id),
            compliance_checks=self._checks.list_for_case(case.id)
        )

    def list_cases(
        self,
        owner_id: int,
        status: Optional[str] = None,
        risk_level: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[CaseSummary]:
        """
        List an owner's cases, newest first.

        Args:
            owner_id: Owning user
            status: Only cases with this status
            risk_level: Only cases with this risk level
            limit: Maximum rows (configured default when omitted, capped at the configured maximum)
            offset: Rows to skip

        Raises:
            ValidationError: limit below 1 or negative offset
        """
        if limit is None:
            limit = self._pipeline.default_list_limit
        if limit < 1:
            raise ValidationError("limit must be at least 1", field="limit", code="INVALID_LIMIT")
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset", code="INVALID_OFFSET")
        limit = min(limit, self._pipeline.max_list_limit)

        rows = self._cases.list_for_owner(
            owner_id,
            status=status,
            risk_level=risk_level,
            offset=offset,
            limit=limit
        )
        return [CaseSummary.from_row(row) for row in rows]

    # ----------------------------------------
    # Documents and beneficial owners
    # ----------------------------------------

    def add_document(self, case_id: int, owner_id: int, fields: Dict[str, Any]) -> Document:
        """
        Store document metadata produced by the upload/OCR collaborator.

        Raises:
            ValidationError: Invalid metadata
            NotFoundError: Case missing or owned by someone else
            PersistenceError: The insert failed
        """
        data = parse_input(DocumentCreate, fields)
        case = self._get_owned_case(case_id, owner_id)

        try:
            document = self._documents.create(case.id, owner_id, data.to_columns())
            self._audit.log(
                AuditAction.CREATE,
                entity_type="document",
                entity_id=document.id,
                user_id=owner_id,
                details={"case_id": case.id, "filename": document.filename}
            )
        except SQLAlchemyError as e:
            self._fail("add_document", e)
            raise PersistenceError(f"Failed to store document for case {case_id}: {e}") from e

        logger.info(f"Case {case.case_number}: document {document.id} added")
        return document

    def add_ubo(self, case_id: int, owner_id: int, fields: Dict[str, Any]) -> UltimateBeneficialOwner:
        """
        Record a beneficial owner for a case.

        The UBO is linked to the case's company unless another company of
        the same owner is named explicitly.

        Raises:
            ValidationError: Invalid fields
            NotFoundError: Case or named company missing or owned by someone else
            PersistenceError: The insert failed
        """
        data = parse_input(UboCreate, fields)
        case = self._get_owned_case(case_id, owner_id)

        company_id = case.company_id
        if data.company_id is not None and data.company_id != case.company_id:
            if self._companies.get_for_owner(data.company_id, owner_id) is None:
                raise NotFoundError("Company", data.company_id)
            company_id = data.company_id

        try:
            ubo = self._ubos.create({
                **data.to_columns(),
                "case_id": case.id,
                "company_id": company_id,
            })
            self._audit.log(
                AuditAction.CREATE,
                entity_type="ubo",
                entity_id=ubo.id,
                user_id=owner_id,
                details={"case_id": case.id, "ownership_percentage": ubo.ownership_percentage}
            )
        except SQLAlchemyError as e:
            self._fail("add_ubo", e)
            raise PersistenceError(f"Failed to store UBO for case {case_id}: {e}") from e

        logger.info(f"Case {case.case_number}: UBO {ubo.id} added")
        return ubo

    # ----------------------------------------
    # Helpers
    # ----------------------------------------

    def _get_owned_case(self, case_id: int, owner_id: int) -> KycCase:
        case = self._cases.get_for_owner(case_id, owner_id)
        if case is None:
            raise NotFoundError("Case", case_id)
        return case

    def _fail(self, operation: str, error: Exception) -> None:
        self.session.rollback()
        record_pipeline_event(operation, "error")
        logger.error(f"{operation} failed, transaction rolled back: {error}")
