"""
Compliance Check Service

Runs a screening check for a case against its company or one of its
UBOs and stores the outcome on the case's check row for that type.

There is exactly one row per (case, check_type): running a check again
overwrites the row in place, and the activity log keeps one CHECK_RUN
entry per run as the screening history.

Provider failures never propagate. A provider that is unreachable or
returns a malformed answer produces a check with status "error", no
risk score, and the failure recorded in the result payload.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config_manager import PipelineConfig
from database.models import (
    AuditAction,
    CheckStatus,
    CheckType,
    ComplianceCheck,
    KycCase,
    UltimateBeneficialOwner,
    utcnow,
)
from database.monitoring import record_pipeline_event
from database.repositories import (
    ActivityLogRepository,
    CaseRepository,
    ComplianceCheckRepository,
    DuplicateEntityError,
    RepositoryError,
    UboRepository,
)
from pipeline.exceptions import (
    CollaboratorUnavailable,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from pipeline.schemas import CheckResult, build_check_result
from pipeline.screening import ScreeningProvider, ScreeningSubject, build_screening_provider

logger = logging.getLogger(__name__)


@dataclass
class EntityRef:
    """Selects the subject of a check within a case."""
    kind: str = "company"  # company, ubo
    entity_id: Optional[int] = None


class ComplianceCheckService:
    """
    Runs screening checks and maintains the per-case check rows.

    Args:
        session: SQLAlchemy database session
        provider: Screening provider (built from config when omitted)
        config: Optional ConfigManager instance
    """

    def __init__(
        self,
        session: Session,
        provider: Optional[ScreeningProvider] = None,
        config: Optional[Any] = None
    ):
        self.session = session
        self.config = config
        self._pipeline: PipelineConfig = config.pipeline if config is not None else PipelineConfig()
        self.provider = provider or build_screening_provider(
            config.screening if config is not None else None
        )

        self._cases = CaseRepository(session)
        self._checks = ComplianceCheckRepository(session)
        self._ubos = UboRepository(session)
        self._audit = ActivityLogRepository(session)

    def run_check(
        self,
        case_id: int,
        owner_id: int,
        check_type: str,
        entity_ref: Optional[EntityRef] = None
    ) -> ComplianceCheck:
        """
        Screen a case subject and store the outcome.

        Args:
            case_id: Case to screen
            owner_id: Owner of the case
            check_type: One of the configured check types
            entity_ref: Subject to screen (the case's company by default)

        Returns:
            The updated (or, if missing, newly created) ComplianceCheck

        Raises:
            ValidationError: Unknown check type or entity kind
            NotFoundError: Case or referenced entity not found for this owner
            PersistenceError: The result could not be written
        """
        check_type = self._validate_check_type(check_type)

        case = self._cases.get_for_owner(case_id, owner_id)
        if case is None:
            raise NotFoundError("Case", case_id)

        subject, ubo = self._resolve_subject(case, entity_ref)
        result = self._screen(subject, check_type)

        try:
            check = self._checks.get_for_case(case.id, check_type)
            created = check is None
            if created:
                check = self._checks.create(case.id, check_type)

            self._checks.record_result(
                check,
                status=result.status.value,
                result=result.to_storage(),
                risk_score=result.risk_score,
                details=self._summarize(subject, result)
            )
            if ubo is not None:
                self._apply_to_ubo(ubo, check_type, result)

            self._audit.log(
                AuditAction.CHECK_RUN,
                entity_type="compliance_check",
                entity_id=check.id,
                user_id=owner_id,
                details={
                    "case_id": case.id,
                    "check_type": check_type,
                    "status": result.status.value,
                    "risk_score": result.risk_score,
                    "subject": subject.to_dict(),
                    "provider": self.provider.name,
                    "created": created,
                }
            )
        except (RepositoryError, SQLAlchemyError) as e:
            self.session.rollback()
            record_pipeline_event("run_check", "error")
            logger.error(f"Storing {check_type} result for case {case_id} failed: {e}")
            raise PersistenceError(
                f"Failed to store {check_type} result for case {case_id}: {e}",
                retryable=isinstance(e, DuplicateEntityError)
            ) from e

        record_pipeline_event("run_check", result.status.value)
        logger.info(
            f"Case {case.case_number}: {check_type} check on {subject.kind} {subject.entity_id} "
            f"-> {result.status.value} (risk={result.risk_score})"
        )
        return check

    def list_checks(self, case_id: int, owner_id: int) -> List[ComplianceCheck]:
        """
        List the checks of a case.

        Raises:
            NotFoundError: Case missing or owned by someone else
        """
        case = self._cases.get_for_owner(case_id, owner_id)
        if case is None:
            raise NotFoundError("Case", case_id)
        return self._checks.list_for_case(case.id)

    # ----------------------------------------
    # Helpers
    # ----------------------------------------

    def _validate_check_type(self, check_type) -> str:
        value = check_type.value if isinstance(check_type, CheckType) else check_type
        if value not in self._pipeline.check_types:
            raise ValidationError(
                f"Unknown check type: {value!r}",
                field="check_type",
                code="UNKNOWN_CHECK_TYPE",
                suggestion=f"Use one of: {', '.join(self._pipeline.check_types)}"
            )
        return value

    def _resolve_subject(
        self,
        case: KycCase,
        entity_ref: Optional[EntityRef]
    ) -> Tuple[ScreeningSubject, Optional[UltimateBeneficialOwner]]:
        ref = entity_ref or EntityRef()

        if ref.kind == "company":
            if ref.entity_id is not None and ref.entity_id != case.company_id:
                raise NotFoundError("Company", ref.entity_id)
            company = case.company
            if company is None:
                raise NotFoundError("Company", case.company_id)
            subject = ScreeningSubject(
                kind="company",
                entity_id=company.id,
                name=company.name,
                country=company.country,
                registration_number=company.registration_number
            )
            return subject, None

        if ref.kind == "ubo":
            ubo = self._ubos.get_for_case(ref.entity_id, case.id) if ref.entity_id else None
            if ubo is None:
                raise NotFoundError("UBO", ref.entity_id)
            subject = ScreeningSubject(
                kind="ubo",
                entity_id=ubo.id,
                name=ubo.full_name,
                country=ubo.nationality,
                birth_date=ubo.birth_date.isoformat() if ubo.birth_date else None
            )
            return subject, ubo

        raise ValidationError(
            f"Unknown entity kind: {ref.kind!r}",
            field="entity_ref",
            code="UNKNOWN_ENTITY_KIND",
            suggestion="Use 'company' or 'ubo'"
        )

    def _screen(self, subject: ScreeningSubject, check_type: str) -> CheckResult:
        """Ask the provider and validate its answer; failures become an error result."""
        try:
            outcome = self.provider.screen(subject, check_type)
            payload = {
                **outcome.details,
                "status": outcome.status,
                "risk_score": outcome.risk_score,
                "matches": outcome.matches,
                "subject": subject.to_dict(),
                "provider": self.provider.name,
            }
            return build_check_result(check_type, payload)

        except CollaboratorUnavailable as e:
            logger.warning(f"Screening provider failed for {check_type}: {e}")
            record_pipeline_event("run_check", "degraded")
            return self._error_result(subject, check_type, str(e))

        except SchemaValidationError as e:
            logger.warning(f"Screening provider returned a malformed {check_type} result: {e}")
            record_pipeline_event("run_check", "degraded")
            return self._error_result(subject, check_type, "malformed provider result")

    def _error_result(self, subject: ScreeningSubject, check_type: str, message: str) -> CheckResult:
        return build_check_result(check_type, {
            "status": CheckStatus.ERROR.value,
            "risk_score": None,
            "subject": subject.to_dict(),
            "provider": self.provider.name,
            "error": message,
        })

    @staticmethod
    def _summarize(subject: ScreeningSubject, result: CheckResult) -> str:
        if result.status is CheckStatus.ERROR:
            return f"Screening unavailable for {subject.kind} '{subject.name}': {result.error}"
        return (
            f"{result.check_type} screening of {subject.kind} '{subject.name}': "
            f"{result.status.value}, {len(result.matches)} match(es)"
        )

    @staticmethod
    def _apply_to_ubo(ubo: UltimateBeneficialOwner, check_type: str, result: CheckResult) -> None:
        if result.status is not CheckStatus.MATCH:
            return
        hit = {"matches": result.matches, "checked_at": utcnow().isoformat()}
        if check_type == CheckType.PEP.value:
            ubo.is_pep = True
            ubo.pep_details = hit
        elif check_type == CheckType.SANCTIONS.value:
            ubo.sanctions_hits = hit
