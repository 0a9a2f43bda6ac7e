"""
Repository Pattern for KYC Case Pipeline Database Operations

Provides clean data access layer with proper typing and error handling.
Repositories only flush; the caller's session scope owns commit/rollback.
Every query that reads tenant data takes the owner id explicitly.
"""

import logging
from typing import List, Optional, Dict, Any, Tuple, Iterable
from datetime import datetime, timezone

from sqlalchemy import select, func, and_
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from database.models import (
    User,
    Company,
    KycCase,
    ComplianceCheck,
    Document,
    UltimateBeneficialOwner,
    ActivityLog,
    CaseStatus,
    CheckStatus,
    PipelineStage,
    RiskLevel,
    AuditAction,
    normalize_name
)
from database.monitoring import timed_query

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


# ============================================
# USER REPOSITORY
# ============================================

class UserRepository:
    """Repository for user accounts."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        email: str,
        credential_hash: str,
        display_name: Optional[str] = None,
        organisation: Optional[str] = None,
        role: str = "user"
    ) -> User:
        """
        Create a user.

        Raises:
            DuplicateEntityError: If the email is already registered
        """
        try:
            user = User(
                email=email.strip().lower(),
                credential_hash=credential_hash,
                display_name=display_name,
                organisation=organisation,
                role=role
            )
            self.session.add(user)
            self.session.flush()

            logger.debug(f"Created user: {user.id}")
            return user

        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"User already exists: {email}") from e

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        query = select(User).where(User.email == email.strip().lower())
        return self.session.execute(query).scalar_one_or_none()

    def record_login(self, user_id: int) -> User:
        """
        Stamp last_login_at, the only mutation a user row receives, and
        append a LOGIN entry to the activity log.

        Raises:
            EntityNotFoundError: If user not found
        """
        user = self.get_by_id(user_id)
        if not user:
            raise EntityNotFoundError(f"User not found: {user_id}")

        user.last_login_at = datetime.now(timezone.utc)
        ActivityLogRepository(self.session).log(AuditAction.LOGIN, "user", user.id, user_id=user.id)
        return user


# ============================================
# COMPANY REPOSITORY
# ============================================

class CompanyRepository:
    """Repository for company records."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, owner_id: int, company_data: Dict[str, Any]) -> Company:
        """
        Create a company owned by ``owner_id``.

        No deduplication by registration number is performed.

        Args:
            owner_id: Owning user id
            company_data: Company column values

        Returns:
            Created Company instance
        """
        data = dict(company_data)
        data['normalized_name'] = normalize_name(data.get('name'))

        company = Company(user_id=owner_id, **data)
        self.session.add(company)
        self.session.flush()

        logger.debug(f"Created company: {company.id} (owner={owner_id})")
        return company

    def get_for_owner(self, company_id: int, owner_id: int) -> Optional[Company]:
        """Get a company only if it belongs to ``owner_id``."""
        query = select(Company).where(
            and_(
                Company.id == company_id,
                Company.user_id == owner_id
            )
        )
        return self.session.execute(query).scalar_one_or_none()

    @timed_query("list_companies_for_owner")
    def list_for_owner(
        self,
        owner_id: int,
        name: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[Company], int]:
        """
        List an owner's companies, newest first.

        Args:
            owner_id: Owning user id
            name: Optional substring filter on the normalized name
            offset: Pagination offset
            limit: Maximum results

        Returns:
            Tuple of (companies list, total count)
        """
        conditions = [Company.user_id == owner_id]
        if name:
            conditions.append(Company.normalized_name.contains(normalize_name(name)))

        count_query = select(func.count()).select_from(Company).where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = select(Company).where(
            and_(*conditions)
        ).order_by(
            Company.created_at.desc(), Company.id.desc()
        ).offset(offset).limit(limit)

        companies = list(self.session.execute(query).scalars().all())
        return companies, total

    @timed_query("count_companies_for_owner")
    def count_for_owner(self, owner_id: int) -> int:
        query = select(func.count()).select_from(Company).where(Company.user_id == owner_id)
        return self.session.execute(query).scalar_one()


# ============================================
# CASE REPOSITORY
# ============================================

class CaseRepository:
    """Repository for KYC case operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        owner_id: int,
        case_number: str,
        company_id: Optional[int] = None,
        risk_level: str = RiskLevel.MEDIUM.value,
        customer_info: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None
    ) -> KycCase:
        """
        Create a case at the first stage with no completed stages.

        Raises:
            DuplicateEntityError: If the case number is already taken
        """
        try:
            case = KycCase(
                user_id=owner_id,
                company_id=company_id,
                case_number=case_number,
                status=CaseStatus.PENDING.value,
                risk_level=risk_level,
                current_step=PipelineStage.IDENTIFICATION.value,
                steps_completed=[],
                step_status={},
                customer_info=customer_info,
                notes=notes
            )
            self.session.add(case)
            self.session.flush()

            logger.debug(f"Created case: {case.id} ({case.case_number})")
            return case

        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Case number already exists: {case_number}") from e

    def case_number_exists(self, case_number: str) -> bool:
        query = select(func.count()).select_from(KycCase).where(KycCase.case_number == case_number)
        return self.session.execute(query).scalar_one() > 0

    def get_for_owner(self, case_id: int, owner_id: int) -> Optional[KycCase]:
        """
        Get a case only if it belongs to ``owner_id``.

        A foreign case and a missing case both return None.
        """
        query = select(KycCase).where(
            and_(
                KycCase.id == case_id,
                KycCase.user_id == owner_id
            )
        )
        return self.session.execute(query).scalar_one_or_none()

    @timed_query("list_cases_for_owner")
    def list_for_owner(
        self,
        owner_id: int,
        status: Optional[str] = None,
        risk_level: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> List[Tuple[KycCase, Optional[str], Optional[str], int, int]]:
        """
        List an owner's cases, newest first, with derived counts.

        Document and UBO counts come from correlated subqueries so a
        single statement returns everything the summary needs.

        Returns:
            List of tuples (case, company_name, registration_number,
            document_count, ubo_count)
        """
        document_count = select(
            func.count(Document.id)
        ).where(
            Document.case_id == KycCase.id
        ).correlate(KycCase).scalar_subquery()

        ubo_count = select(
            func.count(UltimateBeneficialOwner.id)
        ).where(
            UltimateBeneficialOwner.case_id == KycCase.id
        ).correlate(KycCase).scalar_subquery()

        conditions = [KycCase.user_id == owner_id]
        if status:
            conditions.append(KycCase.status == status)
        if risk_level:
            conditions.append(KycCase.risk_level == risk_level)

        query = select(
            KycCase,
            Company.name,
            Company.registration_number,
            document_count.label("document_count"),
            ubo_count.label("ubo_count")
        ).outerjoin(
            Company, KycCase.company_id == Company.id
        ).where(
            and_(*conditions)
        ).order_by(
            KycCase.created_at.desc(), KycCase.id.desc()
        ).offset(offset).limit(limit)

        return [tuple(row) for row in self.session.execute(query).all()]

    @timed_query("count_cases_by_status")
    def count_by_status(self, owner_id: int) -> Dict[str, int]:
        """Count an owner's cases grouped by status."""
        query = select(
            KycCase.status,
            func.count(KycCase.id)
        ).where(
            KycCase.user_id == owner_id
        ).group_by(KycCase.status)

        return {status: count for status, count in self.session.execute(query).all()}

    def count_by_risk_levels(self, owner_id: int, risk_levels: Iterable[str]) -> int:
        query = select(func.count()).select_from(KycCase).where(
            and_(
                KycCase.user_id == owner_id,
                KycCase.risk_level.in_(list(risk_levels))
            )
        )
        return self.session.execute(query).scalar_one()

    @timed_query("recent_cases_for_owner")
    def recent_for_owner(self, owner_id: int, limit: int = 5) -> List[Tuple[KycCase, Optional[str]]]:
        """Most recently created cases with their company name."""
        query = select(
            KycCase,
            Company.name
        ).outerjoin(
            Company, KycCase.company_id == Company.id
        ).where(
            KycCase.user_id == owner_id
        ).order_by(
            KycCase.created_at.desc(), KycCase.id.desc()
        ).limit(limit)

        return [tuple(row) for row in self.session.execute(query).all()]


# ============================================
# COMPLIANCE CHECK REPOSITORY
# ============================================

class ComplianceCheckRepository:
    """Repository for compliance check records."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, case_id: int, check_type: str) -> ComplianceCheck:
        """
        Create a pending check.

        Raises:
            DuplicateEntityError: If the case already has a check of this type
        """
        try:
            check = ComplianceCheck(
                case_id=case_id,
                check_type=check_type,
                status=CheckStatus.PENDING.value
            )
            self.session.add(check)
            self.session.flush()
            return check

        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(
                f"Check already exists for case {case_id}: {check_type}"
            ) from e

    def create_pending(self, case_id: int, check_types: Iterable[str]) -> List[ComplianceCheck]:
        """Create one pending check per type in a single flush."""
        checks = [
            ComplianceCheck(case_id=case_id, check_type=check_type, status=CheckStatus.PENDING.value)
            for check_type in check_types
        ]
        self.session.add_all(checks)
        self.session.flush()
        return checks

    def get_for_case(self, case_id: int, check_type: str) -> Optional[ComplianceCheck]:
        query = select(ComplianceCheck).where(
            and_(
                ComplianceCheck.case_id == case_id,
                ComplianceCheck.check_type == check_type
            )
        )
        return self.session.execute(query).scalar_one_or_none()

    def list_for_case(self, case_id: int) -> List[ComplianceCheck]:
        query = select(ComplianceCheck).where(
            ComplianceCheck.case_id == case_id
        ).order_by(ComplianceCheck.id)
        return list(self.session.execute(query).scalars().all())

    def record_result(
        self,
        check: ComplianceCheck,
        status: str,
        result: Optional[Dict[str, Any]],
        risk_score: Optional[int],
        details: Optional[str] = None
    ) -> ComplianceCheck:
        """Overwrite a check's outcome in place."""
        check.status = status
        check.result = result
        check.risk_score = risk_score
        check.details = details
        check.checked_at = datetime.now(timezone.utc)

        self.session.flush()
        return check

    @timed_query("count_pending_checks_for_owner")
    def count_pending_for_owner(self, owner_id: int) -> int:
        """Count pending checks across all of an owner's cases."""
        query = select(func.count(ComplianceCheck.id)).join(
            KycCase, ComplianceCheck.case_id == KycCase.id
        ).where(
            and_(
                KycCase.user_id == owner_id,
                ComplianceCheck.status == CheckStatus.PENDING.value
            )
        )
        return self.session.execute(query).scalar_one()


# ============================================
# DOCUMENT & UBO REPOSITORIES
# ============================================

class DocumentRepository:
    """Repository for document metadata."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, case_id: int, owner_id: int, document_data: Dict[str, Any]) -> Document:
        document = Document(case_id=case_id, user_id=owner_id, **document_data)
        self.session.add(document)
        self.session.flush()
        return document

    def list_for_case(self, case_id: int) -> List[Document]:
        """Documents of a case, most recent first."""
        query = select(Document).where(
            Document.case_id == case_id
        ).order_by(Document.created_at.desc(), Document.id.desc())
        return list(self.session.execute(query).scalars().all())


class UboRepository:
    """Repository for ultimate beneficial owners."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, ubo_data: Dict[str, Any]) -> UltimateBeneficialOwner:
        ubo = UltimateBeneficialOwner(**ubo_data)
        self.session.add(ubo)
        self.session.flush()
        return ubo

    def get_for_case(self, ubo_id: int, case_id: int) -> Optional[UltimateBeneficialOwner]:
        query = select(UltimateBeneficialOwner).where(
            and_(
                UltimateBeneficialOwner.id == ubo_id,
                UltimateBeneficialOwner.case_id == case_id
            )
        )
        return self.session.execute(query).scalar_one_or_none()

    def list_for_case(self, case_id: int) -> List[UltimateBeneficialOwner]:
        """UBOs of a case, largest ownership first, unknown ownership last."""
        query = select(UltimateBeneficialOwner).where(
            UltimateBeneficialOwner.case_id == case_id
        ).order_by(
            UltimateBeneficialOwner.ownership_percentage.desc().nulls_last(),
            UltimateBeneficialOwner.id
        )
        return list(self.session.execute(query).scalars().all())


# ============================================
# ACTIVITY LOG REPOSITORY
# ============================================

class ActivityLogRepository:
    """Repository for the append-only activity log."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: Optional[int] = None,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ) -> ActivityLog:
        """
        Append an activity log entry.

        Args:
            action: Type of action
            entity_type: Kind of entity acted upon (e.g. 'kyc_case')
            entity_id: Id of the entity
            user_id: Acting user
            details: Additional details (JSON-serializable)
            old_value: State before the change
            new_value: State after the change

        Returns:
            Created ActivityLog
        """
        entry = ActivityLog(
            action=action.value,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            details=details,
            old_value=old_value,
            new_value=new_value
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_for_entity(
        self,
        entity_type: str,
        entity_id: int,
        action: Optional[AuditAction] = None
    ) -> List[ActivityLog]:
        """Log entries for one entity, oldest first."""
        conditions = [
            ActivityLog.entity_type == entity_type,
            ActivityLog.entity_id == entity_id
        ]
        if action:
            conditions.append(ActivityLog.action == action.value)

        query = select(ActivityLog).where(
            and_(*conditions)
        ).order_by(ActivityLog.timestamp, ActivityLog.id)
        return list(self.session.execute(query).scalars().all())
