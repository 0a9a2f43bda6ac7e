"""
Tests for the repository layer.

Runs against in-memory SQLite; covers owner scoping, the derived counts
of the case listing and the ordering guarantees the services rely on.
"""

from datetime import date

import pytest

from database.models import AuditAction, CheckStatus, RiskLevel
from database.monitoring import get_db_metrics
from database.repositories import (
    ActivityLogRepository,
    CaseRepository,
    CompanyRepository,
    ComplianceCheckRepository,
    DocumentRepository,
    DuplicateEntityError,
    EntityNotFoundError,
    UboRepository,
    UserRepository,
)


@pytest.fixture
def company(session, owner):
    return CompanyRepository(session).create(owner.id, {"name": "Müller Logistik GmbH", "city": "Hamburg"})


@pytest.fixture
def case(session, owner, company):
    return CaseRepository(session).create(owner.id, "KYC-100-ABCDEF01", company_id=company.id)


class TestUserRepository:

    def test_email_is_normalized_and_unique(self, session, owner):
        repo = UserRepository(session)
        assert repo.get_by_email("  Analyst@Example.com ").id == owner.id

        with pytest.raises(DuplicateEntityError):
            repo.create(email="ANALYST@example.com", credential_hash="!")

    def test_record_login(self, session, owner):
        user = UserRepository(session).record_login(owner.id)
        assert user.last_login_at is not None

        entries = ActivityLogRepository(session).list_for_entity("user", owner.id)
        assert [e.action for e in entries] == ["LOGIN"]
        assert entries[0].user_id == owner.id

    def test_record_login_unknown_user(self, session):
        with pytest.raises(EntityNotFoundError):
            UserRepository(session).record_login(9999)


class TestCompanyRepository:

    def test_create_sets_normalized_name(self, company):
        assert company.normalized_name == "MULLER LOGISTIK GMBH"
        assert company.source == "manual"
        assert company.country == "Germany"

    def test_owner_scoping(self, session, company, owner, other_owner):
        repo = CompanyRepository(session)
        assert repo.get_for_owner(company.id, owner.id) is not None
        assert repo.get_for_owner(company.id, other_owner.id) is None

    def test_list_filters_by_name(self, session, owner, company):
        repo = CompanyRepository(session)
        repo.create(owner.id, {"name": "Beispiel AG"})

        companies, total = repo.list_for_owner(owner.id, name="muller")
        assert total == 1
        assert companies[0].id == company.id

        _, total = repo.list_for_owner(owner.id)
        assert total == 2
        assert repo.count_for_owner(owner.id) == 2

    def test_no_deduplication(self, session, owner):
        repo = CompanyRepository(session)
        first = repo.create(owner.id, {"name": "Twin GmbH", "registration_number": "HRB 1"})
        second = repo.create(owner.id, {"name": "Twin GmbH", "registration_number": "HRB 1"})
        assert first.id != second.id


class TestCaseRepository:

    def test_create_defaults(self, case):
        assert case.current_step == 1
        assert case.steps_completed == []
        assert case.status == "pending"

    def test_duplicate_case_number(self, session, owner, case):
        session.commit()
        with pytest.raises(DuplicateEntityError):
            CaseRepository(session).create(owner.id, case.case_number)

    def test_case_number_exists(self, session, case):
        repo = CaseRepository(session)
        assert repo.case_number_exists(case.case_number)
        assert not repo.case_number_exists("KYC-0-00000000")

    def test_foreign_case_is_invisible(self, session, case, other_owner):
        assert CaseRepository(session).get_for_owner(case.id, other_owner.id) is None

    def test_list_includes_derived_counts(self, session, owner, case):
        DocumentRepository(session).create(case.id, owner.id, {"filename": "passport.pdf"})
        DocumentRepository(session).create(case.id, owner.id, {"filename": "register.pdf"})
        UboRepository(session).create({"case_id": case.id, "first_name": "Erika", "last_name": "Muster"})

        rows = CaseRepository(session).list_for_owner(owner.id)
        assert len(rows) == 1
        listed, company_name, registration_number, document_count, ubo_count = rows[0]
        assert listed.id == case.id
        assert company_name == "Müller Logistik GmbH"
        assert registration_number is None
        assert document_count == 2
        assert ubo_count == 1

    def test_list_newest_first_with_filters(self, session, owner):
        repo = CaseRepository(session)
        older = repo.create(owner.id, "KYC-1-00000001", risk_level=RiskLevel.HIGH.value)
        newer = repo.create(owner.id, "KYC-1-00000002", risk_level=RiskLevel.LOW.value)

        assert [row[0].id for row in repo.list_for_owner(owner.id)] == [newer.id, older.id]
        assert [row[0].id for row in repo.list_for_owner(owner.id, risk_level="high")] == [older.id]
        assert [row[0].id for row in repo.list_for_owner(owner.id, limit=1)] == [newer.id]
        assert [row[0].id for row in repo.list_for_owner(owner.id, offset=1)] == [older.id]

    def test_counts(self, session, owner, other_owner):
        repo = CaseRepository(session)
        repo.create(owner.id, "KYC-2-00000001", risk_level="high")
        repo.create(owner.id, "KYC-2-00000002", risk_level="critical")
        repo.create(owner.id, "KYC-2-00000003", risk_level="low")
        repo.create(other_owner.id, "KYC-2-00000004", risk_level="high")

        assert repo.count_by_status(owner.id) == {"pending": 3}
        assert repo.count_by_risk_levels(owner.id, ["high", "critical"]) == 2

    def test_timed_queries_are_recorded(self, session, owner, case):
        CaseRepository(session).list_for_owner(owner.id)
        metrics = get_db_metrics()
        assert metrics["operations"]["list_cases_for_owner"]["count"] == 1


class TestComplianceCheckRepository:

    def test_create_pending(self, session, case):
        repo = ComplianceCheckRepository(session)
        checks = repo.create_pending(case.id, ["pep", "sanctions", "adverse_media"])
        assert [c.status for c in checks] == ["pending"] * 3
        assert [c.check_type for c in repo.list_for_case(case.id)] == ["pep", "sanctions", "adverse_media"]

    def test_duplicate_type_rejected(self, session, case):
        repo = ComplianceCheckRepository(session)
        repo.create(case.id, "pep")
        session.commit()
        with pytest.raises(DuplicateEntityError):
            repo.create(case.id, "pep")

    def test_record_result_overwrites(self, session, case):
        repo = ComplianceCheckRepository(session)
        check = repo.create(case.id, "sanctions")

        repo.record_result(check, CheckStatus.MATCH.value, {"matches": [1]}, 80)
        repo.record_result(check, CheckStatus.CLEAR.value, {"matches": []}, 5, details="rerun")

        stored = repo.get_for_case(case.id, "sanctions")
        assert stored.id == check.id
        assert stored.status == "clear"
        assert stored.risk_score == 5
        assert stored.details == "rerun"
        assert stored.checked_at is not None

    def test_count_pending_joins_through_cases(self, session, owner, other_owner, case):
        repo = ComplianceCheckRepository(session)
        repo.create_pending(case.id, ["pep", "sanctions"])
        foreign = CaseRepository(session).create(other_owner.id, "KYC-3-00000001")
        repo.create_pending(foreign.id, ["pep"])

        assert repo.count_pending_for_owner(owner.id) == 2
        assert repo.count_pending_for_owner(other_owner.id) == 1


class TestDocumentAndUboRepositories:

    def test_documents_newest_first(self, session, owner, case):
        repo = DocumentRepository(session)
        first = repo.create(case.id, owner.id, {"filename": "a.pdf"})
        second = repo.create(case.id, owner.id, {"filename": "b.pdf"})
        assert [d.id for d in repo.list_for_case(case.id)] == [second.id, first.id]

    def test_ubos_by_ownership_nulls_last(self, session, case):
        repo = UboRepository(session)
        unknown = repo.create({"case_id": case.id, "first_name": "A", "last_name": "Unknown"})
        minor = repo.create({"case_id": case.id, "first_name": "B", "last_name": "Minor", "ownership_percentage": 25.0})
        major = repo.create({
            "case_id": case.id,
            "first_name": "C",
            "last_name": "Major",
            "ownership_percentage": 75.0,
            "birth_date": date(1970, 5, 1),
        })
        assert [u.id for u in repo.list_for_case(case.id)] == [major.id, minor.id, unknown.id]

    def test_ubo_scoped_to_case(self, session, owner, case):
        ubo = UboRepository(session).create({"case_id": case.id, "first_name": "A", "last_name": "B"})
        other_case = CaseRepository(session).create(owner.id, "KYC-4-00000001")
        assert UboRepository(session).get_for_case(ubo.id, case.id) is not None
        assert UboRepository(session).get_for_case(ubo.id, other_case.id) is None


class TestActivityLogRepository:

    def test_log_and_list(self, session, owner, case):
        repo = ActivityLogRepository(session)
        repo.log(AuditAction.CREATE, "kyc_case", case.id, user_id=owner.id, new_value={"status": "pending"})
        repo.log(AuditAction.STATUS_CHANGE, "kyc_case", case.id, user_id=owner.id,
                 old_value={"status": "pending"}, new_value={"status": "active"})

        entries = repo.list_for_entity("kyc_case", case.id)
        assert [e.action for e in entries] == ["CREATE", "STATUS_CHANGE"]

        changes = repo.list_for_entity("kyc_case", case.id, action=AuditAction.STATUS_CHANGE)
        assert len(changes) == 1
        assert changes[0].new_value == {"status": "active"}
