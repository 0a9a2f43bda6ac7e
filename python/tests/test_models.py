"""
Unit tests for database models and schema.

Tests the enums, normalization helpers, attribute validators and table
constraints against an in-memory SQLite database.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from database.models import (
    AuditAction,
    CaseStatus,
    CheckStatus,
    Company,
    ComplianceCheck,
    KycCase,
    PipelineStage,
    RiskLevel,
    StageStatus,
    UltimateBeneficialOwner,
    HIGH_RISK_LEVELS,
    normalize_name,
    normalize_stage_set,
)


class TestNormalizationFunctions:
    """Tests for company name normalization."""

    def test_normalize_name_basic(self):
        assert normalize_name("Muster GmbH") == "MUSTER GMBH"
        assert normalize_name("  Muster   GmbH  ") == "MUSTER GMBH"

    def test_normalize_name_accents(self):
        assert normalize_name("Café Zürich AG") == "CAFE ZURICH AG"

    def test_normalize_name_special_chars(self):
        assert normalize_name("Schmidt & Söhne KG") == "SCHMIDT SOHNE KG"

    def test_normalize_name_empty(self):
        assert normalize_name("") == ""
        assert normalize_name(None) == ""


class TestEnums:
    """Tests for enum values stored in the database."""

    def test_pipeline_stages(self):
        assert [stage.value for stage in PipelineStage] == [1, 2, 3, 4, 5, 6]
        assert PipelineStage.first() == 1
        assert PipelineStage.last() == 6
        assert PipelineStage.UBO_DETERMINATION.label == "Ubo Determination"

    def test_case_status_values(self):
        assert [s.value for s in CaseStatus] == [
            "pending", "active", "in_review", "on_hold", "completed", "rejected"
        ]

    def test_stage_status_values(self):
        assert StageStatus.COMPLETED.value == "completed"
        assert StageStatus.IN_PROGRESS.value == "in_progress"

    def test_check_status_values(self):
        assert {s.value for s in CheckStatus} == {"pending", "clear", "match", "review", "error"}

    def test_high_risk_levels(self):
        assert HIGH_RISK_LEVELS == (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)

    def test_audit_action_values(self):
        assert AuditAction.STEP_ADVANCE.value == "STEP_ADVANCE"
        assert AuditAction.CHECK_RUN.value == "CHECK_RUN"


class TestPipelineStageCoercion:

    @pytest.mark.parametrize("value,expected", [(1, 1), ("3", 3), (6, 6), (PipelineStage.APPROVAL, 6)])
    def test_valid_values(self, value, expected):
        assert PipelineStage.coerce(value).value == expected

    @pytest.mark.parametrize("value", [0, 7, -1, "x", None, 2.5, True])
    def test_invalid_values(self, value):
        with pytest.raises(ValueError):
            PipelineStage.coerce(value)

    def test_stage_set_is_sorted_and_distinct(self):
        assert normalize_stage_set([3, 1, 3, 2]) == [1, 2, 3]
        assert normalize_stage_set(None) == []

    def test_stage_set_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            normalize_stage_set([1, 9])


class TestKycCaseModel:

    def _company(self, session, owner):
        company = Company(user_id=owner.id, name="Muster GmbH", normalized_name="MUSTER GMBH")
        session.add(company)
        session.flush()
        return company

    def test_validators_normalize_steps(self, session, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-AAAA", steps_completed=[2, 1, 2])
        assert case.steps_completed == [1, 2]

        case.current_step = "4"
        assert case.current_step == 4

    def test_validators_reject_out_of_range_step(self, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-BBBB")
        with pytest.raises(ValueError):
            case.current_step = 7

    def test_progress(self, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-CCCC", steps_completed=[1, 2, 3])
        assert case.progress == 0.5

    def test_defaults_after_flush(self, session, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-DDDD")
        session.add(case)
        session.flush()

        assert case.status == CaseStatus.PENDING.value
        assert case.risk_level == RiskLevel.MEDIUM.value
        assert case.current_step == 1
        assert case.steps_completed == []
        assert case.step_status == {}
        assert case.created_at is not None

    def test_case_number_unique(self, session, owner):
        session.add(KycCase(user_id=owner.id, case_number="KYC-1-EEEE"))
        session.flush()
        session.add(KycCase(user_id=owner.id, case_number="KYC-1-EEEE"))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_one_check_per_type(self, session, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-FFFF")
        session.add(case)
        session.flush()

        session.add(ComplianceCheck(case_id=case.id, check_type="pep"))
        session.flush()
        session.add(ComplianceCheck(case_id=case.id, check_type="pep"))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_risk_score_range(self, session, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-GGGG")
        session.add(case)
        session.flush()

        session.add(ComplianceCheck(case_id=case.id, check_type="pep", risk_score=101))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_ownership_percentage_range(self, session, owner):
        company = self._company(session, owner)
        session.add(UltimateBeneficialOwner(
            company_id=company.id, first_name="Erika", last_name="Muster", ownership_percentage=120
        ))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_deleting_case_cascades_to_checks(self, session, owner):
        case = KycCase(user_id=owner.id, case_number="KYC-1-HHHH")
        case.compliance_checks.append(ComplianceCheck(check_type="sanctions"))
        session.add(case)
        session.flush()

        session.delete(case)
        session.flush()
        assert session.query(ComplianceCheck).count() == 0

    def test_ubo_full_name(self):
        ubo = UltimateBeneficialOwner(first_name="Erika", last_name="Mustermann")
        assert ubo.full_name == "Erika Mustermann"
