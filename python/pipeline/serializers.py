"""
Plain-dict views of ORM rows, for JSON output and activity log snapshots.
"""

from datetime import date, datetime
from typing import Any, Dict, Optional

from database.models import (
    Company,
    ComplianceCheck,
    Document,
    KycCase,
    UltimateBeneficialOwner,
)


def isoformat(value) -> Optional[str]:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def case_to_dict(case: KycCase) -> Dict[str, Any]:
    return {
        "id": case.id,
        "case_number": case.case_number,
        "company_id": case.company_id,
        "status": case.status,
        "risk_level": case.risk_level,
        "current_step": case.current_step,
        "steps_completed": list(case.steps_completed or []),
        "step_status": dict(case.step_status or {}),
        "progress": case.progress,
        "customer_info": case.customer_info,
        "notes": case.notes,
        "status_reason": case.status_reason,
        "created_at": isoformat(case.created_at),
        "updated_at": isoformat(case.updated_at),
        "completed_at": isoformat(case.completed_at),
    }


def case_state_snapshot(case: KycCase) -> Dict[str, Any]:
    """The mutable part of a case, as recorded in the activity log."""
    return {
        "status": case.status,
        "risk_level": case.risk_level,
        "current_step": case.current_step,
        "steps_completed": list(case.steps_completed or []),
        "step_status": dict(case.step_status or {}),
        "status_reason": case.status_reason,
    }


def company_to_dict(company: Company) -> Dict[str, Any]:
    return {
        "id": company.id,
        "name": company.name,
        "registration_number": company.registration_number,
        "legal_form": company.legal_form,
        "address": company.address,
        "city": company.city,
        "postal_code": company.postal_code,
        "country": company.country,
        "status": company.status,
        "source": company.source,
        "registry_data": company.registry_data,
        "beneficial_ownership_data": company.beneficial_ownership_data,
        "created_at": isoformat(company.created_at),
    }


def check_to_dict(check: ComplianceCheck) -> Dict[str, Any]:
    return {
        "id": check.id,
        "case_id": check.case_id,
        "check_type": check.check_type,
        "status": check.status,
        "risk_score": check.risk_score,
        "result": check.result,
        "details": check.details,
        "checked_at": isoformat(check.checked_at),
    }


def document_to_dict(document: Document) -> Dict[str, Any]:
    return {
        "id": document.id,
        "case_id": document.case_id,
        "filename": document.filename,
        "original_name": document.original_name,
        "mime_type": document.mime_type,
        "file_size": document.file_size,
        "confidence": document.confidence,
        "analysis": document.analysis,
        "status": document.status,
        "created_at": isoformat(document.created_at),
    }


def ubo_to_dict(ubo: UltimateBeneficialOwner) -> Dict[str, Any]:
    return {
        "id": ubo.id,
        "company_id": ubo.company_id,
        "case_id": ubo.case_id,
        "first_name": ubo.first_name,
        "last_name": ubo.last_name,
        "birth_date": isoformat(ubo.birth_date),
        "nationality": ubo.nationality,
        "address": ubo.address,
        "ownership_percentage": ubo.ownership_percentage,
        "voting_rights": ubo.voting_rights,
        "is_pep": ubo.is_pep,
        "pep_details": ubo.pep_details,
        "risk_level": ubo.risk_level,
        "status": ubo.status,
    }
