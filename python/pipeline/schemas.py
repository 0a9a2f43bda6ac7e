"""
Pydantic schemas for pipeline input and stored check results.

Input schemas validate what callers pass to the services; check result
schemas validate what a screening provider returns before it is written
to compliance_checks.result.
"""

from datetime import date
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as SchemaValidationError

from database.models import (
    CheckStatus,
    CheckType,
    CompanySource,
    DocumentStatus,
    RiskLevel,
)
from pipeline.exceptions import ValidationError

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_input(schema: Type[SchemaT], data: Any) -> SchemaT:
    """
    Validate ``data`` against ``schema``.

    Raises:
        ValidationError: Naming the first offending field
    """
    try:
        return schema.model_validate(data)
    except SchemaValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "unknown"
        raise ValidationError(
            f"Invalid {field}: {first.get('msg', 'invalid value')}",
            field=field,
            code="INVALID_FIELD"
        ) from e


# ============================================
# INPUT SCHEMAS
# ============================================

class CaseCreate(BaseModel):
    """Input for creating a case."""
    model_config = {"str_strip_whitespace": True}

    company_id: Optional[int] = Field(default=None, ge=1)
    company_name: Optional[str] = Field(default=None, max_length=255)
    customer_info: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = Field(default=None, max_length=10000)
    risk_level: Optional[RiskLevel] = None

    @field_validator('company_name')
    @classmethod
    def empty_name_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class CompanyFields(BaseModel):
    """Column values for a company record."""
    model_config = {"str_strip_whitespace": True}

    name: str = Field(..., min_length=1, max_length=255)
    registration_number: Optional[str] = Field(default=None, max_length=100)
    legal_form: Optional[str] = Field(default=None, max_length=100)
    address: Optional[str] = None
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: str = Field(default="Germany", max_length=100)
    status: str = Field(default="active", max_length=50)
    source: CompanySource = CompanySource.MANUAL
    registry_data: Optional[Dict[str, Any]] = None
    beneficial_ownership_data: Optional[Dict[str, Any]] = None

    def to_columns(self) -> Dict[str, Any]:
        values = self.model_dump()
        values['source'] = self.source.value
        return values


class UboCreate(BaseModel):
    """Input for recording a beneficial owner."""
    model_config = {"str_strip_whitespace": True}

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    birth_date: Optional[date] = None
    nationality: Optional[str] = Field(default=None, max_length=100)
    address: Optional[str] = None
    ownership_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    voting_rights: Optional[float] = Field(default=None, ge=0, le=100)
    is_pep: bool = False
    pep_details: Optional[Dict[str, Any]] = None
    risk_level: Optional[RiskLevel] = None
    company_id: Optional[int] = Field(default=None, ge=1)

    def to_columns(self) -> Dict[str, Any]:
        values = self.model_dump(exclude={'company_id'})
        values['risk_level'] = self.risk_level.value if self.risk_level else None
        return values


class DocumentCreate(BaseModel):
    """Document metadata supplied by the upload/OCR collaborator."""
    filename: str = Field(..., min_length=1, max_length=255)
    original_name: Optional[str] = Field(default=None, max_length=255)
    mime_type: Optional[str] = Field(default=None, max_length=100)
    file_size: Optional[int] = Field(default=None, ge=0)
    extracted_text: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    status: DocumentStatus = DocumentStatus.PENDING

    def to_columns(self) -> Dict[str, Any]:
        values = self.model_dump()
        values['status'] = self.status.value
        return values


# ============================================
# CHECK RESULT SCHEMAS
# ============================================

class CheckResult(BaseModel):
    """
    Stored outcome of a compliance check.

    Used as-is for check types without a dedicated model. Extra keys
    reported by a provider are kept.
    """
    model_config = {"extra": "allow"}

    check_type: str
    status: CheckStatus
    risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    matches: List[Dict[str, Any]] = Field(default_factory=list)
    subject: Dict[str, Any] = Field(default_factory=dict)
    provider: str = "unknown"
    note: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode='after')
    def score_required_unless_error(self) -> 'CheckResult':
        if self.status in (CheckStatus.PENDING, CheckStatus.ERROR):
            return self
        if self.risk_score is None:
            raise ValueError(f"risk_score is required for status '{self.status.value}'")
        return self

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


class PepCheckResult(CheckResult):
    check_type: Literal["pep"] = "pep"
    databases_checked: List[str] = Field(default_factory=list)


class SanctionsCheckResult(CheckResult):
    check_type: Literal["sanctions"] = "sanctions"
    lists_checked: List[str] = Field(default_factory=list)


class AdverseMediaCheckResult(CheckResult):
    check_type: Literal["adverse_media"] = "adverse_media"
    sources_checked: List[str] = Field(default_factory=list)
    articles: List[Dict[str, Any]] = Field(default_factory=list)


RESULT_MODELS: Dict[str, Type[CheckResult]] = {
    CheckType.PEP.value: PepCheckResult,
    CheckType.SANCTIONS.value: SanctionsCheckResult,
    CheckType.ADVERSE_MEDIA.value: AdverseMediaCheckResult,
}


def build_check_result(check_type: str, payload: Dict[str, Any]) -> CheckResult:
    """
    Validate a result payload with the model registered for ``check_type``.

    Raises:
        pydantic.ValidationError: If the payload does not fit the model
    """
    model = RESULT_MODELS.get(check_type, CheckResult)
    return model.model_validate({**payload, "check_type": check_type})
