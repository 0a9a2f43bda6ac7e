"""
Company Registry Service

Persisted company records plus an adapter around the external trade
register search. The search never fails because of the register: on
timeout, transport error, an unusable payload or an empty result it
returns a single demo candidate, tagged source="demo", so callers always
get something actionable and can tell placeholder data from real data.
"""

import logging
import secrets
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Union

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config_manager import RegistryConfig
from database.models import AuditAction, Company, CompanySource
from database.monitoring import record_pipeline_event
from database.repositories import ActivityLogRepository, CompanyRepository
from log_utils import sanitize_for_logging
from pipeline.exceptions import CollaboratorUnavailable, PersistenceError, ValidationError
from pipeline.schemas import CompanyFields, parse_input

logger = logging.getLogger(__name__)


@dataclass
class CompanyCandidate:
    """A company as reported by the register (or the demo fallback)."""
    name: str
    registration_number: Optional[str] = None
    legal_form: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "Germany"
    source: str = CompanySource.EXTERNAL.value
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_registry(cls, item: Dict[str, Any]) -> Optional['CompanyCandidate']:
        """Map one register hit, accepting both English and German field names."""
        name = item.get('name') or item.get('firma')
        if not name:
            return None
        def pick(*keys: str) -> Optional[str]:
            for key in keys:
                value = item.get(key)
                if value is not None and value != '':
                    return str(value).strip()
            return None

        return cls(
            name=str(name).strip(),
            registration_number=pick('registration_number', 'hrb'),
            legal_form=pick('legal_form', 'rechtsform'),
            address=pick('address', 'sitz'),
            city=pick('city', 'ort'),
            postal_code=pick('postal_code', 'plz'),
            country=pick('country') or "Germany",
            source=CompanySource.EXTERNAL.value,
            raw=item
        )

    @property
    def is_demo(self) -> bool:
        return self.source == CompanySource.DEMO.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('raw')
        return data

    def to_company_fields(self) -> Dict[str, Any]:
        """Column values for saving this candidate as a company."""
        data = self.to_dict()
        data['registry_data'] = self.raw or None
        return data


class RegistryLookupClient:
    """
    HTTP client for the trade register search endpoint.

    ``search`` returns the raw hits or raises CollaboratorUnavailable.
    """

    def __init__(self, search_url: str, timeout: float = 8.0, session: Optional[requests.Session] = None):
        self.search_url = search_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def search(self, query: str) -> List[Dict[str, Any]]:
        try:
            response = self.session.get(
                self.search_url,
                params={'q': query},
                headers={'Accept': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise CollaboratorUnavailable("company registry", str(e), cause=e) from e
        except ValueError as e:
            raise CollaboratorUnavailable("company registry", "response is not JSON", cause=e) from e

        # Some deployments wrap the hit list
        if isinstance(body, dict):
            body = body.get('results')
        if not isinstance(body, list):
            raise CollaboratorUnavailable("company registry", "response is not a list of companies")

        return [item for item in body if isinstance(item, dict)]


class CompanyRegistryService:
    """
    Company search and persistence.

    Args:
        session: SQLAlchemy session (only needed for save/list)
        config: Optional ConfigManager instance
        client: Register lookup client (built from config when omitted)
    """

    def __init__(
        self,
        session: Optional[Session] = None,
        config: Optional[Any] = None,
        client: Optional[RegistryLookupClient] = None
    ):
        self.session = session
        self.config = config
        self._registry: RegistryConfig = config.registry if config is not None else RegistryConfig()
        self.client = client or RegistryLookupClient(
            self._registry.search_url,
            timeout=self._registry.timeout_seconds
        )

    # ----------------------------------------
    # External search
    # ----------------------------------------

    def search_external_registry(self, query: str) -> List[CompanyCandidate]:
        """
        Search the trade register.

        Returns:
            Mapped candidates with source="external", or exactly one demo
            candidate when the register is unavailable or finds nothing

        Raises:
            ValidationError: Query shorter than the configured minimum
        """
        query = (query or "").strip()
        if len(query) < self._registry.min_query_length:
            raise ValidationError(
                f"Search query must be at least {self._registry.min_query_length} characters",
                field="query",
                code="QUERY_TOO_SHORT",
                suggestion="Enter more of the company name"
            )

        safe_query = sanitize_for_logging(query, max_length=100)

        if not self._registry.enabled:
            logger.info(f"Registry lookup disabled, returning demo result for '{safe_query}'")
            return [self._demo_candidate(query)]

        try:
            hits = self.client.search(query)
        except CollaboratorUnavailable as e:
            logger.warning(f"Registry search for '{safe_query}' failed, using demo result: {e}")
            record_pipeline_event("registry_search", "demo_fallback")
            return [self._demo_candidate(query)]

        candidates = [c for c in (CompanyCandidate.from_registry(hit) for hit in hits) if c is not None]
        if not candidates:
            logger.info(f"Registry search for '{safe_query}' found nothing, using demo result")
            record_pipeline_event("registry_search", "demo_fallback")
            return [self._demo_candidate(query)]

        record_pipeline_event("registry_search", "success")
        logger.info(f"Registry search for '{safe_query}' returned {len(candidates)} result(s)")
        return candidates

    def _demo_candidate(self, query: str) -> CompanyCandidate:
        return CompanyCandidate(
            name=query,
            registration_number=f"DEMO-HRB{10000 + secrets.randbelow(90000)}",
            legal_form="GmbH",
            address=self._registry.demo_address,
            city=self._registry.demo_city,
            postal_code=self._registry.demo_postal_code,
            country="Germany",
            source=CompanySource.DEMO.value
        )

    # ----------------------------------------
    # Persistence
    # ----------------------------------------

    def save_company(
        self,
        owner_id: int,
        fields: Union[Dict[str, Any], CompanyCandidate, CompanyFields]
    ) -> Company:
        """
        Save a company for ``owner_id``.

        No deduplication is done; saving the same registration number
        twice creates two records.

        Raises:
            ValidationError: Missing owner or invalid fields
            PersistenceError: The insert failed
        """
        if not owner_id:
            raise ValidationError("An owner is required to save a company", field="owner_id", code="MISSING_OWNER")
        if isinstance(fields, CompanyCandidate):
            fields = fields.to_company_fields()
        data = parse_input(CompanyFields, fields)

        session = self._require_session()
        try:
            company = CompanyRepository(session).create(owner_id, data.to_columns())
            ActivityLogRepository(session).log(
                AuditAction.CREATE,
                entity_type="company",
                entity_id=company.id,
                user_id=owner_id,
                details={"source": company.source, "registration_number": company.registration_number}
            )
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Saving company failed, transaction rolled back: {e}")
            raise PersistenceError(f"Failed to save company: {e}") from e

        logger.info(f"Saved company {company.id} ({sanitize_for_logging(company.name)}) for owner {owner_id}")
        return company

    def list_companies(
        self,
        owner_id: int,
        name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Company]:
        """List an owner's saved companies, newest first, optionally filtered by name."""
        companies, _ = CompanyRepository(self._require_session()).list_for_owner(
            owner_id, name=name, offset=offset, limit=limit
        )
        return companies

    def _require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError("CompanyRegistryService was created without a database session")
        return self.session
