"""
Screening provider interface and bundled implementations.

A provider screens one subject (the case's company or one of its UBOs)
for one check type. The compliance check service depends only on
ScreeningProvider, so a real PEP/sanctions/media vendor can be plugged
in through configuration without touching the pipeline.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import requests

from config_manager import ScreeningConfig
from database.models import CheckStatus, CheckType
from pipeline.exceptions import CollaboratorUnavailable

logger = logging.getLogger(__name__)


@dataclass
class ScreeningSubject:
    """The entity a check is run against."""
    kind: str  # company, ubo
    entity_id: int
    name: str
    country: Optional[str] = None
    birth_date: Optional[str] = None
    registration_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScreeningOutcome:
    """What a provider reports for one subject and check type."""
    status: str
    risk_score: Optional[int]
    matches: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


class ScreeningProvider(ABC):
    """Screens a subject for a single check type."""

    name = "abstract"

    @abstractmethod
    def screen(self, subject: ScreeningSubject, check_type: str) -> ScreeningOutcome:
        """
        Screen ``subject`` for ``check_type``.

        Raises:
            CollaboratorUnavailable: If the provider cannot produce a result
        """


class StaticScreeningProvider(ScreeningProvider):
    """
    Provider that always reports a clear result.

    Scores and consulted sources are fixed per check type; check types
    it has no canned answer for are flagged for manual review.
    """

    name = "static"

    CANNED_RESULTS: Dict[str, ScreeningOutcome] = {
        CheckType.PEP.value: ScreeningOutcome(
            status=CheckStatus.CLEAR.value,
            risk_score=10,
            details={
                'databases_checked': ['EU PEP Database', 'UN Sanctions'],
                'note': 'No politically exposed persons found'
            }
        ),
        CheckType.SANCTIONS.value: ScreeningOutcome(
            status=CheckStatus.CLEAR.value,
            risk_score=5,
            details={
                'lists_checked': ['EU Consolidated', 'OFAC SDN', 'UN Security Council']
            }
        ),
        CheckType.ADVERSE_MEDIA.value: ScreeningOutcome(
            status=CheckStatus.CLEAR.value,
            risk_score=15,
            details={
                'sources_checked': ['News DB', 'Court Records'],
                'articles': []
            }
        ),
    }

    def screen(self, subject: ScreeningSubject, check_type: str) -> ScreeningOutcome:
        canned = self.CANNED_RESULTS.get(check_type)
        if canned is None:
            return ScreeningOutcome(
                status=CheckStatus.REVIEW.value,
                risk_score=50,
                details={'note': f'No automated source for {check_type}; manual review required'}
            )
        # Copy so callers can never mutate the shared template
        return ScreeningOutcome(
            status=canned.status,
            risk_score=canned.risk_score,
            matches=[],
            details={key: (list(value) if isinstance(value, list) else value)
                     for key, value in canned.details.items()}
        )


class HttpScreeningProvider(ScreeningProvider):
    """
    Provider backed by an HTTP screening service.

    POSTs ``{"check_type": ..., "subject": {...}}`` and expects a JSON
    object with ``status`` and optionally ``risk_score``, ``matches`` and
    ``details``.
    """

    name = "http"

    def __init__(
        self,
        endpoint_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.api_key = api_key
        self.session = session or requests.Session()

    def screen(self, subject: ScreeningSubject, check_type: str) -> ScreeningOutcome:
        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        try:
            response = self.session.post(
                self.endpoint_url,
                json={'check_type': check_type, 'subject': subject.to_dict()},
                headers=headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise CollaboratorUnavailable("screening provider", str(e), cause=e) from e
        except ValueError as e:
            raise CollaboratorUnavailable("screening provider", "response is not JSON", cause=e) from e

        if not isinstance(body, dict) or 'status' not in body:
            raise CollaboratorUnavailable("screening provider", "response has no status")

        matches = body.get('matches') or []
        details = body.get('details') or {}
        if not isinstance(matches, list) or not isinstance(details, dict):
            raise CollaboratorUnavailable("screening provider", "malformed payload")

        return ScreeningOutcome(
            status=str(body['status']),
            risk_score=body.get('risk_score'),
            matches=matches,
            details=details
        )


def build_screening_provider(config: Optional[ScreeningConfig] = None) -> ScreeningProvider:
    """Create the provider selected in the ``screening`` config section."""
    config = config or ScreeningConfig()

    if config.provider == "http":
        logger.info(f"Using HTTP screening provider at {config.endpoint_url}")
        return HttpScreeningProvider(
            endpoint_url=config.endpoint_url,
            timeout=config.timeout_seconds,
            api_key=os.getenv(config.api_key_env) if config.api_key_env else None
        )

    return StaticScreeningProvider()
