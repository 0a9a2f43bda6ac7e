"""
Dashboard aggregation: read-only rollups over an owner's cases.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config_manager import PipelineConfig
from database.models import HIGH_RISK_LEVELS, CaseStatus
from database.repositories import CaseRepository, CompanyRepository, ComplianceCheckRepository
from pipeline.serializers import isoformat

logger = logging.getLogger(__name__)


@dataclass
class OverviewStats:
    """Counts shown on an owner's dashboard."""
    case_counts: Dict[str, int] = field(default_factory=dict)
    total_cases: int = 0
    total_companies: int = 0
    pending_checks: int = 0
    high_risk_cases: int = 0
    completion_rate: float = 0.0
    recent_cases: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_counts": dict(self.case_counts),
            "total_cases": self.total_cases,
            "total_companies": self.total_companies,
            "pending_checks": self.pending_checks,
            "high_risk_cases": self.high_risk_cases,
            "completion_rate": self.completion_rate,
            "recent_cases": list(self.recent_cases),
        }


class DashboardService:
    """Builds OverviewStats for one owner."""

    def __init__(self, session: Session, config: Optional[Any] = None):
        self.session = session
        self._pipeline: PipelineConfig = config.pipeline if config is not None else PipelineConfig()

    def get_overview(self, owner_id: int) -> OverviewStats:
        cases = CaseRepository(self.session)

        counts = cases.count_by_status(owner_id)
        # Every known status is reported, zero when absent
        case_counts = {status.value: counts.get(status.value, 0) for status in CaseStatus}
        for status, count in counts.items():
            case_counts.setdefault(status, count)

        total = sum(counts.values())
        completed = counts.get(CaseStatus.COMPLETED.value, 0)
        completion_rate = round(completed / total, 4) if total > 0 else 0.0

        recent = [
            {
                "id": case.id,
                "case_number": case.case_number,
                "status": case.status,
                "risk_level": case.risk_level,
                "current_step": case.current_step,
                "company_name": company_name,
                "created_at": isoformat(case.created_at),
            }
            for case, company_name in cases.recent_for_owner(owner_id, limit=self._pipeline.recent_cases_limit)
        ]

        stats = OverviewStats(
            case_counts=case_counts,
            total_cases=total,
            total_companies=CompanyRepository(self.session).count_for_owner(owner_id),
            pending_checks=ComplianceCheckRepository(self.session).count_pending_for_owner(owner_id),
            high_risk_cases=cases.count_by_risk_levels(owner_id, HIGH_RISK_LEVELS),
            completion_rate=completion_rate,
            recent_cases=recent
        )
        logger.debug(f"Overview for owner {owner_id}: {total} cases, {stats.pending_checks} pending checks")
        return stats
