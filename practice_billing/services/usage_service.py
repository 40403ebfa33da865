"""
Session usage service.

WHAT: Reads and increments the per-period therapy session counter stored on
the Organization record.

WHY: Plans are sold as a number of sessions per month. The counter is the
only billing field the other writers leave alone, so it is changed only
here, through the same version-checked writer, which keeps two sessions
booked at the same moment from both consuming the last slot.

HOW: The counter restarts from zero the first time a session is recorded
in a new calendar month (UTC).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from practice_billing.core.exceptions import SessionLimitReachedError
from practice_billing.dao.organization_billing import OrganizationBillingDAO
from practice_billing.services.billing_state import (
    BillingTrigger,
    OrganizationBillingState,
    utcnow,
)
from practice_billing.services.validators import require_organization_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSummary:
    organization_id: str
    status: Optional[str]
    plan_price_id: Optional[str]
    sessions_used: int
    sessions_allowed: int
    sessions_remaining: int
    last_reset: Optional[datetime]
    period_end: Optional[datetime]

    @classmethod
    def from_state(cls, organization_id: str, state: OrganizationBillingState) -> "UsageSummary":
        return cls(
            organization_id=organization_id,
            status=state.status.value if state.status else None,
            plan_price_id=state.plan_price_id,
            sessions_used=state.sessions_used,
            sessions_allowed=state.sessions_allowed,
            sessions_remaining=state.sessions_remaining,
            last_reset=state.last_reset,
            period_end=state.period_end,
        )


def starts_new_month(last_reset: Optional[datetime], now: datetime) -> bool:
    """True when ``last_reset`` lies in a calendar month before ``now``'s."""
    if last_reset is None:
        return False
    return (last_reset.year, last_reset.month) < (now.year, now.month)


class UsageService:
    """Service for session usage of an organization."""

    def __init__(self, organizations: OrganizationBillingDAO):
        self.organizations = organizations

    async def get_usage(self, organization_id: str) -> UsageSummary:
        organization_id = require_organization_id(organization_id)
        state = await self.organizations.get_state(organization_id)
        return UsageSummary.from_state(organization_id, state)

    async def record_session(self, organization_id: str) -> UsageSummary:
        """
        Consume one session of the current period.

        Raises:
            SessionLimitReachedError: If every allowed session is used
            OrganizationNotFoundError: If the Organization does not exist
        """
        organization_id = require_organization_id(organization_id)

        def consume(current: OrganizationBillingState) -> OrganizationBillingState:
            now = utcnow()
            if starts_new_month(current.last_reset, now):
                current = current.evolve(sessions_used=0, last_reset=now)
            if current.sessions_used >= current.sessions_allowed:
                raise SessionLimitReachedError(
                    organization_id=organization_id,
                    sessions_used=current.sessions_used,
                    sessions_allowed=current.sessions_allowed,
                )
            return current.evolve(sessions_used=current.sessions_used + 1)

        result = await self.organizations.apply(
            organization_id, BillingTrigger.SESSION_RECORDED, consume
        )
        logger.info(
            f"Recorded session {result.state.sessions_used}/{result.state.sessions_allowed} "
            f"for organization {organization_id}",
            extra={"organization_id": organization_id, "version_id": result.version_id},
        )
        return UsageSummary.from_state(organization_id, result.state)
