"""
Organization billing state and its lifecycle rules.

WHAT: The typed view of the billing extensions stored on a FHIR
Organization, the status vocabulary they use, and the transition table
deciding which billing triggers may change them.

WHY: Several writers touch the same record (synchronous actions, three
kinds of webhooks, session usage). Keeping the decode/encode rules and the
lifecycle table in one module means every writer agrees on what the record
means and which changes are legal.

HOW:
- OrganizationBillingState is a frozen dataclass decoded from, and encoded
  back into, the Organization's ``extension`` array.
- SubscriptionStatus covers both PaymentIntent statuses (written while a
  first payment is pending) and Stripe subscription statuses.
- Statuses group into phases: none -> pending -> active <-> past_due -> canceled.
- TRANSITIONS maps (trigger, phase) to apply / skip / reject.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from practice_billing.core.exceptions import InvalidStateTransitionError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION_BASE_URL = "http://example.com/fhir/StructureDefinition/"
DEFAULT_FREE_TIER_SESSIONS = 10


# ============================================================================
# Status vocabulary
# ============================================================================


class SubscriptionStatus(str, Enum):
    """Values stored in the subscription-status extension."""

    # PaymentIntent statuses, written by the create action
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_CAPTURE = "requires_capture"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"

    # Stripe subscription statuses
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionStatus"]:
        """
        Decode a stored status string.

        The legacy spelling "cancelled" maps to CANCELED. Unknown values
        decode to None (logged) so the record is treated as having no
        billing history rather than failing every read.
        """
        if not value:
            return None
        normalized = value.strip().lower()
        if normalized == "cancelled":
            return cls.CANCELED
        try:
            return cls(normalized)
        except ValueError:
            logger.warning(f"Unknown subscription status {value!r} on Organization record")
            return None


class BillingPhase(str, Enum):
    """Coarse lifecycle bucket of a status."""

    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


PHASE_BY_STATUS: Dict[SubscriptionStatus, BillingPhase] = {
    SubscriptionStatus.REQUIRES_PAYMENT_METHOD: BillingPhase.PENDING,
    SubscriptionStatus.REQUIRES_CONFIRMATION: BillingPhase.PENDING,
    SubscriptionStatus.REQUIRES_ACTION: BillingPhase.PENDING,
    SubscriptionStatus.REQUIRES_CAPTURE: BillingPhase.PENDING,
    SubscriptionStatus.PROCESSING: BillingPhase.PENDING,
    # The first payment went through; the subscription webhook has not
    # landed yet.
    SubscriptionStatus.SUCCEEDED: BillingPhase.PENDING,
    SubscriptionStatus.INCOMPLETE: BillingPhase.PENDING,
    SubscriptionStatus.TRIALING: BillingPhase.ACTIVE,
    SubscriptionStatus.ACTIVE: BillingPhase.ACTIVE,
    SubscriptionStatus.PAST_DUE: BillingPhase.PAST_DUE,
    SubscriptionStatus.UNPAID: BillingPhase.PAST_DUE,
    SubscriptionStatus.PAUSED: BillingPhase.PAST_DUE,
    SubscriptionStatus.CANCELED: BillingPhase.CANCELED,
    SubscriptionStatus.INCOMPLETE_EXPIRED: BillingPhase.CANCELED,
}


def phase_of(status: Optional[SubscriptionStatus]) -> BillingPhase:
    if status is None:
        return BillingPhase.NONE
    return PHASE_BY_STATUS[status]


# ============================================================================
# Transition table
# ============================================================================


class BillingTrigger(str, Enum):
    """Cause of a write to the Organization billing fields."""

    CREATE = "create"
    UPGRADE = "upgrade"
    CANCEL = "cancel"
    SUBSCRIPTION_SYNCED = "subscription_synced"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    SESSION_RECORDED = "session_recorded"


class TransitionOutcome(str, Enum):
    APPLY = "apply"
    SKIP = "skip"
    REJECT = "reject"


_APPLY_ALWAYS = {phase: TransitionOutcome.APPLY for phase in BillingPhase}

TRANSITIONS: Dict[BillingTrigger, Dict[BillingPhase, TransitionOutcome]] = {
    BillingTrigger.CREATE: {
        BillingPhase.NONE: TransitionOutcome.APPLY,
        BillingPhase.PENDING: TransitionOutcome.APPLY,
        BillingPhase.ACTIVE: TransitionOutcome.SKIP,
        BillingPhase.PAST_DUE: TransitionOutcome.APPLY,
        BillingPhase.CANCELED: TransitionOutcome.APPLY,
    },
    BillingTrigger.UPGRADE: {
        BillingPhase.NONE: TransitionOutcome.REJECT,
        BillingPhase.PENDING: TransitionOutcome.REJECT,
        BillingPhase.ACTIVE: TransitionOutcome.APPLY,
        BillingPhase.PAST_DUE: TransitionOutcome.APPLY,
        BillingPhase.CANCELED: TransitionOutcome.REJECT,
    },
    BillingTrigger.CANCEL: dict(_APPLY_ALWAYS),
    # Webhooks report what Stripe already did; the record follows.
    BillingTrigger.SUBSCRIPTION_SYNCED: dict(_APPLY_ALWAYS),
    BillingTrigger.SUBSCRIPTION_DELETED: dict(_APPLY_ALWAYS),
    BillingTrigger.SESSION_RECORDED: dict(_APPLY_ALWAYS),
}


def resolve_transition(
    trigger: BillingTrigger, status: Optional[SubscriptionStatus]
) -> TransitionOutcome:
    """
    Decide whether ``trigger`` may change a record currently at ``status``.

    Raises:
        InvalidStateTransitionError: If the table rejects the combination
    """
    phase = phase_of(status)
    outcome = TRANSITIONS[trigger][phase]
    if outcome == TransitionOutcome.REJECT:
        raise InvalidStateTransitionError(
            message=f"Cannot {trigger.value.replace('_', ' ')} while billing is {phase.value}",
            trigger=trigger.value,
            phase=phase.value,
            status=status.value if status else None,
        )
    return outcome


# ============================================================================
# State value
# ============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OrganizationBillingState:
    """
    Billing fields of one Organization.

    Attributes:
        status: Last known PaymentIntent or subscription status, None if the
            organization never started a purchase
        plan_price_id: Price id of the current (or pending) plan
        subscription_id: Stripe subscription id (sub_xxx)
        sessions_used: Sessions consumed in the current period
        sessions_allowed: Sessions the current plan grants per period
        period_end: End of the current (or last) paid period
        last_reset: When sessions_used last restarted from zero
    """

    status: Optional[SubscriptionStatus] = None
    plan_price_id: Optional[str] = None
    subscription_id: Optional[str] = None
    sessions_used: int = 0
    sessions_allowed: int = DEFAULT_FREE_TIER_SESSIONS
    period_end: Optional[datetime] = None
    last_reset: Optional[datetime] = None

    @property
    def phase(self) -> BillingPhase:
        return phase_of(self.status)

    @property
    def sessions_remaining(self) -> int:
        return max(self.sessions_allowed - self.sessions_used, 0)

    def evolve(self, **changes: Any) -> "OrganizationBillingState":
        return replace(self, **changes)


# ============================================================================
# FHIR extension codec
# ============================================================================


class BillingExtension(str, Enum):
    """Extension names, appended to the configured base URL."""

    STATUS = "subscription-status"
    PLAN = "subscription-plan"
    SUBSCRIPTION_ID = "subscription-id"
    PERIOD_END = "subscription-period-end"
    SESSIONS_USED = "subscription-sessions-used"
    SESSIONS_ALLOWED = "subscription-sessions-allowed"
    LAST_RESET = "session-last-reset"


def format_fhir_datetime(value: datetime) -> str:
    """Render a FHIR dateTime in UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_fhir_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable dateTime {value!r} on Organization record")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def decode_billing_state(
    resource: Dict[str, Any],
    base_url: str = DEFAULT_EXTENSION_BASE_URL,
    free_tier_sessions: int = DEFAULT_FREE_TIER_SESSIONS,
) -> OrganizationBillingState:
    """
    Read the billing extensions of an Organization resource.

    Missing counters fall back to 0 used / free tier allowed. When an
    extension appears more than once the last occurrence wins.
    """
    values: Dict[BillingExtension, Dict[str, Any]] = {}
    by_url = {base_url + ext.value: ext for ext in BillingExtension}
    for extension in resource.get("extension") or []:
        ext = by_url.get(extension.get("url", ""))
        if ext is not None:
            values[ext] = extension

    def string(ext: BillingExtension) -> Optional[str]:
        return values.get(ext, {}).get("valueString")

    def date_time(ext: BillingExtension) -> Optional[str]:
        entry = values.get(ext, {})
        return entry.get("valueDateTime") or entry.get("valueString")

    def integer(ext: BillingExtension, default: int) -> int:
        entry = values.get(ext, {})
        return _as_int(entry.get("valueInteger", entry.get("valueString")), default)

    return OrganizationBillingState(
        status=SubscriptionStatus.parse(string(BillingExtension.STATUS)),
        plan_price_id=string(BillingExtension.PLAN),
        subscription_id=string(BillingExtension.SUBSCRIPTION_ID),
        sessions_used=integer(BillingExtension.SESSIONS_USED, 0),
        sessions_allowed=integer(BillingExtension.SESSIONS_ALLOWED, free_tier_sessions),
        period_end=parse_fhir_datetime(date_time(BillingExtension.PERIOD_END)),
        last_reset=parse_fhir_datetime(date_time(BillingExtension.LAST_RESET)),
    )


def _is_billing_extension(url: str, base_url: str) -> bool:
    if not url.startswith(base_url):
        return False
    name = url[len(base_url):]
    return name.startswith("subscription-") or name == BillingExtension.LAST_RESET.value


def encode_billing_state(
    resource: Dict[str, Any],
    state: OrganizationBillingState,
    base_url: str = DEFAULT_EXTENSION_BASE_URL,
) -> Dict[str, Any]:
    """
    Return a copy of ``resource`` carrying ``state`` as its billing extensions.

    Every subscription-* extension and session-last-reset is replaced (each
    written at most once); unrelated extensions keep their order and values.
    Fields that are None are omitted.
    """
    kept: List[Dict[str, Any]] = [
        extension
        for extension in resource.get("extension") or []
        if not _is_billing_extension(extension.get("url", ""), base_url)
    ]

    def url(ext: BillingExtension) -> str:
        return base_url + ext.value

    billing: List[Dict[str, Any]] = []
    if state.status is not None:
        billing.append({"url": url(BillingExtension.STATUS), "valueString": state.status.value})
    if state.plan_price_id:
        billing.append({"url": url(BillingExtension.PLAN), "valueString": state.plan_price_id})
    if state.subscription_id:
        billing.append(
            {"url": url(BillingExtension.SUBSCRIPTION_ID), "valueString": state.subscription_id}
        )
    if state.period_end is not None:
        billing.append(
            {
                "url": url(BillingExtension.PERIOD_END),
                "valueDateTime": format_fhir_datetime(state.period_end),
            }
        )
    billing.append(
        {"url": url(BillingExtension.SESSIONS_USED), "valueInteger": state.sessions_used}
    )
    billing.append(
        {"url": url(BillingExtension.SESSIONS_ALLOWED), "valueInteger": state.sessions_allowed}
    )
    if state.last_reset is not None:
        billing.append(
            {
                "url": url(BillingExtension.LAST_RESET),
                "valueDateTime": format_fhir_datetime(state.last_reset),
            }
        )

    updated = dict(resource)
    updated["extension"] = kept + billing
    return updated
