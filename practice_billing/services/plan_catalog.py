"""
Plan catalog for session-based subscriptions.

WHAT: Immutable table mapping Stripe price ids to the monthly session
entitlement and amount of each plan, partitioned by billing mode.

WHY: The price id is the only plan identifier that travels through Stripe
(PaymentIntent metadata, subscription items). Every component that needs
to know "how many sessions does this price buy" asks this catalog, so the
table lives in one place and is injected rather than read from globals.

HOW:
- The billing mode is derived from the Stripe secret key prefix, so test
  keys can never resolve live prices and vice versa.
- A built-in catalog covers the test-mode session tiers; a JSON file named
  by PLAN_CATALOG_PATH replaces it wholesale for other deployments.
- The catalog is built once at startup and stored on app.state.
"""

import calendar
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from practice_billing.core.exceptions import PlanNotFoundError, ValidationError

logger = logging.getLogger(__name__)


class BillingMode(str, Enum):
    """Stripe environment a request runs against."""

    TEST = "test"
    PRODUCTION = "production"


class BillingInterval(str, Enum):
    """Recurring interval of a plan, using Stripe's vocabulary."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


_MODE_PREFIXES: Tuple[Tuple[str, BillingMode], ...] = (
    ("sk_test_", BillingMode.TEST),
    ("rk_test_", BillingMode.TEST),
    ("sk_live_", BillingMode.PRODUCTION),
    ("rk_live_", BillingMode.PRODUCTION),
)


def mode_from_secret_key(secret_key: Optional[str]) -> BillingMode:
    """
    Derive the billing mode from a Stripe secret (or restricted) key.

    Raises:
        ValidationError: If the key is missing or not a secret key
    """
    if not secret_key:
        raise ValidationError(
            message="Stripe secret key is not configured",
            setting="STRIPE_SECRET_KEY",
        )
    for prefix, mode in _MODE_PREFIXES:
        if secret_key.startswith(prefix):
            return mode
    raise ValidationError(
        message="Stripe secret key must be a secret or restricted key",
        setting="STRIPE_SECRET_KEY",
    )


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class Plan:
    """
    One purchasable session tier.

    Attributes:
        price_id: Stripe price id (price_xxx), unique within its mode
        amount_cents: Charge per interval in the smallest currency unit
        session_entitlement: Sessions allowed per interval
        interval: Recurring interval
        mode: Catalog partition the plan belongs to
        currency: ISO currency code, lower case as Stripe expects
    """

    price_id: str
    amount_cents: int
    session_entitlement: int
    interval: BillingInterval
    mode: BillingMode
    currency: str = "usd"

    def next_billing_date(self, start: datetime) -> datetime:
        """
        Return the start of the next billing period after ``start``.

        Month and year steps clamp to the last day of shorter months
        (Jan 31 + 1 month = Feb 28/29).
        """
        if self.interval == BillingInterval.DAY:
            return start + timedelta(days=1)
        if self.interval == BillingInterval.WEEK:
            return start + timedelta(weeks=1)
        if self.interval == BillingInterval.YEAR:
            return _add_months(start, 12)
        return _add_months(start, 1)


class PlanCatalog:
    """
    Immutable, versioned collection of plans per billing mode.

    Example:
        catalog = default_plan_catalog()
        plan = catalog.resolve(BillingMode.TEST, "price_1R0UlJIfLgrjtRiqrBl5AVE8")
        assert plan.session_entitlement == 30
    """

    def __init__(self, plans: Iterable[Plan], version: str = "builtin"):
        by_mode: Dict[BillingMode, List[Plan]] = {mode: [] for mode in BillingMode}
        for plan in plans:
            if any(existing.price_id == plan.price_id for existing in by_mode[plan.mode]):
                raise ValueError(
                    f"Duplicate price id {plan.price_id} in {plan.mode.value} plan catalog"
                )
            by_mode[plan.mode].append(plan)

        self._plans: Dict[BillingMode, Tuple[Plan, ...]] = {
            mode: tuple(entries) for mode, entries in by_mode.items()
        }
        self.version = version

    def plans_for(self, mode: BillingMode) -> Tuple[Plan, ...]:
        return self._plans[mode]

    def find(self, mode: BillingMode, price_id: str) -> Optional[Plan]:
        """Linear scan of the mode's plans; None when the price is unknown."""
        for plan in self._plans[mode]:
            if plan.price_id == price_id:
                return plan
        return None

    def resolve(self, mode: BillingMode, price_id: str) -> Plan:
        """
        Look up a plan by price id within one mode.

        Raises:
            PlanNotFoundError: If the price id is not in that mode's table
        """
        plan = self.find(mode, price_id)
        if plan is None:
            raise PlanNotFoundError(
                message=f"Unknown price id for {mode.value} mode",
                price_id=price_id,
                mode=mode.value,
                catalog_version=self.version,
            )
        return plan

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._plans.values())


# ============================================================================
# Built-in catalog
# ============================================================================

# (price id, sessions per month, monthly amount in cents)
_TEST_MODE_TIERS: Tuple[Tuple[str, int, int], ...] = (
    ("price_1R0UlJIfLgrjtRiqrBl5AVE8", 30, 2900),
    ("price_1R0UlJIfLgrjtRiqKDpSb8Mz", 45, 3900),
    ("price_1R0UlJIfLgrjtRiqTfKFUGuG", 60, 4900),
    ("price_1R0UlJIfLgrjtRiqED7TsKjN", 80, 6400),
    ("price_1R0UlJIfLgrjtRiqWGMnViYR", 100, 7900),
    ("price_1R0UlJIfLgrjtRiqTf1tMIzR", 120, 8900),
    ("price_1R0UlJIfLgrjtRiqqNCMiYbb", 150, 10900),
    ("price_1R0UlJIfLgrjtRiq0Z4XpUpJ", 200, 13900),
    ("price_1R0UlJIfLgrjtRiqHIbpQrL7", 300, 19900),
    ("price_1R0UlJIfLgrjtRiqM8JrLJrw", 400, 24900),
    ("price_1R0UlJIfLgrjtRiqBkoTkbum", 500, 29900),
)

BUILTIN_CATALOG_VERSION = "2025-03-test-tiers"


def default_plan_catalog() -> PlanCatalog:
    """Catalog with the test-mode tiers; live prices come from a catalog file."""
    return PlanCatalog(
        (
            Plan(
                price_id=price_id,
                amount_cents=amount_cents,
                session_entitlement=sessions,
                interval=BillingInterval.MONTH,
                mode=BillingMode.TEST,
            )
            for price_id, sessions, amount_cents in _TEST_MODE_TIERS
        ),
        version=BUILTIN_CATALOG_VERSION,
    )


# ============================================================================
# Catalog file loading
# ============================================================================


class PlanEntry(BaseModel):
    """One plan as written in a catalog file (camelCase keys)."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    price_id: str = Field(..., alias="priceId", pattern=r"^price_[A-Za-z0-9]+$")
    amount_cents: int = Field(..., alias="amountCents", gt=0)
    session_entitlement: int = Field(..., alias="sessionEntitlement", gt=0)
    interval: BillingInterval = BillingInterval.MONTH
    currency: str = Field("usd", min_length=3, max_length=3)


class PlanCatalogFile(BaseModel):
    """
    Schema of a PLAN_CATALOG_PATH file.

    Example:
        {"version": "2025-06",
         "plans": {"test": [...], "production": [{"priceId": "price_...",
                   "amountCents": 2900, "sessionEntitlement": 30}]}}
    """

    model_config = ConfigDict(extra="forbid")

    version: str
    plans: Dict[BillingMode, List[PlanEntry]]

    def to_catalog(self) -> PlanCatalog:
        return PlanCatalog(
            (
                Plan(
                    price_id=entry.price_id,
                    amount_cents=entry.amount_cents,
                    session_entitlement=entry.session_entitlement,
                    interval=entry.interval,
                    mode=mode,
                    currency=entry.currency.lower(),
                )
                for mode, entries in self.plans.items()
                for entry in entries
            ),
            version=self.version,
        )


def load_plan_catalog(path: Optional[str] = None) -> PlanCatalog:
    """
    Build the catalog used for the lifetime of the process.

    Args:
        path: Optional JSON catalog file; the built-in catalog when None

    Raises:
        FileNotFoundError, pydantic.ValidationError, ValueError: On a
        missing, malformed or inconsistent catalog file. Startup fails
        rather than serving with a partial table.
    """
    if not path:
        catalog = default_plan_catalog()
    else:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        catalog = PlanCatalogFile.model_validate(raw).to_catalog()

    logger.info(
        f"Loaded plan catalog {catalog.version} with {len(catalog)} plans",
        extra={
            "catalog_version": catalog.version,
            "test_plans": len(catalog.plans_for(BillingMode.TEST)),
            "production_plans": len(catalog.plans_for(BillingMode.PRODUCTION)),
        },
    )
    return catalog
