"""
Plan Catalog Tests.

WHAT: Unit tests for plan lookup, billing mode selection and catalog files.

WHY: The catalog decides how many sessions an organization may book for
what it paid. A price resolving in the wrong mode, or an unknown price
silently granting a plan, would bill or entitle practices incorrectly.
"""

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from practice_billing.core.exceptions import PlanNotFoundError, ValidationError
from practice_billing.services.plan_catalog import (
    BUILTIN_CATALOG_VERSION,
    BillingInterval,
    BillingMode,
    Plan,
    PlanCatalog,
    default_plan_catalog,
    load_plan_catalog,
    mode_from_secret_key,
)

from tests.factories import PRICE_30, PRICE_45


class TestModeFromSecretKey:
    """Tests for selecting the billing mode from the Stripe key."""

    @pytest.mark.parametrize(
        "key,mode",
        [
            ("sk_test_abc", BillingMode.TEST),
            ("rk_test_abc", BillingMode.TEST),
            ("sk_live_abc", BillingMode.PRODUCTION),
            ("rk_live_abc", BillingMode.PRODUCTION),
        ],
    )
    def test_prefix_selects_mode(self, key, mode):
        assert mode_from_secret_key(key) == mode

    def test_missing_key_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            mode_from_secret_key(None)
        assert exc_info.value.context["setting"] == "STRIPE_SECRET_KEY"

    def test_publishable_key_is_rejected(self):
        """
        A publishable key is not a secret key.

        WHY: pk_ keys cannot create charges; accepting one would only fail
        later at the first Stripe call.
        """
        with pytest.raises(ValidationError):
            mode_from_secret_key("pk_test_abc")


class TestDefaultCatalog:
    def test_builtin_tiers(self):
        catalog = default_plan_catalog()

        assert catalog.version == BUILTIN_CATALOG_VERSION
        assert len(catalog.plans_for(BillingMode.TEST)) == 11
        assert catalog.plans_for(BillingMode.PRODUCTION) == ()

    def test_resolve_known_price(self):
        plan = default_plan_catalog().resolve(BillingMode.TEST, PRICE_30)

        assert plan.session_entitlement == 30
        assert plan.amount_cents == 2900
        assert plan.interval == BillingInterval.MONTH
        assert plan.currency == "usd"

    def test_largest_tier(self):
        plan = default_plan_catalog().resolve(BillingMode.TEST, "price_1R0UlJIfLgrjtRiqBkoTkbum")
        assert plan.session_entitlement == 500
        assert plan.amount_cents == 29900

    def test_test_price_does_not_resolve_in_production(self):
        """
        Test prices are invisible in production mode.

        WHY: A live key must never accept a test-mode price id.
        """
        with pytest.raises(PlanNotFoundError) as exc_info:
            default_plan_catalog().resolve(BillingMode.PRODUCTION, PRICE_30)

        details = exc_info.value.to_dict()["details"]
        assert details["mode"] == "production"
        assert details["catalog_version"] == BUILTIN_CATALOG_VERSION

    def test_find_unknown_price_returns_none(self):
        assert default_plan_catalog().find(BillingMode.TEST, "price_unknown") is None

    def test_duplicate_price_in_one_mode_is_rejected(self):
        plan = Plan(PRICE_30, 2900, 30, BillingInterval.MONTH, BillingMode.TEST)
        with pytest.raises(ValueError):
            PlanCatalog([plan, plan])

    def test_same_price_in_both_modes_is_allowed(self):
        catalog = PlanCatalog(
            [
                Plan(PRICE_30, 2900, 30, BillingInterval.MONTH, BillingMode.TEST),
                Plan(PRICE_30, 2900, 30, BillingInterval.MONTH, BillingMode.PRODUCTION),
            ]
        )
        assert len(catalog) == 2


class TestNextBillingDate:
    def _plan(self, interval: BillingInterval) -> Plan:
        return Plan(PRICE_30, 2900, 30, interval, BillingMode.TEST)

    def test_month_clamps_to_end_of_february(self):
        start = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
        assert self._plan(BillingInterval.MONTH).next_billing_date(start) == datetime(
            2025, 2, 28, 12, 0, tzinfo=timezone.utc
        )

    def test_month_rolls_over_year(self):
        start = datetime(2024, 12, 15, tzinfo=timezone.utc)
        assert self._plan(BillingInterval.MONTH).next_billing_date(start) == datetime(
            2025, 1, 15, tzinfo=timezone.utc
        )

    def test_year_from_leap_day(self):
        start = datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert self._plan(BillingInterval.YEAR).next_billing_date(start) == datetime(
            2025, 2, 28, tzinfo=timezone.utc
        )

    def test_week_and_day(self):
        start = datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert self._plan(BillingInterval.WEEK).next_billing_date(start).day == 8
        assert self._plan(BillingInterval.DAY).next_billing_date(start).day == 2


class TestLoadPlanCatalog:
    def test_no_path_loads_builtin(self):
        assert load_plan_catalog(None).version == BUILTIN_CATALOG_VERSION

    def test_file_with_production_plans(self, tmp_path):
        path = tmp_path / "plans.json"
        path.write_text(
            json.dumps(
                {
                    "version": "2025-06",
                    "plans": {
                        "production": [
                            {"priceId": PRICE_45, "amountCents": 3900, "sessionEntitlement": 45},
                            {
                                "priceId": "price_yearly1",
                                "amountCents": 39000,
                                "sessionEntitlement": 45,
                                "interval": "year",
                                "currency": "EUR",
                            },
                        ]
                    },
                }
            )
        )

        catalog = load_plan_catalog(str(path))

        assert catalog.version == "2025-06"
        assert catalog.plans_for(BillingMode.TEST) == ()
        yearly = catalog.resolve(BillingMode.PRODUCTION, "price_yearly1")
        assert yearly.interval == BillingInterval.YEAR
        assert yearly.currency == "eur"

    def test_malformed_file_fails(self, tmp_path):
        path = tmp_path / "plans.json"
        path.write_text(json.dumps({"version": "x", "plans": {"test": [{"priceId": "nope"}]}}))

        with pytest.raises(PydanticValidationError):
            load_plan_catalog(str(path))

    def test_missing_file_fails(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_plan_catalog(str(tmp_path / "absent.json"))
