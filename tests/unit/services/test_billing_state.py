"""
Billing State Tests.

WHAT: Unit tests for the status vocabulary, the lifecycle transition table
and the FHIR extension codec.

WHY: Every writer of the Organization record relies on these rules. The
codec must leave unrelated extensions alone, and the table must keep an
active plan from being overwritten by a second purchase.
"""

from datetime import datetime, timezone

import pytest

from practice_billing.core.exceptions import InvalidStateTransitionError
from practice_billing.services.billing_state import (
    BillingPhase,
    BillingTrigger,
    OrganizationBillingState,
    SubscriptionStatus,
    TransitionOutcome,
    decode_billing_state,
    encode_billing_state,
    format_fhir_datetime,
    parse_fhir_datetime,
    resolve_transition,
)

from tests.factories import PRICE_30, ext_url, extension_value, organization_resource


class TestSubscriptionStatus:
    def test_parse_known_status(self):
        assert SubscriptionStatus.parse("past_due") == SubscriptionStatus.PAST_DUE

    def test_parse_british_spelling(self):
        assert SubscriptionStatus.parse("cancelled") == SubscriptionStatus.CANCELED

    def test_parse_unknown_status_is_none(self):
        assert SubscriptionStatus.parse("mystery") is None
        assert SubscriptionStatus.parse(None) is None

    @pytest.mark.parametrize(
        "status,phase",
        [
            (None, BillingPhase.NONE),
            (SubscriptionStatus.REQUIRES_PAYMENT_METHOD, BillingPhase.PENDING),
            (SubscriptionStatus.SUCCEEDED, BillingPhase.PENDING),
            (SubscriptionStatus.TRIALING, BillingPhase.ACTIVE),
            (SubscriptionStatus.ACTIVE, BillingPhase.ACTIVE),
            (SubscriptionStatus.UNPAID, BillingPhase.PAST_DUE),
            (SubscriptionStatus.INCOMPLETE_EXPIRED, BillingPhase.CANCELED),
        ],
    )
    def test_phase_of_status(self, status, phase):
        assert OrganizationBillingState(status=status).phase == phase


class TestTransitions:
    def test_create_on_active_is_skipped(self):
        assert (
            resolve_transition(BillingTrigger.CREATE, SubscriptionStatus.ACTIVE)
            == TransitionOutcome.SKIP
        )

    def test_create_after_cancel_applies(self):
        assert (
            resolve_transition(BillingTrigger.CREATE, SubscriptionStatus.CANCELED)
            == TransitionOutcome.APPLY
        )

    @pytest.mark.parametrize(
        "status",
        [None, SubscriptionStatus.PROCESSING, SubscriptionStatus.CANCELED],
    )
    def test_upgrade_requires_active_or_past_due(self, status):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            resolve_transition(BillingTrigger.UPGRADE, status)
        assert exc_info.value.status_code == 400
        assert exc_info.value.context["trigger"] == "upgrade"

    def test_webhook_triggers_apply_everywhere(self):
        for status in [None, *SubscriptionStatus]:
            assert (
                resolve_transition(BillingTrigger.SUBSCRIPTION_SYNCED, status)
                == TransitionOutcome.APPLY
            )


class TestFhirDateTime:
    def test_format_is_utc_milliseconds(self):
        value = datetime(2025, 3, 14, 9, 30, 5, 123456, tzinfo=timezone.utc)
        assert format_fhir_datetime(value) == "2025-03-14T09:30:05.123Z"

    def test_naive_datetimes_are_utc(self):
        assert format_fhir_datetime(datetime(2025, 1, 1)) == "2025-01-01T00:00:00.000Z"

    def test_parse_round_trip(self):
        assert parse_fhir_datetime("2025-03-14T09:30:05.123Z") == datetime(
            2025, 3, 14, 9, 30, 5, 123000, tzinfo=timezone.utc
        )

    def test_parse_garbage_is_none(self):
        assert parse_fhir_datetime("next tuesday") is None


class TestDecode:
    def test_empty_organization_defaults_to_free_tier(self):
        state = decode_billing_state(organization_resource(), free_tier_sessions=10)

        assert state.status is None
        assert state.sessions_used == 0
        assert state.sessions_allowed == 10
        assert state.sessions_remaining == 10

    def test_reads_string_encoded_counters(self):
        """
        Counters written as valueString by older clients still decode.
        """
        resource = organization_resource(
            extra_extensions=[
                {"url": ext_url("subscription-sessions-used"), "valueString": "4"},
                {"url": ext_url("subscription-sessions-allowed"), "valueInteger": 30},
                {"url": ext_url("subscription-status"), "valueString": "active"},
            ]
        )
        state = decode_billing_state(resource)

        assert state.sessions_used == 4
        assert state.sessions_allowed == 30
        assert state.status == SubscriptionStatus.ACTIVE

    def test_last_duplicate_wins(self):
        resource = organization_resource(
            extra_extensions=[
                {"url": ext_url("subscription-plan"), "valueString": "price_old"},
                {"url": ext_url("subscription-plan"), "valueString": "price_new"},
            ]
        )
        assert decode_billing_state(resource).plan_price_id == "price_new"


class TestEncode:
    def test_replaces_billing_extensions_and_keeps_others(self):
        foreign = {"url": "http://hl7.org/fhir/StructureDefinition/org-alias", "valueString": "LC"}
        resource = organization_resource(
            extra_extensions=[
                foreign,
                {"url": ext_url("subscription-plan"), "valueString": "price_old"},
                {"url": ext_url("subscription-plan"), "valueString": "price_older"},
                {"url": ext_url("subscription-legacy-flag"), "valueBoolean": True},
            ]
        )
        state = OrganizationBillingState(
            status=SubscriptionStatus.ACTIVE,
            plan_price_id=PRICE_30,
            sessions_used=3,
            sessions_allowed=30,
            last_reset=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )

        encoded = encode_billing_state(resource, state)

        urls = [e["url"] for e in encoded["extension"]]
        assert encoded["extension"][0] == foreign
        assert urls.count(ext_url("subscription-plan")) == 1
        assert ext_url("subscription-legacy-flag") not in urls
        assert extension_value(encoded, "subscription-plan") == PRICE_30
        assert extension_value(encoded, "subscription-sessions-used") == 3
        assert extension_value(encoded, "session-last-reset") == "2025-03-01T00:00:00.000Z"
        # Unset fields are omitted
        assert ext_url("subscription-id") not in urls
        # Input resource untouched
        assert len(resource["extension"]) == 4

    def test_counters_are_integers(self):
        encoded = encode_billing_state(organization_resource(), OrganizationBillingState())
        used = next(
            e for e in encoded["extension"] if e["url"] == ext_url("subscription-sessions-used")
        )
        assert used == {"url": ext_url("subscription-sessions-used"), "valueInteger": 0}

    def test_decode_of_encoded_state_matches(self):
        state = OrganizationBillingState(
            status=SubscriptionStatus.PAST_DUE,
            plan_price_id=PRICE_30,
            subscription_id="sub_1",
            sessions_used=12,
            sessions_allowed=30,
            period_end=datetime(2025, 4, 1, tzinfo=timezone.utc),
        )
        assert decode_billing_state(encode_billing_state(organization_resource(), state)) == state
