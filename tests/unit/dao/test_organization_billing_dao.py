"""
Organization Billing DAO Tests.

WHAT: Unit tests for the version-checked writer of Organization billing
fields.

WHY: Billing actions and webhooks race on the same record. These tests
ensure:
- A lost version race is recomputed from a fresh read, never merged stale
- Retries are bounded and surface as ConcurrentUpdateError
- sessions_used is only changed by session-usage writes
- The transition table is enforced before anything is written
"""

import asyncio

import pytest

from practice_billing.core.exceptions import (
    ConcurrentUpdateError,
    InvalidStateTransitionError,
    OrganizationNotFoundError,
    RecordStoreError,
)
from practice_billing.dao.organization_billing import OrganizationBillingDAO
from practice_billing.services.billing_state import (
    BillingTrigger,
    OrganizationBillingState,
    SubscriptionStatus,
    TransitionOutcome,
)

from tests.factories import (
    ORG_ID,
    PRICE_30,
    PRICE_45,
    PRICE_60,
    InMemoryFhirStore,
    extension_value,
    organization_resource,
)


def active_state(**changes) -> OrganizationBillingState:
    return OrganizationBillingState(
        status=SubscriptionStatus.ACTIVE,
        plan_price_id=PRICE_30,
        subscription_id="sub_123",
        sessions_used=7,
        sessions_allowed=30,
    ).evolve(**changes)


@pytest.mark.asyncio
class TestGetState:
    async def test_reads_state(self, fhir_store, organizations):
        fhir_store.put(organization_resource(state=active_state()))

        state = await organizations.get_state(ORG_ID)

        assert state.plan_price_id == PRICE_30
        assert state.sessions_used == 7

    async def test_missing_organization(self, organizations):
        with pytest.raises(OrganizationNotFoundError) as exc_info:
            await organizations.get_state("org-missing")
        assert exc_info.value.status_code == 404


@pytest.mark.asyncio
class TestApply:
    async def test_conditional_write(self, fhir_store, organizations):
        fhir_store.put(organization_resource(state=active_state()))

        result = await organizations.apply(
            ORG_ID,
            BillingTrigger.UPGRADE,
            lambda s: s.evolve(plan_price_id=PRICE_45, sessions_allowed=45),
        )

        assert result.written is True
        assert result.outcome == TransitionOutcome.APPLY
        assert result.version_id == "2"
        assert result.attempts == 1
        stored = fhir_store.get()
        assert extension_value(stored, "subscription-plan") == PRICE_45
        assert extension_value(stored, "subscription-sessions-allowed") == 45

    async def test_unchanged_state_is_not_written(self, fhir_store, organizations):
        fhir_store.put(organization_resource(state=active_state()))

        result = await organizations.apply(ORG_ID, BillingTrigger.SUBSCRIPTION_SYNCED, lambda s: s)

        assert result.written is False
        assert fhir_store.updates == []

    async def test_skip_does_not_call_mutate(self, fhir_store, organizations):
        fhir_store.put(organization_resource(state=active_state()))

        def mutate(state):
            raise AssertionError("mutate must not run on skip")

        result = await organizations.apply(ORG_ID, BillingTrigger.CREATE, mutate)

        assert result.outcome == TransitionOutcome.SKIP
        assert result.written is False

    async def test_reject_raises_before_writing(self, fhir_store, organizations):
        fhir_store.put(organization_resource(state=OrganizationBillingState()))

        with pytest.raises(InvalidStateTransitionError):
            await organizations.apply(ORG_ID, BillingTrigger.UPGRADE, lambda s: s)
        assert fhir_store.updates == []

    async def test_sessions_used_preserved_for_non_usage_writes(self, fhir_store, organizations):
        """
        A billing write cannot reset the session counter.

        WHY: The counter belongs to session usage; a plan sync computed
        from an older read must not roll back sessions booked meanwhile.
        """
        fhir_store.put(organization_resource(state=active_state(sessions_used=7)))

        result = await organizations.apply(
            ORG_ID,
            BillingTrigger.SUBSCRIPTION_SYNCED,
            lambda s: s.evolve(sessions_used=0, sessions_allowed=45),
        )

        assert result.state.sessions_used == 7
        assert extension_value(fhir_store.get(), "subscription-sessions-used") == 7

    async def test_session_recorded_may_change_counter(self, fhir_store, organizations):
        fhir_store.put(organization_resource(state=active_state(sessions_used=7)))

        result = await organizations.apply(
            ORG_ID,
            BillingTrigger.SESSION_RECORDED,
            lambda s: s.evolve(sessions_used=s.sessions_used + 1),
        )

        assert result.state.sessions_used == 8

    async def test_conflicts_exhaust_retries(self, fhir_store):
        fhir_store.put(organization_resource(state=active_state()))
        fhir_store.conflict_always = True
        dao = OrganizationBillingDAO(fhir_store, max_conflict_retries=2)

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await dao.apply(ORG_ID, BillingTrigger.CANCEL, lambda s: s.evolve(status=SubscriptionStatus.CANCELED))

        assert exc_info.value.status_code == 409
        assert exc_info.value.context["attempts"] == 3
        assert exc_info.value.context["retryable"] is True

    async def test_record_without_version_is_not_written(self, fhir_store, organizations):
        """
        A record without meta.versionId is refused.

        WHY: Without a version there is nothing to put in If-Match, and an
        unconditional PUT could overwrite a concurrent writer's change.
        """
        resource = organization_resource(state=active_state())
        del resource["meta"]
        fhir_store.put(resource)

        with pytest.raises(RecordStoreError) as exc_info:
            await organizations.apply(
                ORG_ID,
                BillingTrigger.UPGRADE,
                lambda s: s.evolve(plan_price_id=PRICE_45, sessions_allowed=45),
            )

        assert exc_info.value.status_code == 502
        assert exc_info.value.context["trigger"] == "upgrade"
        assert fhir_store.updates == []


@pytest.mark.asyncio
class TestConcurrentWriters:
    """Interleaved writers computed from the same version."""

    async def test_upgrade_and_subscription_sync_race(self):
        """
        The final plan is the one of the write that committed last.

        WHY: An upgrade and a subscription.updated webhook read version 1
        at the same time. Without version checks the slower one would
        overwrite the faster one with a state computed from stale data.
        """
        store = InMemoryFhirStore()
        store.put(organization_resource(state=active_state()))
        dao = OrganizationBillingDAO(store)
        store.hold_reads(2)

        upgrade, sync = await asyncio.gather(
            dao.apply(
                ORG_ID,
                BillingTrigger.UPGRADE,
                lambda s: s.evolve(plan_price_id=PRICE_45, sessions_allowed=45),
            ),
            dao.apply(
                ORG_ID,
                BillingTrigger.SUBSCRIPTION_SYNCED,
                lambda s: s.evolve(plan_price_id=PRICE_60, sessions_allowed=60),
            ),
        )

        assert len(store.updates) == 2
        last_committed = store.updates[-1]
        final = store.get()
        assert final["meta"]["versionId"] == "3"
        assert extension_value(final, "subscription-plan") == extension_value(
            last_committed, "subscription-plan"
        )
        # Exactly one writer lost the race and recomputed from version 2
        assert sorted([upgrade.attempts, sync.attempts]) == [1, 2]
        loser = upgrade if upgrade.attempts == 2 else sync
        assert loser.previous.plan_price_id in (PRICE_45, PRICE_60)

    async def test_concurrent_sessions_are_both_counted(self):
        store = InMemoryFhirStore()
        store.put(organization_resource(state=active_state(sessions_used=0)))
        dao = OrganizationBillingDAO(store)
        store.hold_reads(2)

        def book(state):
            return state.evolve(sessions_used=state.sessions_used + 1)

        await asyncio.gather(
            dao.apply(ORG_ID, BillingTrigger.SESSION_RECORDED, book),
            dao.apply(ORG_ID, BillingTrigger.SESSION_RECORDED, book),
        )

        assert extension_value(store.get(), "subscription-sessions-used") == 2
