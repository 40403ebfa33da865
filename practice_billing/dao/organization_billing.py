"""
Organization billing Data Access Object (DAO).

WHAT: The single writer for the billing extensions of FHIR Organizations.

WHY: Synchronous billing actions and Stripe webhooks update the same
Organization record concurrently. A plain read-modify-write lets a slow
request overwrite a newer plan with a stale one. Funnelling every billing
write through ``apply`` guarantees:
- each write is checked against the lifecycle transition table
- each write is conditional on the version it was computed from, and a
  lost race is recomputed from a fresh read
- sessions_used is never touched except by session-usage writes

HOW: read -> decode -> check transition -> mutate (pure function) ->
conditional PUT with If-Match; on 412 start over, up to
``max_conflict_retries`` extra attempts.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from practice_billing.core.exceptions import (
    ConcurrentUpdateError,
    OrganizationNotFoundError,
    RecordStoreError,
    ResourceNotFoundError,
    VersionConflictError,
)
from practice_billing.services.billing_state import (
    DEFAULT_EXTENSION_BASE_URL,
    DEFAULT_FREE_TIER_SESSIONS,
    BillingTrigger,
    OrganizationBillingState,
    TransitionOutcome,
    decode_billing_state,
    encode_billing_state,
    resolve_transition,
)
from practice_billing.services.fhir_client import FhirClient

logger = logging.getLogger(__name__)

StateMutation = Callable[[OrganizationBillingState], OrganizationBillingState]


@dataclass(frozen=True)
class BillingWriteResult:
    """
    Outcome of one ``apply`` call.

    Attributes:
        previous: State read on the attempt that finished
        state: State now stored (equal to previous when nothing was written)
        outcome: Transition table decision
        written: Whether a PUT was committed
        version_id: Resource version after the call
        attempts: Number of read/write rounds used
    """

    previous: OrganizationBillingState
    state: OrganizationBillingState
    outcome: TransitionOutcome
    written: bool
    version_id: Optional[str]
    attempts: int


class OrganizationBillingDAO:
    """Data Access Object for Organization billing state on the FHIR server."""

    RESOURCE_TYPE = "Organization"

    def __init__(
        self,
        client: FhirClient,
        extension_base_url: str = DEFAULT_EXTENSION_BASE_URL,
        free_tier_sessions: int = DEFAULT_FREE_TIER_SESSIONS,
        max_conflict_retries: int = 5,
    ):
        """
        Args:
            client: FHIR client (or any object with read_resource/update_resource)
            extension_base_url: Base URL the extension names are appended to
            free_tier_sessions: sessions_allowed assumed when the record has none
            max_conflict_retries: Extra attempts after a version conflict
        """
        self._client = client
        self._base_url = extension_base_url
        self._free_tier_sessions = free_tier_sessions
        self._max_conflict_retries = max_conflict_retries

    @property
    def free_tier_sessions(self) -> int:
        return self._free_tier_sessions

    async def _read(self, organization_id: str) -> Tuple[Dict[str, Any], Optional[str]]:
        try:
            resource = await self._client.read_resource(self.RESOURCE_TYPE, organization_id)
        except ResourceNotFoundError as e:
            raise OrganizationNotFoundError(organization_id=organization_id) from e
        version_id = (resource.get("meta") or {}).get("versionId")
        return resource, version_id

    def _decode(self, resource: Dict[str, Any]) -> OrganizationBillingState:
        return decode_billing_state(
            resource,
            base_url=self._base_url,
            free_tier_sessions=self._free_tier_sessions,
        )

    async def get_state(self, organization_id: str) -> OrganizationBillingState:
        """
        Read the current billing state of an organization.

        Raises:
            OrganizationNotFoundError: If the Organization does not exist
        """
        resource, _ = await self._read(organization_id)
        return self._decode(resource)

    async def apply(
        self,
        organization_id: str,
        trigger: BillingTrigger,
        mutate: StateMutation,
    ) -> BillingWriteResult:
        """
        Apply a billing change through a version-checked write.

        Args:
            organization_id: FHIR Organization id
            trigger: Cause of the write, checked against the transition table
            mutate: Pure function from the freshly read state to the new
                state. It may run more than once and may raise to abort.

        Returns:
            BillingWriteResult describing what happened

        Raises:
            InvalidStateTransitionError: If the table rejects the trigger
            ConcurrentUpdateError: If every attempt lost a version race
            OrganizationNotFoundError: If the Organization does not exist
            RecordStoreError: If the record carries no versionId to condition on
        """
        attempts = 0
        while True:
            attempts += 1
            resource, version_id = await self._read(organization_id)
            current = self._decode(resource)

            outcome = resolve_transition(trigger, current.status)
            if outcome == TransitionOutcome.SKIP:
                logger.info(
                    f"Skipped {trigger.value} for Organization/{organization_id} "
                    f"in phase {current.phase.value}",
                    extra={"organization_id": organization_id, "trigger": trigger.value},
                )
                return BillingWriteResult(
                    previous=current,
                    state=current,
                    outcome=outcome,
                    written=False,
                    version_id=version_id,
                    attempts=attempts,
                )

            proposed = mutate(current)
            if (
                trigger != BillingTrigger.SESSION_RECORDED
                and proposed.sessions_used != current.sessions_used
            ):
                proposed = proposed.evolve(sessions_used=current.sessions_used)

            if proposed == current:
                return BillingWriteResult(
                    previous=current,
                    state=current,
                    outcome=outcome,
                    written=False,
                    version_id=version_id,
                    attempts=attempts,
                )

            if version_id is None:
                logger.error(
                    f"Organization/{organization_id} has no versionId; refusing {trigger.value}",
                    extra={"organization_id": organization_id, "trigger": trigger.value},
                )
                raise RecordStoreError(
                    message="Organization record has no version to condition the update on",
                    organization_id=organization_id,
                    trigger=trigger.value,
                )

            try:
                stored = await self._client.update_resource(
                    encode_billing_state(resource, proposed, base_url=self._base_url),
                    if_match=version_id,
                )
            except VersionConflictError:
                if attempts > self._max_conflict_retries:
                    logger.warning(
                        f"Giving up {trigger.value} for Organization/{organization_id} "
                        f"after {attempts} conflicting attempts",
                        extra={"organization_id": organization_id, "trigger": trigger.value},
                    )
                    raise ConcurrentUpdateError(
                        organization_id=organization_id,
                        trigger=trigger.value,
                        attempts=attempts,
                    )
                logger.info(
                    f"Version conflict on Organization/{organization_id}, retrying {trigger.value}",
                    extra={
                        "organization_id": organization_id,
                        "trigger": trigger.value,
                        "attempt": attempts,
                    },
                )
                continue

            return BillingWriteResult(
                previous=current,
                state=proposed,
                outcome=outcome,
                written=True,
                version_id=(stored.get("meta") or {}).get("versionId"),
                attempts=attempts,
            )
