"""Input checks shared by the billing services."""

import re
from typing import Optional

from practice_billing.core.exceptions import ValidationError
from practice_billing.schemas.billing import ORGANIZATION_ID_PATTERN, PRICE_ID_PATTERN

_ORGANIZATION_ID = re.compile(ORGANIZATION_ID_PATTERN)
_PRICE_ID = re.compile(PRICE_ID_PATTERN)


def require_organization_id(organization_id: Optional[str]) -> str:
    """
    Reject missing or malformed FHIR Organization ids.

    WHY: The id is interpolated into FHIR URLs and Stripe search queries,
    so anything outside FHIR id syntax is refused before use.
    """
    if not organization_id or not _ORGANIZATION_ID.match(organization_id):
        raise ValidationError(
            message="organizationId must be a FHIR resource id",
            organization_id=organization_id,
        )
    return organization_id


def require_price_id(price_id: Optional[str]) -> str:
    if not price_id:
        raise ValidationError(message="priceId is required")
    if not _PRICE_ID.match(price_id):
        raise ValidationError(
            message="priceId must be a Stripe price id (price_...)",
            price_id=price_id,
        )
    return price_id
