"""
FHIR API client for the Organization record store.

WHAT: HTTP client for reading and conditionally updating FHIR resources.

WHY: The Organization resource on the FHIR server is the single source of
truth for an organization's entitlement. Billing writes must never clobber
a concurrent write, so updates are conditional on the resource version
(If-Match) and a lost race surfaces as VersionConflictError instead of a
silent overwrite.

HOW: Uses httpx for async HTTP with a bounded timeout per request.
- 404 -> ResourceNotFoundError (the DAO maps it to OrganizationNotFoundError)
- 409/412 on a conditional update -> VersionConflictError
- other 4xx/5xx -> RecordStoreError
- timeouts and connection failures -> RecordStoreTimeoutError (retryable)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from practice_billing.core.exceptions import (
    RecordStoreError,
    RecordStoreTimeoutError,
    ResourceNotFoundError,
    ValidationError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_TIMEOUT = 15.0

FHIR_JSON = "application/fhir+json"


def weak_etag(version_id: str) -> str:
    """Format a resource version as the weak ETag FHIR servers expect."""
    return f'W/"{version_id}"'


# ============================================================================
# FHIR API Client
# ============================================================================


class FhirClient:
    """
    Async HTTP client for a FHIR R4 server.

    Example:
        client = FhirClient("https://fhir.example.com/fhir/R4", access_token)
        org = await client.read_resource("Organization", "org-123")
        await client.update_resource(org, if_match=org["meta"]["versionId"])
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize FHIR client.

        Args:
            base_url: FHIR base URL (e.g., https://fhir.example.com/fhir/R4)
            access_token: Bearer token sent with every request
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        if not base_url or not base_url.startswith(("http://", "https://")):
            raise ValidationError(
                message="FHIR base URL must be an http(s) URL",
                setting="FHIR_BASE_URL",
            )
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated request to the FHIR server.

        Returns:
            Parsed JSON response ({} for 204 No Content)

        Raises:
            ResourceNotFoundError: On 404
            VersionConflictError: On 409/412
            RecordStoreError: On any other error status
            RecordStoreTimeoutError: On timeout or connection failure
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = self._get_headers()
        if extra_headers:
            headers.update(extra_headers)

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=data,
                )
        except httpx.TimeoutException as e:
            raise RecordStoreTimeoutError(
                message="FHIR request timed out",
                path=path,
                method=method,
                timeout=self._timeout,
            ) from e
        except httpx.RequestError as e:
            raise RecordStoreTimeoutError(
                message=f"FHIR connection error: {e}",
                path=path,
                method=method,
            ) from e

        if response.status_code >= 400:
            detail = self._parse_error_response(response)
            context = {"path": path, "method": method, "upstream_status": response.status_code}
            if response.status_code == 404:
                raise ResourceNotFoundError(message=f"FHIR resource not found: {path}", **context)
            if response.status_code in (409, 412):
                raise VersionConflictError(message=f"FHIR version conflict: {detail}", **context)
            raise RecordStoreError(message=f"FHIR server error: {detail}", **context)

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    def _parse_error_response(self, response: httpx.Response) -> str:
        """
        Extract a message from an OperationOutcome error body.

        FHIR servers describe failures as
        ``{"resourceType": "OperationOutcome", "issue": [{"diagnostics": ...}]}``.
        """
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"

        if isinstance(data, dict):
            for issue in data.get("issue") or []:
                text = issue.get("diagnostics") or (issue.get("details") or {}).get("text")
                if text:
                    return text
        return str(data)

    # =========================================================================
    # Resource operations
    # =========================================================================

    async def read_resource(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        """
        Read a resource by id.

        Returns:
            The resource JSON, including ``meta.versionId``
        """
        return await self._request("GET", f"{resource_type}/{resource_id}")

    async def update_resource(
        self,
        resource: Dict[str, Any],
        if_match: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Replace a resource, optionally only if it is still at ``if_match``.

        Args:
            resource: Full resource JSON with resourceType and id
            if_match: versionId the update is conditional on

        Returns:
            The stored resource as returned by the server

        Raises:
            VersionConflictError: If the server holds a newer version
        """
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        if not resource_type or not resource_id:
            raise ValidationError(message="FHIR resource needs resourceType and id")

        extra_headers = {"If-Match": weak_etag(if_match)} if if_match else None
        updated = await self._request(
            "PUT",
            f"{resource_type}/{resource_id}",
            data=resource,
            extra_headers=extra_headers,
        )

        logger.info(
            f"Updated {resource_type}/{resource_id}",
            extra={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "previous_version": if_match,
                "version": (updated.get("meta") or {}).get("versionId"),
            },
        )
        return updated
