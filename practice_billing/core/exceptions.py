"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error responses for the billing actions and webhook endpoints
2. HTTP status code mapping for FastAPI
3. Structured error payloads with contextual data
4. No secret leaks in error messages (Stripe keys, FHIR tokens)

Stripe retries any webhook delivery that receives a non-2xx response, so
the status codes below double as the retry contract with the gateway.

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, List, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {
            "password",
            "token",
            "secret",
            "key",
            "api_key",
            "client_secret",
            "access_token",
        }
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Validation & Input Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    WHY: Malformed organization ids, missing price ids and absent secrets
    must be rejected before any call reaches Stripe or the FHIR server.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class ResourceAlreadyExistsError(AppException):
    """
    Raised when attempting to create a resource that already exists.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Resource already exists"


class PlanNotFoundError(ResourceNotFoundError):
    """Raised when a price id is absent from the active catalog mode."""

    default_message = "Plan not found"


class CustomerNotFoundError(ResourceNotFoundError):
    """Raised when no Stripe customer carries the organization's metadata."""

    default_message = "No billing customer exists for this organization"


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Raised when an action needs an active subscription and there is none."""

    default_message = "No active subscription found"


class OrganizationNotFoundError(ResourceNotFoundError):
    """Raised when the FHIR server has no Organization with the given id."""

    default_message = "Organization not found"


class SubscriptionAlreadyExistsError(ResourceAlreadyExistsError):
    """
    Raised when a create action targets an organization that is already paying.

    WHY: A second PaymentIntent for an active organization would charge the
    practice twice for the same period.

    HTTP Status: 409 Conflict
    """

    default_message = "Organization already has an active subscription"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when a business rule is violated.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when a billing trigger is not allowed from the record's current phase.

    WHY: The billing transition table rejects, for example, an upgrade of an
    organization that never completed its first payment.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"


class SessionLimitReachedError(BusinessRuleViolation):
    """
    Raised when an organization has used every session its plan allows.

    HTTP Status: 422 Unprocessable Entity
    """

    default_message = "Session limit reached for the current billing period"


class ConcurrentUpdateError(AppException):
    """
    Raised when the Organization record kept changing under a billing write.

    WHY: Conditional writes retry a bounded number of times. When every
    attempt loses the race the caller gets a 409 and may retry the request.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Organization record was modified concurrently, please retry"

    def __init__(self, message: Optional[str] = None, **context: Any):
        context.setdefault("retryable", True)
        super().__init__(message, **context)


class PartialFailureError(AppException):
    """
    Raised when the gateway step succeeded but the record write did not.

    WHY: Stripe state and the Organization record have diverged. The context
    lists the completed gateway steps and whether compensation ran so an
    operator can reconcile.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Billing change was only partially applied"

    def __init__(
        self,
        message: Optional[str] = None,
        completed_steps: Optional[List[str]] = None,
        **context: Any,
    ):
        super().__init__(message, completed_steps=completed_steps or [], **context)


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    WHY: External API failures should return 502 Bad Gateway, indicating
    the problem is with an upstream service, not our application.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class ExternalServiceTimeoutError(ExternalServiceError):
    """
    Raised when an external call timed out or the connection failed.

    WHY: A timeout is not a definitive rejection. The call may or may not
    have taken effect upstream, so it is flagged retryable and kept apart
    from errors the upstream service actually returned.

    HTTP Status: 504 Gateway Timeout
    """

    status_code = 504
    default_message = "External service did not respond in time"

    def __init__(self, message: Optional[str] = None, **context: Any):
        context.setdefault("retryable", True)
        super().__init__(message, **context)


class StripeError(ExternalServiceError):
    """
    Raised when Stripe API calls fail.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment processing error"


class PaymentGatewayTimeoutError(ExternalServiceTimeoutError):
    """Raised when a Stripe call times out or cannot connect."""

    default_message = "Payment gateway did not respond in time"


class RecordStoreError(ExternalServiceError):
    """
    Raised when the FHIR server rejects or fails a request.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Record store error"


class VersionConflictError(RecordStoreError):
    """
    Raised when a conditional update loses to a concurrent write.

    WHY: The FHIR server answers 412 when the If-Match version is stale.
    The billing writer catches this and re-reads before trying again.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Record version conflict"


class RecordStoreTimeoutError(ExternalServiceTimeoutError):
    """Raised when a FHIR call times out or cannot connect."""

    default_message = "Record store did not respond in time"


# ============================================================================
# Audit Log Exceptions
# ============================================================================


class AuditLogImmutableError(AppException):
    """
    Raised when attempting to update or delete an audit log.

    WHY: Billing audit entries are the trail operators use to reconcile
    Stripe with the Organization record. Once written they cannot change.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "Audit logs are immutable and cannot be modified"


# ============================================================================
# Webhook Exceptions
# ============================================================================


class WebhookError(AppException):
    """
    Base exception for webhook operations.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Webhook error"


class WebhookSignatureError(WebhookError):
    """
    Raised when the Stripe-Signature header is missing or does not verify.

    WHY: Signature validation prevents forged and replayed events from
    changing an organization's entitlement.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid webhook signature"


class WebhookPayloadError(WebhookError):
    """
    Raised when a verified event lacks data the handler needs.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Webhook payload is missing required data"
