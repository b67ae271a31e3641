"""
Event catalogue shared by publishing and consuming services.

Defines the well-known event types, the exchanges they are routed to, queue
naming helpers and the minimal payload contracts checked by
``validate_event_payload``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final


class EventTypes:
    """Well-known dot-namespaced event types."""

    # User events
    USER_CREATED: Final = "user.created"
    USER_UPDATED: Final = "user.updated"
    USER_DELETED: Final = "user.deleted"
    USER_LOGIN: Final = "user.login"
    USER_LOGOUT: Final = "user.logout"

    # Payment events
    PAYMENT_CREATED: Final = "payment.created"
    PAYMENT_COMPLETED: Final = "payment.completed"
    PAYMENT_FAILED: Final = "payment.failed"

    # Account events
    ACCOUNT_CREATED: Final = "account.created"
    ACCOUNT_UPDATED: Final = "account.updated"
    APPLICATION_STATUS_UPDATED: Final = "application.status.updated"
    APPLICATION_STATUS_SUBMITTED: Final = "application.status.submitted"

    # Application events
    APPLICATION_CREATED: Final = "application.created"
    APPLICATION_UPDATED: Final = "application.updated"
    APPLICATION_SUBMITTED: Final = "application.submitted"
    APPLICATION_APPROVED: Final = "application.approved"
    APPLICATION_REJECTED: Final = "application.rejected"

    # Portal events
    PORTAL_APPLICATION_CREATED: Final = "portal.application.created"
    PORTAL_APPLICATION_UPDATED: Final = "portal.application.updated"
    PROFILE_APPLICATION_CREATE: Final = "profile.application.create"

    # Profile events
    PROFILE_CREATED: Final = "profile.created"
    PROFILE_UPDATED: Final = "profile.updated"
    PROFILE_DELETED: Final = "profile.deleted"


class Exchanges:
    """Names of the baseline exchanges."""

    USER_EVENTS: Final = "user.events"
    PAYMENT_EVENTS: Final = "payment.events"
    APPLICATION_EVENTS: Final = "application.events"
    ACCOUNTS_EVENTS: Final = "accounts.events"
    PORTAL_EVENTS: Final = "portal.events"
    PROFILE_EVENTS: Final = "profile.events"
    DLX: Final = "dlx"


class QueuePatterns:
    """Queue naming conventions."""

    @staticmethod
    def service_specific(service_name: str, event_category: str) -> str:
        """Queue owned by one service for one event category.

        Example:
            >>> QueuePatterns.service_specific("billing", "payment")
            'billing.payment.events'
        """
        return f"{service_name}.{event_category}.events"

    @staticmethod
    def dlq(queue_name: str) -> str:
        """Dead-letter queue paired with ``queue_name``."""
        return f"{queue_name}.dlq"


# Default event type -> exchange routing
DEFAULT_EXCHANGE_MAPPING: Final[Mapping[str, str]] = {
    EventTypes.USER_CREATED: Exchanges.USER_EVENTS,
    EventTypes.USER_UPDATED: Exchanges.USER_EVENTS,
    EventTypes.USER_DELETED: Exchanges.USER_EVENTS,
    EventTypes.USER_LOGIN: Exchanges.USER_EVENTS,
    EventTypes.USER_LOGOUT: Exchanges.USER_EVENTS,
    EventTypes.PAYMENT_CREATED: Exchanges.PAYMENT_EVENTS,
    EventTypes.PAYMENT_COMPLETED: Exchanges.PAYMENT_EVENTS,
    EventTypes.PAYMENT_FAILED: Exchanges.PAYMENT_EVENTS,
    EventTypes.ACCOUNT_CREATED: Exchanges.ACCOUNTS_EVENTS,
    EventTypes.ACCOUNT_UPDATED: Exchanges.ACCOUNTS_EVENTS,
    EventTypes.APPLICATION_STATUS_UPDATED: Exchanges.ACCOUNTS_EVENTS,
    EventTypes.APPLICATION_STATUS_SUBMITTED: Exchanges.ACCOUNTS_EVENTS,
    EventTypes.APPLICATION_CREATED: Exchanges.APPLICATION_EVENTS,
    EventTypes.APPLICATION_UPDATED: Exchanges.APPLICATION_EVENTS,
    EventTypes.APPLICATION_SUBMITTED: Exchanges.APPLICATION_EVENTS,
    EventTypes.APPLICATION_APPROVED: Exchanges.APPLICATION_EVENTS,
    EventTypes.APPLICATION_REJECTED: Exchanges.APPLICATION_EVENTS,
    EventTypes.PORTAL_APPLICATION_CREATED: Exchanges.PORTAL_EVENTS,
    EventTypes.PORTAL_APPLICATION_UPDATED: Exchanges.PORTAL_EVENTS,
    EventTypes.PROFILE_APPLICATION_CREATE: Exchanges.PORTAL_EVENTS,
    EventTypes.PROFILE_CREATED: Exchanges.PROFILE_EVENTS,
    EventTypes.PROFILE_UPDATED: Exchanges.PROFILE_EVENTS,
    EventTypes.PROFILE_DELETED: Exchanges.PROFILE_EVENTS,
}


@dataclass(frozen=True)
class PayloadSchema:
    """Required and optional payload fields for an event type."""

    required: tuple[str, ...]
    optional: tuple[str, ...] = ()


EVENT_SCHEMAS: Final[Mapping[str, PayloadSchema]] = {
    EventTypes.USER_CREATED: PayloadSchema(
        required=("userId", "email"),
        optional=("username", "profile", "tenantId"),
    ),
    EventTypes.USER_UPDATED: PayloadSchema(
        required=("userId",),
        optional=("email", "username", "profile", "tenantId"),
    ),
    EventTypes.APPLICATION_STATUS_UPDATED: PayloadSchema(
        required=("applicationId", "status"),
        optional=("tenantId", "userId", "previousStatus", "reason"),
    ),
    EventTypes.APPLICATION_STATUS_SUBMITTED: PayloadSchema(
        required=("applicationId", "tenantId"),
        optional=(
            "userId",
            "submittedAt",
            "personalDetails",
            "professionalDetails",
            "subscriptionDetails",
        ),
    ),
    EventTypes.PROFILE_APPLICATION_CREATE: PayloadSchema(
        required=("applicationId", "tenantId", "status"),
        optional=("personalDetails", "professionalDetails", "subscriptionDetails"),
    ),
    EventTypes.PAYMENT_CREATED: PayloadSchema(
        required=("paymentId", "amount", "currency"),
        optional=("userId", "applicationId", "tenantId", "method"),
    ),
    EventTypes.PAYMENT_COMPLETED: PayloadSchema(
        required=("paymentId", "amount", "currency", "status"),
        optional=("userId", "applicationId", "tenantId", "transactionId"),
    ),
}


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of ``validate_event_payload``."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_event_payload(event_type: str, data: Mapping[str, Any]) -> ValidationResult:
    """
    Check that a payload carries the required fields for its event type.

    Event types without a registered schema always validate.

    Args:
        event_type: Dot-namespaced event type
        data: Event payload

    Returns:
        ValidationResult listing one error per missing required field

    Example:
        >>> validate_event_payload("user.created", {"userId": "u1"}).errors
        ['Missing required field: email']
    """
    schema = EVENT_SCHEMAS.get(event_type)
    if schema is None:
        return ValidationResult(valid=True)

    errors = [
        f"Missing required field: {name}"
        for name in schema.required
        if data.get(name) is None
    ]
    return ValidationResult(valid=not errors, errors=errors)


__all__ = [
    "DEFAULT_EXCHANGE_MAPPING",
    "EVENT_SCHEMAS",
    "EventTypes",
    "Exchanges",
    "PayloadSchema",
    "QueuePatterns",
    "ValidationResult",
    "validate_event_payload",
]
