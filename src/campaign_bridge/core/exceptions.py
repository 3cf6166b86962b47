"""Campaign Bridge Exception Hierarchy.

Provides structured error handling with context preservation
and HTTP status code mapping.
"""

from __future__ import annotations

from typing import Any


class CampaignBridgeError(Exception):
    """Base exception for all campaign-bridge errors.

    Provides:
    - Structured error context
    - HTTP status code mapping
    - Logging-friendly representation
    """

    status_code: int = 500
    error_code: str = "CAMPAIGN_BRIDGE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Additional context for debugging
            cause: Original exception if wrapping
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to API-friendly dictionary."""
        result: dict[str, Any] = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        """String representation for logging."""
        parts = [f"{self.error_code}: {self.message}"]
        if self.details:
            parts.append(f"details={self.details}")
        if self.cause:
            parts.append(f"cause={self.cause}")
        return " | ".join(parts)


# =============================================================================
# State Conflicts
# =============================================================================


class StateConflictError(CampaignBridgeError):
    """Request conflicts with current system state. Never retried."""

    status_code = 409
    error_code = "STATE_CONFLICT"


class CampaignAlreadyActiveError(StateConflictError):
    """Another campaign is already active."""

    error_code = "CAMPAIGN_ALREADY_ACTIVE"

    def __init__(self, active_campaign_id: str) -> None:
        super().__init__(
            "A campaign is already in progress. Stop it before starting a new one.",
            details={"active_campaign_id": active_campaign_id},
        )
        self.active_campaign_id = active_campaign_id


class DuplicateCallError(StateConflictError):
    """A non-terminal call to the same phone number already exists."""

    error_code = "CALL_ALREADY_ACTIVE"

    def __init__(self, phone: str, existing_call_id: str, existing_status: str) -> None:
        super().__init__(
            f"A call is already {existing_status} for {phone}",
            details={
                "phone": phone,
                "existingCallId": existing_call_id,
                "existingCallStatus": existing_status,
            },
        )
        self.phone = phone
        self.existing_call_id = existing_call_id
        self.existing_status = existing_status


# =============================================================================
# Not Found
# =============================================================================


class NotFoundError(CampaignBridgeError):
    """Base class for missing resources."""

    status_code = 404
    error_code = "NOT_FOUND"


class CallNotFoundError(NotFoundError):
    """Call with given ID is not tracked."""

    error_code = "CALL_NOT_FOUND"


class CampaignNotFoundError(NotFoundError):
    """Campaign with given ID does not exist."""

    error_code = "CAMPAIGN_NOT_FOUND"


class ConferenceNotFoundError(NotFoundError):
    """Conference record missing or expired."""

    error_code = "CONFERENCE_NOT_FOUND"


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(CampaignBridgeError):
    """Input validation failed."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidPhoneNumberError(ValidationError):
    """Phone number cannot be normalized to E.164."""

    error_code = "INVALID_PHONE_NUMBER"


class InvalidControlActionError(ValidationError):
    """Unsupported call control action."""

    error_code = "INVALID_CONTROL_ACTION"


class CampaignStateError(ValidationError):
    """Campaign operation not allowed in the current campaign state."""

    error_code = "CAMPAIGN_STATE_ERROR"


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(CampaignBridgeError):
    """Base class for external provider failures."""

    status_code = 502
    error_code = "PROVIDER_ERROR"


class VoiceAIError(ProviderError):
    """Voice-AI provider request failed."""

    error_code = "VOICE_AI_ERROR"


class TelephonyError(ProviderError):
    """Telephony provider request failed."""

    error_code = "TELEPHONY_ERROR"


# =============================================================================
# Infrastructure Errors
# =============================================================================


class StoreError(CampaignBridgeError):
    """Shared state store unavailable or returned bad data."""

    status_code = 503
    error_code = "STORE_ERROR"


class ConfigurationError(CampaignBridgeError):
    """Required configuration is missing; the feature is disabled."""

    status_code = 503
    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Utility Functions
# =============================================================================


def wrap_exception(
    exc: Exception,
    wrapper_class: type[CampaignBridgeError] = CampaignBridgeError,
    message: str | None = None,
    **details: Any,
) -> CampaignBridgeError:
    """Wrap a generic exception in a CampaignBridgeError.

    Args:
        exc: Original exception to wrap
        wrapper_class: CampaignBridgeError subclass to use
        message: Override message (defaults to str(exc))
        **details: Additional context details

    Returns:
        Wrapped CampaignBridgeError instance
    """
    return wrapper_class(
        message=message or str(exc),
        details=details or None,
        cause=exc,
    )
