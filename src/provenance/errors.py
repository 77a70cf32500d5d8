"""
Error taxonomy for the mileage provenance core.

Every error is surfaced synchronously to the caller and none of them are
retried internally. ``details`` carries the values a caller needs to act
on the failure (for a rollback rejection: the prior and the new mileage).
"""

from __future__ import annotations

from typing import Any


class ProvenanceError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class NotFoundError(ProvenanceError):
    """A vehicle, event, incident or device config does not exist."""


class FraudRejectedError(ProvenanceError):
    """A manual mileage entry was rejected as an odometer rollback.

    This is a business rejection, not a system failure: the incident has
    already been recorded and the vehicle's risk score updated when it is
    raised.
    """

    def __init__(self, previous_mileage: int, new_mileage: int, vehicle_id: str | None = None) -> None:
        self.previous_mileage = previous_mileage
        self.new_mileage = new_mileage
        details: dict[str, Any] = {
            "previous_mileage": previous_mileage,
            "new_mileage": new_mileage,
        }
        if vehicle_id is not None:
            details["vehicle_id"] = vehicle_id
        super().__init__(
            f"Mileage tampering detected: {new_mileage} km is below previously recorded {previous_mileage} km",
            details,
        )


class InvalidInputError(ProvenanceError):
    """Malformed mileage, missing telemetry fields or an out-of-range horizon."""


class InsufficientDataError(ProvenanceError):
    """Not enough mileage history for the requested analysis."""


class ForbiddenError(ProvenanceError):
    """The caller is not the owner or author of the resource being changed."""
