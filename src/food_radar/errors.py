from __future__ import annotations

from typing import Optional


class FoodRadarError(Exception):
    """Base class for errors raised by food_radar."""


class SubscriptionError(FoodRadarError):
    """The backend listing stream failed. Call ``refresh()`` to resubscribe."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class ValidationError(FoodRadarError):
    """User input rejected before it reached the backend."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class GeometryError(FoodRadarError):
    """Malformed coordinates or region geometry."""
