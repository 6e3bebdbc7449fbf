# errors.py
"""Error taxonomy shared by the stores, the negotiation engine and the HTTP layer."""
from fastapi import status


class SwapError(Exception):
    """Base class; each subclass carries the HTTP status it is reported with."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(SwapError):
    """Malformed or missing input. Always raised before any state is read."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(SwapError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(SwapError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateError(SwapError):
    """The record exists but its status does not allow the transition."""

    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(SwapError):
    """A concurrent swap already holds the slot, a self-swap, or lost transaction contention."""

    status_code = status.HTTP_409_CONFLICT
