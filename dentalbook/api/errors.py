"""HTTP status codes for the booking error taxonomy."""

from fastapi import status

from dentalbook.core.errors import BookingError

STATUS_BY_CATEGORY = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "policy": status.HTTP_403_FORBIDDEN,
    "transient": status.HTTP_503_SERVICE_UNAVAILABLE,
    "side_effect": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_status(error: BookingError) -> int:
    """Status code for a taxonomy error (400 for anything unmapped)."""
    return STATUS_BY_CATEGORY.get(error.category, status.HTTP_400_BAD_REQUEST)
