"""
Appointment cache and paginated listing.
"""

from dentalbook.core.appointments.cache import AppointmentCache
from dentalbook.core.appointments.listing import AppointmentFilters, AppointmentList

__all__ = [
    "AppointmentCache",
    "AppointmentFilters",
    "AppointmentList",
]
