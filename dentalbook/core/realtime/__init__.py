"""
Realtime synchronization of appointment caches.
"""

from dentalbook.core.realtime.sync import RealtimeSync, SubscriptionRegistry

__all__ = ["RealtimeSync", "SubscriptionRegistry"]
