"""Core booking logic: scheduling, lifecycle, appointment cache and realtime sync."""
