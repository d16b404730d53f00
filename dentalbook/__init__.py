"""
dentalbook - appointment lifecycle and scheduling engine for dental clinics.
"""

__version__ = "1.0.0"
