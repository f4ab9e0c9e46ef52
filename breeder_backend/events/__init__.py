"""
Transfer Event Module

Immutable records of transfer, access and projection changes.
"""

from .event_types import (
    EventType,
    TRANSFER_EVENTS,
    ACCESS_EVENTS,
    PROJECTION_EVENTS,
    ALL_EVENT_TYPES,
)

__all__ = [
    'EventType',
    'TRANSFER_EVENTS',
    'ACCESS_EVENTS',
    'PROJECTION_EVENTS',
    'ALL_EVENT_TYPES',
]
