"""
Transfer Domain Event Type Definitions

Events are immutable records of what happened to a transfer, the animal it
references and the animal's public projection. They are written in the same
transaction as the state change they describe, so the log never claims a
change that was rolled back.

Naming convention: {entity}_{action_past_tense}
"""

from enum import Enum
from typing import List, Optional
from dataclasses import dataclass, field


class EventType(str, Enum):

    # ==========================================================================
    # TRANSFER LIFECYCLE
    # ==========================================================================

    TRANSFER_PROPOSED = "transfer_proposed"
    TRANSFER_ACCEPTED = "transfer_accepted"
    TRANSFER_DECLINED = "transfer_declined"

    # ==========================================================================
    # ANIMAL ACCESS
    # ==========================================================================

    OWNERSHIP_CHANGED = "ownership_changed"
    VIEW_ONLY_GRANTED = "view_only_granted"
    VIEW_ONLY_REVOKED = "view_only_revoked"  # Administrative only

    # ==========================================================================
    # PUBLIC PROJECTION
    # ==========================================================================

    PROJECTION_REFRESHED = "projection_refreshed"
    PROJECTION_REMOVED = "projection_removed"
    PROJECTION_RECONCILED = "projection_reconciled"


TRANSFER_EVENTS: List[EventType] = [
    EventType.TRANSFER_PROPOSED,
    EventType.TRANSFER_ACCEPTED,
    EventType.TRANSFER_DECLINED,
]

ACCESS_EVENTS: List[EventType] = [
    EventType.OWNERSHIP_CHANGED,
    EventType.VIEW_ONLY_GRANTED,
    EventType.VIEW_ONLY_REVOKED,
]

PROJECTION_EVENTS: List[EventType] = [
    EventType.PROJECTION_REFRESHED,
    EventType.PROJECTION_REMOVED,
    EventType.PROJECTION_RECONCILED,
]

ALL_EVENT_TYPES: List[EventType] = TRANSFER_EVENTS + ACCESS_EVENTS + PROJECTION_EVENTS


@dataclass
class EventPayload:
    """Base structure for event payloads."""
    pass


@dataclass
class TransferProposedPayload(EventPayload):
    from_user_id: int
    to_user_id: int
    transfer_type: str
    offer_view_only: bool
    transaction_id: Optional[str] = None


@dataclass
class TransferRespondedPayload(EventPayload):
    """Payload for transfer_accepted / transfer_declined"""
    previous_status: str
    new_status: str
    responded_by: int


@dataclass
class OwnershipChangedPayload(EventPayload):
    previous_owner_id: int
    new_owner_id: int
    new_owner_id_public: str
    sold_status: str
    original_owner_id: Optional[int] = None


@dataclass
class ViewOnlyPayload(EventPayload):
    """Payload for view_only_granted / view_only_revoked"""
    account_id: int
    already_present: bool = False


@dataclass
class ProjectionPayload(EventPayload):
    owner_id_public: Optional[str] = None
    content_hash: Optional[str] = None
    reasons: List[str] = field(default_factory=list)
