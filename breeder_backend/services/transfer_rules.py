"""
Transfer rules

Validation and transition decisions shared by the SQLite and PostgreSQL
transfer implementations. Nothing here touches a database: callers load the
rows, ask these functions what is allowed, and apply the answer.

Workflow decisions are driven by the transfer's status only. View-only
membership is consulted solely to recognise an already-granted view-only
acceptance (the lenient no-op in check_view_only_response).
"""

from typing import Any, Dict, Mapping, Optional

from ..errors import NotFound, PreconditionFailed, Unauthorized, InvalidState

TRANSFER_TYPES = ("sale", "purchase")

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"

# Result of check_view_only_response
GRANT = "grant"
ALREADY_GRANTED = "already_granted"


def check_proposal(
    animal: Optional[Mapping[str, Any]],
    from_user_id: int,
    to_user_id: int,
    transfer_type: str,
    offer_view_only: bool,
) -> None:
    """
    Raise if `from_user_id` may not propose this transfer.

    sale: the proposer owns the animal and has not already sold it.
    purchase: always a view-only offer; the proposer (the buyer who logged
    the purchase) owns the animal and has not already marked it purchased.
    """
    if transfer_type not in TRANSFER_TYPES:
        raise PreconditionFailed(f"Invalid transfer type '{transfer_type}'. Must be 'sale' or 'purchase'.")

    if from_user_id == to_user_id:
        raise PreconditionFailed("Cannot transfer an animal to yourself.")

    # A proposal for an unknown animal is a failed precondition, not a lookup
    if animal is None:
        raise PreconditionFailed("Animal not found or not owned by you.")

    if animal["owner_id"] != from_user_id:
        raise PreconditionFailed("You do not own this animal.")

    if transfer_type == "sale":
        if animal.get("sold_status") == "sold":
            raise PreconditionFailed("This animal has already been sold.")
    else:
        if not offer_view_only:
            raise PreconditionFailed("Purchase transfers can only offer view-only access.")
        if animal.get("sold_status") == "purchased":
            raise PreconditionFailed("This animal is already marked as purchased.")


def check_response(transfer: Optional[Mapping[str, Any]], acting_user_id: int) -> None:
    """Common checks for accept/decline: exists, addressed to the actor, still pending."""
    if transfer is None:
        raise NotFound("Transfer not found.")

    if transfer["to_user_id"] != acting_user_id:
        raise Unauthorized("You are not authorized to respond to this transfer.")

    if transfer["status"] != PENDING:
        raise InvalidState("Transfer has already been responded to.")


def check_view_only_response(
    transfer: Optional[Mapping[str, Any]],
    acting_user_id: int,
    actor_has_grant: bool,
) -> str:
    """
    Decide what accept-view-only should do.

    Returns GRANT for a pending offer, ALREADY_GRANTED when the offer was
    accepted before and the actor still holds the grant (a no-op).
    """
    if transfer is None:
        raise NotFound("Transfer not found.")

    if transfer["to_user_id"] != acting_user_id:
        raise Unauthorized("You are not authorized to respond to this offer.")

    if not transfer["offer_view_only"]:
        raise PreconditionFailed("This transfer does not have a view-only offer.")

    if transfer["status"] == PENDING:
        return GRANT

    if transfer["status"] == ACCEPTED and actor_has_grant:
        return ALREADY_GRANTED

    raise InvalidState("Transfer has already been responded to.")


def check_animal_for_acceptance(
    animal: Optional[Mapping[str, Any]],
    transfer: Mapping[str, Any],
) -> None:
    """
    Re-validate the animal inside the acceptance transaction.

    The animal may have been removed or changed hands since the proposal;
    either way the acceptance must not apply. This holds for view-only
    offers too: only the current owner can share read access.
    """
    if animal is None:
        raise NotFound(f"Animal {transfer['animal_id_public']} not found.")

    if animal["owner_id"] != transfer["from_user_id"]:
        raise PreconditionFailed("The animal is no longer owned by the sender.")


def sold_status_for(transfer_type: str) -> str:
    return "sold" if transfer_type == "sale" else "purchased"


def ownership_change(animal: Mapping[str, Any], transfer: Mapping[str, Any], new_owner_public_id: str) -> Dict[str, Any]:
    """
    The field values an accepted ownership transfer writes to the animal.

    The previous owner is returned separately so the caller can grant it
    view-only access and move the membership sets.
    """
    previous_owner_id = animal["owner_id"]
    return {
        "previous_owner_id": previous_owner_id,
        "owner_id": transfer["to_user_id"],
        "owner_id_public": new_owner_public_id,
        "original_owner_id": animal.get("original_owner_id") or previous_owner_id,
        "sold_status": sold_status_for(transfer["transfer_type"]),
    }


def notification_for_proposal(transfer: Mapping[str, Any], animal_name: str) -> Dict[str, str]:
    animal_id = transfer["animal_id_public"]
    if transfer["offer_view_only"] and transfer["transfer_type"] == "purchase":
        return {
            "type": "view_only_offer",
            "message": f"A buyer has logged a purchase of {animal_name} ({animal_id}). Would you like view-only access?",
        }
    if transfer["offer_view_only"]:
        return {
            "type": "view_only_offer",
            "message": f"You have been offered view-only access to {animal_name} ({animal_id}).",
        }
    return {
        "type": "transfer_request",
        "message": f"You have received an animal transfer request for {animal_name} ({animal_id}).",
    }
