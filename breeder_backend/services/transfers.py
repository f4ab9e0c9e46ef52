"""
Transfer State Machine (SQLite)

Proposes, accepts and declines ownership transfers and view-only offers.

    pending --accept / accept-view-only--> accepted   (terminal)
    pending --decline--------------------> declined   (terminal)

Every transition runs in one BEGIN IMMEDIATE transaction: the status
compare-and-swap, the animal mutation, the view-only grant, the membership
sets, the public projection and the event log either all commit or all roll
back. Notifications go out after the commit and are best-effort.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..db import transaction, read_connection, utc_now
from ..errors import Conflict, NotFound, PreconditionFailed
from ..events.event_types import (
    EventType,
    OwnershipChangedPayload,
    TransferProposedPayload,
    TransferRespondedPayload,
    ViewOnlyPayload,
)
from . import transfer_rules as rules
from .accounts import add_owned_animal, find_account, remove_owned_animal
from .animals import animal_summary, find_animal, grant_view_only, has_view_grant
from .event_emitter import emit_event, get_events_for_transfer
from .notifications import NotificationSink, get_sink
from .public_projections import refresh_projection

logger = logging.getLogger(__name__)

TRANSFER_COLUMNS = """
    t.id, t.from_user_id, t.to_user_id, t.animal_id_public, t.transfer_type,
    t.offer_view_only, t.status, t.transaction_id, t.created_at, t.responded_at,
    t.updated_at, f.id_public AS from_user_public, r.id_public AS to_user_public
"""

TRANSFER_FROM = """
    FROM transfers t
    JOIN accounts f ON f.id = t.from_user_id
    JOIN accounts r ON r.id = t.to_user_id
"""


def _row_to_transfer(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "from_user_id": row["from_user_id"],
        "to_user_id": row["to_user_id"],
        "from_user_public": row["from_user_public"],
        "to_user_public": row["to_user_public"],
        "animal_id_public": row["animal_id_public"],
        "transfer_type": row["transfer_type"],
        "offer_view_only": bool(row["offer_view_only"]),
        "status": row["status"],
        "transaction_id": row["transaction_id"],
        "created_at": row["created_at"],
        "responded_at": row["responded_at"],
        "updated_at": row["updated_at"],
    }


def find_transfer(conn: sqlite3.Connection, transfer_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        f"SELECT {TRANSFER_COLUMNS} {TRANSFER_FROM} WHERE t.id = ?", (transfer_id,)
    ).fetchone()
    return _row_to_transfer(row) if row else None


def _mark_responded(conn: sqlite3.Connection, transfer_id: int, status: str) -> None:
    """Compare-and-swap pending -> status. Exactly one responder can win."""
    now = utc_now()
    cur = conn.execute(
        """
        UPDATE transfers SET status = ?, responded_at = ?, updated_at = ?
        WHERE id = ? AND status = 'pending'
        """,
        (status, now, now, transfer_id),
    )
    if cur.rowcount != 1:
        raise Conflict("Transfer was responded to concurrently.")


def _animal_name(animal: Optional[Dict[str, Any]], fallback: str) -> str:
    if animal and animal["details"].get("name"):
        return animal["details"]["name"]
    return fallback


# =============================================================================
# PROPOSE
# =============================================================================

def propose(
    from_user_id: int,
    to_user_id: int,
    animal_id_public: str,
    transfer_type: str,
    offer_view_only: bool = False,
    transaction_id: Optional[str] = None,
    sink: Optional[NotificationSink] = None,
) -> Dict[str, Any]:
    """
    Create a pending transfer and notify the counterpart.

    Raises:
        NotFound: recipient account missing
        PreconditionFailed: self-transfer, unknown animal, wrong owner,
            already sold/purchased, or a pending offer already exists
    """
    with transaction() as conn:
        if find_account(conn, to_user_id) is None:
            raise NotFound("Recipient account not found.")

        animal = find_animal(conn, animal_id_public)
        rules.check_proposal(animal, from_user_id, to_user_id, transfer_type, offer_view_only)

        existing = conn.execute(
            """
            SELECT id FROM transfers
            WHERE animal_id_public = ? AND to_user_id = ? AND status = 'pending'
            """,
            (animal_id_public, to_user_id),
        ).fetchone()
        if existing:
            raise PreconditionFailed(
                f"Transfer {existing['id']} for this animal is already pending for this recipient."
            )

        now = utc_now()
        try:
            cursor = conn.execute(
                """
                INSERT INTO transfers (
                    from_user_id, to_user_id, animal_id_public, transfer_type,
                    offer_view_only, status, transaction_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    from_user_id,
                    to_user_id,
                    animal_id_public,
                    transfer_type,
                    int(offer_view_only),
                    transaction_id,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise Conflict("A pending transfer for this animal and recipient was created concurrently.")

        transfer_id = cursor.lastrowid
        emit_event(
            conn,
            EventType.TRANSFER_PROPOSED,
            animal_id_public,
            TransferProposedPayload(
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                transfer_type=transfer_type,
                offer_view_only=bool(offer_view_only),
                transaction_id=transaction_id,
            ),
            transfer_id=transfer_id,
            account_id=from_user_id,
        )
        transfer = find_transfer(conn, transfer_id)
        animal_name = _animal_name(animal, animal_id_public)

    logger.info(
        f"Transfer {transfer_id} proposed: {transfer_type} of {animal_id_public} "
        f"from {transfer['from_user_public']} to {transfer['to_user_public']} (view_only={bool(offer_view_only)})"
    )

    note = rules.notification_for_proposal(transfer, animal_name)
    (sink or get_sink()).emit(
        to_user_id,
        note["type"],
        note["message"],
        metadata={
            "transferId": transfer_id,
            "animalId": animal_id_public,
            "animalName": animal_name,
            "fromUserId": transfer["from_user_public"],
        },
        status=rules.PENDING,
    )
    return transfer


# =============================================================================
# ACCEPT / DECLINE
# =============================================================================

def _apply_view_only_grant(
    conn: sqlite3.Connection,
    transfer: Dict[str, Any],
    animal: Dict[str, Any],
    account_id: int,
) -> None:
    added = grant_view_only(conn, animal["id"], account_id)
    emit_event(
        conn,
        EventType.VIEW_ONLY_GRANTED,
        animal["id_public"],
        ViewOnlyPayload(account_id=account_id, already_present=not added),
        transfer_id=transfer["id"],
        account_id=transfer["to_user_id"],
    )


def _apply_ownership_change(conn: sqlite3.Connection, transfer: Dict[str, Any], animal: Dict[str, Any]) -> None:
    new_owner = find_account(conn, transfer["to_user_id"])
    if new_owner is None:
        raise NotFound("Recipient account not found.")

    change = rules.ownership_change(animal, transfer, new_owner["id_public"])
    previous_owner_id = change["previous_owner_id"]

    cur = conn.execute(
        """
        UPDATE animals SET
            owner_id = ?,
            owner_id_public = ?,
            original_owner_id = ?,
            sold_status = ?,
            updated_at = ?
        WHERE id = ? AND owner_id = ?
        """,
        (
            change["owner_id"],
            change["owner_id_public"],
            change["original_owner_id"],
            change["sold_status"],
            utc_now(),
            animal["id"],
            previous_owner_id,
        ),
    )
    if cur.rowcount != 1:
        raise Conflict(f"Ownership of {animal['id_public']} changed concurrently.")

    # The previous owner keeps read access
    _apply_view_only_grant(conn, transfer, animal, previous_owner_id)

    remove_owned_animal(conn, previous_owner_id, animal["id"])
    add_owned_animal(conn, change["owner_id"], animal["id"])

    emit_event(
        conn,
        EventType.OWNERSHIP_CHANGED,
        animal["id_public"],
        OwnershipChangedPayload(
            previous_owner_id=previous_owner_id,
            new_owner_id=change["owner_id"],
            new_owner_id_public=change["owner_id_public"],
            sold_status=change["sold_status"],
            original_owner_id=change["original_owner_id"],
        ),
        transfer_id=transfer["id"],
        account_id=transfer["to_user_id"],
    )


def _record_response(conn: sqlite3.Connection, transfer: Dict[str, Any], new_status: str, acting_user_id: int) -> None:
    event_type = EventType.TRANSFER_ACCEPTED if new_status == rules.ACCEPTED else EventType.TRANSFER_DECLINED
    emit_event(
        conn,
        event_type,
        transfer["animal_id_public"],
        TransferRespondedPayload(
            previous_status=rules.PENDING,
            new_status=new_status,
            responded_by=acting_user_id,
        ),
        transfer_id=transfer["id"],
        account_id=acting_user_id,
    )


def _notify_response(
    sink: NotificationSink,
    transfer: Dict[str, Any],
    type: str,
    message: str,
    animal_name: str,
) -> None:
    sink.emit(
        transfer["from_user_id"],
        type,
        message,
        metadata={
            "transferId": transfer["id"],
            "animalId": transfer["animal_id_public"],
            "animalName": animal_name,
        },
        status=transfer["status"],
    )
    sink.mirror_transfer_status(transfer["id"], transfer["status"])


def accept(transfer_id: int, acting_user_id: int, sink: Optional[NotificationSink] = None) -> Dict[str, Any]:
    """
    Accept a pending transfer as its recipient.

    Ownership transfers move the animal to the recipient, mark it sold or
    purchased, keep the previous owner as a view-only reader and refresh the
    public projection under the new owner's privacy preferences. View-only
    offers only grant the recipient read access.

    Returns:
        {"transfer": ..., "animal": {"id_public", "name", "ownerId_public"}}

    Raises:
        NotFound, Unauthorized, InvalidState, Conflict, PreconditionFailed.
        On any of them nothing is written and the transfer stays pending.
    """
    with transaction() as conn:
        transfer = find_transfer(conn, transfer_id)
        rules.check_response(transfer, acting_user_id)

        _mark_responded(conn, transfer_id, rules.ACCEPTED)

        animal = find_animal(conn, transfer["animal_id_public"])
        rules.check_animal_for_acceptance(animal, transfer)

        if transfer["offer_view_only"]:
            _apply_view_only_grant(conn, transfer, animal, transfer["to_user_id"])
        else:
            _apply_ownership_change(conn, transfer, animal)

        refresh_projection(
            conn,
            transfer["animal_id_public"],
            "transfer_accepted",
            transfer_id=transfer_id,
            account_id=acting_user_id,
        )
        _record_response(conn, transfer, rules.ACCEPTED, acting_user_id)

        transfer = find_transfer(conn, transfer_id)
        animal = find_animal(conn, transfer["animal_id_public"])

    name = _animal_name(animal, transfer["animal_id_public"])
    logger.info(
        f"Transfer {transfer_id} accepted by {transfer['to_user_public']}; "
        f"{transfer['animal_id_public']} owner is now {animal['owner_id_public']}"
    )

    if transfer["offer_view_only"]:
        _notify_response(
            sink or get_sink(),
            transfer,
            "view_only_accepted",
            f"View-only access to {name} ({transfer['animal_id_public']}) has been accepted.",
            name,
        )
    else:
        _notify_response(
            sink or get_sink(),
            transfer,
            "transfer_accepted",
            f"Your animal transfer for {name} ({transfer['animal_id_public']}) has been accepted.",
            name,
        )

    return {"transfer": transfer, "animal": animal_summary(animal)}


def decline(transfer_id: int, acting_user_id: int, sink: Optional[NotificationSink] = None) -> Dict[str, Any]:
    """
    Decline a pending transfer as its recipient. The animal is not touched
    and any linked financial record stays as it is.
    """
    with transaction() as conn:
        transfer = find_transfer(conn, transfer_id)
        rules.check_response(transfer, acting_user_id)

        _mark_responded(conn, transfer_id, rules.DECLINED)
        _record_response(conn, transfer, rules.DECLINED, acting_user_id)

        transfer = find_transfer(conn, transfer_id)
        animal = find_animal(conn, transfer["animal_id_public"])

    name = _animal_name(animal, transfer["animal_id_public"])
    logger.info(f"Transfer {transfer_id} declined by {transfer['to_user_public']}")

    _notify_response(
        sink or get_sink(),
        transfer,
        "transfer_declined",
        f"Your animal transfer for {name} has been declined.",
        name,
    )
    return transfer


def accept_view_only(transfer_id: int, acting_user_id: int, sink: Optional[NotificationSink] = None) -> Dict[str, Any]:
    """
    Accept a view-only offer (the seller side of the purchase flow).

    Accepting an offer that was already accepted, while the actor still
    holds the grant, is a no-op that returns the transfer unchanged.

    Returns:
        {"transfer": ..., "animal": {...}, "already_granted": bool}
    """
    with transaction() as conn:
        transfer = find_transfer(conn, transfer_id)
        animal = find_animal(conn, transfer["animal_id_public"]) if transfer else None
        actor_has_grant = bool(animal) and has_view_grant(conn, animal["id"], acting_user_id)

        decision = rules.check_view_only_response(transfer, acting_user_id, actor_has_grant)

        if decision == rules.GRANT:
            _mark_responded(conn, transfer_id, rules.ACCEPTED)
            rules.check_animal_for_acceptance(animal, transfer)
            _apply_view_only_grant(conn, transfer, animal, acting_user_id)
            refresh_projection(
                conn,
                transfer["animal_id_public"],
                "view_only_accepted",
                transfer_id=transfer_id,
                account_id=acting_user_id,
            )
            _record_response(conn, transfer, rules.ACCEPTED, acting_user_id)
            transfer = find_transfer(conn, transfer_id)

    already_granted = decision == rules.ALREADY_GRANTED
    name = _animal_name(animal, transfer["animal_id_public"])
    summary = {"id_public": transfer["animal_id_public"], "name": name}

    if already_granted:
        logger.info(f"Transfer {transfer_id}: view-only access already granted, nothing to do")
    else:
        logger.info(f"Transfer {transfer_id}: view-only access granted to {transfer['to_user_public']}")
        _notify_response(
            sink or get_sink(),
            transfer,
            "view_only_accepted",
            f"Seller has accepted view-only access to {name} ({transfer['animal_id_public']}).",
            name,
        )

    return {"transfer": transfer, "animal": summary, "already_granted": already_granted}


# =============================================================================
# READS
# =============================================================================

def list_transfers_for_account(account_id: int) -> List[Dict[str, Any]]:
    """Transfers the account sent or received, newest first."""
    with read_connection() as conn:
        rows = conn.execute(
            f"""
            SELECT {TRANSFER_COLUMNS} {TRANSFER_FROM}
            WHERE t.from_user_id = ? OR t.to_user_id = ?
            ORDER BY t.created_at DESC, t.id DESC
            """,
            (account_id, account_id),
        ).fetchall()
    return [_row_to_transfer(row) for row in rows]


def get_transfer_for_party(account_id: int, transfer_id: int) -> Dict[str, Any]:
    with read_connection() as conn:
        transfer = find_transfer(conn, transfer_id)
    if transfer is None or account_id not in (transfer["from_user_id"], transfer["to_user_id"]):
        raise NotFound("Transfer not found.")
    return transfer


def get_transfer_history(account_id: int, transfer_id: int) -> List[Dict[str, Any]]:
    get_transfer_for_party(account_id, transfer_id)
    return get_events_for_transfer(transfer_id)
