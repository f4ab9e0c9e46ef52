"""
Animal Store

Authoritative, fully detailed animal records. Each animal has exactly one
owner; other accounts may hold view-only grants. Ownership only changes
through the transfer state machine (services/transfers.py).
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..config import ANIMAL_ID_PREFIX
from ..db import transaction, read_connection, next_public_id, utc_now
from ..errors import NotFound, Unauthorized, PreconditionFailed
from ..events.event_types import EventType, ViewOnlyPayload
from .accounts import add_owned_animal, find_account, find_account_by_public_id
from .event_emitter import emit_event
from .public_projections import refresh_projection

logger = logging.getLogger(__name__)

ANIMAL_COLUMNS = """
    id, id_public, owner_id, owner_id_public, original_owner_id, sold_status,
    is_public, include_remarks, include_genetic_code, section_privacy, details,
    created_at, updated_at
"""


def _row_to_animal(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "id_public": row["id_public"],
        "owner_id": row["owner_id"],
        "owner_id_public": row["owner_id_public"],
        "original_owner_id": row["original_owner_id"],
        "sold_status": row["sold_status"],
        "is_public": bool(row["is_public"]),
        "include_remarks": bool(row["include_remarks"]),
        "include_genetic_code": bool(row["include_genetic_code"]),
        "section_privacy": json.loads(row["section_privacy"]) if row["section_privacy"] else {},
        "details": json.loads(row["details"]) if row["details"] else {},
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def find_animal(conn: sqlite3.Connection, id_public: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        f"SELECT {ANIMAL_COLUMNS} FROM animals WHERE id_public = ?", (id_public,)
    ).fetchone()
    return _row_to_animal(row) if row else None


def view_only_account_ids(conn: sqlite3.Connection, animal_id: int) -> List[int]:
    rows = conn.execute(
        "SELECT account_id FROM animal_view_grants WHERE animal_id = ? ORDER BY granted_at, account_id",
        (animal_id,),
    ).fetchall()
    return [row["account_id"] for row in rows]


def has_view_grant(conn: sqlite3.Connection, animal_id: int, account_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM animal_view_grants WHERE animal_id = ? AND account_id = ?",
        (animal_id, account_id),
    ).fetchone()
    return row is not None


def grant_view_only(conn: sqlite3.Connection, animal_id: int, account_id: int) -> bool:
    """Add-if-absent. Returns True when the grant is new."""
    cur = conn.execute(
        "INSERT OR IGNORE INTO animal_view_grants (animal_id, account_id, granted_at) VALUES (?, ?, ?)",
        (animal_id, account_id, utc_now()),
    )
    return cur.rowcount > 0


def animal_summary(animal: Dict[str, Any]) -> Dict[str, Any]:
    """Minimal ownership summary returned by transfer operations."""
    return {
        "id_public": animal["id_public"],
        "name": animal["details"].get("name"),
        "ownerId_public": animal["owner_id_public"],
    }


def _with_access(conn: sqlite3.Connection, animal: Dict[str, Any], access: str) -> Dict[str, Any]:
    viewer_ids = view_only_account_ids(conn, animal["id"])
    viewers = []
    for account_id in viewer_ids:
        account = find_account(conn, account_id)
        if account:
            viewers.append(account["id_public"])
    result = dict(animal)
    result["access"] = access
    result["view_only_for_users"] = viewers
    return result


def create_animal(
    owner_id: int,
    details: Dict[str, Any],
    is_public: bool = False,
    include_remarks: bool = False,
    include_genetic_code: bool = False,
    section_privacy: Optional[Dict[str, bool]] = None,
) -> Dict[str, Any]:
    """
    Create an animal owned by `owner_id`, add it to the owner's membership
    set and project it when public.
    """
    now = utc_now()
    with transaction() as conn:
        owner = find_account(conn, owner_id)
        if not owner:
            raise NotFound(f"Account {owner_id} not found.")

        id_public = next_public_id(conn, "animal", ANIMAL_ID_PREFIX)
        cursor = conn.execute(
            """
            INSERT INTO animals (
                id_public, owner_id, owner_id_public, original_owner_id, sold_status,
                is_public, include_remarks, include_genetic_code, section_privacy, details,
                created_at, updated_at
            )
            VALUES (?, ?, ?, NULL, NULL, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                id_public,
                owner_id,
                owner["id_public"],
                int(is_public),
                int(include_remarks),
                int(include_genetic_code),
                json.dumps(section_privacy or {}, sort_keys=True),
                json.dumps(details, sort_keys=True, default=str),
                now,
                now,
            ),
        )
        add_owned_animal(conn, owner_id, cursor.lastrowid)
        refresh_projection(conn, id_public, "animal_created", account_id=owner_id)
        animal = find_animal(conn, id_public)

    logger.info(f"Created animal {id_public} for owner {owner['id_public']}")
    return animal


def update_animal(
    account_id: int,
    id_public: str,
    details: Optional[Dict[str, Any]] = None,
    is_public: Optional[bool] = None,
    include_remarks: Optional[bool] = None,
    include_genetic_code: Optional[bool] = None,
    section_privacy: Optional[Dict[str, bool]] = None,
) -> Dict[str, Any]:
    """
    Owner edit. `details` and `section_privacy` are merged into the stored
    maps; the public projection is re-evaluated in the same transaction.
    """
    with transaction() as conn:
        animal = find_animal(conn, id_public)
        if not animal:
            raise NotFound(f"Animal {id_public} not found.")
        if animal["owner_id"] != account_id:
            raise Unauthorized("Only the owner can edit this animal.")

        merged_details = dict(animal["details"])
        if details:
            merged_details.update(details)
        merged_privacy = dict(animal["section_privacy"])
        if section_privacy:
            merged_privacy.update(section_privacy)

        conn.execute(
            """
            UPDATE animals SET
                details = ?,
                section_privacy = ?,
                is_public = ?,
                include_remarks = ?,
                include_genetic_code = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                json.dumps(merged_details, sort_keys=True, default=str),
                json.dumps(merged_privacy, sort_keys=True),
                int(animal["is_public"] if is_public is None else is_public),
                int(animal["include_remarks"] if include_remarks is None else include_remarks),
                int(animal["include_genetic_code"] if include_genetic_code is None else include_genetic_code),
                utc_now(),
                animal["id"],
            ),
        )
        refresh_projection(conn, id_public, "animal_updated", account_id=account_id)
        updated = _with_access(conn, find_animal(conn, id_public), "owner")

    logger.info(f"Updated animal {id_public}")
    return updated


def get_animal_for_reader(account_id: int, id_public: str) -> Dict[str, Any]:
    """The private record, for its owner or a view-only reader."""
    with read_connection() as conn:
        animal = find_animal(conn, id_public)
        if animal and animal["owner_id"] == account_id:
            return _with_access(conn, animal, "owner")
        if animal and has_view_grant(conn, animal["id"], account_id):
            return _with_access(conn, animal, "view_only")
    # Same answer for "missing" and "not yours" so ids cannot be enumerated
    raise NotFound(f"Animal {id_public} not found.")


def list_animals_for_account(account_id: int, include_hidden: bool = False) -> List[Dict[str, Any]]:
    """Owned animals followed by view-only animals (hidden ones excluded by default)."""
    with read_connection() as conn:
        owned = conn.execute(
            f"SELECT {ANIMAL_COLUMNS} FROM animals WHERE owner_id = ? ORDER BY id",
            (account_id,),
        ).fetchall()
        hidden_clause = "" if include_hidden else "AND g.hidden = 0"
        viewable = conn.execute(
            f"""
            SELECT a.id, a.id_public, a.owner_id, a.owner_id_public, a.original_owner_id,
                   a.sold_status, a.is_public, a.include_remarks, a.include_genetic_code,
                   a.section_privacy, a.details, a.created_at, a.updated_at
            FROM animals a
            JOIN animal_view_grants g ON g.animal_id = a.id
            WHERE g.account_id = ? AND a.owner_id != ? {hidden_clause}
            ORDER BY a.id
            """,
            (account_id, account_id),
        ).fetchall()
        result = [_with_access(conn, _row_to_animal(row), "owner") for row in owned]
        result += [_with_access(conn, _row_to_animal(row), "view_only") for row in viewable]
    return result


def _set_hidden(account_id: int, id_public: str, hidden: bool) -> Dict[str, Any]:
    with transaction() as conn:
        animal = find_animal(conn, id_public)
        if not animal or not has_view_grant(conn, animal["id"], account_id):
            raise NotFound(f"No view-only access to animal {id_public}.")
        if animal["owner_id"] == account_id:
            raise PreconditionFailed("Owned animals cannot be hidden.")
        conn.execute(
            "UPDATE animal_view_grants SET hidden = ? WHERE animal_id = ? AND account_id = ?",
            (int(hidden), animal["id"], account_id),
        )
    return {"id_public": id_public, "hidden": hidden}


def hide_view_only_animal(account_id: int, id_public: str) -> Dict[str, Any]:
    """Hide a view-only animal from the reader's own list. Access is kept."""
    return _set_hidden(account_id, id_public, True)


def restore_view_only_animal(account_id: int, id_public: str) -> Dict[str, Any]:
    return _set_hidden(account_id, id_public, False)


def revoke_view_only(id_public: str, account_id_public: str, revoked_by: str = "admin") -> bool:
    """
    Administrative removal of a view-only grant. Normal transfer operations
    never call this. Returns True if a grant was removed.
    """
    with transaction() as conn:
        animal = find_animal(conn, id_public)
        if not animal:
            raise NotFound(f"Animal {id_public} not found.")
        account = find_account_by_public_id(conn, account_id_public)
        if not account:
            raise NotFound(f"Account {account_id_public} not found.")

        cur = conn.execute(
            "DELETE FROM animal_view_grants WHERE animal_id = ? AND account_id = ?",
            (animal["id"], account["id"]),
        )
        removed = cur.rowcount > 0
        if removed:
            emit_event(
                conn,
                EventType.VIEW_ONLY_REVOKED,
                id_public,
                ViewOnlyPayload(account_id=account["id"]),
                metadata={"revoked_by": revoked_by},
            )

    if removed:
        logger.info(f"Revoked view-only access to {id_public} for {account_id_public}")
    else:
        logger.warning(f"No view-only grant to revoke on {id_public} for {account_id_public}")
    return removed
