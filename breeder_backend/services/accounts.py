"""
Account service

Accounts are resolved from the identity provider by the auth layer. This
module owns the account rows, the owner-level privacy preferences that feed
the privacy projector, and the owned-animals membership set.
"""

import logging
import sqlite3
from typing import Optional, Dict, List
from ..config import ACCOUNT_ID_PREFIX
from ..db import transaction, read_connection, next_public_id, utc_now
from ..errors import NotFound

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS = """
    id, id_public, auth_uid, email, display_name, breeder_name,
    show_remarks_public, show_genetic_code_public, created_at, updated_at
"""


def _row_to_account(row: sqlite3.Row) -> Dict:
    return {
        "id": row["id"],
        "id_public": row["id_public"],
        "auth_uid": row["auth_uid"],
        "email": row["email"],
        "display_name": row["display_name"],
        "breeder_name": row["breeder_name"],
        "show_remarks_public": bool(row["show_remarks_public"]),
        "show_genetic_code_public": bool(row["show_genetic_code_public"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _insert_account(
    conn: sqlite3.Connection,
    auth_uid: str,
    email: str | None,
    display_name: str | None,
    breeder_name: str | None = None,
) -> int:
    id_public = next_public_id(conn, "account", ACCOUNT_ID_PREFIX)
    cursor = conn.execute(
        """
        INSERT INTO accounts (id_public, auth_uid, email, display_name, breeder_name, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (id_public, auth_uid, email, display_name, breeder_name, utc_now()),
    )
    logger.info(f"Created account {id_public} for auth uid {auth_uid}")
    return cursor.lastrowid


def create_account(
    auth_uid: str,
    email: str | None = None,
    display_name: str | None = None,
    breeder_name: str | None = None,
) -> Dict:
    with transaction() as conn:
        account_id = _insert_account(conn, auth_uid, email, display_name, breeder_name)
    return get_account(account_id)


def get_or_create_account(auth_uid: str, email: str | None = None, display_name: str | None = None) -> Dict:
    """
    Get the account for an identity-provider uid, creating it on first sight.
    Email and display name are refreshed when they changed upstream.
    """
    with transaction() as conn:
        row = conn.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE auth_uid = ?", (auth_uid,)
        ).fetchone()
        if row is None:
            account_id = _insert_account(conn, auth_uid, email, display_name)
        else:
            account_id = row["id"]
            if (email and email != row["email"]) or (display_name and display_name != row["display_name"]):
                conn.execute(
                    "UPDATE accounts SET email = ?, display_name = ?, updated_at = ? WHERE id = ?",
                    (email or row["email"], display_name or row["display_name"], utc_now(), account_id),
                )
    return get_account(account_id)


def find_account(conn: sqlite3.Connection, account_id: int) -> Optional[Dict]:
    row = conn.execute(f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = ?", (account_id,)).fetchone()
    return _row_to_account(row) if row else None


def find_account_by_public_id(conn: sqlite3.Connection, id_public: str) -> Optional[Dict]:
    row = conn.execute(
        f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id_public = ?", (id_public,)
    ).fetchone()
    return _row_to_account(row) if row else None


def get_account(account_id: int) -> Dict:
    with read_connection() as conn:
        account = find_account(conn, account_id)
    if not account:
        raise NotFound(f"Account {account_id} not found.")
    return account


def get_account_by_public_id(id_public: str) -> Dict:
    with read_connection() as conn:
        account = find_account_by_public_id(conn, id_public)
    if not account:
        raise NotFound(f"Account {id_public} not found.")
    return account


def get_owner_prefs(conn: sqlite3.Connection, account_id: int) -> Dict[str, bool]:
    """Owner-level privacy preferences used by the privacy projector."""
    row = conn.execute(
        "SELECT show_remarks_public, show_genetic_code_public FROM accounts WHERE id = ?",
        (account_id,),
    ).fetchone()
    if not row:
        return {"show_remarks_public": False, "show_genetic_code_public": False}
    return {
        "show_remarks_public": bool(row["show_remarks_public"]),
        "show_genetic_code_public": bool(row["show_genetic_code_public"]),
    }


def update_privacy_preferences(
    account_id: int,
    show_remarks_public: bool | None = None,
    show_genetic_code_public: bool | None = None,
) -> Dict:
    """
    Change the owner-level privacy preferences and re-project every animal
    the account owns in the same transaction. If any projection fails the
    preference change is rolled back with it.
    """
    # Import locally to avoid circular dependency
    from .public_projections import reproject_owner_animals

    updates = []
    params: list = []

    if show_remarks_public is not None:
        updates.append("show_remarks_public = ?")
        params.append(int(show_remarks_public))

    if show_genetic_code_public is not None:
        updates.append("show_genetic_code_public = ?")
        params.append(int(show_genetic_code_public))

    if updates:
        updates.append("updated_at = ?")
        params.append(utc_now())
        params.append(account_id)
        with transaction() as conn:
            cur = conn.execute(f"UPDATE accounts SET {', '.join(updates)} WHERE id = ?", params)
            if cur.rowcount == 0:
                raise NotFound(f"Account {account_id} not found.")
            count = reproject_owner_animals(conn, account_id)
        logger.info(f"Updated privacy preferences for account {account_id} ({count} animals re-projected)")

    return get_account(account_id)


# =============================================================================
# OWNED-ANIMALS MEMBERSHIP (set semantics)
# =============================================================================

def add_owned_animal(conn: sqlite3.Connection, account_id: int, animal_id: int) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO account_animals (account_id, animal_id, added_at) VALUES (?, ?, ?)",
        (account_id, animal_id, utc_now()),
    )


def remove_owned_animal(conn: sqlite3.Connection, account_id: int, animal_id: int) -> None:
    conn.execute(
        "DELETE FROM account_animals WHERE account_id = ? AND animal_id = ?",
        (account_id, animal_id),
    )


def list_owned_animal_ids(account_id: int) -> List[int]:
    with read_connection() as conn:
        rows = conn.execute(
            "SELECT animal_id FROM account_animals WHERE account_id = ? ORDER BY animal_id",
            (account_id,),
        ).fetchall()
    return [row["animal_id"] for row in rows]
