"""
Public Projection Store

The public_animals table is a privacy-filtered mirror of the animals table,
keyed by the animal's public identifier.

Key principles:
- Projections are derived from the private record, never the other way around
- One projection per public identifier, written by upsert only
- refresh_projection is the only writer used by normal operations; it runs on
  the caller's connection so the mirror changes in the same transaction as
  the private record
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..db import read_connection, utc_now
from ..errors import NotFound
from ..events.event_types import EventType, ProjectionPayload
from .accounts import get_owner_prefs
from .event_emitter import emit_event
from .privacy_projector import project, canonical_json, content_hash

logger = logging.getLogger(__name__)


def upsert_projection(conn: sqlite3.Connection, document: Dict[str, Any]) -> bool:
    """
    Insert or replace the projection for document['id_public'].

    Returns True when a row was written, False when the stored projection
    already had the same content.
    """
    digest = content_hash(document)
    cur = conn.execute(
        """
        INSERT INTO public_animals (id_public, owner_id_public, document, content_hash, projected_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id_public) DO UPDATE SET
            owner_id_public = excluded.owner_id_public,
            document = excluded.document,
            content_hash = excluded.content_hash,
            projected_at = excluded.projected_at
        WHERE public_animals.content_hash != excluded.content_hash
        """,
        (
            document["id_public"],
            document["ownerId_public"],
            canonical_json(document),
            digest,
            utc_now(),
        ),
    )
    return cur.rowcount > 0


def delete_projection(conn: sqlite3.Connection, id_public: str) -> int:
    cur = conn.execute("DELETE FROM public_animals WHERE id_public = ?", (id_public,))
    return cur.rowcount


def refresh_projection(
    conn: sqlite3.Connection,
    animal_id_public: str,
    reason: str,
    transfer_id: Optional[int] = None,
    account_id: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """
    Re-run the privacy projector for one animal and store the result.

    The owner preferences are read for the animal's current owner, so this
    must run after any ownership change has been written on `conn`.

    Returns:
        The stored public document, or None if the animal is not public
    """
    # Import locally to avoid circular dependency
    from .animals import find_animal

    animal = find_animal(conn, animal_id_public)
    if animal is None:
        removed = delete_projection(conn, animal_id_public)
        if removed:
            logger.warning(f"Removed projection for missing animal {animal_id_public}")
        return None

    prefs = get_owner_prefs(conn, animal["owner_id"])
    document = project(animal, prefs)

    if document is None:
        if delete_projection(conn, animal_id_public):
            emit_event(
                conn,
                EventType.PROJECTION_REMOVED,
                animal_id_public,
                ProjectionPayload(owner_id_public=animal["owner_id_public"], reasons=[reason]),
                transfer_id=transfer_id,
                account_id=account_id,
            )
            logger.info(f"Removed public projection for {animal_id_public} ({reason})")
        return None

    if upsert_projection(conn, document):
        emit_event(
            conn,
            EventType.PROJECTION_REFRESHED,
            animal_id_public,
            ProjectionPayload(
                owner_id_public=document["ownerId_public"],
                content_hash=content_hash(document),
                reasons=[reason],
            ),
            transfer_id=transfer_id,
            account_id=account_id,
        )
        logger.info(f"Refreshed public projection for {animal_id_public} ({reason})")
    return document


def reproject_owner_animals(conn: sqlite3.Connection, account_id: int, reason: str = "owner_preferences_changed") -> int:
    """
    Refresh the projection of every animal an account owns, on the caller's
    transaction. Returns the number of animals processed.
    """
    rows = conn.execute(
        "SELECT id_public FROM animals WHERE owner_id = ? ORDER BY id", (account_id,)
    ).fetchall()

    for row in rows:
        refresh_projection(conn, row["id_public"], reason, account_id=account_id)

    return len(rows)


def get_public_animal(id_public: str) -> Dict[str, Any]:
    with read_connection() as conn:
        row = conn.execute(
            "SELECT document FROM public_animals WHERE id_public = ?", (id_public,)
        ).fetchone()
    if not row:
        raise NotFound(f"Public animal {id_public} not found.")
    return json.loads(row["document"])


def list_public_animals_for_owner(owner_id_public: str) -> List[Dict[str, Any]]:
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT document FROM public_animals
            WHERE owner_id_public = ?
            ORDER BY id_public ASC
            """,
            (owner_id_public,),
        ).fetchall()
    return [json.loads(row["document"]) for row in rows]
