"""
Reconciliation Sweep

Compares the private animal records with their public projections, view-only
grants and owned-animals membership, and repairs drift. Normal operations
keep these consistent inside one transaction; the sweep exists for databases
written by older releases, manual edits and interrupted privacy
re-projections.

Each repair runs in its own transaction, so a failure part way leaves every
earlier repair committed and the next run picks up the rest.
"""

import logging
from typing import Any, Dict, List

from ..db import transaction, read_connection, create_projection_unique_index
from ..events.event_types import EventType, ProjectionPayload, ViewOnlyPayload
from .accounts import add_owned_animal, get_owner_prefs, remove_owned_animal
from .animals import find_animal, grant_view_only
from .event_emitter import emit_event
from .privacy_projector import project, content_hash
from .public_projections import delete_projection, upsert_projection

logger = logging.getLogger(__name__)

CATEGORIES = [
    "duplicates",
    "ghosts",
    "missing",
    "stale",
    "missing_view_grants",
    "membership_drift",
]


def _reproject(animal_id_public: str, reason: str) -> None:
    """Write the projection a fresh projector run would produce."""
    with transaction() as conn:
        animal = find_animal(conn, animal_id_public)
        document = project(animal, get_owner_prefs(conn, animal["owner_id"])) if animal else None
        if document is None:
            delete_projection(conn, animal_id_public)
            payload = ProjectionPayload(reasons=[reason])
        else:
            upsert_projection(conn, document)
            payload = ProjectionPayload(
                owner_id_public=document["ownerId_public"],
                content_hash=content_hash(document),
                reasons=[reason],
            )
        emit_event(
            conn,
            EventType.PROJECTION_RECONCILED,
            animal_id_public,
            payload,
            metadata={"source": "reconciliation"},
        )


def find_duplicate_projections() -> List[str]:
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT id_public FROM public_animals
            GROUP BY id_public HAVING COUNT(*) > 1
            ORDER BY id_public
            """
        ).fetchall()
    return [row["id_public"] for row in rows]


def find_ghost_projections() -> List[str]:
    """Projections whose animal is gone or no longer public."""
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT DISTINCT p.id_public
            FROM public_animals p
            LEFT JOIN animals a ON a.id_public = p.id_public
            WHERE a.id IS NULL OR a.is_public = 0
            ORDER BY p.id_public
            """
        ).fetchall()
    return [row["id_public"] for row in rows]


def find_missing_and_stale_projections() -> Dict[str, List[str]]:
    """Public animals with no projection, or one that differs from a fresh projector run."""
    missing, stale = [], []
    with read_connection() as conn:
        rows = conn.execute("SELECT id_public FROM animals WHERE is_public = 1 ORDER BY id").fetchall()
        for row in rows:
            animal = find_animal(conn, row["id_public"])
            document = project(animal, get_owner_prefs(conn, animal["owner_id"]))
            stored = conn.execute(
                "SELECT content_hash FROM public_animals WHERE id_public = ?",
                (animal["id_public"],),
            ).fetchall()
            if not stored:
                missing.append(animal["id_public"])
            elif any(s["content_hash"] != content_hash(document) for s in stored):
                stale.append(animal["id_public"])
    return {"missing": missing, "stale": stale}


def find_missing_view_grants() -> List[Dict[str, Any]]:
    """
    Accepted ownership transfers whose previous owner lost read access.

    Grants removed on purpose by an administrator (a later view_only_revoked
    event for the same account) are left alone.
    """
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT t.id AS transfer_id, t.from_user_id, a.id AS animal_id, a.id_public
            FROM transfers t
            JOIN animals a ON a.id_public = t.animal_id_public
            WHERE t.status = 'accepted'
              AND t.offer_view_only = 0
              AND a.owner_id != t.from_user_id
              AND NOT EXISTS (
                  SELECT 1 FROM animal_view_grants g
                  WHERE g.animal_id = a.id AND g.account_id = t.from_user_id
              )
              AND NOT EXISTS (
                  SELECT 1 FROM transfer_events e
                  WHERE e.animal_id_public = a.id_public
                    AND e.event_type = 'view_only_revoked'
                    AND json_extract(e.payload, '$.account_id') = t.from_user_id
              )
            ORDER BY t.id
            """
        ).fetchall()
    return [dict(row) for row in rows]


def find_membership_drift() -> List[Dict[str, Any]]:
    """Animals missing from their owner's set, and set entries held by non-owners."""
    with read_connection() as conn:
        missing = conn.execute(
            """
            SELECT a.owner_id AS account_id, a.id AS animal_id, a.id_public, 'add' AS action
            FROM animals a
            LEFT JOIN account_animals m ON m.account_id = a.owner_id AND m.animal_id = a.id
            WHERE m.account_id IS NULL
            """
        ).fetchall()
        extra = conn.execute(
            """
            SELECT m.account_id, m.animal_id, a.id_public, 'remove' AS action
            FROM account_animals m
            LEFT JOIN animals a ON a.id = m.animal_id
            WHERE a.id IS NULL OR a.owner_id != m.account_id
            """
        ).fetchall()
    return [dict(row) for row in missing] + [dict(row) for row in extra]


def reconcile(dry_run: bool = False) -> Dict[str, Any]:
    """
    Run every check and, unless `dry_run`, repair what it finds.

    Returns:
        {"dry_run": bool, "counts": {category: n}, "items": {category: [...]}}
    """
    items: Dict[str, list] = {}

    items["duplicates"] = find_duplicate_projections()
    if not dry_run and items["duplicates"]:
        # Collapses duplicates and restores the unique index upserts rely on
        with transaction() as conn:
            create_projection_unique_index(conn)
        for id_public in items["duplicates"]:
            _reproject(id_public, "duplicate")

    items["ghosts"] = find_ghost_projections()
    if not dry_run:
        for id_public in items["ghosts"]:
            _reproject(id_public, "ghost")

    projections = find_missing_and_stale_projections()
    items["missing"] = projections["missing"]
    items["stale"] = projections["stale"]
    if not dry_run:
        for id_public in items["missing"]:
            _reproject(id_public, "missing")
        for id_public in items["stale"]:
            _reproject(id_public, "stale")

    grants = find_missing_view_grants()
    items["missing_view_grants"] = [
        {"transfer_id": g["transfer_id"], "animal_id_public": g["id_public"], "account_id": g["from_user_id"]}
        for g in grants
    ]
    if not dry_run:
        for g in grants:
            with transaction() as conn:
                if grant_view_only(conn, g["animal_id"], g["from_user_id"]):
                    emit_event(
                        conn,
                        EventType.VIEW_ONLY_GRANTED,
                        g["id_public"],
                        ViewOnlyPayload(account_id=g["from_user_id"]),
                        transfer_id=g["transfer_id"],
                        metadata={"source": "reconciliation"},
                    )

    drift = find_membership_drift()
    items["membership_drift"] = drift
    if not dry_run:
        for entry in drift:
            with transaction() as conn:
                if entry["action"] == "add":
                    add_owned_animal(conn, entry["account_id"], entry["animal_id"])
                else:
                    remove_owned_animal(conn, entry["account_id"], entry["animal_id"])

    counts = {category: len(items[category]) for category in CATEGORIES}
    if any(counts.values()):
        logger.warning(f"Reconciliation {'found' if dry_run else 'repaired'}: {counts}")
    else:
        logger.info("Reconciliation found no drift")

    return {"dry_run": dry_run, "counts": counts, "items": items}
