"""
Reconciliation Sweep - PostgreSQL Async Implementation

Async twin of services/reconciliation.py. Same checks, same categories and
the same report shape, so the admin endpoint and the nightly script work
against either store.

Each repair runs in its own transaction.
"""

import logging
from typing import Any, Dict, List

import asyncpg

from ..db_postgres import DatabaseConnection
from ..events.event_types import EventType, ProjectionPayload, ViewOnlyPayload
from .privacy_projector import project, content_hash
from .reconciliation import CATEGORIES
from .transfers_postgres import (
    add_owned_animal,
    emit_event,
    find_animal,
    get_owner_prefs,
    grant_view_only,
    refresh_projection,
)

logger = logging.getLogger(__name__)

RECONCILIATION = {"source": "reconciliation"}


async def _reproject(animal_id_public: str, reason: str) -> None:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            document = await refresh_projection(conn, animal_id_public, reason)
            payload = ProjectionPayload(reasons=[reason])
            if document is not None:
                payload = ProjectionPayload(
                    owner_id_public=document["ownerId_public"],
                    content_hash=content_hash(document),
                    reasons=[reason],
                )
            await emit_event(conn, EventType.PROJECTION_RECONCILED, animal_id_public, payload, metadata=RECONCILIATION)


async def merge_duplicate_projections(conn: asyncpg.Connection) -> int:
    """
    Keep the most recent projection per public identifier and restore the
    unique index that upserts rely on. Tables created before the constraint
    existed can hold duplicates. Returns the number of rows removed.
    """
    result = await conn.execute(
        """
        DELETE FROM public_animals
        WHERE id NOT IN (SELECT MAX(id) FROM public_animals GROUP BY id_public)
        """
    )
    await conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uniq_public_animals_id_public ON public_animals(id_public)"
    )
    removed = int(result.split()[-1])
    if removed:
        logger.warning(f"Removed {removed} duplicate public projections")
    return removed


async def find_duplicate_projections(conn: asyncpg.Connection) -> List[str]:
    rows = await conn.fetch(
        """
        SELECT id_public FROM public_animals
        GROUP BY id_public HAVING COUNT(*) > 1
        ORDER BY id_public
        """
    )
    return [row["id_public"] for row in rows]


async def find_ghost_projections(conn: asyncpg.Connection) -> List[str]:
    rows = await conn.fetch(
        """
        SELECT DISTINCT p.id_public
        FROM public_animals p
        LEFT JOIN animals a ON a.id_public = p.id_public
        WHERE a.id IS NULL OR NOT a.is_public
        ORDER BY p.id_public
        """
    )
    return [row["id_public"] for row in rows]


async def find_missing_and_stale_projections(conn: asyncpg.Connection) -> Dict[str, List[str]]:
    missing, stale = [], []
    rows = await conn.fetch("SELECT id_public FROM animals WHERE is_public ORDER BY id")
    for row in rows:
        animal = await find_animal(conn, row["id_public"])
        document = project(animal, await get_owner_prefs(conn, animal["owner_id"]))
        stored = await conn.fetch(
            "SELECT content_hash FROM public_animals WHERE id_public = $1",
            animal["id_public"],
        )
        if not stored:
            missing.append(animal["id_public"])
        elif any(s["content_hash"] != content_hash(document) for s in stored):
            stale.append(animal["id_public"])
    return {"missing": missing, "stale": stale}


async def find_missing_view_grants(conn: asyncpg.Connection) -> List[Dict[str, Any]]:
    """Accepted ownership transfers whose previous owner lost read access, unless an admin revoked it."""
    rows = await conn.fetch(
        """
        SELECT t.id AS transfer_id, t.from_user_id, a.id AS animal_id, a.id_public
        FROM transfers t
        JOIN animals a ON a.id_public = t.animal_id_public
        WHERE t.status = 'accepted'
          AND NOT t.offer_view_only
          AND a.owner_id != t.from_user_id
          AND NOT EXISTS (
              SELECT 1 FROM animal_view_grants g
              WHERE g.animal_id = a.id AND g.account_id = t.from_user_id
          )
          AND NOT EXISTS (
              SELECT 1 FROM transfer_events e
              WHERE e.animal_id_public = a.id_public
                AND e.event_type = 'view_only_revoked'
                AND (e.payload->>'account_id')::bigint = t.from_user_id
          )
        ORDER BY t.id
        """
    )
    return [dict(row) for row in rows]


async def find_membership_drift(conn: asyncpg.Connection) -> List[Dict[str, Any]]:
    missing = await conn.fetch(
        """
        SELECT a.owner_id AS account_id, a.id AS animal_id, a.id_public, 'add' AS action
        FROM animals a
        LEFT JOIN account_animals m ON m.account_id = a.owner_id AND m.animal_id = a.id
        WHERE m.account_id IS NULL
        """
    )
    extra = await conn.fetch(
        """
        SELECT m.account_id, m.animal_id, a.id_public, 'remove' AS action
        FROM account_animals m
        LEFT JOIN animals a ON a.id = m.animal_id
        WHERE a.id IS NULL OR a.owner_id != m.account_id
        """
    )
    return [dict(row) for row in missing] + [dict(row) for row in extra]


async def reconcile(dry_run: bool = False) -> Dict[str, Any]:
    """
    Run every check and, unless `dry_run`, repair what it finds.

    Returns:
        {"dry_run": bool, "counts": {category: n}, "items": {category: [...]}}
    """
    items: Dict[str, list] = {}

    async with DatabaseConnection() as conn:
        items["duplicates"] = await find_duplicate_projections(conn)
    if not dry_run and items["duplicates"]:
        async with DatabaseConnection() as conn:
            async with conn.transaction():
                await merge_duplicate_projections(conn)
        for id_public in items["duplicates"]:
            await _reproject(id_public, "duplicate")

    async with DatabaseConnection() as conn:
        items["ghosts"] = await find_ghost_projections(conn)
    if not dry_run:
        for id_public in items["ghosts"]:
            await _reproject(id_public, "ghost")

    async with DatabaseConnection() as conn:
        projections = await find_missing_and_stale_projections(conn)
    items["missing"] = projections["missing"]
    items["stale"] = projections["stale"]
    if not dry_run:
        for id_public in items["missing"]:
            await _reproject(id_public, "missing")
        for id_public in items["stale"]:
            await _reproject(id_public, "stale")

    async with DatabaseConnection() as conn:
        grants = await find_missing_view_grants(conn)
    items["missing_view_grants"] = [
        {"transfer_id": g["transfer_id"], "animal_id_public": g["id_public"], "account_id": g["from_user_id"]}
        for g in grants
    ]
    if not dry_run:
        for g in grants:
            async with DatabaseConnection() as conn:
                async with conn.transaction():
                    if await grant_view_only(conn, g["animal_id"], g["from_user_id"]):
                        await emit_event(
                            conn,
                            EventType.VIEW_ONLY_GRANTED,
                            g["id_public"],
                            ViewOnlyPayload(account_id=g["from_user_id"]),
                            transfer_id=g["transfer_id"],
                            metadata=RECONCILIATION,
                        )

    async with DatabaseConnection() as conn:
        drift = await find_membership_drift(conn)
    items["membership_drift"] = drift
    if not dry_run:
        for entry in drift:
            async with DatabaseConnection() as conn:
                if entry["action"] == "add":
                    await add_owned_animal(conn, entry["account_id"], entry["animal_id"])
                else:
                    await conn.execute(
                        "DELETE FROM account_animals WHERE account_id = $1 AND animal_id = $2",
                        entry["account_id"],
                        entry["animal_id"],
                    )

    counts = {category: len(items[category]) for category in CATEGORIES}
    if any(counts.values()):
        logger.warning(f"Reconciliation {'found' if dry_run else 'repaired'}: {counts}")
    else:
        logger.info("Reconciliation found no drift")

    return {"dry_run": dry_run, "counts": counts, "items": items}
