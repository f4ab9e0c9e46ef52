"""
Transfer State Machine - PostgreSQL Async Implementation

Async twin of services/transfers.py for deployments running with
USE_POSTGRES. Validation comes from services/transfer_rules.py and the public
document from services/privacy_projector.py, so both stores make the same
decisions and produce byte-identical projections.

Each transition runs in one asyncpg transaction. The transfer row is locked
with SELECT ... FOR UPDATE before the status compare-and-swap, and the
animal row before it is re-validated.
"""

import json
import logging
import uuid
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, List, Optional

import asyncpg

from ..config import ACCOUNT_ID_PREFIX, ANIMAL_ID_PREFIX, PUBLIC_ID_START
from ..db_postgres import DatabaseConnection
from ..errors import Conflict, NotFound, PreconditionFailed
from ..events.event_types import (
    EventType,
    OwnershipChangedPayload,
    ProjectionPayload,
    TransferProposedPayload,
    TransferRespondedPayload,
    ViewOnlyPayload,
)
from . import transfer_rules as rules
from .privacy_projector import canonical_json, content_hash, project

logger = logging.getLogger(__name__)

TRANSFER_SELECT = """
    SELECT t.id, t.from_user_id, t.to_user_id, t.animal_id_public, t.transfer_type,
           t.offer_view_only, t.status, t.transaction_id, t.created_at, t.responded_at,
           t.updated_at, f.id_public AS from_user_public, r.id_public AS to_user_public
    FROM transfers t
    JOIN accounts f ON f.id = t.from_user_id
    JOIN accounts r ON r.id = t.to_user_id
"""

ANIMAL_SELECT = """
    SELECT id, id_public, owner_id, owner_id_public, original_owner_id, sold_status,
           is_public, include_remarks, include_genetic_code, section_privacy, details,
           created_at, updated_at
    FROM animals
"""


def _iso(value):
    return value.isoformat() if value is not None else None


def _json_field(value) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_transfer(row: asyncpg.Record) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "from_user_id": row["from_user_id"],
        "to_user_id": row["to_user_id"],
        "from_user_public": row["from_user_public"],
        "to_user_public": row["to_user_public"],
        "animal_id_public": row["animal_id_public"],
        "transfer_type": row["transfer_type"],
        "offer_view_only": row["offer_view_only"],
        "status": row["status"],
        "transaction_id": row["transaction_id"],
        "created_at": _iso(row["created_at"]),
        "responded_at": _iso(row["responded_at"]),
        "updated_at": _iso(row["updated_at"]),
    }


def _row_to_animal(row: asyncpg.Record) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "id_public": row["id_public"],
        "owner_id": row["owner_id"],
        "owner_id_public": row["owner_id_public"],
        "original_owner_id": row["original_owner_id"],
        "sold_status": row["sold_status"],
        "is_public": row["is_public"],
        "include_remarks": row["include_remarks"],
        "include_genetic_code": row["include_genetic_code"],
        "section_privacy": _json_field(row["section_privacy"]),
        "details": _json_field(row["details"]),
        "created_at": _iso(row["created_at"]),
        "updated_at": _iso(row["updated_at"]),
    }


async def _next_public_id(conn: asyncpg.Connection, counter: str, prefix: str) -> str:
    seq = await conn.fetchval(
        """
        INSERT INTO counters (name, seq) VALUES ($1, $2)
        ON CONFLICT (name) DO UPDATE SET seq = counters.seq + 1
        RETURNING seq
        """,
        counter,
        PUBLIC_ID_START,
    )
    return f"{prefix}{seq}"


async def emit_event(
    conn: asyncpg.Connection,
    event_type: EventType,
    animal_id_public: str,
    payload,
    transfer_id: Optional[int] = None,
    account_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    data = asdict(payload) if is_dataclass(payload) else dict(payload)
    await conn.execute(
        """
        INSERT INTO transfer_events (
            event_id, transfer_id, animal_id_public, event_type, event_version,
            payload, metadata, account_id
        )
        VALUES ($1, $2, $3, $4, 1, $5::jsonb, $6::jsonb, $7)
        """,
        uuid.uuid4(),
        transfer_id,
        animal_id_public,
        event_type.value,
        json.dumps(data, default=str),
        json.dumps(metadata or {"source": "transfers_postgres"}, default=str),
        account_id,
    )


# =============================================================================
# ACCOUNTS AND ANIMALS (surface served in PostgreSQL mode)
# =============================================================================

async def create_account(auth_uid: str, email: Optional[str] = None, display_name: Optional[str] = None) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            id_public = await _next_public_id(conn, "account", ACCOUNT_ID_PREFIX)
            row = await conn.fetchrow(
                """
                INSERT INTO accounts (id_public, auth_uid, email, display_name)
                VALUES ($1, $2, $3, $4)
                RETURNING id, id_public
                """,
                id_public,
                auth_uid,
                email,
                display_name,
            )
    logger.info(f"Created account {row['id_public']} for auth uid {auth_uid}")
    return dict(row)


async def get_or_create_account(auth_uid: str, email: Optional[str] = None, display_name: Optional[str] = None) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        row = await conn.fetchrow("SELECT id, id_public FROM accounts WHERE auth_uid = $1", auth_uid)
    if row:
        return dict(row)
    try:
        return await create_account(auth_uid, email, display_name)
    except asyncpg.UniqueViolationError:
        # Created by a concurrent request
        async with DatabaseConnection() as conn:
            row = await conn.fetchrow("SELECT id, id_public FROM accounts WHERE auth_uid = $1", auth_uid)
        return dict(row)


async def get_account_by_public_id(id_public: str) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        row = await conn.fetchrow("SELECT id, id_public FROM accounts WHERE id_public = $1", id_public)
    if not row:
        raise NotFound(f"Account {id_public} not found.")
    return dict(row)


async def create_animal(
    owner_id: int,
    details: Dict[str, Any],
    is_public: bool = False,
    include_remarks: bool = False,
    include_genetic_code: bool = False,
    section_privacy: Optional[Dict[str, bool]] = None,
) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            owner_public = await conn.fetchval("SELECT id_public FROM accounts WHERE id = $1", owner_id)
            if owner_public is None:
                raise NotFound(f"Account {owner_id} not found.")
            id_public = await _next_public_id(conn, "animal", ANIMAL_ID_PREFIX)
            animal_id = await conn.fetchval(
                """
                INSERT INTO animals (
                    id_public, owner_id, owner_id_public, is_public, include_remarks,
                    include_genetic_code, section_privacy, details
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb)
                RETURNING id
                """,
                id_public,
                owner_id,
                owner_public,
                is_public,
                include_remarks,
                include_genetic_code,
                json.dumps(section_privacy or {}, sort_keys=True),
                json.dumps(details, sort_keys=True, default=str),
            )
            await add_owned_animal(conn, owner_id, animal_id)
            await refresh_projection(conn, id_public, "animal_created", account_id=owner_id)
            animal = await find_animal(conn, id_public)
    logger.info(f"Created animal {id_public} for owner {owner_public}")
    return animal


async def _find_account(conn: asyncpg.Connection, account_id: int) -> Optional[asyncpg.Record]:
    return await conn.fetchrow(
        "SELECT id, id_public, show_remarks_public, show_genetic_code_public FROM accounts WHERE id = $1",
        account_id,
    )


async def find_animal(conn: asyncpg.Connection, id_public: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
    query = f"{ANIMAL_SELECT} WHERE id_public = $1"
    if for_update:
        query += " FOR UPDATE"
    row = await conn.fetchrow(query, id_public)
    return _row_to_animal(row) if row else None


async def _find_transfer(conn: asyncpg.Connection, transfer_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    query = f"{TRANSFER_SELECT} WHERE t.id = $1"
    if for_update:
        query += " FOR UPDATE OF t"
    row = await conn.fetchrow(query, transfer_id)
    return _row_to_transfer(row) if row else None


async def add_owned_animal(conn: asyncpg.Connection, account_id: int, animal_id: int) -> None:
    await conn.execute(
        """
        INSERT INTO account_animals (account_id, animal_id) VALUES ($1, $2)
        ON CONFLICT DO NOTHING
        """,
        account_id,
        animal_id,
    )


async def grant_view_only(conn: asyncpg.Connection, animal_id: int, account_id: int) -> bool:
    result = await conn.execute(
        """
        INSERT INTO animal_view_grants (animal_id, account_id) VALUES ($1, $2)
        ON CONFLICT DO NOTHING
        """,
        animal_id,
        account_id,
    )
    return result.endswith(" 1")


async def has_view_grant(animal_id_public: str, account_id: int) -> bool:
    async with DatabaseConnection() as conn:
        return bool(
            await conn.fetchval(
                """
                SELECT 1 FROM animal_view_grants g
                JOIN animals a ON a.id = g.animal_id
                WHERE a.id_public = $1 AND g.account_id = $2
                """,
                animal_id_public,
                account_id,
            )
        )


async def get_animal(animal_id_public: str) -> Optional[Dict[str, Any]]:
    async with DatabaseConnection() as conn:
        return await find_animal(conn, animal_id_public)


async def get_owner_prefs(conn: asyncpg.Connection, account_id: int) -> Dict[str, bool]:
    owner = await _find_account(conn, account_id)
    return {
        "show_remarks_public": bool(owner and owner["show_remarks_public"]),
        "show_genetic_code_public": bool(owner and owner["show_genetic_code_public"]),
    }


async def get_account(account_id: int) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        row = await conn.fetchrow(
            """
            SELECT id, id_public, auth_uid, email, display_name, breeder_name,
                   show_remarks_public, show_genetic_code_public, created_at, updated_at
            FROM accounts WHERE id = $1
            """,
            account_id,
        )
    if not row:
        raise NotFound(f"Account {account_id} not found.")
    account = dict(row)
    account["created_at"] = _iso(account["created_at"])
    account["updated_at"] = _iso(account["updated_at"])
    return account


async def update_privacy_preferences(
    account_id: int,
    show_remarks_public: Optional[bool] = None,
    show_genetic_code_public: Optional[bool] = None,
) -> Dict[str, Any]:
    """
    Change the owner-level privacy preferences and re-project every animal
    the account owns in the same transaction.
    """
    if show_remarks_public is not None or show_genetic_code_public is not None:
        async with DatabaseConnection() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE accounts SET
                        show_remarks_public = COALESCE($1, show_remarks_public),
                        show_genetic_code_public = COALESCE($2, show_genetic_code_public),
                        updated_at = NOW()
                    WHERE id = $3
                    """,
                    show_remarks_public,
                    show_genetic_code_public,
                    account_id,
                )
                if result != "UPDATE 1":
                    raise NotFound(f"Account {account_id} not found.")
                rows = await conn.fetch("SELECT id_public FROM animals WHERE owner_id = $1 ORDER BY id", account_id)
                for row in rows:
                    await refresh_projection(conn, row["id_public"], "owner_preferences_changed", account_id=account_id)
        logger.info(f"Updated privacy preferences for account {account_id} ({len(rows)} animals re-projected)")

    return await get_account(account_id)


async def revoke_view_only(id_public: str, account_id_public: str, revoked_by: str = "admin") -> bool:
    """Administrative removal of a view-only grant. Returns True if a grant was removed."""
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            animal = await find_animal(conn, id_public)
            if not animal:
                raise NotFound(f"Animal {id_public} not found.")
            account_id = await conn.fetchval("SELECT id FROM accounts WHERE id_public = $1", account_id_public)
            if account_id is None:
                raise NotFound(f"Account {account_id_public} not found.")

            result = await conn.execute(
                "DELETE FROM animal_view_grants WHERE animal_id = $1 AND account_id = $2",
                animal["id"],
                account_id,
            )
            removed = result != "DELETE 0"
            if removed:
                await emit_event(
                    conn,
                    EventType.VIEW_ONLY_REVOKED,
                    id_public,
                    ViewOnlyPayload(account_id=account_id),
                    metadata={"revoked_by": revoked_by},
                )

    if removed:
        logger.info(f"Revoked view-only access to {id_public} for {account_id_public}")
    else:
        logger.warning(f"No view-only grant to revoke on {id_public} for {account_id_public}")
    return removed


# =============================================================================
# PUBLIC PROJECTION
# =============================================================================

async def refresh_projection(
    conn: asyncpg.Connection,
    animal_id_public: str,
    reason: str,
    transfer_id: Optional[int] = None,
    account_id: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Re-project one animal on the caller's connection (inside its transaction)."""
    animal = await find_animal(conn, animal_id_public)
    document = None
    if animal is not None:
        document = project(animal, await get_owner_prefs(conn, animal["owner_id"]))

    if document is None:
        result = await conn.execute("DELETE FROM public_animals WHERE id_public = $1", animal_id_public)
        if result != "DELETE 0":
            await emit_event(
                conn,
                EventType.PROJECTION_REMOVED,
                animal_id_public,
                ProjectionPayload(reasons=[reason]),
                transfer_id=transfer_id,
                account_id=account_id,
            )
            logger.info(f"Removed public projection for {animal_id_public} ({reason})")
        return None

    digest = content_hash(document)
    result = await conn.execute(
        """
        INSERT INTO public_animals (id_public, owner_id_public, document, content_hash)
        VALUES ($1, $2, $3::jsonb, $4)
        ON CONFLICT (id_public) DO UPDATE SET
            owner_id_public = excluded.owner_id_public,
            document = excluded.document,
            content_hash = excluded.content_hash,
            projected_at = NOW()
        WHERE public_animals.content_hash IS DISTINCT FROM excluded.content_hash
        """,
        animal_id_public,
        document["ownerId_public"],
        canonical_json(document),
        digest,
    )
    if result.endswith(" 1"):
        await emit_event(
            conn,
            EventType.PROJECTION_REFRESHED,
            animal_id_public,
            ProjectionPayload(owner_id_public=document["ownerId_public"], content_hash=digest, reasons=[reason]),
            transfer_id=transfer_id,
            account_id=account_id,
        )
        logger.info(f"Refreshed public projection for {animal_id_public} ({reason})")
    return document


async def get_public_animal(id_public: str) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        row = await conn.fetchrow("SELECT document FROM public_animals WHERE id_public = $1", id_public)
    if not row:
        raise NotFound(f"Public animal {id_public} not found.")
    return _json_field(row["document"])


async def list_public_animals_for_owner(owner_id_public: str) -> List[Dict[str, Any]]:
    async with DatabaseConnection() as conn:
        rows = await conn.fetch(
            "SELECT document FROM public_animals WHERE owner_id_public = $1 ORDER BY id_public ASC",
            owner_id_public,
        )
    return [_json_field(row["document"]) for row in rows]


# =============================================================================
# NOTIFICATIONS (best-effort, after commit)
# =============================================================================

async def _notify(account_id: int, type: str, message: str, metadata: Dict[str, Any], status: Optional[str]) -> None:
    try:
        async with DatabaseConnection() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (account_id, type, message, status, transfer_id, animal_id_public, metadata)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                account_id,
                type,
                message,
                status,
                metadata.get("transferId"),
                metadata.get("animalId"),
                json.dumps(metadata, default=str, sort_keys=True),
            )
        logger.info(f"Notification {type} sent to account {account_id}")
    except Exception as e:
        logger.error(f"Failed to emit {type} notification to account {account_id}: {e}", exc_info=True)


async def _mirror_status(transfer_id: int, status: str) -> None:
    try:
        async with DatabaseConnection() as conn:
            await conn.execute(
                "UPDATE notifications SET status = $1 WHERE transfer_id = $2 AND status IS NOT NULL",
                status,
                transfer_id,
            )
    except Exception as e:
        logger.error(f"Failed to mirror status {status} for transfer {transfer_id}: {e}", exc_info=True)


def _animal_name(animal: Optional[Dict[str, Any]], fallback: str) -> str:
    if animal and animal["details"].get("name"):
        return animal["details"]["name"]
    return fallback


# =============================================================================
# TRANSITIONS
# =============================================================================

async def _mark_responded(conn: asyncpg.Connection, transfer_id: int, status: str) -> None:
    result = await conn.execute(
        """
        UPDATE transfers SET status = $1, responded_at = NOW(), updated_at = NOW()
        WHERE id = $2 AND status = 'pending'
        """,
        status,
        transfer_id,
    )
    if result != "UPDATE 1":
        raise Conflict("Transfer was responded to concurrently.")


async def _record_response(conn: asyncpg.Connection, transfer: Dict[str, Any], new_status: str, acting_user_id: int) -> None:
    event_type = EventType.TRANSFER_ACCEPTED if new_status == rules.ACCEPTED else EventType.TRANSFER_DECLINED
    await emit_event(
        conn,
        event_type,
        transfer["animal_id_public"],
        TransferRespondedPayload(previous_status=rules.PENDING, new_status=new_status, responded_by=acting_user_id),
        transfer_id=transfer["id"],
        account_id=acting_user_id,
    )


async def _apply_view_only_grant(conn: asyncpg.Connection, transfer: Dict[str, Any], animal: Dict[str, Any], account_id: int) -> None:
    added = await grant_view_only(conn, animal["id"], account_id)
    await emit_event(
        conn,
        EventType.VIEW_ONLY_GRANTED,
        animal["id_public"],
        ViewOnlyPayload(account_id=account_id, already_present=not added),
        transfer_id=transfer["id"],
        account_id=transfer["to_user_id"],
    )


async def _apply_ownership_change(conn: asyncpg.Connection, transfer: Dict[str, Any], animal: Dict[str, Any]) -> None:
    new_owner = await _find_account(conn, transfer["to_user_id"])
    if new_owner is None:
        raise NotFound("Recipient account not found.")

    change = rules.ownership_change(animal, transfer, new_owner["id_public"])
    previous_owner_id = change["previous_owner_id"]

    result = await conn.execute(
        """
        UPDATE animals SET
            owner_id = $1, owner_id_public = $2, original_owner_id = $3,
            sold_status = $4, updated_at = NOW()
        WHERE id = $5 AND owner_id = $6
        """,
        change["owner_id"],
        change["owner_id_public"],
        change["original_owner_id"],
        change["sold_status"],
        animal["id"],
        previous_owner_id,
    )
    if result != "UPDATE 1":
        raise Conflict(f"Ownership of {animal['id_public']} changed concurrently.")

    await _apply_view_only_grant(conn, transfer, animal, previous_owner_id)

    await conn.execute(
        "DELETE FROM account_animals WHERE account_id = $1 AND animal_id = $2",
        previous_owner_id,
        animal["id"],
    )
    await add_owned_animal(conn, change["owner_id"], animal["id"])

    await emit_event(
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


async def propose(
    from_user_id: int,
    to_user_id: int,
    animal_id_public: str,
    transfer_type: str,
    offer_view_only: bool = False,
    transaction_id: Optional[str] = None,
) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            if await _find_account(conn, to_user_id) is None:
                raise NotFound("Recipient account not found.")

            animal = await find_animal(conn, animal_id_public, for_update=True)
            rules.check_proposal(animal, from_user_id, to_user_id, transfer_type, offer_view_only)

            existing = await conn.fetchval(
                """
                SELECT id FROM transfers
                WHERE animal_id_public = $1 AND to_user_id = $2 AND status = 'pending'
                """,
                animal_id_public,
                to_user_id,
            )
            if existing:
                raise PreconditionFailed(
                    f"Transfer {existing} for this animal is already pending for this recipient."
                )

            try:
                transfer_id = await conn.fetchval(
                    """
                    INSERT INTO transfers (
                        from_user_id, to_user_id, animal_id_public, transfer_type,
                        offer_view_only, status, transaction_id, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, 'pending', $6, NOW())
                    RETURNING id
                    """,
                    from_user_id,
                    to_user_id,
                    animal_id_public,
                    transfer_type,
                    bool(offer_view_only),
                    transaction_id,
                )
            except asyncpg.UniqueViolationError:
                raise Conflict("A pending transfer for this animal and recipient was created concurrently.")

            await emit_event(
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
            transfer = await _find_transfer(conn, transfer_id)

    logger.info(f"Transfer {transfer_id} proposed: {transfer_type} of {animal_id_public}")

    name = _animal_name(animal, animal_id_public)
    note = rules.notification_for_proposal(transfer, name)
    await _notify(
        to_user_id,
        note["type"],
        note["message"],
        {
            "transferId": transfer_id,
            "animalId": animal_id_public,
            "animalName": name,
            "fromUserId": transfer["from_user_public"],
        },
        rules.PENDING,
    )
    return transfer


async def accept(transfer_id: int, acting_user_id: int) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            transfer = await _find_transfer(conn, transfer_id, for_update=True)
            rules.check_response(transfer, acting_user_id)

            await _mark_responded(conn, transfer_id, rules.ACCEPTED)

            animal = await find_animal(conn, transfer["animal_id_public"], for_update=True)
            rules.check_animal_for_acceptance(animal, transfer)

            if transfer["offer_view_only"]:
                await _apply_view_only_grant(conn, transfer, animal, transfer["to_user_id"])
            else:
                await _apply_ownership_change(conn, transfer, animal)

            await refresh_projection(
                conn, transfer["animal_id_public"], "transfer_accepted",
                transfer_id=transfer_id, account_id=acting_user_id,
            )
            await _record_response(conn, transfer, rules.ACCEPTED, acting_user_id)

            transfer = await _find_transfer(conn, transfer_id)
            animal = await find_animal(conn, transfer["animal_id_public"])

    name = _animal_name(animal, transfer["animal_id_public"])
    logger.info(f"Transfer {transfer_id} accepted; {transfer['animal_id_public']} owner is now {animal['owner_id_public']}")

    metadata = {"transferId": transfer_id, "animalId": transfer["animal_id_public"], "animalName": name}
    if transfer["offer_view_only"]:
        await _notify(
            transfer["from_user_id"],
            "view_only_accepted",
            f"View-only access to {name} ({transfer['animal_id_public']}) has been accepted.",
            metadata,
            transfer["status"],
        )
    else:
        await _notify(
            transfer["from_user_id"],
            "transfer_accepted",
            f"Your animal transfer for {name} ({transfer['animal_id_public']}) has been accepted.",
            metadata,
            transfer["status"],
        )
    await _mirror_status(transfer_id, transfer["status"])

    return {
        "transfer": transfer,
        "animal": {"id_public": animal["id_public"], "name": animal["details"].get("name"), "ownerId_public": animal["owner_id_public"]},
    }


async def decline(transfer_id: int, acting_user_id: int) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            transfer = await _find_transfer(conn, transfer_id, for_update=True)
            rules.check_response(transfer, acting_user_id)

            await _mark_responded(conn, transfer_id, rules.DECLINED)
            await _record_response(conn, transfer, rules.DECLINED, acting_user_id)

            transfer = await _find_transfer(conn, transfer_id)
            animal = await find_animal(conn, transfer["animal_id_public"])

    name = _animal_name(animal, transfer["animal_id_public"])
    logger.info(f"Transfer {transfer_id} declined")

    await _notify(
        transfer["from_user_id"],
        "transfer_declined",
        f"Your animal transfer for {name} has been declined.",
        {"transferId": transfer_id, "animalId": transfer["animal_id_public"], "animalName": name},
        transfer["status"],
    )
    await _mirror_status(transfer_id, transfer["status"])
    return transfer


async def accept_view_only(transfer_id: int, acting_user_id: int) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        async with conn.transaction():
            transfer = await _find_transfer(conn, transfer_id, for_update=True)
            animal = None
            actor_has_grant = False
            if transfer:
                animal = await find_animal(conn, transfer["animal_id_public"], for_update=True)
                if animal:
                    actor_has_grant = bool(
                        await conn.fetchval(
                            "SELECT 1 FROM animal_view_grants WHERE animal_id = $1 AND account_id = $2",
                            animal["id"],
                            acting_user_id,
                        )
                    )

            decision = rules.check_view_only_response(transfer, acting_user_id, actor_has_grant)

            if decision == rules.GRANT:
                await _mark_responded(conn, transfer_id, rules.ACCEPTED)
                rules.check_animal_for_acceptance(animal, transfer)
                await _apply_view_only_grant(conn, transfer, animal, acting_user_id)
                await refresh_projection(
                    conn, transfer["animal_id_public"], "view_only_accepted",
                    transfer_id=transfer_id, account_id=acting_user_id,
                )
                await _record_response(conn, transfer, rules.ACCEPTED, acting_user_id)
                transfer = await _find_transfer(conn, transfer_id)

    already_granted = decision == rules.ALREADY_GRANTED
    name = _animal_name(animal, transfer["animal_id_public"])

    if not already_granted:
        logger.info(f"Transfer {transfer_id}: view-only access granted")
        await _notify(
            transfer["from_user_id"],
            "view_only_accepted",
            f"Seller has accepted view-only access to {name} ({transfer['animal_id_public']}).",
            {"transferId": transfer_id, "animalId": transfer["animal_id_public"], "animalName": name},
            transfer["status"],
        )
        await _mirror_status(transfer_id, transfer["status"])

    return {
        "transfer": transfer,
        "animal": {"id_public": transfer["animal_id_public"], "name": name},
        "already_granted": already_granted,
    }


async def list_transfers_for_account(account_id: int) -> List[Dict[str, Any]]:
    async with DatabaseConnection() as conn:
        rows = await conn.fetch(
            f"""
            {TRANSFER_SELECT}
            WHERE t.from_user_id = $1 OR t.to_user_id = $1
            ORDER BY t.created_at DESC, t.id DESC
            """,
            account_id,
        )
    return [_row_to_transfer(row) for row in rows]


async def get_transfer_for_party(account_id: int, transfer_id: int) -> Dict[str, Any]:
    async with DatabaseConnection() as conn:
        transfer = await _find_transfer(conn, transfer_id)
    if transfer is None or account_id not in (transfer["from_user_id"], transfer["to_user_id"]):
        raise NotFound("Transfer not found.")
    return transfer


async def get_transfer_history(account_id: int, transfer_id: int) -> List[Dict[str, Any]]:
    await get_transfer_for_party(account_id, transfer_id)
    async with DatabaseConnection() as conn:
        rows = await conn.fetch(
            """
            SELECT id, event_id, transfer_id, animal_id_public, event_type, event_version,
                   payload, metadata, account_id, event_time
            FROM transfer_events
            WHERE transfer_id = $1
            ORDER BY id ASC
            """,
            transfer_id,
        )
    return [
        {
            "id": row["id"],
            "event_id": str(row["event_id"]),
            "transfer_id": row["transfer_id"],
            "animal_id_public": row["animal_id_public"],
            "event_type": row["event_type"],
            "event_version": row["event_version"],
            "payload": _json_field(row["payload"]),
            "metadata": _json_field(row["metadata"]),
            "account_id": row["account_id"],
            "event_time": _iso(row["event_time"]),
        }
        for row in rows
    ]
