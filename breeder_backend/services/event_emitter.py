"""
Event Emitter Service

Writes transfer domain events to the event log.

Key principles:
- Events are INSERT-only (immutable)
- Each event has a unique UUID for idempotency
- Events are written on the caller's connection, inside the caller's
  transaction, so a rolled-back change leaves no event behind
"""

import uuid
import json
import logging
import sqlite3
from dataclasses import asdict
from typing import Dict, Optional, Any, List
from ..db import read_connection, utc_now
from ..events.event_types import EventType, EventPayload, ALL_EVENT_TYPES

logger = logging.getLogger(__name__)

KNOWN_EVENT_TYPES = {e.value for e in ALL_EVENT_TYPES}


def emit_event(
    conn: sqlite3.Connection,
    event_type: EventType | str,
    animal_id_public: str,
    payload: EventPayload | Dict[str, Any],
    transfer_id: Optional[int] = None,
    account_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    event_version: int = 1,
) -> int:
    """
    Append an immutable domain event.

    Args:
        conn: Connection holding the current transaction
        event_type: The type of domain event (from EventType enum or string)
        animal_id_public: The animal this event relates to
        payload: The event data (dataclass payload or plain dict)
        transfer_id: The transfer this event relates to, if any
        account_id: The account that triggered the event
        metadata: Optional metadata (source, reason, etc.)
        event_version: Schema version for the event payload

    Returns:
        The ID of the created event record
    """
    if not animal_id_public:
        raise ValueError("animal_id_public is required for all events")

    event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
    if event_type_str not in KNOWN_EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type_str}")
    if isinstance(payload, EventPayload):
        payload = asdict(payload)

    event_id = str(uuid.uuid4())
    now = utc_now()

    default_metadata = {
        "source": "application",
        "emitted_at": now,
    }
    if metadata:
        default_metadata.update(metadata)

    cursor = conn.execute(
        """
        INSERT INTO transfer_events
        (event_id, transfer_id, animal_id_public, event_type, event_version,
         payload, metadata, account_id, event_time)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event_id,
            transfer_id,
            animal_id_public,
            event_type_str,
            event_version,
            json.dumps(payload, default=str, sort_keys=True),
            json.dumps(default_metadata, default=str, sort_keys=True),
            account_id,
            now,
        ),
    )
    logger.debug(f"Emitted event {event_type_str} (event_id={event_id}) for animal {animal_id_public}")
    return cursor.lastrowid


def _row_to_event(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "event_id": row["event_id"],
        "transfer_id": row["transfer_id"],
        "animal_id_public": row["animal_id_public"],
        "event_type": row["event_type"],
        "event_version": row["event_version"],
        "payload": json.loads(row["payload"]) if row["payload"] else {},
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
        "account_id": row["account_id"],
        "event_time": row["event_time"],
    }


def get_events_for_transfer(transfer_id: int) -> List[Dict[str, Any]]:
    """All events for a transfer in the order they happened."""
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT id, event_id, transfer_id, animal_id_public, event_type, event_version,
                   payload, metadata, account_id, event_time
            FROM transfer_events
            WHERE transfer_id = ?
            ORDER BY id ASC
            """,
            (transfer_id,),
        ).fetchall()
    return [_row_to_event(row) for row in rows]


def get_events_for_animal(animal_id_public: str) -> List[Dict[str, Any]]:
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT id, event_id, transfer_id, animal_id_public, event_type, event_version,
                   payload, metadata, account_id, event_time
            FROM transfer_events
            WHERE animal_id_public = ?
            ORDER BY id ASC
            """,
            (animal_id_public,),
        ).fetchall()
    return [_row_to_event(row) for row in rows]
