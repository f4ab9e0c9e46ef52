"""
Notification Sink

Best-effort side channel telling the other party about transfer changes.
Emission happens after the transfer transaction has committed, on its own
connection, and never raises: a failed notification is logged and the
transfer operation still succeeds.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..config import NOTIFICATIONS_PAGE_SIZE
from ..db import transaction, read_connection, utc_now
from ..errors import NotFound

logger = logging.getLogger(__name__)


class NotificationSink:
    """Writes notifications to the notifications table."""

    def emit(
        self,
        account_id: int,
        type: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        status: Optional[str] = None,
    ) -> Optional[int]:
        """
        Fire-and-forget. Returns the notification id, or None if it could
        not be stored.
        """
        metadata = metadata or {}
        try:
            with transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO notifications
                    (account_id, type, message, status, transfer_id, animal_id_public, metadata, read, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        account_id,
                        type,
                        message,
                        status,
                        metadata.get("transferId"),
                        metadata.get("animalId"),
                        json.dumps(metadata, default=str, sort_keys=True),
                        utc_now(),
                    ),
                )
            logger.info(f"Notification {type} sent to account {account_id}")
            return cursor.lastrowid
        except Exception as e:
            logger.error(f"Failed to emit {type} notification to account {account_id}: {e}", exc_info=True)
            return None

    def mirror_transfer_status(self, transfer_id: int, status: str) -> None:
        """Keep the status of notifications about a transfer in line with the transfer."""
        try:
            with transaction() as conn:
                conn.execute(
                    "UPDATE notifications SET status = ? WHERE transfer_id = ? AND status IS NOT NULL",
                    (status, transfer_id),
                )
        except Exception as e:
            logger.error(f"Failed to mirror status {status} for transfer {transfer_id}: {e}", exc_info=True)


_sink = NotificationSink()


def get_sink() -> NotificationSink:
    return _sink


def set_sink(sink: NotificationSink) -> None:
    """Swap the sink (e.g. a failing or recording sink in tests)."""
    global _sink
    _sink = sink


def _row_to_notification(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "account_id": row["account_id"],
        "type": row["type"],
        "message": row["message"],
        "status": row["status"],
        "transfer_id": row["transfer_id"],
        "animal_id_public": row["animal_id_public"],
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
        "read": bool(row["read"]),
        "created_at": row["created_at"],
    }


def list_notifications(account_id: int, limit: int = NOTIFICATIONS_PAGE_SIZE) -> List[Dict[str, Any]]:
    with read_connection() as conn:
        rows = conn.execute(
            """
            SELECT id, account_id, type, message, status, transfer_id, animal_id_public,
                   metadata, read, created_at
            FROM notifications
            WHERE account_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (account_id, limit),
        ).fetchall()
    return [_row_to_notification(row) for row in rows]


def unread_count(account_id: int) -> int:
    with read_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM notifications WHERE account_id = ? AND read = 0",
            (account_id,),
        ).fetchone()[0]


def mark_read(account_id: int, notification_id: int) -> Dict[str, Any]:
    with transaction() as conn:
        cur = conn.execute(
            "UPDATE notifications SET read = 1 WHERE id = ? AND account_id = ?",
            (notification_id, account_id),
        )
        if cur.rowcount == 0:
            raise NotFound("Notification not found.")
        row = conn.execute(
            """
            SELECT id, account_id, type, message, status, transfer_id, animal_id_public,
                   metadata, read, created_at
            FROM notifications WHERE id = ?
            """,
            (notification_id,),
        ).fetchone()
    return _row_to_notification(row)


def delete_notification(account_id: int, notification_id: int) -> None:
    with transaction() as conn:
        cur = conn.execute(
            "DELETE FROM notifications WHERE id = ? AND account_id = ?",
            (notification_id, account_id),
        )
        if cur.rowcount == 0:
            raise NotFound("Notification not found.")
