"""SQLite-backed state store for load assignments, receiver links and delivery confirmations."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence

from app.core.config import get_settings
from app.core.errors import DuplicateLinkError, RecordExistsError
from app.core.logging import logger
from app.models.delivery import (
    ConfirmationEvent,
    ConfirmationStatus,
    DeliveryConfirmation,
    LoadAssignment,
    ReceiverLink,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO text so stored timestamps compare lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


_ASSIGNMENT_COLUMNS = (
    "id", "load_id", "carrier_id", "shipper_id", "status",
    "destination_lat", "destination_lng", "destination_address",
    "carrier_notes", "shipper_notes", "responded_at", "picked_up_at", "delivered_at",
    "version", "created_at", "updated_at",
)

_LINK_COLUMNS = (
    "id", "load_id", "confirmation_code", "shipper_id", "receiver_id",
    "claimed_at", "expires_at", "created_at",
)

_CONFIRMATION_COLUMNS = (
    "id", "load_assignment_id", "load_id", "carrier_id", "shipper_id",
    "carrier_confirmed_at", "carrier_latitude", "carrier_longitude",
    "carrier_distance_from_destination", "location_source",
    "delivery_photo_ref", "signature_ref", "carrier_notes",
    "receiver_id", "receiver_confirmed_at", "receiver_notes",
    "shipper_confirmed_at", "shipper_notes",
    "disputed_by", "disputed_at",
    "status", "confirmation_deadline", "escalated_to_admin_at",
    "version", "created_at", "updated_at",
)

# Fields a conditional confirmation update may touch.
_MUTABLE_CONFIRMATION_FIELDS = frozenset(
    {
        "receiver_id", "receiver_confirmed_at", "receiver_notes",
        "shipper_confirmed_at", "shipper_notes",
        "disputed_by", "disputed_at",
        "status", "escalated_to_admin_at",
    }
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    if hasattr(value, "value"):
        return value.value
    return value


class EventDraft(NamedTuple):
    """Timeline entry written in the same transaction as the change it describes."""

    event_type: str
    actor: str
    details: Optional[Dict[str, Any]] = None


class ConfirmationWrite(NamedTuple):
    record: DeliveryConfirmation
    event: Optional[ConfirmationEvent]


class DeliveryStateStore:
    """Durable state for the delivery confirmation workflow.

    Every write goes through ``_transaction`` which takes the process-wide lock
    for this database file and opens a ``BEGIN IMMEDIATE`` transaction, so
    compare-and-set updates are atomic against other threads and processes.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        resolved = (db_path or settings.delivery_db_path or "").strip()
        if not resolved:
            raise ValueError("delivery_db_path is not configured")

        self._db_path = Path(resolved)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS load_assignments (
                    id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    carrier_id TEXT NOT NULL,
                    shipper_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    destination_lat REAL,
                    destination_lng REAL,
                    destination_address TEXT,
                    carrier_notes TEXT,
                    shipper_notes TEXT,
                    responded_at TEXT,
                    picked_up_at TEXT,
                    delivered_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (load_id, carrier_id)
                );

                CREATE INDEX IF NOT EXISTS idx_assignments_load ON load_assignments (load_id);

                CREATE TABLE IF NOT EXISTS receiver_links (
                    id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL UNIQUE,
                    confirmation_code TEXT NOT NULL UNIQUE,
                    shipper_id TEXT NOT NULL,
                    receiver_id TEXT,
                    claimed_at TEXT,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_links_receiver ON receiver_links (receiver_id);

                CREATE TABLE IF NOT EXISTS delivery_confirmations (
                    id TEXT PRIMARY KEY,
                    load_assignment_id TEXT NOT NULL UNIQUE
                        REFERENCES load_assignments (id),
                    load_id TEXT NOT NULL,
                    carrier_id TEXT NOT NULL,
                    shipper_id TEXT NOT NULL,
                    carrier_confirmed_at TEXT,
                    carrier_latitude REAL,
                    carrier_longitude REAL,
                    carrier_distance_from_destination REAL,
                    location_source TEXT,
                    delivery_photo_ref TEXT,
                    signature_ref TEXT,
                    carrier_notes TEXT,
                    receiver_id TEXT,
                    receiver_confirmed_at TEXT,
                    receiver_notes TEXT,
                    shipper_confirmed_at TEXT,
                    shipper_notes TEXT,
                    disputed_by TEXT,
                    disputed_at TEXT,
                    status TEXT NOT NULL,
                    confirmation_deadline TEXT,
                    escalated_to_admin_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_confirmations_status_deadline
                    ON delivery_confirmations (status, confirmation_deadline);

                CREATE TABLE IF NOT EXISTS delivery_events (
                    event_id TEXT PRIMARY KEY,
                    load_assignment_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    status TEXT,
                    version INTEGER,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_assignment_ts
                    ON delivery_events (load_assignment_id, timestamp DESC);
                """
            )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _next_sequence(self, conn: sqlite3.Connection, key: str) -> int:
        row = conn.execute(
            "SELECT next_value FROM sequences WHERE key_name = ?",
            (key,),
        ).fetchone()
        if row is None:
            current = 1
            conn.execute(
                "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                (key, current + 1),
            )
        else:
            current = int(row["next_value"])
            conn.execute(
                "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                (current + 1, key),
            )
        return current

    def generate_id(self, prefix: str) -> str:
        with self._transaction() as conn:
            return f"{prefix}-{self._next_sequence(conn, prefix.lower()):06d}"

    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, columns: Sequence[str], row: Dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(_to_db(row.get(column)) for column in columns),
        )

    # ------------------------------------------------------------------ assignments

    def insert_assignment(self, assignment: LoadAssignment, event: Optional[EventDraft] = None) -> LoadAssignment:
        row = assignment.model_dump()
        try:
            with self._transaction() as conn:
                self._insert(conn, "load_assignments", _ASSIGNMENT_COLUMNS, row)
                if event is not None:
                    self._insert_event(conn, assignment.id, event, version=assignment.version)
        except sqlite3.IntegrityError as exc:
            raise RecordExistsError(
                f"Carrier {assignment.carrier_id} has already requested load {assignment.load_id}"
            ) from exc
        return assignment

    def get_assignment(self, assignment_id: str) -> Optional[LoadAssignment]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM load_assignments WHERE id = ?",
                (assignment_id,),
            ).fetchone()
        if not row:
            return None
        return LoadAssignment(**dict(row))

    def list_assignments_for_load(self, load_id: str) -> List[LoadAssignment]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM load_assignments WHERE load_id = ? ORDER BY created_at DESC",
                (load_id,),
            ).fetchall()
        return [LoadAssignment(**dict(row)) for row in rows]

    def update_assignment_if_version(
        self,
        assignment: LoadAssignment,
        expected_version: int,
        event: Optional[EventDraft] = None,
    ) -> bool:
        """Write the assignment only if the stored version still matches."""
        row = assignment.model_dump()
        columns = [column for column in _ASSIGNMENT_COLUMNS if column not in {"id", "created_at"}]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE load_assignments SET {assignments} WHERE id = ? AND version = ?",
                (*[_to_db(row[column]) for column in columns], assignment.id, expected_version),
            )
            if cursor.rowcount != 1:
                return False
            if event is not None:
                self._insert_event(conn, assignment.id, event, version=assignment.version)
            return True

    # ------------------------------------------------------------------ receiver links

    def insert_link(self, link: ReceiverLink) -> bool:
        """Persist a new link. Returns False when the code collides with an existing one."""
        row = link.model_dump()
        try:
            with self._transaction() as conn:
                existing = conn.execute(
                    "SELECT id FROM receiver_links WHERE load_id = ?",
                    (link.load_id,),
                ).fetchone()
                if existing:
                    raise DuplicateLinkError(f"A receiver link already exists for load {link.load_id}")
                self._insert(conn, "receiver_links", _LINK_COLUMNS, row)
        except sqlite3.IntegrityError:
            logger.warning("Confirmation code collision", load_id=link.load_id)
            return False
        return True

    def get_link_by_code(self, code: str) -> Optional[ReceiverLink]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM receiver_links WHERE confirmation_code = ?",
                (code,),
            ).fetchone()
        return ReceiverLink(**dict(row)) if row else None

    def get_link_by_load(self, load_id: str) -> Optional[ReceiverLink]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM receiver_links WHERE load_id = ?",
                (load_id,),
            ).fetchone()
        return ReceiverLink(**dict(row)) if row else None

    def list_links_for_receiver(self, receiver_id: str) -> List[ReceiverLink]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM receiver_links WHERE receiver_id = ? ORDER BY claimed_at DESC",
                (receiver_id,),
            ).fetchall()
        return [ReceiverLink(**dict(row)) for row in rows]

    def claim_link_if_unclaimed(self, link_id: str, receiver_id: str, claimed_at: datetime) -> bool:
        """Set the receiver only while no receiver is recorded yet."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE receiver_links
                SET receiver_id = ?, claimed_at = ?
                WHERE id = ? AND receiver_id IS NULL
                """,
                (receiver_id, _iso(claimed_at), link_id),
            )
            return cursor.rowcount == 1

    # ------------------------------------------------------------------ confirmations

    def insert_confirmation(
        self,
        confirmation: DeliveryConfirmation,
        event: Optional[EventDraft] = None,
    ) -> Optional[ConfirmationEvent]:
        """Create the record, plus its timeline entry when ``event`` is given."""
        row = confirmation.model_dump()
        try:
            with self._transaction() as conn:
                self._insert(conn, "delivery_confirmations", _CONFIRMATION_COLUMNS, row)
                if event is None:
                    return None
                return self._insert_event(
                    conn,
                    confirmation.load_assignment_id,
                    event,
                    status=confirmation.status,
                    version=confirmation.version,
                )
        except sqlite3.IntegrityError as exc:
            raise RecordExistsError(
                f"Drop-off was already recorded for assignment {confirmation.load_assignment_id}"
            ) from exc

    def get_confirmation(self, assignment_id: str) -> Optional[DeliveryConfirmation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM delivery_confirmations WHERE load_assignment_id = ?",
                (assignment_id,),
            ).fetchone()
        return DeliveryConfirmation(**dict(row)) if row else None

    def update_confirmation_if(
        self,
        assignment_id: str,
        *,
        changes: Dict[str, Any],
        statuses: Iterable[ConfirmationStatus],
        null_fields: Sequence[str] = (),
        deadline_before: Optional[datetime] = None,
        expected_version: Optional[int] = None,
        derive: Callable[[DeliveryConfirmation], ConfirmationStatus],
        now: Optional[datetime] = None,
        event: Optional[EventDraft] = None,
    ) -> Optional[ConfirmationWrite]:
        """Apply ``changes`` only while the guard still holds, then re-derive status.

        The guard is: current status in ``statuses``, every field in
        ``null_fields`` still NULL, and (optionally) the deadline already past.
        The status recomputation reads the post-write row inside the same
        transaction, and ``event`` is appended to the timeline there too, so
        the change and its timeline entry commit or roll back together.
        Returns None when the guard did not hold.
        """
        unknown = set(changes) - _MUTABLE_CONFIRMATION_FIELDS
        unknown |= set(null_fields) - _MUTABLE_CONFIRMATION_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        status_values = [status.value for status in statuses]
        if not status_values:
            return None
        stamp = now or _utc_now()

        set_clause = ", ".join(f"{field} = ?" for field in changes)
        set_clause = f"{set_clause}, " if set_clause else ""
        where = [
            "load_assignment_id = ?",
            f"status IN ({', '.join('?' for _ in status_values)})",
        ]
        params: List[Any] = [_to_db(value) for value in changes.values()]
        params.extend([_iso(stamp), assignment_id, *status_values])
        for field in null_fields:
            where.append(f"{field} IS NULL")
        if deadline_before is not None:
            where.append("confirmation_deadline IS NOT NULL AND confirmation_deadline < ?")
            params.append(_iso(deadline_before))
        if expected_version is not None:
            where.append("version = ?")
            params.append(expected_version)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE delivery_confirmations SET {set_clause}version = version + 1, updated_at = ? "
                f"WHERE {' AND '.join(where)}",
                tuple(params),
            )
            if cursor.rowcount != 1:
                return None

            row = conn.execute(
                "SELECT * FROM delivery_confirmations WHERE load_assignment_id = ?",
                (assignment_id,),
            ).fetchone()
            record = DeliveryConfirmation(**dict(row))
            derived = derive(record)
            if derived != record.status:
                conn.execute(
                    "UPDATE delivery_confirmations SET status = ? WHERE load_assignment_id = ?",
                    (derived.value, assignment_id),
                )
                record = record.model_copy(update={"status": derived})
            recorded = None
            if event is not None:
                recorded = self._insert_event(
                    conn, assignment_id, event, status=record.status, version=record.version
                )
            return ConfirmationWrite(record=record, event=recorded)

    def list_overdue_confirmations(self, now: datetime, statuses: Iterable[ConfirmationStatus]) -> List[str]:
        status_values = [status.value for status in statuses]
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT load_assignment_id FROM delivery_confirmations
                WHERE status IN ({', '.join('?' for _ in status_values)})
                  AND confirmation_deadline IS NOT NULL
                  AND confirmation_deadline < ?
                ORDER BY confirmation_deadline
                """,
                (*status_values, _iso(now)),
            ).fetchall()
        return [row["load_assignment_id"] for row in rows]

    # ------------------------------------------------------------------ timeline

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        assignment_id: str,
        draft: EventDraft,
        status: Optional[ConfirmationStatus] = None,
        version: Optional[int] = None,
    ) -> ConfirmationEvent:
        """Append a timeline entry on the caller's open transaction."""
        event = ConfirmationEvent(
            event_id=f"EVT-{self._next_sequence(conn, 'event'):06d}",
            load_assignment_id=assignment_id,
            event_type=draft.event_type,
            actor=draft.actor,
            status=status,
            version=version,
            details=draft.details or {},
        )
        conn.execute(
            """
            INSERT INTO delivery_events
                (event_id, load_assignment_id, event_type, actor, status, version, timestamp, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                assignment_id,
                event.event_type,
                event.actor,
                _to_db(status),
                version,
                _iso(event.timestamp),
                _json_dumps(event.details),
            ),
        )
        conn.execute(
            """
            DELETE FROM delivery_events
            WHERE load_assignment_id = ?
              AND event_id NOT IN (
                SELECT event_id FROM delivery_events
                WHERE load_assignment_id = ?
                ORDER BY timestamp DESC
                LIMIT 500
              )
            """,
            (assignment_id, assignment_id),
        )
        return event

    def list_events(self, assignment_id: str, limit: int = 100) -> List[ConfirmationEvent]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT event_id, load_assignment_id, event_type, actor, status, version, timestamp, details_json
                FROM delivery_events
                WHERE load_assignment_id = ?
                ORDER BY timestamp DESC, event_id DESC
                LIMIT ?
                """,
                (assignment_id, limit),
            ).fetchall()
        return [
            ConfirmationEvent(
                event_id=row["event_id"],
                load_assignment_id=row["load_assignment_id"],
                event_type=row["event_type"],
                actor=row["actor"],
                status=row["status"],
                version=row["version"],
                timestamp=row["timestamp"],
                details=json.loads(row["details_json"]),
            )
            for row in rows
        ]


delivery_state_store = DeliveryStateStore()
