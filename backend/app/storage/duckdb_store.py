"""DuckDB-backed document store for rooms and messages.

Rooms and messages are stored as JSON documents, one row each. DuckDB is an
embedded database, so every blocking call runs in a worker thread behind a
single lock; the event loop never waits on disk I/O.

Database Schema:
    rooms table:
        - id: Room identifier (primary key)
        - doc: Room document (JSON)
        - last_sequence: Latest persisted sequence number
    room_participants table:
        - room_id, user_id: one row per member, for per-user lookups
    messages table:
        - room_id, sequence: composite primary key
        - doc: Message document (JSON)
        - created_at: Unix timestamp

Usage:
    store = DuckDBMessageStore(db_path="socialite.duckdb")
    await store.append_message("room-1", message)
"""
import asyncio
import logging
import threading
from typing import List, Optional

import duckdb

from app.chat.schemas import Message, Room

from .base import MessageStore, StoreError

logger = logging.getLogger(__name__)


class DuckDBMessageStore(MessageStore):
    """MessageStore persisted in a DuckDB database file.

    The connection is opened lazily on first use, so constructing the store
    has no filesystem side effects.

    Attributes:
        _db_path: Path to the DuckDB database file (or ":memory:").
    """

    _db_path: str = "socialite.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get the DuckDB connection, creating it and the schema if needed."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
            self._initialize_db(self._connection)
            logger.info(f"Opened message store at {self._db_path}")
        return self._connection

    @staticmethod
    def _initialize_db(conn: duckdb.DuckDBPyConnection) -> None:
        """Create tables if they don't exist. Safe to call repeatedly."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                id VARCHAR PRIMARY KEY,
                doc VARCHAR NOT NULL,
                last_sequence BIGINT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS room_participants (
                room_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                room_id VARCHAR NOT NULL,
                sequence BIGINT NOT NULL,
                doc VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL,
                PRIMARY KEY (room_id, sequence)
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_participants_user
            ON room_participants(user_id)
        """)

    async def _run(self, fn, *args):
        """Run a blocking DuckDB call in a worker thread."""
        def call():
            with self._lock:
                try:
                    return fn(self._get_connection(), *args)
                except duckdb.Error as exc:
                    raise StoreError(str(exc)) from exc

        return await asyncio.to_thread(call)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def append_message(self, room_id: str, message: Message) -> None:
        await self._run(self._append_message, room_id, message)

    @staticmethod
    def _append_message(
        conn: duckdb.DuckDBPyConnection, room_id: str, message: Message
    ) -> None:
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO messages (room_id, sequence, doc, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [room_id, message.sequence, message.model_dump_json(), message.createdAt],
            )
            exists = conn.execute(
                "SELECT 1 FROM rooms WHERE id = ?", [room_id]
            ).fetchone()
            if exists:
                conn.execute(
                    """
                    UPDATE rooms SET last_sequence = greatest(last_sequence, ?)
                    WHERE id = ?
                    """,
                    [message.sequence, room_id],
                )
            else:
                room = Room(id=room_id, lastSequence=message.sequence)
                conn.execute(
                    "INSERT INTO rooms (id, doc, last_sequence) VALUES (?, ?, ?)",
                    [room_id, room.model_dump_json(), message.sequence],
                )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def delete_message(self, room_id: str, sequence: int) -> None:
        await self._run(self._delete_message, room_id, sequence)

    @staticmethod
    def _delete_message(
        conn: duckdb.DuckDBPyConnection, room_id: str, sequence: int
    ) -> None:
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(
                "DELETE FROM messages WHERE room_id = ? AND sequence = ?",
                [room_id, sequence],
            )
            conn.execute(
                """
                UPDATE rooms SET last_sequence = ?
                WHERE id = ? AND last_sequence = ?
                """,
                [sequence - 1, room_id, sequence],
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def get_messages_since(
        self, room_id: str, sequence: int, limit: Optional[int] = None
    ) -> List[Message]:
        return await self._run(self._get_messages_since, room_id, sequence, limit)

    @staticmethod
    def _get_messages_since(
        conn: duckdb.DuckDBPyConnection,
        room_id: str,
        sequence: int,
        limit: Optional[int],
    ) -> List[Message]:
        query = """
            SELECT doc FROM messages
            WHERE room_id = ? AND sequence > ?
            ORDER BY sequence ASC
        """
        params = [room_id, sequence]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = conn.execute(query, params).fetchall()
        return [Message.model_validate_json(row[0]) for row in rows]

    # -------------------------------------------------------------------------
    # Rooms
    # -------------------------------------------------------------------------

    async def upsert_room(self, room: Room) -> None:
        await self._run(self._upsert_room, room)

    @staticmethod
    def _upsert_room(conn: duckdb.DuckDBPyConnection, room: Room) -> None:
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(
                "INSERT OR REPLACE INTO rooms (id, doc, last_sequence) VALUES (?, ?, ?)",
                [room.id, room.model_dump_json(), room.lastSequence],
            )
            conn.execute("DELETE FROM room_participants WHERE room_id = ?", [room.id])
            for user_id in dict.fromkeys(room.participants):
                conn.execute(
                    "INSERT INTO room_participants (room_id, user_id) VALUES (?, ?)",
                    [room.id, user_id],
                )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def delete_room(self, room_id: str) -> None:
        await self._run(self._delete_room, room_id)

    @staticmethod
    def _delete_room(conn: duckdb.DuckDBPyConnection, room_id: str) -> None:
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute("DELETE FROM room_participants WHERE room_id = ?", [room_id])
            conn.execute("DELETE FROM rooms WHERE id = ?", [room_id])
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def get_room(self, room_id: str) -> Optional[Room]:
        return await self._run(self._get_room, room_id)

    @staticmethod
    def _get_room(conn: duckdb.DuckDBPyConnection, room_id: str) -> Optional[Room]:
        row = conn.execute(
            "SELECT doc, last_sequence FROM rooms WHERE id = ?", [room_id]
        ).fetchone()
        if not row:
            return None
        room = Room.model_validate_json(row[0])
        room.lastSequence = row[1]
        return room

    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        return await self._run(self._list_rooms_for_user, user_id)

    @staticmethod
    def _list_rooms_for_user(
        conn: duckdb.DuckDBPyConnection, user_id: str
    ) -> List[Room]:
        rows = conn.execute(
            """
            SELECT r.doc, r.last_sequence
            FROM rooms r
            JOIN room_participants p ON p.room_id = r.id
            WHERE p.user_id = ?
            ORDER BY r.id ASC
            """,
            [user_id],
        ).fetchall()
        rooms = []
        for doc, last_sequence in rows:
            room = Room.model_validate_json(doc)
            room.lastSequence = last_sequence
            rooms.append(room)
        return rooms

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
