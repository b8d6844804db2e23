"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from teamroom.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()

# Per-chatroom write locks. Queue allocation and task status writes are
# serialized per chatroom; different chatrooms never wait on each other.
_chatroom_locks: dict[str, asyncio.Lock] = {}


def chatroom_lock(chatroom_id: str) -> asyncio.Lock:
    lock = _chatroom_locks.get(chatroom_id)
    if lock is None:
        lock = _chatroom_locks.setdefault(chatroom_id, asyncio.Lock())
    return lock


def release_chatroom_lock(chatroom_id: str) -> bool:
    """Forget a finished chatroom's lock. A lock still held is kept."""
    lock = _chatroom_locks.get(chatroom_id)
    if lock is None or lock.locked():
        return False
    del _chatroom_locks[chatroom_id]
    return True


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: allows concurrent reads while writing
                await _db.execute("PRAGMA journal_mode=WAL")
                await _db.execute("PRAGMA foreign_keys=ON")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Users and sessions: the session/access boundary
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS users (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id          TEXT PRIMARY KEY,
            user_id     TEXT NOT NULL REFERENCES users(id),
            is_active   INTEGER NOT NULL DEFAULT 1,
            created_at  TEXT NOT NULL,
            expires_at  TEXT,
            revoked_at  TEXT
        );

        -- ----------------------------------------------------------------
        -- Chatroom: a collaboration session. Never hard-deleted.
        -- next_queue_position is the per-chatroom atomic counter; NULL on
        -- chatrooms created before the counter existed.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chatrooms (
            id                  TEXT PRIMARY KEY,
            owner_id            TEXT NOT NULL REFERENCES users(id),
            name                TEXT,
            status              TEXT NOT NULL DEFAULT 'active',
            team_id             TEXT,
            team_name           TEXT,
            team_roles          TEXT,
            team_entry_point    TEXT,
            next_queue_position INTEGER,
            created_at          TEXT NOT NULL,
            last_activity_at    TEXT
        );

        -- ----------------------------------------------------------------
        -- Participant: one role's presence record within a chatroom
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS participants (
            id                TEXT PRIMARY KEY,
            chatroom_id       TEXT NOT NULL REFERENCES chatrooms(id),
            role              TEXT NOT NULL,
            role_key          TEXT NOT NULL,
            status            TEXT NOT NULL DEFAULT 'waiting',
            agent_status      TEXT NOT NULL DEFAULT 'offline',
            ready_until       INTEGER,
            restart_attempts  INTEGER NOT NULL DEFAULT 0,
            connection_id     TEXT,
            status_changed_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_participants_chatroom_role
            ON participants(chatroom_id, role_key);

        CREATE TABLE IF NOT EXISTS participant_transitions (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            chatroom_id  TEXT NOT NULL,
            role         TEXT NOT NULL,
            from_status  TEXT,
            to_status    TEXT NOT NULL,
            reason       TEXT NOT NULL,
            created_at   TEXT NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Task: a unit of work flowing through the team.
        -- version is the compare-and-swap token for status writes.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tasks (
            id                TEXT PRIMARY KEY,
            chatroom_id       TEXT NOT NULL REFERENCES chatrooms(id),
            created_by        TEXT NOT NULL,
            content           TEXT NOT NULL,
            status            TEXT NOT NULL,
            queue_position    INTEGER NOT NULL,
            assigned_to       TEXT,
            classification    TEXT,
            feature_title     TEXT,
            feature_description TEXT,
            feature_tech_specs  TEXT,
            origin_task_id    TEXT,
            version           INTEGER NOT NULL DEFAULT 0,
            created_at        TEXT NOT NULL,
            updated_at        TEXT NOT NULL,
            started_at        TEXT,
            completed_at      TEXT
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_chatroom_queue
            ON tasks(chatroom_id, queue_position);
        CREATE INDEX IF NOT EXISTS idx_tasks_chatroom_status
            ON tasks(chatroom_id, status);

        CREATE TABLE IF NOT EXISTS task_transitions (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id      TEXT NOT NULL REFERENCES tasks(id),
            from_status  TEXT NOT NULL,
            to_status    TEXT NOT NULL,
            from_role    TEXT,
            to_role      TEXT,
            summary      TEXT,
            created_at   TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_task_transitions_task
            ON task_transitions(task_id, id);

        -- ----------------------------------------------------------------
        -- Machines, per-role agent configs, and the command queue the
        -- machine daemons poll.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS machines (
            id                TEXT PRIMARY KEY,
            user_id           TEXT NOT NULL REFERENCES users(id),
            hostname          TEXT NOT NULL,
            os                TEXT,
            available_tools   TEXT,
            daemon_connected  INTEGER NOT NULL DEFAULT 0,
            last_seen_at      TEXT
        );

        CREATE TABLE IF NOT EXISTS machine_agent_configs (
            machine_id   TEXT NOT NULL REFERENCES machines(id),
            chatroom_id  TEXT NOT NULL REFERENCES chatrooms(id),
            role         TEXT NOT NULL,
            role_key     TEXT NOT NULL,
            harness      TEXT NOT NULL,
            working_dir  TEXT NOT NULL,
            model        TEXT,
            updated_at   TEXT NOT NULL,
            PRIMARY KEY (machine_id, chatroom_id, role_key)
        );

        CREATE TABLE IF NOT EXISTS machine_commands (
            id            TEXT PRIMARY KEY,
            machine_id    TEXT NOT NULL REFERENCES machines(id),
            type          TEXT NOT NULL,
            payload       TEXT NOT NULL,
            status        TEXT NOT NULL DEFAULT 'pending',
            created_at    TEXT NOT NULL,
            processed_at  TEXT,
            result        TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_machine_commands_machine_status
            ON machine_commands(machine_id, status);

        -- ----------------------------------------------------------------
        -- Events: transient fan-out table for SSE notifications.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            chatroom_id TEXT,
            payload     TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );
    """)
    await db.commit()

    # ── Safe migration: add new columns to existing DBs ──────────────────────
    for col, typedef in [
        ("name", "TEXT"),
        ("last_activity_at", "TEXT"),
        ("next_queue_position", "INTEGER"),
    ]:
        try:
            await db.execute(f"ALTER TABLE chatrooms ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'chatrooms.{col}'")
        except aiosqlite.OperationalError:
            pass  # Column already exists

    for col, typedef in [
        ("restart_attempts", "INTEGER NOT NULL DEFAULT 0"),
        ("connection_id", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE participants ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'participants.{col}'")
        except aiosqlite.OperationalError:
            pass

    for col, typedef in [
        ("origin_task_id", "TEXT"),
        ("version", "INTEGER NOT NULL DEFAULT 0"),
    ]:
        try:
            await db.execute(f"ALTER TABLE tasks ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'tasks.{col}'")
        except aiosqlite.OperationalError:
            pass

    logger.info("Schema initialized.")
