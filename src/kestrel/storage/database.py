# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite connection and schema of the local mirror.
#
# Schema overview:
#   - accounts: Email accounts and their last known sync status
#   - folders: IMAP folders with their UIDVALIDITY/UIDNEXT watermark
#   - messages: Mirrored messages (uid NULL while awaiting adoption)
#   - attachments: Attachment metadata and cache location
#   - drafts: Unsent messages being composed (local only)
#   - search_history: Recent local search queries
#
# Foreign keys are enforced but carry no ON DELETE actions. The repository
# deletes children explicitly inside one transaction, and the constraint
# check guarantees nothing is left pointing at a deleted row.
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from kestrel.config import Config

logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 2


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Email accounts
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL,
    display_name TEXT,
    imap_host TEXT NOT NULL,
    imap_port INTEGER NOT NULL DEFAULT 993,
    imap_security TEXT NOT NULL DEFAULT 'ssl',
    smtp_host TEXT NOT NULL,
    smtp_port INTEGER NOT NULL DEFAULT 587,
    smtp_security TEXT NOT NULL DEFAULT 'starttls',
    enabled INTEGER NOT NULL DEFAULT 1,
    last_sync TEXT,
    sync_status TEXT NOT NULL DEFAULT 'idle',
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- IMAP folders
CREATE TABLE IF NOT EXISTS folders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    parent_id INTEGER REFERENCES folders(id),
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    folder_type TEXT NOT NULL DEFAULT 'custom',
    delimiter TEXT DEFAULT '/',
    uidvalidity INTEGER,
    uidnext INTEGER,
    total_count INTEGER NOT NULL DEFAULT 0,
    unread_count INTEGER NOT NULL DEFAULT 0,
    is_selectable INTEGER NOT NULL DEFAULT 1,
    last_sync TEXT,
    UNIQUE(account_id, path)
);

-- Email messages
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    folder_id INTEGER REFERENCES folders(id),
    uid INTEGER,
    message_id TEXT,
    in_reply_to TEXT,
    "references" TEXT,  -- JSON array of Message-IDs
    subject TEXT,
    sender TEXT,
    sender_name TEXT,
    recipients TEXT,    -- JSON array
    cc TEXT,            -- JSON array
    bcc TEXT,           -- JSON array
    reply_to TEXT,      -- JSON array
    date_sent TEXT,
    date_received TEXT,
    flags INTEGER NOT NULL DEFAULT 0,
    body_text TEXT,
    body_html TEXT,
    has_attachments INTEGER NOT NULL DEFAULT 0,
    UNIQUE(folder_id, uid)
);

-- Message attachments (payload lives in the file cache)
CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL REFERENCES messages(id),
    filename TEXT NOT NULL,
    content_type TEXT NOT NULL,
    size INTEGER NOT NULL DEFAULT 0,
    content_id TEXT,
    is_inline INTEGER NOT NULL DEFAULT 0,
    part_id TEXT NOT NULL DEFAULT '',
    encoding TEXT NOT NULL DEFAULT '',
    local_path TEXT,
    is_downloaded INTEGER NOT NULL DEFAULT 0
);

-- Drafts (never synced to the server)
CREATE TABLE IF NOT EXISTS drafts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    recipients TEXT,        -- JSON array
    cc TEXT,                -- JSON array
    bcc TEXT,               -- JSON array
    subject TEXT,
    body_text TEXT,
    body_html TEXT,
    attachment_paths TEXT,  -- JSON array
    in_reply_to TEXT,
    "references" TEXT,      -- JSON array
    source_message_id INTEGER,
    reply_mode TEXT,
    created_at TEXT NOT NULL,
    modified_at TEXT NOT NULL
);

-- Recent local searches, newest first by searched_at
CREATE TABLE IF NOT EXISTS search_history (
    query TEXT PRIMARY KEY,
    searched_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder_id);
CREATE INDEX IF NOT EXISTS idx_messages_account ON messages(account_id);
CREATE INDEX IF NOT EXISTS idx_messages_message_id ON messages(account_id, message_id);
CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(date_sent DESC);
CREATE INDEX IF NOT EXISTS idx_folders_account ON folders(account_id);
CREATE INDEX IF NOT EXISTS idx_folders_parent ON folders(parent_id);
CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_id);
CREATE INDEX IF NOT EXISTS idx_drafts_account ON drafts(account_id);
"""


def contains_text(haystack: str | None, needle: str | None) -> int:
    """
    SQL function contains(haystack, needle): case-insensitive substring test.

    SQLite's LIKE only folds ASCII, so local search uses this instead.
    """
    if not haystack or not needle:
        return 0
    return int(needle.casefold() in haystack.casefold())


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database(path)
        >>> await db.connect()
        >>> repo = Repository(db)
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enforce foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._connection.create_function("contains", 2, contains_text, deterministic=True)

        await self._init_schema()
        logger.debug(f"Opened database {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        """Create tables if they don't exist, run migrations if needed."""
        try:
            async with self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self.conn.executescript(SCHEMA)
            await self._run_migrations(current_version)
            await self.conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )
            await self.conn.commit()

    async def _run_migrations(self, from_version: int) -> None:
        """
        Run schema migrations from the given version to current.

        Version 2 added the drafts and search_history tables, which SCHEMA
        creates; no existing table changed.
        """
        if from_version:
            logger.info(f"Migrating database schema {from_version} -> {SCHEMA_VERSION}")
