# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# High-level CRUD for the mirror, converting between domain models and rows.
#
# Transactions:
#   Every mutation happens inside `async with repo.transaction():`. Exiting
#   the block is the single commit; any exception (cancellation included)
#   rolls back everything done in the block. A write method called outside
#   a transaction opens a one-statement transaction of its own.
#
#   Only one transaction runs at a time. Reads issued by other tasks wait
#   until the open transaction finishes, so nobody observes a half-applied
#   sync pass. Reads from the task that owns the transaction see its own
#   uncommitted changes.
#
# Deletes cascade explicitly:
#   Account -> Drafts, Folders, Messages -> Attachments
#   Folder  -> Subfolders, Messages -> Attachments
#   Message -> Attachments
# Delete methods return the database ids of the removed messages so callers
# can drop their cached attachment files after the commit.
# =============================================================================

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from kestrel.core import (
    Account,
    Attachment,
    Draft,
    Folder,
    FolderType,
    Message,
    MessageFlags,
    NotFoundError,
    ReplyMode,
    StoreError,
    SyncStatus,
)

if TYPE_CHECKING:
    from kestrel.storage.database import Database

logger = logging.getLogger(__name__)

# Columns query_messages() may sort by
SORT_COLUMNS = {
    "date_sent": "datetime(date_sent)",
    "date_received": "datetime(date_received)",
    "subject": "subject",
    "sender": "sender",
    "uid": "uid",
}

# Columns the text predicate of query_messages() may search
TEXT_COLUMNS = ("subject", "sender", "sender_name", "body_text")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" * len(list(values)))


class Repository:
    """
    Data access layer for Kestrel.

    Usage:
        >>> repo = Repository(database)
        >>> async with repo.transaction():
        ...     await repo.save_folder(folder)
        ...     await repo.save_messages_bulk(messages)
        >>> messages = await repo.query_messages(folder_id=folder.id, unread=True)

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None

    # =========================================================================
    # Transactions
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        """True when the calling task owns the open transaction."""
        return self._owner is not None and self._owner is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Repository"]:
        """
        Run a block of writes atomically.

        Nested use from the owning task joins the outer transaction.

        Raises:
            StoreError: If SQLite fails; the block has been rolled back.
        """
        if self.in_transaction:
            yield self
            return

        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                yield self
            except BaseException as e:
                await asyncio.shield(self.db.conn.rollback())
                if isinstance(e, aiosqlite.Error):
                    raise StoreError(f"Database error: {e}") from e
                raise
            else:
                try:
                    await self.db.conn.commit()
                except aiosqlite.Error as e:
                    await asyncio.shield(self.db.conn.rollback())
                    raise StoreError(f"Commit failed: {e}") from e
            finally:
                self._owner = None

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        if self.in_transaction:
            yield self.db.conn
            return
        async with self._lock:
            try:
                yield self.db.conn
            except aiosqlite.Error as e:
                raise StoreError(f"Database error: {e}") from e

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self._reading() as conn:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self._reading() as conn:
            async with conn.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def get_all_accounts(self) -> list[Account]:
        rows = await self._fetchall("SELECT * FROM accounts ORDER BY name")
        return [self._row_to_account(row) for row in rows]

    async def get_account(self, account_id: int) -> Account | None:
        row = await self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return self._row_to_account(row) if row else None

    async def get_account_by_name(self, name: str) -> Account | None:
        """
        Get an account by its unique name.

        Args:
            name: Account name (e.g., "personal", "work").

        Returns:
            Account if found, None otherwise.
        """
        row = await self._fetchone("SELECT * FROM accounts WHERE name = ?", (name,))
        return self._row_to_account(row) if row else None

    async def save_account(self, account: Account) -> Account:
        """
        Save an account (insert or update).

        An unsaved account whose name already exists updates that row.

        Returns:
            Saved account with ID populated.
        """
        values = (
            account.name, account.email, account.display_name,
            account.imap_host, account.imap_port, account.imap_security,
            account.smtp_host, account.smtp_port, account.smtp_security,
            int(account.enabled), _iso(account.last_sync), account.sync_status.value,
        )
        async with self.transaction():
            if account.id is None:
                existing = await self._fetchone(
                    "SELECT id FROM accounts WHERE name = ?", (account.name,)
                )
                if existing:
                    account.id = existing["id"]

            if account.id is None:
                cursor = await self.db.conn.execute(
                    """INSERT INTO accounts
                       (name, email, display_name, imap_host, imap_port, imap_security,
                        smtp_host, smtp_port, smtp_security, enabled, last_sync, sync_status)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
                account.id = cursor.lastrowid
            else:
                await self.db.conn.execute(
                    """UPDATE accounts SET
                       name=?, email=?, display_name=?, imap_host=?, imap_port=?,
                       imap_security=?, smtp_host=?, smtp_port=?, smtp_security=?,
                       enabled=?, last_sync=?, sync_status=?
                       WHERE id=?""",
                    (*values, account.id),
                )
        return account

    async def update_account_status(
        self,
        account_id: int,
        status: SyncStatus,
        last_sync: datetime | None = None,
    ) -> None:
        """Record the account's sync status, and last_sync when given."""
        async with self.transaction():
            if last_sync is None:
                await self.db.conn.execute(
                    "UPDATE accounts SET sync_status = ? WHERE id = ?",
                    (status.value, account_id),
                )
            else:
                await self.db.conn.execute(
                    "UPDATE accounts SET sync_status = ?, last_sync = ? WHERE id = ?",
                    (status.value, _iso(last_sync), account_id),
                )

    async def delete_account(self, account_id: int) -> list[int]:
        """
        Delete an account with all its folders, messages and attachments.

        Returns:
            Database ids of the deleted messages.
        """
        async with self.transaction():
            rows = await self._fetchall(
                "SELECT id FROM messages WHERE account_id = ?", (account_id,)
            )
            message_ids = [row["id"] for row in rows]
            await self.db.conn.execute(
                "DELETE FROM attachments WHERE message_id IN "
                "(SELECT id FROM messages WHERE account_id = ?)",
                (account_id,),
            )
            await self.db.conn.execute(
                "DELETE FROM messages WHERE account_id = ?", (account_id,)
            )
            await self.db.conn.execute(
                "DELETE FROM drafts WHERE account_id = ?", (account_id,)
            )
            await self.db.conn.execute(
                "DELETE FROM folders WHERE account_id = ?", (account_id,)
            )
            await self.db.conn.execute(
                "DELETE FROM accounts WHERE id = ?", (account_id,)
            )
        logger.info(f"Deleted account {account_id} ({len(message_ids)} messages)")
        return message_ids

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            display_name=row["display_name"] or "",
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            imap_security=row["imap_security"],
            smtp_host=row["smtp_host"],
            smtp_port=row["smtp_port"],
            smtp_security=row["smtp_security"],
            enabled=bool(row["enabled"]),
            last_sync=_from_iso(row["last_sync"]),
            sync_status=SyncStatus(row["sync_status"]),
        )

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def get_folders(self, account_id: int) -> list[Folder]:
        rows = await self._fetchall(
            "SELECT * FROM folders WHERE account_id = ? ORDER BY path", (account_id,)
        )
        return [self._row_to_folder(row) for row in rows]

    async def get_folder(self, folder_id: int) -> Folder | None:
        row = await self._fetchone("SELECT * FROM folders WHERE id = ?", (folder_id,))
        return self._row_to_folder(row) if row else None

    async def get_folder_by_path(self, account_id: int, path: str) -> Folder | None:
        """
        Get a folder by account ID and full path.

        Args:
            account_id: Account ID.
            path: IMAP folder path (e.g., "INBOX", "Work/Projects").
        """
        row = await self._fetchone(
            "SELECT * FROM folders WHERE account_id = ? AND path = ?", (account_id, path)
        )
        return self._row_to_folder(row) if row else None

    async def get_folder_by_type(
        self,
        account_id: int,
        folder_type: FolderType,
    ) -> Folder | None:
        """
        Get the first folder of an account with the given role.

        Args:
            account_id: Account ID.
            folder_type: Role to find (e.g., FolderType.TRASH).
        """
        row = await self._fetchone(
            "SELECT * FROM folders WHERE account_id = ? AND folder_type = ? ORDER BY id LIMIT 1",
            (account_id, folder_type.value),
        )
        return self._row_to_folder(row) if row else None

    async def save_folder(self, folder: Folder) -> Folder:
        """
        Save a folder (insert or update).

        An unsaved folder whose (account, path) already exists updates that row.

        Returns:
            Saved folder with ID populated.
        """
        values = (
            folder.account_id, folder.parent_id, folder.name, folder.path,
            folder.folder_type.value, folder.delimiter, folder.uidvalidity,
            folder.uidnext, folder.total_count, folder.unread_count,
            int(folder.is_selectable), _iso(folder.last_sync),
        )
        async with self.transaction():
            if folder.id is None:
                existing = await self._fetchone(
                    "SELECT id FROM folders WHERE account_id = ? AND path = ?",
                    (folder.account_id, folder.path),
                )
                if existing:
                    folder.id = existing["id"]

            if folder.id is None:
                cursor = await self.db.conn.execute(
                    """INSERT INTO folders
                       (account_id, parent_id, name, path, folder_type, delimiter,
                        uidvalidity, uidnext, total_count, unread_count,
                        is_selectable, last_sync)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
                folder.id = cursor.lastrowid
            else:
                await self.db.conn.execute(
                    """UPDATE folders SET
                       account_id=?, parent_id=?, name=?, path=?, folder_type=?,
                       delimiter=?, uidvalidity=?, uidnext=?, total_count=?,
                       unread_count=?, is_selectable=?, last_sync=?
                       WHERE id=?""",
                    (*values, folder.id),
                )
        return folder

    async def delete_folder(self, folder_id: int) -> list[int]:
        """
        Delete a folder, its subfolders, and every message in them.

        Returns:
            Database ids of the deleted messages.
        """
        async with self.transaction():
            subtree = await self._folder_subtree(folder_id)
            marks = _placeholders(subtree)
            rows = await self._fetchall(
                f"SELECT id FROM messages WHERE folder_id IN ({marks})", subtree
            )
            message_ids = [row["id"] for row in rows]
            await self._delete_messages(message_ids)
            await self.db.conn.execute(
                f"DELETE FROM folders WHERE id IN ({marks})", subtree
            )
        return message_ids

    async def _folder_subtree(self, folder_id: int) -> list[int]:
        rows = await self._fetchall(
            """WITH RECURSIVE subtree(id) AS (
                   SELECT ?
                   UNION
                   SELECT f.id FROM folders f JOIN subtree s ON f.parent_id = s.id
               )
               SELECT id FROM subtree""",
            (folder_id,),
        )
        return [row["id"] for row in rows]

    async def recompute_folder_counts(self, folder: Folder) -> Folder:
        """
        Recount total and unread messages of a folder from the mirror and store them.

        Returns:
            The folder with updated counters.
        """
        async with self.transaction():
            row = await self._fetchone(
                "SELECT COUNT(*) AS total, "
                "COALESCE(SUM(CASE WHEN (flags & ?) = 0 THEN 1 ELSE 0 END), 0) AS unread "
                "FROM messages WHERE folder_id = ?",
                (int(MessageFlags.SEEN), folder.id),
            )
            folder.total_count = row["total"]
            folder.unread_count = row["unread"]
            await self.db.conn.execute(
                "UPDATE folders SET total_count = ?, unread_count = ? WHERE id = ?",
                (folder.total_count, folder.unread_count, folder.id),
            )
        return folder

    def _row_to_folder(self, row: aiosqlite.Row) -> Folder:
        return Folder(
            id=row["id"],
            account_id=row["account_id"],
            parent_id=row["parent_id"],
            name=row["name"],
            path=row["path"],
            folder_type=FolderType(row["folder_type"]),
            delimiter=row["delimiter"] or "/",
            uidvalidity=row["uidvalidity"],
            uidnext=row["uidnext"],
            total_count=row["total_count"] or 0,
            unread_count=row["unread_count"] or 0,
            is_selectable=bool(row["is_selectable"]),
            last_sync=_from_iso(row["last_sync"]),
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def get_message(self, message_id: int) -> Message | None:
        """Get a single message with its attachments."""
        row = await self._fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
        if not row:
            return None
        message = self._row_to_message(row)
        message.attachments = await self.get_attachments(message_id)
        return message

    async def get_message_by_message_id(
        self,
        account_id: int,
        message_id: str,
    ) -> Message | None:
        """Find a message of an account by its RFC Message-ID header."""
        row = await self._fetchone(
            "SELECT * FROM messages WHERE account_id = ? AND message_id = ? ORDER BY id LIMIT 1",
            (account_id, message_id),
        )
        return self._row_to_message(row) if row else None

    async def query_messages(
        self,
        *,
        account_id: int | None = None,
        folder_id: int | None = None,
        uid: int | None = None,
        message_id: str | None = None,
        unread: bool | None = None,
        flagged: bool | None = None,
        has_attachments: bool | None = None,
        pending_uid: bool | None = None,
        text: str | None = None,
        text_columns: Iterable[str] = TEXT_COLUMNS,
        sort: str = "date_sent",
        descending: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Message]:
        """
        Query messages by predicate.

        Every keyword left as None is ignored. Attachments are not loaded.

        Args:
            account_id: Only messages of this account.
            folder_id: Only messages in this folder.
            uid: Only the message with this UID.
            message_id: Only messages with this Message-ID header.
            unread: True for messages without \\Seen, False for read ones.
            flagged: True for starred messages, False for the rest.
            has_attachments: Filter on the attachment marker.
            pending_uid: True for rows still waiting for a UID.
            text: Case-insensitive substring that at least one of
                text_columns must contain. Empty text matches nothing.
            text_columns: Subset of TEXT_COLUMNS searched by text.
            sort: One of SORT_COLUMNS.
            descending: Sort direction.
            limit: Maximum number of results.
            offset: Number of results to skip (for pagination).

        Raises:
            ValueError: If sort or text_columns name an unknown column.
        """
        if sort not in SORT_COLUMNS:
            raise ValueError(f"Cannot sort messages by {sort!r}")
        text_columns = list(text_columns)
        unknown = set(text_columns) - set(TEXT_COLUMNS)
        if unknown or not text_columns:
            raise ValueError(f"Cannot search messages by {sorted(unknown) or 'no columns'}")

        clauses: list[str] = []
        params: list[Any] = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if folder_id is not None:
            clauses.append("folder_id = ?")
            params.append(folder_id)
        if uid is not None:
            clauses.append("uid = ?")
            params.append(uid)
        if message_id is not None:
            clauses.append("message_id = ?")
            params.append(message_id)
        if unread is not None:
            clauses.append("(flags & ?) = 0" if unread else "(flags & ?) != 0")
            params.append(int(MessageFlags.SEEN))
        if flagged is not None:
            clauses.append("(flags & ?) != 0" if flagged else "(flags & ?) = 0")
            params.append(int(MessageFlags.FLAGGED))
        if has_attachments is not None:
            clauses.append("has_attachments = ?")
            params.append(int(has_attachments))
        if pending_uid is not None:
            clauses.append("uid IS NULL" if pending_uid else "uid IS NOT NULL")
        if text is not None:
            clauses.append("(" + " OR ".join(f"contains({c}, ?)" for c in text_columns) + ")")
            params.extend([text] * len(text_columns))

        sql = "SELECT * FROM messages"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {SORT_COLUMNS[sort]} {'DESC' if descending else 'ASC'}, id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        rows = await self._fetchall(sql, params)
        return [self._row_to_message(row) for row in rows]

    async def save_message(self, message: Message) -> Message:
        """
        Save a message and its attachments (insert or update).

        An unsaved message whose (folder, uid) is already mirrored updates
        that row.

        Returns:
            Saved message with ID populated.
        """
        async with self.transaction():
            if message.id is None and message.folder_id is not None and message.uid is not None:
                existing = await self._fetchone(
                    "SELECT id FROM messages WHERE folder_id = ? AND uid = ?",
                    (message.folder_id, message.uid),
                )
                if existing:
                    message.id = existing["id"]

            values = self._message_values(message)
            if message.id is None:
                cursor = await self.db.conn.execute(
                    """INSERT INTO messages
                       (account_id, folder_id, uid, message_id, in_reply_to, "references",
                        subject, sender, sender_name, recipients, cc, bcc, reply_to,
                        date_sent, date_received, flags, body_text, body_html,
                        has_attachments)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
                message.id = cursor.lastrowid
            else:
                await self.db.conn.execute(
                    """UPDATE messages SET
                       account_id=?, folder_id=?, uid=?, message_id=?, in_reply_to=?,
                       "references"=?, subject=?, sender=?, sender_name=?, recipients=?,
                       cc=?, bcc=?, reply_to=?, date_sent=?, date_received=?, flags=?,
                       body_text=?, body_html=?, has_attachments=?
                       WHERE id=?""",
                    (*values, message.id),
                )

            for attachment in message.attachments:
                attachment.message_id = message.id
                await self.save_attachment(attachment)
        return message

    async def save_messages_bulk(self, messages: list[Message]) -> list[Message]:
        """Save several messages in one transaction."""
        async with self.transaction():
            for message in messages:
                await self.save_message(message)
        return messages

    async def update_message_flags(self, message_id: int, flags: MessageFlags) -> None:
        async with self.transaction():
            await self.db.conn.execute(
                "UPDATE messages SET flags = ? WHERE id = ?", (int(flags), message_id)
            )

    async def update_message_location(
        self,
        message_id: int,
        folder_id: int | None,
        uid: int | None,
    ) -> None:
        """Reassign a message to another folder (and UID, None when unknown)."""
        async with self.transaction():
            await self.db.conn.execute(
                "UPDATE messages SET folder_id = ?, uid = ? WHERE id = ?",
                (folder_id, uid, message_id),
            )

    async def delete_message(self, message_id: int) -> None:
        """Delete a single message and its attachments."""
        async with self.transaction():
            await self._delete_messages([message_id])

    async def delete_messages(self, message_ids: list[int]) -> None:
        async with self.transaction():
            await self._delete_messages(message_ids)

    async def _delete_messages(self, message_ids: list[int]) -> None:
        if not message_ids:
            return
        marks = _placeholders(message_ids)
        await self.db.conn.execute(
            f"DELETE FROM attachments WHERE message_id IN ({marks})", message_ids
        )
        await self.db.conn.execute(
            f"DELETE FROM messages WHERE id IN ({marks})", message_ids
        )

    def _message_values(self, message: Message) -> tuple:
        return (
            message.account_id, message.folder_id, message.uid, message.message_id,
            message.in_reply_to, json.dumps(message.references),
            message.subject, message.sender, message.sender_name,
            json.dumps(message.recipients), json.dumps(message.cc),
            json.dumps(message.bcc), json.dumps(message.reply_to),
            _iso(message.date_sent), _iso(message.date_received),
            int(message.flags), message.body_text, message.body_html,
            int(message.has_attachments or bool(message.attachments)),
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            account_id=row["account_id"],
            folder_id=row["folder_id"],
            uid=row["uid"],
            message_id=row["message_id"] or "",
            in_reply_to=row["in_reply_to"] or "",
            references=json.loads(row["references"]) if row["references"] else [],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            sender_name=row["sender_name"] or "",
            recipients=json.loads(row["recipients"]) if row["recipients"] else [],
            cc=json.loads(row["cc"]) if row["cc"] else [],
            bcc=json.loads(row["bcc"]) if row["bcc"] else [],
            reply_to=json.loads(row["reply_to"]) if row["reply_to"] else [],
            date_sent=_from_iso(row["date_sent"]),
            date_received=_from_iso(row["date_received"]),
            flags=MessageFlags(row["flags"]),
            body_text=row["body_text"] or "",
            body_html=row["body_html"] or "",
            has_attachments=bool(row["has_attachments"]),
        )

    # =========================================================================
    # Attachment Operations
    # =========================================================================

    async def get_attachment(self, attachment_id: int) -> Attachment | None:
        row = await self._fetchone("SELECT * FROM attachments WHERE id = ?", (attachment_id,))
        return self._row_to_attachment(row) if row else None

    async def get_attachments(self, message_id: int) -> list[Attachment]:
        rows = await self._fetchall(
            "SELECT * FROM attachments WHERE message_id = ? ORDER BY id", (message_id,)
        )
        return [self._row_to_attachment(row) for row in rows]

    async def get_downloaded_attachments(self) -> list[Attachment]:
        rows = await self._fetchall("SELECT * FROM attachments WHERE is_downloaded = 1 ORDER BY id")
        return [self._row_to_attachment(row) for row in rows]

    async def save_attachment(self, attachment: Attachment) -> Attachment:
        """
        Save attachment metadata (insert or update).

        Raises:
            NotFoundError: The attachment has an id but its row is gone.
        """
        values = (
            attachment.message_id, attachment.filename, attachment.content_type,
            attachment.size, attachment.content_id, int(attachment.is_inline),
            attachment.part_id, attachment.encoding, attachment.local_path,
            int(attachment.is_downloaded),
        )
        async with self.transaction():
            if attachment.id is None:
                cursor = await self.db.conn.execute(
                    """INSERT INTO attachments
                       (message_id, filename, content_type, size, content_id, is_inline,
                        part_id, encoding, local_path, is_downloaded)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
                attachment.id = cursor.lastrowid
            else:
                cursor = await self.db.conn.execute(
                    """UPDATE attachments SET
                       message_id=?, filename=?, content_type=?, size=?, content_id=?,
                       is_inline=?, part_id=?, encoding=?, local_path=?, is_downloaded=?
                       WHERE id=?""",
                    (*values, attachment.id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"Attachment {attachment.id} no longer exists")
        return attachment

    async def delete_attachment(self, attachment_id: int) -> None:
        async with self.transaction():
            await self.db.conn.execute(
                "DELETE FROM attachments WHERE id = ?", (attachment_id,)
            )

    def _row_to_attachment(self, row: aiosqlite.Row) -> Attachment:
        return Attachment(
            id=row["id"],
            message_id=row["message_id"],
            filename=row["filename"],
            content_type=row["content_type"],
            size=row["size"],
            content_id=row["content_id"],
            is_inline=bool(row["is_inline"]),
            part_id=row["part_id"],
            encoding=row["encoding"],
            local_path=row["local_path"],
            is_downloaded=bool(row["is_downloaded"]),
        )

    # =========================================================================
    # Draft Operations
    # =========================================================================

    async def get_draft(self, draft_id: int) -> Draft | None:
        row = await self._fetchone("SELECT * FROM drafts WHERE id = ?", (draft_id,))
        return self._row_to_draft(row) if row else None

    async def get_drafts(self, account_id: int | None = None) -> list[Draft]:
        """Drafts of one account (or all), most recently modified first."""
        if account_id is None:
            rows = await self._fetchall("SELECT * FROM drafts ORDER BY modified_at DESC, id DESC")
        else:
            rows = await self._fetchall(
                "SELECT * FROM drafts WHERE account_id = ? ORDER BY modified_at DESC, id DESC",
                (account_id,),
            )
        return [self._row_to_draft(row) for row in rows]

    async def save_draft(self, draft: Draft) -> Draft:
        """
        Save a draft (insert or update).

        Raises:
            NotFoundError: The draft has an id but its row is gone.
        """
        values = (
            draft.account_id, json.dumps(draft.to), json.dumps(draft.cc),
            json.dumps(draft.bcc), draft.subject, draft.body_text, draft.body_html,
            json.dumps(draft.attachment_paths), draft.in_reply_to,
            json.dumps(draft.references), draft.source_message_id,
            draft.reply_mode.value if draft.reply_mode else None,
            _iso(draft.created_at), _iso(draft.modified_at),
        )
        async with self.transaction():
            if draft.id is None:
                cursor = await self.db.conn.execute(
                    """INSERT INTO drafts
                       (account_id, recipients, cc, bcc, subject, body_text, body_html,
                        attachment_paths, in_reply_to, "references", source_message_id,
                        reply_mode, created_at, modified_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values,
                )
                draft.id = cursor.lastrowid
            else:
                cursor = await self.db.conn.execute(
                    """UPDATE drafts SET
                       account_id=?, recipients=?, cc=?, bcc=?, subject=?, body_text=?,
                       body_html=?, attachment_paths=?, in_reply_to=?, "references"=?,
                       source_message_id=?, reply_mode=?, created_at=?, modified_at=?
                       WHERE id=?""",
                    (*values, draft.id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"Draft {draft.id} no longer exists")
        return draft

    async def delete_draft(self, draft_id: int) -> bool:
        """Delete a draft. Returns False if it did not exist."""
        async with self.transaction():
            cursor = await self.db.conn.execute("DELETE FROM drafts WHERE id = ?", (draft_id,))
        return cursor.rowcount > 0

    async def delete_drafts(self, account_id: int | None = None) -> int:
        """Delete every draft of an account (or every draft). Returns the count."""
        async with self.transaction():
            if account_id is None:
                cursor = await self.db.conn.execute("DELETE FROM drafts")
            else:
                cursor = await self.db.conn.execute(
                    "DELETE FROM drafts WHERE account_id = ?", (account_id,)
                )
        return cursor.rowcount

    def _row_to_draft(self, row: aiosqlite.Row) -> Draft:
        return Draft(
            id=row["id"],
            account_id=row["account_id"],
            to=json.loads(row["recipients"] or "[]"),
            cc=json.loads(row["cc"] or "[]"),
            bcc=json.loads(row["bcc"] or "[]"),
            subject=row["subject"] or "",
            body_text=row["body_text"] or "",
            body_html=row["body_html"],
            attachment_paths=json.loads(row["attachment_paths"] or "[]"),
            in_reply_to=row["in_reply_to"] or "",
            references=json.loads(row["references"] or "[]"),
            source_message_id=row["source_message_id"],
            reply_mode=ReplyMode(row["reply_mode"]) if row["reply_mode"] else None,
            created_at=_from_iso(row["created_at"]),
            modified_at=_from_iso(row["modified_at"]),
        )

    # =========================================================================
    # Search History
    # =========================================================================

    async def record_search(self, query: str, searched_at: datetime, keep: int) -> None:
        """Move a query to the front of the history, keeping the newest `keep`."""
        async with self.transaction():
            await self.db.conn.execute(
                "INSERT OR REPLACE INTO search_history (query, searched_at) VALUES (?, ?)",
                (query, _iso(searched_at)),
            )
            await self.db.conn.execute(
                "DELETE FROM search_history WHERE query NOT IN "
                "(SELECT query FROM search_history ORDER BY searched_at DESC LIMIT ?)",
                (keep,),
            )

    async def get_search_history(self) -> list[str]:
        rows = await self._fetchall(
            "SELECT query FROM search_history ORDER BY searched_at DESC"
        )
        return [row["query"] for row in rows]

    async def clear_search_history(self) -> None:
        async with self.transaction():
            await self.db.conn.execute("DELETE FROM search_history")

    # =========================================================================
    # Sync Operations
    # =========================================================================
    # Bulk, UID-based helpers used by the folder reconciler.

    async def get_local_flags(self, folder_id: int) -> dict[int, MessageFlags]:
        """
        Get UID -> flags for every mirrored message of a folder that has a UID.
        """
        rows = await self._fetchall(
            "SELECT uid, flags FROM messages WHERE folder_id = ? AND uid IS NOT NULL",
            (folder_id,),
        )
        return {row["uid"]: MessageFlags(row["flags"]) for row in rows}

    async def get_local_uids(self, folder_id: int) -> set[int]:
        return set(await self.get_local_flags(folder_id))

    async def update_flags_bulk(self, folder_id: int, uid_flags: dict[int, MessageFlags]) -> None:
        """
        Update flags for several messages of a folder.

        Args:
            folder_id: Folder ID.
            uid_flags: Mapping of UID to new flags.
        """
        if not uid_flags:
            return
        updates = [(int(flags), folder_id, uid) for uid, flags in uid_flags.items()]
        async with self.transaction():
            await self.db.conn.executemany(
                "UPDATE messages SET flags = ? WHERE folder_id = ? AND uid = ?", updates
            )

    async def delete_messages_by_uids(self, folder_id: int, uids: set[int]) -> list[int]:
        """
        Delete mirrored messages that the server no longer has.

        Returns:
            Database ids of the deleted messages.
        """
        if not uids:
            return []
        uid_list = sorted(uids)
        async with self.transaction():
            rows = await self._fetchall(
                f"SELECT id FROM messages WHERE folder_id = ? AND uid IN ({_placeholders(uid_list)})",
                [folder_id, *uid_list],
            )
            message_ids = [row["id"] for row in rows]
            await self._delete_messages(message_ids)
        return message_ids

    async def delete_all_messages_in_folder(self, folder_id: int) -> list[int]:
        """
        Delete every mirrored message of a folder (validity epoch changed).

        Returns:
            Database ids of the deleted messages.
        """
        async with self.transaction():
            rows = await self._fetchall(
                "SELECT id FROM messages WHERE folder_id = ?", (folder_id,)
            )
            message_ids = [row["id"] for row in rows]
            await self._delete_messages(message_ids)
        return message_ids

    async def find_pending_message(self, folder_id: int, message_id: str) -> Message | None:
        """Find a row in the folder still waiting for its UID, by Message-ID."""
        if not message_id:
            return None
        row = await self._fetchone(
            "SELECT * FROM messages WHERE folder_id = ? AND uid IS NULL AND message_id = ? "
            "ORDER BY id LIMIT 1",
            (folder_id, message_id),
        )
        return self._row_to_message(row) if row else None

    async def get_message_count(self, folder_id: int) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM messages WHERE folder_id = ?", (folder_id,)
        )
        return row[0] if row else 0

    async def get_unread_count(self, folder_id: int) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM messages WHERE folder_id = ? AND (flags & ?) = 0",
            (folder_id, int(MessageFlags.SEEN)),
        )
        return row[0] if row else 0
