# =============================================================================
# IMAP Sync Manager
# =============================================================================
# Keeps the local mirror consistent with the server.
#
# Sync strategy, per account:
#   1. Folder tree: mirror the server's folder list (create, update, remove
#      vanished folders together with everything under them).
#   2. Per folder, compare the server's UIDVALIDITY/UIDNEXT with the stored
#      watermark:
#        - no watermark, changed UIDVALIDITY, or UIDNEXT moved backwards
#          -> full resync: drop the folder's messages and fetch everything
#        - otherwise -> incremental: fetch UIDs in [local UIDNEXT, server
#          UIDNEXT), refresh flags of known UIDs, drop expunged ones
#   3. Everything a folder pass changes lands in one transaction together
#      with the new watermark, so a failed pass leaves the old state intact.
#
# Key concepts:
#   - UIDVALIDITY: If this changes, all cached UIDs are invalid
#   - UIDNEXT: Every UID below the stored value has been seen
#   - Pending rows (uid NULL): sent copies and moved messages whose server
#     UID is not known yet; adopted by Message-ID when their folder is synced
#
# Network I/O always happens before the transaction opens; the database is
# never locked while waiting on the server.
# =============================================================================

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from kestrel.core import (
    Account,
    AuthenticationError,
    Folder,
    KestrelError,
    MailConnectionError,
    Message,
    MessageFlags,
    ProtocolError,
    SyncStatus,
)
from kestrel.imap.client import FolderStatus, IMAPClient
from kestrel.status import StatusRegistry, status_for_error

if TYPE_CHECKING:
    from kestrel.attachments.cache import AttachmentCache
    from kestrel.connections import ConnectionManager
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)


class SyncMode(Enum):
    """How a folder was reconciled."""
    INCREMENTAL = "incremental"
    FULL = "full"


@dataclass
class SyncProgress:
    """
    Progress information for a sync pass.

    Attributes:
        account: Account being synced.
        folder: Folder currently being synced (if any).
        total_folders: Total folders to sync.
        synced_folders: Folders synced so far.
    """
    account: str | None = None
    folder: str | None = None
    total_folders: int = 0
    synced_folders: int = 0

    @property
    def overall_percent(self) -> float:
        """Returns overall completion percentage across all folders."""
        if self.total_folders == 0:
            return 0.0
        return (self.synced_folders / self.total_folders) * 100.0


# Type alias for progress callbacks
ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class FolderSyncResult:
    """
    Outcome of reconciling one folder.

    Attributes:
        path: Folder path.
        mode: Whether the folder was fully resynced.
        new_messages: Messages added (or adopted) from the server.
        updated_messages: Messages whose flags changed.
        deleted_messages: Messages removed locally.
        deleted_ids: Database ids of the removed messages.
    """
    path: str
    mode: SyncMode = SyncMode.INCREMENTAL
    new_messages: int = 0
    updated_messages: int = 0
    deleted_messages: int = 0
    deleted_ids: list[int] = field(default_factory=list)


@dataclass
class SyncResult:
    """
    Result of a sync pass over an account.

    Attributes:
        success: True if every folder synced without errors.
        new_messages: Total new messages fetched.
        updated_messages: Total messages with updated flags.
        deleted_messages: Total messages removed locally.
        full_resyncs: Paths of folders that were fully resynced.
        errors: Error messages for folders that failed.
        duration_seconds: Time taken for sync.
    """
    success: bool = True
    new_messages: int = 0
    updated_messages: int = 0
    deleted_messages: int = 0
    full_resyncs: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def add(self, folder_result: FolderSyncResult) -> None:
        self.new_messages += folder_result.new_messages
        self.updated_messages += folder_result.updated_messages
        self.deleted_messages += folder_result.deleted_messages
        if folder_result.mode is SyncMode.FULL:
            self.full_resyncs.append(folder_result.path)


# =============================================================================
# Folder Reconciler
# =============================================================================

class FolderReconciler:
    """
    Brings one mirrored folder in line with the server.

    Args:
        repo: Local mirror.
        cache: Attachment cache, cleaned for messages that disappear.
        batch_size: Messages per FETCH round trip.
    """

    def __init__(
        self,
        repo: "Repository",
        cache: "AttachmentCache | None" = None,
        batch_size: int = 50,
    ) -> None:
        self.repo = repo
        self.cache = cache
        self.batch_size = max(1, batch_size)

    @staticmethod
    def needs_full_resync(folder: Folder, status: FolderStatus) -> bool:
        """
        Decide whether the stored mirror of a folder can be trusted.

        A full resync is needed when nothing was stored yet, when the
        validity epoch changed, or when the server's UIDNEXT is behind ours.
        """
        if not folder.has_watermark:
            return True
        if folder.uidvalidity != status.uidvalidity:
            logger.warning(
                f"UIDVALIDITY changed for {folder.path}: "
                f"{folder.uidvalidity} -> {status.uidvalidity}"
            )
            return True
        if status.uidnext < folder.uidnext:
            logger.warning(
                f"UIDNEXT moved backwards for {folder.path}: "
                f"{folder.uidnext} -> {status.uidnext}"
            )
            return True
        return False

    async def reconcile(self, client: IMAPClient, folder: Folder) -> FolderSyncResult:
        """
        Sync one folder.

        Args:
            client: Connected IMAP client (leased by the caller).
            folder: Stored folder to reconcile.

        Returns:
            FolderSyncResult with counts.

        Raises:
            ProtocolError: The server refused a command for this folder.
            MailConnectionError: The connection failed.
            StoreError: The transaction failed; nothing was changed.
        """
        status = await client.select_folder(folder.path)
        full = self.needs_full_resync(folder, status)
        result = FolderSyncResult(path=folder.path, mode=SyncMode.FULL if full else SyncMode.INCREMENTAL)

        # Every UID currently on the server below its UIDNEXT, with flags
        server_flags = await client.fetch_flags(folder.path, status.uidnext)

        if full:
            local_flags: dict[int, MessageFlags] = {}
            new_uids = sorted(server_flags)
        else:
            local_flags = await self.repo.get_local_flags(folder.id)
            new_uids = sorted(
                uid for uid in server_flags
                if uid >= folder.uidnext and uid not in local_flags
            )

        expunged = {uid for uid in local_flags if uid not in server_flags}
        changed = {
            uid: server_flags[uid]
            for uid, flags in local_flags.items()
            if uid in server_flags and server_flags[uid] != flags
        }

        fetched: list[Message] = []
        for i in range(0, len(new_uids), self.batch_size):
            batch = new_uids[i:i + self.batch_size]
            logger.debug(f"Fetching {len(batch)} messages from {folder.path}")
            fetched.extend(await client.fetch_messages(folder.path, batch))

        # A message that arrived after SELECT belongs to the next pass
        fetched = [m for m in fetched if m.uid is not None and m.uid < status.uidnext]

        async with self.repo.transaction():
            if full:
                result.deleted_ids = await self.repo.delete_all_messages_in_folder(folder.id)
            else:
                result.deleted_ids = await self.repo.delete_messages_by_uids(folder.id, expunged)
                await self.repo.update_flags_bulk(folder.id, changed)

            for message in fetched:
                await self._store(folder, message)

            updated = replace(
                folder,
                uidvalidity=status.uidvalidity,
                uidnext=status.uidnext,
                last_sync=datetime.now(timezone.utc),
            )
            await self.repo.recompute_folder_counts(updated)
            await self.repo.save_folder(updated)

        # Only now that the watermark is committed
        folder.uidvalidity, folder.uidnext = updated.uidvalidity, updated.uidnext
        folder.total_count, folder.unread_count = updated.total_count, updated.unread_count
        folder.last_sync = updated.last_sync

        result.new_messages = len(fetched)
        result.updated_messages = len(changed)
        result.deleted_messages = len(result.deleted_ids)

        if self.cache is not None:
            await self.cache.cleanup_many(result.deleted_ids)

        logger.info(
            f"Synced {folder.path} ({result.mode.value}): {result.new_messages} new, "
            f"{result.updated_messages} updated, {result.deleted_messages} deleted"
        )
        return result

    async def _store(self, folder: Folder, message: Message) -> None:
        """Insert a fetched message, adopting a pending row with the same Message-ID."""
        message.folder_id = folder.id
        message.account_id = folder.account_id

        pending = None
        if message.message_id:
            pending = await self.repo.find_pending_message(folder.id, message.message_id)
        if pending is not None:
            logger.debug(f"Adopting pending message {pending.id} as UID {message.uid}")
            message.id = pending.id
            if await self.repo.get_attachments(pending.id):
                # Keep the rows (and any cached files) already there
                message.has_attachments = message.has_attachments or bool(message.attachments)
                message.attachments = []

        await self.repo.save_message(message)


# =============================================================================
# Sync Manager
# =============================================================================

class SyncManager:
    """
    Runs sync passes over accounts.

    Usage:
        >>> sync = SyncManager(connections, repo, status=registry)
        >>> result = await sync.sync_account(account)

    Attributes:
        connections: Where retrieval connections are leased from.
        repo: Repository for local storage operations.
        status: Registry that receives account status changes.
    """

    def __init__(
        self,
        connections: "ConnectionManager",
        repo: "Repository",
        *,
        status: StatusRegistry | None = None,
        cache: "AttachmentCache | None" = None,
        batch_size: int = 50,
    ) -> None:
        self.connections = connections
        self.repo = repo
        self.status = status or StatusRegistry()
        self.cache = cache
        self.reconciler = FolderReconciler(repo, cache, batch_size)

    def _report_progress(
        self,
        callback: ProgressCallback | None,
        progress: SyncProgress,
        **updates,
    ) -> None:
        """
        Update progress and notify callback.

        Args:
            callback: Optional callback to notify.
            progress: Progress of the pass being reported, one per account.
            **updates: Fields to update in progress.
        """
        for key, value in updates.items():
            if hasattr(progress, key):
                setattr(progress, key, value)

        if callback:
            callback(progress)

    async def _ensure_stored(self, account: Account) -> None:
        if account.id is None:
            stored = await self.repo.get_account_by_name(account.name)
            if stored is None:
                stored = await self.repo.save_account(account)
            account.id = stored.id

    # =========================================================================
    # Account Passes
    # =========================================================================

    async def sync_all(
        self,
        accounts: list[Account],
        *,
        progress_callback: ProgressCallback | None = None,
    ) -> dict[str, SyncResult | KestrelError]:
        """
        Sync several accounts concurrently.

        Returns:
            Per account name, its SyncResult or the error that stopped it.
        """
        enabled = [a for a in accounts if a.enabled]
        outcomes = await asyncio.gather(
            *(self.sync_account(a, progress_callback=progress_callback) for a in enabled),
            return_exceptions=True,
        )
        results: dict[str, SyncResult | KestrelError] = {}
        for account, outcome in zip(enabled, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, KestrelError):
                raise outcome
            results[account.name] = outcome
        return results

    async def sync_account(
        self,
        account: Account,
        *,
        progress_callback: ProgressCallback | None = None,
    ) -> SyncResult:
        """
        Run one sync pass over every selectable folder of an account.

        A folder that fails with ProtocolError is recorded in the result and
        the pass moves on. Connection, authentication and storage failures
        end the pass and propagate.

        Returns:
            SyncResult indicating success/failure and statistics.

        Raises:
            AuthenticationError, MailConnectionError, StoreError
        """
        start = time.monotonic()
        result = SyncResult()
        last_protocol_error: ProtocolError | None = None
        await self._ensure_stored(account)

        self.status.set_syncing(account)
        await self.repo.update_account_status(account.id, SyncStatus.SYNCING)
        progress = SyncProgress(account=account.name)
        logger.info(f"Starting sync for account: {account.name}")

        try:
            async with self.connections.retrieval(account) as client:
                folders = await self._sync_folder_tree(client, account)
                selectable = [f for f in folders if f.is_selectable]
                self._report_progress(progress_callback, progress, total_folders=len(selectable))

                for i, folder in enumerate(selectable):
                    self._report_progress(progress_callback, progress, folder=folder.path, synced_folders=i)
                    try:
                        result.add(await self.reconciler.reconcile(client, folder))
                    except ProtocolError as e:
                        error_msg = f"Error syncing {folder.path}: {e}"
                        logger.error(error_msg)
                        result.errors.append(error_msg)
                        last_protocol_error = e

                self._report_progress(progress_callback, progress, folder=None, synced_folders=len(selectable))
        except asyncio.CancelledError:
            logger.info(f"Sync of {account.name} cancelled")
            settled = self.status.set_idle(account)
            await asyncio.shield(self._store_status(account, settled.status))
            raise
        except KestrelError as e:
            logger.error(f"Sync of {account.name} failed: {e}")
            result.success = False
            result.errors.append(str(e))
            self.status.record_error(account, e)
            await self._store_status(account, status_for_error(e))
            raise
        finally:
            result.duration_seconds = time.monotonic() - start

        if result.errors:
            result.success = False
            self.status.record_error(account, last_protocol_error)
            await self._store_status(account, SyncStatus.ERROR)
        else:
            account.last_sync = datetime.now(timezone.utc)
            account.sync_status = SyncStatus.CONNECTED
            self.status.record_success(account, account.last_sync)
            await self.repo.update_account_status(account.id, SyncStatus.CONNECTED, account.last_sync)

        logger.info(
            f"Sync of {account.name} complete: {result.new_messages} new, "
            f"{result.updated_messages} updated, {result.deleted_messages} deleted "
            f"in {result.duration_seconds:.1f}s"
        )
        return result

    async def _store_status(self, account: Account, status: SyncStatus) -> None:
        account.sync_status = status
        try:
            await self.repo.update_account_status(account.id, status)
        except KestrelError as e:
            logger.warning(f"Could not record status of {account.name}: {e}")

    async def sync_folder(self, account: Account, folder: Folder) -> FolderSyncResult:
        """
        Reconcile a single folder outside a full pass.

        Raises:
            ProtocolError, MailConnectionError, AuthenticationError, StoreError
        """
        await self._ensure_stored(account)
        try:
            async with self.connections.retrieval(account) as client:
                return await self.reconciler.reconcile(client, folder)
        except (MailConnectionError, AuthenticationError) as e:
            self.status.record_error(account, e)
            raise

    # =========================================================================
    # Folder Tree
    # =========================================================================

    async def _sync_folder_tree(self, client: IMAPClient, account: Account) -> list[Folder]:
        """
        Mirror the server's folder list.

        Parents are saved before children so parent links resolve. Folders
        the server no longer lists are removed with their subtree and
        messages, after surviving children have been re-linked.

        Returns:
            The stored folders after the update.
        """
        server_folders = await client.list_folders()
        logger.info(f"Found {len(server_folders)} folders on server")

        local_folders = await self.repo.get_folders(account.id)
        local_by_path = {f.path: f for f in local_folders}
        server_paths = {f.path for f in server_folders}

        removed_ids: list[int] = []
        async with self.repo.transaction():
            saved_by_path: dict[str, Folder] = {}
            for remote in sorted(server_folders, key=lambda f: f.path.count(f.delimiter or "/")):
                folder = local_by_path.get(remote.path)
                if folder is None:
                    folder = remote
                    folder.account_id = account.id
                else:
                    folder.name = remote.name
                    folder.folder_type = remote.folder_type
                    folder.delimiter = remote.delimiter
                    folder.is_selectable = remote.is_selectable
                    # The watermark is only touched by the reconciler
                parent = saved_by_path.get(folder.parent_path) if folder.parent_path else None
                folder.parent_id = parent.id if parent else None
                saved_by_path[folder.path] = await self.repo.save_folder(folder)

            for local in local_folders:
                if local.path not in server_paths:
                    logger.info(f"Removing deleted folder: {local.path}")
                    removed_ids.extend(await self.repo.delete_folder(local.id))

        if self.cache is not None:
            await self.cache.cleanup_many(removed_ids)

        return await self.repo.get_folders(account.id)
