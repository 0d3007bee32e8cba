# =============================================================================
# Attachment Fetcher
# =============================================================================
# Downloads attachment payloads on demand.
#
# Rules:
#   - At most one transfer per attachment. Concurrent requests for the same
#     attachment await the transfer already running.
#   - A caller that is cancelled only stops waiting; the shared transfer
#     continues. cancel(attachment_id) stops the transfer itself.
#   - Progress is published to the StatusRegistry as
#     NOT_STARTED -> IN_PROGRESS -> COMPLETE | FAILED, and back to
#     NOT_STARTED after a cancel.
#   - The payload arrives in a single FETCH response, so progress is coarse:
#     it steps from PROGRESS_REQUESTED to PROGRESS_RECEIVED to 1.0.
# =============================================================================

import asyncio
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from kestrel.attachments.cache import AttachmentCache, sanitize_filename
from kestrel.core import Attachment, KestrelError, Message, NotFoundError
from kestrel.status import DownloadProgress, DownloadState, StatusRegistry

if TYPE_CHECKING:
    from kestrel.connections import ConnectionManager
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)

PROGRESS_REQUESTED = 0.0
PROGRESS_RECEIVED = 0.9


class AttachmentFetcher:
    """
    Single-flight attachment downloader.

    Usage:
        >>> fetcher = AttachmentFetcher(connections, repo, cache, status)
        >>> path = await fetcher.download(attachment)
    """

    def __init__(
        self,
        connections: "ConnectionManager",
        repo: "Repository",
        cache: AttachmentCache,
        status: StatusRegistry | None = None,
    ) -> None:
        self.connections = connections
        self.repo = repo
        self.cache = cache
        self.status = status or StatusRegistry()
        self._transfers: dict[int, asyncio.Task] = {}
        self._transfer_accounts: dict[int, str] = {}

    def progress(self, attachment_id: int) -> DownloadProgress:
        return self.status.download(attachment_id)

    def is_downloading(self, attachment_id: int) -> bool:
        return attachment_id in self._transfers

    # =========================================================================
    # Download
    # =========================================================================

    async def download(self, attachment: Attachment, message: Message | None = None) -> Path:
        """
        Return the cached file of an attachment, downloading it if needed.

        Args:
            attachment: Stored attachment (must have an id).
            message: Its message, if the caller already has it loaded.

        Returns:
            Path of the complete cached file.

        Raises:
            NotFoundError: The attachment or its message is no longer on the
                server or in the mirror.
            MailConnectionError, AuthenticationError, StoreError: From the
                transfer.
            asyncio.CancelledError: If the transfer was cancelled.
        """
        if attachment.id is None:
            raise NotFoundError("Attachment has not been stored")

        if self.cache.is_cached(attachment):
            return Path(attachment.local_path)

        task = self._transfers.get(attachment.id)
        if task is None:
            task = asyncio.create_task(self._transfer(attachment, message))
            self._transfers[attachment.id] = task
            task.add_done_callback(lambda t, aid=attachment.id: self._finished(aid, t))
        else:
            logger.debug(f"Joining running download of attachment {attachment.id}")

        return await asyncio.shield(task)

    def _finished(self, attachment_id: int, task: asyncio.Task) -> None:
        if self._transfers.get(attachment_id) is task:
            del self._transfers[attachment_id]
            self._transfer_accounts.pop(attachment_id, None)
        if task.cancelled():
            self.status.publish_download(DownloadProgress(attachment_id, DownloadState.NOT_STARTED))
            logger.info(f"Download of attachment {attachment_id} cancelled")
        elif task.exception() is not None:
            logger.debug(f"Download of attachment {attachment_id} ended with {task.exception()!r}")

    async def _transfer(self, attachment: Attachment, message: Message | None) -> Path:
        aid = attachment.id
        self._publish(aid, DownloadState.IN_PROGRESS, PROGRESS_REQUESTED)
        try:
            if message is None or message.id != attachment.message_id:
                message = await self.repo.get_message(attachment.message_id)
            if message is None or message.uid is None or message.folder_id is None:
                raise NotFoundError(f"Message of attachment {aid} is not on the server")

            folder = await self.repo.get_folder(message.folder_id)
            account = await self.repo.get_account(message.account_id)
            if folder is None or account is None:
                raise NotFoundError(f"Folder or account of attachment {aid} no longer exists")
            self._transfer_accounts[aid] = account.name

            logger.info(f"Downloading {attachment.filename} ({attachment.human_size})")
            async with self.connections.retrieval(account) as imap:
                data = await imap.fetch_attachment(
                    folder.path, message.uid, attachment.part_id, attachment.encoding
                )
            self._publish(aid, DownloadState.IN_PROGRESS, PROGRESS_RECEIVED)

            path = await self.cache.write(attachment, data)
            try:
                attachment.local_path = str(path)
                attachment.is_downloaded = True
                async with self.repo.transaction():
                    await self.repo.save_attachment(attachment)
            except BaseException:
                attachment.local_path = None
                attachment.is_downloaded = False
                self.cache.remove(path)
                raise
        except KestrelError as e:
            logger.error(f"Download of attachment {aid} failed: {e}")
            self._publish(aid, DownloadState.FAILED, 0.0, str(e))
            raise

        self._publish(aid, DownloadState.COMPLETE, 1.0)
        return path

    def _publish(self, aid: int, state: DownloadState, progress: float, error: str | None = None) -> None:
        self.status.publish_download(DownloadProgress(aid, state, progress, error))

    # =========================================================================
    # Control
    # =========================================================================

    def cancel(self, attachment_id: int) -> bool:
        """
        Stop a running transfer. Waiting callers get CancelledError.

        Returns:
            True if a transfer was running.
        """
        task = self._transfers.get(attachment_id)
        if task is None:
            return False
        task.cancel()
        return True

    async def cancel_account(self, account_name: str) -> None:
        """Stop every transfer of an account and wait for them to unwind."""
        tasks = [
            self._transfers[aid]
            for aid, name in list(self._transfer_accounts.items())
            if name == account_name and aid in self._transfers
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} download(s) of {account_name}")
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._transfers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cleanup(self, message_id: int) -> None:
        """Forget every cached attachment of a message."""
        for attachment in await self.repo.get_attachments(message_id):
            if attachment.id is not None:
                self.cancel(attachment.id)
                self.status.forget_download(attachment.id)
        await self.cache.cleanup(message_id)
        async with self.repo.transaction():
            for attachment in await self.repo.get_attachments(message_id):
                if attachment.is_downloaded:
                    attachment.local_path = None
                    attachment.is_downloaded = False
                    await self.repo.save_attachment(attachment)

    async def clear_all(self) -> None:
        """Cancel every transfer and empty the cache, resetting stored paths."""
        await self.cancel_all()
        await self.cache.clear_all()
        async with self.repo.transaction():
            for attachment in await self.repo.get_downloaded_attachments():
                self.status.forget_download(attachment.id)
                attachment.local_path = None
                attachment.is_downloaded = False
                await self.repo.save_attachment(attachment)

    def cache_size(self) -> int:
        return self.cache.size()

    def open_path(self, attachment: Attachment) -> Path:
        """
        Path of an already downloaded attachment.

        Raises:
            NotFoundError: The attachment is not cached (or its file vanished).
        """
        if not self.cache.is_cached(attachment):
            raise NotFoundError(f"{attachment.filename} is not downloaded")
        return Path(attachment.local_path)

    async def save_to(self, attachment: Attachment, destination: Path) -> Path:
        """
        Download (if needed) and copy an attachment to a user-chosen path.

        If destination is a directory the original filename is used.
        """
        source = await self.download(attachment)
        destination = Path(destination).expanduser()
        if destination.is_dir():
            destination = destination / sanitize_filename(attachment.filename)
        await asyncio.to_thread(shutil.copyfile, source, destination)
        logger.info(f"Saved {attachment.filename} to {destination}")
        return destination
