# =============================================================================
# Mailbox Actions
# =============================================================================
# User-initiated changes to messages: move, flag, delete.
#
# Every action is confirmed by the server first and only then committed to
# the mirror, in one transaction per source folder. If the server refuses,
# neither the mirror nor the in-memory Message objects change.
# =============================================================================

import logging
from collections import defaultdict
from dataclasses import replace
from typing import TYPE_CHECKING

from kestrel.core import Account, Folder, FolderType, Message, MessageFlags, NotFoundError
from kestrel.core.message import flags_to_imap

if TYPE_CHECKING:
    from kestrel.attachments.cache import AttachmentCache
    from kestrel.connections import ConnectionManager
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)


class MailboxActions:
    """
    Applies moves and flag changes to the server and the mirror.

    Usage:
        >>> actions = MailboxActions(connections, repo, cache)
        >>> await actions.mark_read([message])
        >>> await actions.move([message], archive_folder)
    """

    def __init__(
        self,
        connections: "ConnectionManager",
        repo: "Repository",
        cache: "AttachmentCache | None" = None,
    ) -> None:
        self.connections = connections
        self.repo = repo
        self.cache = cache

    async def _account(self, account_id: int) -> Account:
        account = await self.repo.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} no longer exists")
        return account

    async def _folder(self, folder_id: int) -> Folder:
        folder = await self.repo.get_folder(folder_id)
        if folder is None:
            raise NotFoundError(f"Folder {folder_id} no longer exists")
        return folder

    @staticmethod
    def _by_folder(messages: list[Message]) -> dict[int | None, list[Message]]:
        groups: dict[int | None, list[Message]] = defaultdict(list)
        for message in messages:
            groups[message.folder_id].append(message)
        return groups

    # =========================================================================
    # Move
    # =========================================================================

    async def move(self, messages: list[Message], destination: Folder) -> int:
        """
        Move messages to another folder of the same account.

        The moved rows keep their attachments and cached files. Their UID in
        the destination comes from COPYUID when the server reports it,
        otherwise it stays unknown until the destination is synced.

        Returns:
            Number of messages moved.

        Raises:
            ValueError: A message belongs to another account.
            NotFoundError: A message has no server UID yet.
            ProtocolError, MailConnectionError: The server refused; nothing changed.
        """
        if not messages:
            return 0
        for message in messages:
            if message.account_id != destination.account_id:
                raise ValueError("Cannot move messages between accounts")
            if message.uid is None or message.folder_id is None:
                raise NotFoundError(f"Message {message.id} is not on the server yet")

        account = await self._account(destination.account_id)
        moved = 0

        for folder_id, group in self._by_folder(messages).items():
            if folder_id == destination.id:
                continue
            source = await self._folder(folder_id)
            uids = [m.uid for m in group]

            logger.info(f"Moving {len(uids)} messages from {source.path} to {destination.path}")
            async with self.connections.retrieval(account) as client:
                uid_map = await client.move_messages(source.path, destination.path, uids)

            async with self.repo.transaction():
                for message in group:
                    await self.repo.update_message_location(
                        message.id, destination.id, uid_map.get(message.uid)
                    )
                await self.repo.recompute_folder_counts(source)
                counted = await self.repo.recompute_folder_counts(replace(destination))

            destination.total_count = counted.total_count
            destination.unread_count = counted.unread_count
            for message in group:
                message.uid = uid_map.get(message.uid)
                message.folder_id = destination.id
            moved += len(group)

        return moved

    # =========================================================================
    # Flags
    # =========================================================================

    async def set_flags(
        self,
        messages: list[Message],
        flags: MessageFlags,
        *,
        add: bool = True,
    ) -> None:
        """
        Add or remove flags on messages.

        Messages without a server UID are updated locally only.

        Raises:
            ProtocolError, MailConnectionError: The server refused; nothing changed.
        """
        if not messages or flags == MessageFlags.NONE:
            return

        for folder_id, group in self._by_folder(messages).items():
            folder = await self._folder(folder_id) if folder_id is not None else None
            on_server = [m for m in group if m.uid is not None]

            if folder is not None and on_server:
                account = await self._account(folder.account_id)
                async with self.connections.retrieval(account) as client:
                    await client.set_flags(
                        folder.path, [m.uid for m in on_server], flags_to_imap(flags), add=add
                    )

            new_flags = {
                m.id: (m.flags | flags) if add else (m.flags & ~flags)
                for m in group
            }
            async with self.repo.transaction():
                for message in group:
                    await self.repo.update_message_flags(message.id, new_flags[message.id])
                if folder is not None:
                    await self.repo.recompute_folder_counts(folder)

            for message in group:
                message.flags = new_flags[message.id]

    async def mark_read(self, messages: list[Message]) -> None:
        await self.set_flags(messages, MessageFlags.SEEN, add=True)

    async def mark_unread(self, messages: list[Message]) -> None:
        await self.set_flags(messages, MessageFlags.SEEN, add=False)

    async def star(self, messages: list[Message]) -> None:
        await self.set_flags(messages, MessageFlags.FLAGGED, add=True)

    async def unstar(self, messages: list[Message]) -> None:
        await self.set_flags(messages, MessageFlags.FLAGGED, add=False)

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, messages: list[Message]) -> None:
        """
        Delete messages.

        Messages are moved to the account's Trash. Messages already in Trash,
        or of an account without one, are expunged permanently.
        """
        by_account: dict[int, list[Message]] = defaultdict(list)
        for message in messages:
            by_account[message.account_id].append(message)

        for account_id, group in by_account.items():
            trash = await self.repo.get_folder_by_type(account_id, FolderType.TRASH)
            to_trash: list[Message] = []
            permanent: list[Message] = []
            for message in group:
                if trash is not None and message.folder_id != trash.id:
                    to_trash.append(message)
                else:
                    permanent.append(message)

            if to_trash:
                await self.move(to_trash, trash)
            if permanent:
                await self._expunge(account_id, permanent)

    async def _expunge(self, account_id: int, messages: list[Message]) -> None:
        account = await self._account(account_id)
        for folder_id, group in self._by_folder(messages).items():
            folder = await self._folder(folder_id) if folder_id is not None else None
            on_server = [m.uid for m in group if m.uid is not None]

            if folder is not None and on_server:
                logger.info(f"Permanently deleting {len(on_server)} messages from {folder.path}")
                async with self.connections.retrieval(account) as client:
                    await client.delete_messages(folder.path, on_server)

            ids = [m.id for m in group]
            async with self.repo.transaction():
                await self.repo.delete_messages(ids)
                if folder is not None:
                    await self.repo.recompute_folder_counts(folder)

            if self.cache is not None:
                await self.cache.cleanup_many(ids)
