# =============================================================================
# Account Manager
# =============================================================================
# Adding and removing accounts touches four places: the config file, the
# keyring, the mirror database and the attachment cache. This module keeps
# them in step.
# =============================================================================

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from kestrel.config import Config, ConfigError, validate_account
from kestrel.core import Account, NotFoundError

if TYPE_CHECKING:
    from kestrel.attachments.cache import AttachmentCache
    from kestrel.attachments.fetcher import AttachmentFetcher
    from kestrel.connections import ConnectionManager
    from kestrel.credentials import CredentialStore
    from kestrel.drafts import DraftService
    from kestrel.status import StatusRegistry
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)


class AccountManager:
    """
    Registers, updates and removes accounts.

    Usage:
        >>> manager = AccountManager(config, repo, credentials, connections, cache, status)
        >>> await manager.add_account(account, "app-password")
        >>> await manager.remove_account(account)
    """

    def __init__(
        self,
        config: Config,
        repo: "Repository",
        credentials: "CredentialStore",
        connections: "ConnectionManager",
        cache: "AttachmentCache",
        status: "StatusRegistry",
        *,
        config_path: Path | None = None,
        fetcher: "AttachmentFetcher | None" = None,
        drafts: "DraftService | None" = None,
    ) -> None:
        self.config = config
        self.repo = repo
        self.credentials = credentials
        self.connections = connections
        self.cache = cache
        self.status = status
        self.config_path = config_path
        self.fetcher = fetcher
        self.drafts = drafts

    def get(self, name: str | None = None) -> Account:
        """
        Look up a configured account by name, or the default account.

        Raises:
            NotFoundError: No such account is configured.
        """
        name = name or self.config.default_account
        if not name and len(self.config.accounts) == 1:
            name = next(iter(self.config.accounts))
        account = self.config.accounts.get(name)
        if account is None:
            raise NotFoundError(f"No account named '{name}' is configured")
        return account

    async def register_configured(self) -> list[Account]:
        """
        Make sure every configured account has a row in the mirror.

        Status and last sync time already stored are carried over.
        """
        for account in self.config.accounts.values():
            stored = await self.repo.get_account_by_name(account.name)
            if stored is not None:
                account.id = stored.id
                account.last_sync = stored.last_sync
                account.sync_status = stored.sync_status
            await self.repo.save_account(account)
        return list(self.config.accounts.values())

    async def add_account(self, account: Account, password: str | None = None) -> Account:
        """
        Add (or update) an account and persist it to the config file.

        Raises:
            ConfigError: The account settings are invalid.
            StoreError: The keyring or the database failed.
        """
        validate_account(account)
        if password is not None:
            await self.credentials.save_for(account, password)
        await self.repo.save_account(account)

        self.config.accounts[account.name] = account
        if not self.config.default_account:
            self.config.default_account = account.name
        self.config.save(self.config_path)
        logger.info(f"Added account {account.name} ({account.email})")
        return account

    async def set_password(self, account: Account, password: str) -> None:
        if not password:
            raise ConfigError("Password must not be empty")
        await self.credentials.save_for(account, password)
        # The next lease reconnects with the new password
        await self.connections.disconnect(account)

    async def remove_account(self, account: Account) -> None:
        """
        Remove an account and everything stored for it.

        Stops its attachment downloads and closes its connections first.
        Then deletes its drafts, folders, messages and attachments from the
        mirror, empties its attachment cache, deletes its password from the
        keyring and drops it from the config file.
        """
        if self.fetcher is not None:
            await self.fetcher.cancel_account(account.name)
        await self.connections.disconnect(account)

        if account.id is None:
            stored = await self.repo.get_account_by_name(account.name)
            account.id = stored.id if stored else None
        if account.id is not None:
            if self.drafts is not None:
                await self.drafts.delete_all(account)
            message_ids = await self.repo.delete_account(account.id)
            await self.cache.cleanup_many(message_ids)

        await self.credentials.delete_for(account)
        self.status.forget_account(account.name)

        if self.config.accounts.pop(account.name, None) is not None:
            if self.config.default_account == account.name:
                self.config.default_account = next(iter(self.config.accounts), "")
            self.config.save(self.config_path)
        logger.info(f"Removed account {account.name}")
