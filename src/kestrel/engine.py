# =============================================================================
# Mail Engine
# =============================================================================
# Wires the sync core together from a Config: database, credentials,
# connections, sync, dispatch, attachments, actions, drafts and search.
#
#   async with MailEngine(config) as engine:
#       await engine.sync.sync_account(engine.accounts.get("personal"))
# =============================================================================

import logging
from pathlib import Path

from kestrel.accounts import AccountManager
from kestrel.attachments import AttachmentCache, AttachmentFetcher
from kestrel.config import Config
from kestrel.connections import ClientFactory, ConnectionManager
from kestrel.credentials import CredentialStore
from kestrel.drafts import DraftService
from kestrel.imap import MailboxActions, SyncManager
from kestrel.retry import RetryPolicy
from kestrel.search import SearchService
from kestrel.smtp import MessageDispatcher
from kestrel.status import StatusRegistry
from kestrel.storage import Database, Repository

logger = logging.getLogger(__name__)


class MailEngine:
    """
    Owns every long-lived component of the sync core.

    Attributes:
        config: Loaded configuration.
        repo: Local mirror.
        status: Account and download status.
        connections: Per-account connections.
        sync: Sync passes.
        dispatcher: Outgoing mail.
        fetcher: Attachment downloads.
        actions: Move, flag and delete.
        drafts: Locally stored drafts with autosave.
        search: Local search and its history.
        accounts: Account registration and removal.
    """

    def __init__(
        self,
        config: Config,
        *,
        config_path: Path | None = None,
        db_path: Path | None = None,
        credentials: CredentialStore | None = None,
        imap_factory: ClientFactory | None = None,
        smtp_factory: ClientFactory | None = None,
    ) -> None:
        self.config = config
        self.db = Database(db_path)
        self.repo = Repository(self.db)
        self.credentials = credentials or CredentialStore()
        self.status = StatusRegistry()

        self.connections = ConnectionManager(
            self.credentials,
            config.sync,
            imap_factory=imap_factory,
            smtp_factory=smtp_factory,
        )
        self.cache = AttachmentCache(config.attachment_cache_dir())
        self.fetcher = AttachmentFetcher(self.connections, self.repo, self.cache, self.status)
        self.sync = SyncManager(
            self.connections,
            self.repo,
            status=self.status,
            cache=self.cache,
            batch_size=config.sync.batch_size,
        )
        self.dispatcher = MessageDispatcher(
            self.connections,
            self.repo,
            policy=RetryPolicy.from_config(config.sync),
            fetcher=self.fetcher,
        )
        self.actions = MailboxActions(self.connections, self.repo, self.cache)
        self.drafts = DraftService(
            self.repo,
            dispatcher=self.dispatcher,
            autosave_delay=config.drafts.autosave_delay,
        )
        self.search = SearchService(self.repo)
        self.accounts = AccountManager(
            config,
            self.repo,
            self.credentials,
            self.connections,
            self.cache,
            self.status,
            config_path=config_path,
            fetcher=self.fetcher,
            drafts=self.drafts,
        )

    async def open(self) -> "MailEngine":
        await self.db.connect()
        await self.accounts.register_configured()
        logger.info(f"Engine ready with {len(self.config.accounts)} account(s)")
        return self

    async def close(self) -> None:
        """Write pending drafts, cancel downloads, close connections, then the database."""
        try:
            await self.drafts.close()
        finally:
            await self.fetcher.cancel_all()
            await self.connections.disconnect_all()
            await self.db.close()

    async def __aenter__(self) -> "MailEngine":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()
