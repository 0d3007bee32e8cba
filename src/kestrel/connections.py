# =============================================================================
# Connection Manager
# =============================================================================
# Owns at most one retrieval (IMAP) and one submission (SMTP) connection per
# account and hands them out one user at a time.
#
#   async with manager.retrieval(account) as imap:
#       await imap.select_folder("INBOX")
#
# A slot is (account, role). Entering the context takes the slot's lock,
# connects if needed (with retry and backoff for transient failures, unless
# the caller runs its own retry loop), and yields the live client. A
# connection dropped mid-use is left DISCONNECTED and is re-established on
# the next entry.
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kestrel.config import SyncConfig
from kestrel.core import Account, BusyError
from kestrel.credentials import CredentialStore
from kestrel.imap.client import ConnectionPhase, IMAPClient
from kestrel.retry import RetryPolicy, retry_async
from kestrel.smtp.client import SMTPClient

logger = logging.getLogger(__name__)


class ConnectionRole(Enum):
    RETRIEVAL = "retrieval"
    SUBMISSION = "submission"


@dataclass
class _Slot:
    client: Any
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


ClientFactory = Callable[[Account], Any]


class ConnectionManager:
    """
    Per-account connection pool with exactly one connection per role.

    Args:
        credentials: Where clients look up passwords.
        sync_config: Timeouts and retry settings.
        imap_factory: Builds the retrieval client for an account.
        smtp_factory: Builds the submission client for an account.
        sleep: Backoff sleep, injected for tests.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sync_config: SyncConfig | None = None,
        *,
        imap_factory: ClientFactory | None = None,
        smtp_factory: ClientFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.credentials = credentials
        self.sync_config = sync_config or SyncConfig()
        self.policy = RetryPolicy.from_config(self.sync_config)
        self._imap_factory = imap_factory or self._default_imap
        self._smtp_factory = smtp_factory or self._default_smtp
        self._sleep = sleep
        self._slots: dict[tuple[str, ConnectionRole], _Slot] = {}

    def _default_imap(self, account: Account) -> IMAPClient:
        return IMAPClient(
            account,
            self.credentials,
            connect_timeout=self.sync_config.connect_timeout,
            command_timeout=self.sync_config.command_timeout,
        )

    def _default_smtp(self, account: Account) -> SMTPClient:
        return SMTPClient(
            account,
            self.credentials,
            connect_timeout=self.sync_config.connect_timeout,
            command_timeout=self.sync_config.command_timeout,
        )

    def _slot(self, account: Account, role: ConnectionRole) -> _Slot:
        key = (account.name, role)
        slot = self._slots.get(key)
        if slot is None:
            factory = self._imap_factory if role is ConnectionRole.RETRIEVAL else self._smtp_factory
            slot = _Slot(client=factory(account))
            self._slots[key] = slot
        return slot

    def phase(self, account: Account, role: ConnectionRole) -> ConnectionPhase:
        slot = self._slots.get((account.name, role))
        return slot.client.phase if slot else ConnectionPhase.DISCONNECTED

    # =========================================================================
    # Leasing
    # =========================================================================

    @asynccontextmanager
    async def _lease(
        self, account: Account, role: ConnectionRole, wait: bool, retry: bool
    ) -> AsyncIterator[Any]:
        slot = self._slot(account, role)
        if not wait and slot.lock.locked():
            raise BusyError(f"{role.value} connection for {account.name} is in use")

        async with slot.lock:
            client = slot.client
            if not client.is_connected and not retry:
                await client.connect()
            elif not client.is_connected:
                await retry_async(
                    client.connect,
                    self.policy,
                    description=f"{role.value} connect for {account.name}",
                    sleep=self._sleep,
                )
            yield client

    def retrieval(self, account: Account, *, wait: bool = True, retry: bool = True):
        """
        Lease the account's IMAP connection.

        Args:
            account: Account to connect.
            wait: If False, raise BusyError instead of queueing behind the
                current user.
            retry: If False, connect once and leave retrying to the caller.

        Raises:
            BusyError: The slot is in use and wait is False.
            AuthenticationError: Credentials were rejected or are missing.
            MailConnectionError: Every connect attempt failed.
        """
        return self._lease(account, ConnectionRole.RETRIEVAL, wait, retry)

    def submission(self, account: Account, *, wait: bool = True, retry: bool = True):
        """Lease the account's SMTP connection. See retrieval()."""
        return self._lease(account, ConnectionRole.SUBMISSION, wait, retry)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def disconnect(self, account: Account) -> None:
        """Close both of the account's connections and forget them."""
        for role in ConnectionRole:
            slot = self._slots.pop((account.name, role), None)
            if slot is None:
                continue
            async with slot.lock:
                await slot.client.disconnect()
            logger.debug(f"Closed {role.value} connection for {account.name}")

    async def disconnect_all(self) -> None:
        """Close every connection. Used at shutdown."""
        names = {name for name, _ in self._slots}
        for name in names:
            for role in ConnectionRole:
                slot = self._slots.pop((name, role), None)
                if slot is not None:
                    async with slot.lock:
                        await slot.client.disconnect()
        logger.info("All connections closed")
