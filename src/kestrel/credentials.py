# =============================================================================
# Credential Resolver
# =============================================================================
# Stores and resolves account passwords in the system keyring.
#
# The keyring API is blocking (it may talk to a D-Bus secret service or the
# macOS keychain), so every call runs in a worker thread via asyncio.to_thread.
# Operations on the same key are serialized with a per-key lock; different
# accounts proceed concurrently.
#
# Keys follow the Account.keyring_service scheme ("kestrel:<account name>")
# with the login address as the keyring username, so entries can be managed
# from the keyring CLI as well:
#
#   keyring set kestrel:personal user@example.com
# =============================================================================

import asyncio
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from kestrel.core import Account, CredentialNotFoundError, StoreError

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Async facade over the `keyring` library.

    Usage:
        store = CredentialStore()
        await store.save("kestrel:personal", "user@example.com", "hunter2")
        password = await store.get("kestrel:personal", "user@example.com")
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock(self, service: str, username: str) -> asyncio.Lock:
        key = (service, username)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def save(self, service: str, username: str, secret: str) -> None:
        """
        Store a secret, overwriting any existing one for the same key.

        Raises:
            StoreError: If the keyring backend fails.
        """
        async with self._lock(service, username):
            try:
                await asyncio.to_thread(keyring.set_password, service, username, secret)
            except KeyringError as e:
                raise StoreError(f"Could not store credentials for {service}: {e}") from e
        logger.info(f"Stored credentials for {service}")

    async def get(self, service: str, username: str) -> str:
        """
        Resolve a stored secret.

        Raises:
            CredentialNotFoundError: If nothing is stored for the key.
            StoreError: If the keyring backend fails (may be retried).
        """
        async with self._lock(service, username):
            try:
                secret = await asyncio.to_thread(keyring.get_password, service, username)
            except KeyringError as e:
                raise StoreError(f"Could not read credentials for {service}: {e}") from e

        if secret is None:
            raise CredentialNotFoundError(
                f"No password found in keyring for {username}. "
                f"Set it with: keyring set {service} {username}"
            )
        return secret

    async def delete(self, service: str, username: str) -> None:
        """
        Remove a stored secret. Deleting a missing secret is not an error.

        Raises:
            StoreError: If the keyring backend fails.
        """
        async with self._lock(service, username):
            try:
                await asyncio.to_thread(keyring.delete_password, service, username)
            except PasswordDeleteError:
                logger.debug(f"No credentials to delete for {service}")
                return
            except KeyringError as e:
                raise StoreError(f"Could not delete credentials for {service}: {e}") from e
        logger.info(f"Deleted credentials for {service}")

    # -------------------------------------------------------------------------
    # Account conveniences
    # -------------------------------------------------------------------------

    async def save_for(self, account: Account, secret: str) -> None:
        await self.save(account.keyring_service, account.username, secret)

    async def get_for(self, account: Account) -> str:
        return await self.get(account.keyring_service, account.username)

    async def delete_for(self, account: Account) -> None:
        await self.delete(account.keyring_service, account.username)
