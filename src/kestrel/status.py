# =============================================================================
# Status Registry
# =============================================================================
# The read side of the sync core: per-account sync status and per-attachment
# download progress. Components publish into it; a UI (or the CLI) reads
# snapshots or subscribes to changes.
#
# Account errors are ranked. An unresolved ERROR (bad credentials, protocol
# or storage trouble) is not downgraded to OFFLINE by a later network
# failure; only a successful sync pass clears it.
# =============================================================================

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from kestrel.core import Account, KestrelError, MailConnectionError, SyncStatus

logger = logging.getLogger(__name__)


class DownloadState(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadProgress:
    """
    Progress of one attachment download.

    Attributes:
        attachment_id: Database id of the attachment.
        state: Where the transfer is in its lifecycle.
        progress: 0.0 to 1.0, in the coarse steps the fetcher can observe.
        error: Failure reason when state is FAILED.
    """
    attachment_id: int
    state: DownloadState = DownloadState.NOT_STARTED
    progress: float = 0.0
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.state is DownloadState.COMPLETE


@dataclass(frozen=True)
class AccountStatusSnapshot:
    """
    Last known health of an account.

    Attributes:
        account: Account name.
        status: Current SyncStatus.
        error: Message of the most severe unresolved error, if any.
        error_status: OFFLINE or ERROR, the kind of that error.
        last_sync: When the last successful pass finished.
    """
    account: str
    status: SyncStatus = SyncStatus.IDLE
    error: str | None = None
    error_status: SyncStatus | None = None
    last_sync: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None


StatusEvent = AccountStatusSnapshot | DownloadProgress
StatusCallback = Callable[[StatusEvent], None]


def status_for_error(error: BaseException) -> SyncStatus:
    """Connection trouble means OFFLINE; everything else needs attention."""
    if isinstance(error, MailConnectionError):
        return SyncStatus.OFFLINE
    return SyncStatus.ERROR


_SEVERITY = {SyncStatus.OFFLINE: 1, SyncStatus.ERROR: 2}


class StatusRegistry:
    """
    Holds and publishes account and download status.

    Snapshots are immutable; callers never see the registry change under them.

    Usage:
        >>> registry = StatusRegistry()
        >>> registry.subscribe(print)
        >>> registry.record_error(account, MailConnectionError("down"))
        >>> registry.account_status("personal").status
        <SyncStatus.OFFLINE: 'offline'>
    """

    def __init__(self) -> None:
        self._accounts: dict[str, AccountStatusSnapshot] = {}
        self._downloads: dict[int, DownloadProgress] = {}
        self._callbacks: list[StatusCallback] = []

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, callback: StatusCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: StatusCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _publish(self, event: StatusEvent) -> None:
        for callback in list(self._callbacks):
            callback(event)

    # -------------------------------------------------------------------------
    # Account status
    # -------------------------------------------------------------------------

    def account_status(self, name: str) -> AccountStatusSnapshot:
        return self._accounts.get(name) or AccountStatusSnapshot(account=name)

    def accounts(self) -> dict[str, AccountStatusSnapshot]:
        return dict(self._accounts)

    def _set_account(self, name: str, **changes) -> AccountStatusSnapshot:
        snapshot = replace(
            self.account_status(name),
            updated_at=datetime.now(timezone.utc),
            **changes,
        )
        self._accounts[name] = snapshot
        self._publish(snapshot)
        return snapshot

    def set_syncing(self, account: Account) -> AccountStatusSnapshot:
        """Mark a pass as started. An unresolved error stays recorded."""
        return self._set_account(account.name, status=SyncStatus.SYNCING)

    def set_idle(self, account: Account) -> AccountStatusSnapshot:
        """Settle after an interrupted pass, falling back to the unresolved error if any."""
        current = self.account_status(account.name)
        return self._set_account(account.name, status=current.error_status or SyncStatus.IDLE)

    def record_success(self, account: Account, last_sync: datetime | None = None) -> AccountStatusSnapshot:
        """A completed pass resolves any recorded error."""
        return self._set_account(
            account.name,
            status=SyncStatus.CONNECTED,
            error=None,
            error_status=None,
            last_sync=last_sync or datetime.now(timezone.utc),
        )

    def record_error(self, account: Account, error: KestrelError) -> AccountStatusSnapshot:
        """
        Record a failure, keeping whichever unresolved error is more severe.

        Returns:
            The resulting snapshot.
        """
        current = self.account_status(account.name)
        new_status = status_for_error(error)
        if current.error_status is not None:
            if _SEVERITY[current.error_status] > _SEVERITY[new_status]:
                logger.debug(f"{account.name}: keeping more severe error '{current.error}'")
                return self._set_account(account.name, status=current.error_status)
        return self._set_account(
            account.name, status=new_status, error=str(error), error_status=new_status
        )

    # -------------------------------------------------------------------------
    # Downloads
    # -------------------------------------------------------------------------

    def download(self, attachment_id: int) -> DownloadProgress:
        return self._downloads.get(attachment_id) or DownloadProgress(attachment_id)

    def downloads(self) -> dict[int, DownloadProgress]:
        return dict(self._downloads)

    def publish_download(self, progress: DownloadProgress) -> None:
        self._downloads[progress.attachment_id] = progress
        self._publish(progress)

    def forget_download(self, attachment_id: int) -> None:
        self._downloads.pop(attachment_id, None)

    def forget_account(self, name: str) -> None:
        self._accounts.pop(name, None)
