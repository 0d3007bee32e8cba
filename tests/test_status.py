"""Tests for the account and download status registry."""

from kestrel.core import AuthenticationError, MailConnectionError, ProtocolError, SyncStatus
from kestrel.status import DownloadProgress, DownloadState, StatusRegistry


def test_unknown_account_is_idle(sample_account):
    snapshot = StatusRegistry().account_status(sample_account.name)

    assert snapshot.status is SyncStatus.IDLE
    assert not snapshot.has_error


def test_connection_failure_is_offline(sample_account):
    registry = StatusRegistry()

    snapshot = registry.record_error(sample_account, MailConnectionError("no route to host"))

    assert snapshot.status is SyncStatus.OFFLINE
    assert snapshot.error == "no route to host"


def test_error_is_not_downgraded_to_offline(sample_account):
    registry = StatusRegistry()
    registry.record_error(sample_account, AuthenticationError("bad password"))

    snapshot = registry.record_error(sample_account, MailConnectionError("timeout"))

    assert snapshot.status is SyncStatus.ERROR
    assert snapshot.error == "bad password"


def test_offline_is_upgraded_to_error(sample_account):
    registry = StatusRegistry()
    registry.record_error(sample_account, MailConnectionError("timeout"))

    snapshot = registry.record_error(sample_account, ProtocolError("BAD command"))

    assert snapshot.status is SyncStatus.ERROR
    assert snapshot.error == "BAD command"


def test_success_clears_error(sample_account):
    registry = StatusRegistry()
    registry.record_error(sample_account, AuthenticationError("bad password"))
    registry.set_syncing(sample_account)
    assert registry.account_status(sample_account.name).has_error

    snapshot = registry.record_success(sample_account)

    assert snapshot.status is SyncStatus.CONNECTED
    assert snapshot.error is None
    assert snapshot.last_sync is not None


def test_interrupted_pass_falls_back_to_recorded_error(sample_account):
    registry = StatusRegistry()
    registry.set_syncing(sample_account)
    assert registry.set_idle(sample_account).status is SyncStatus.IDLE

    registry.record_error(sample_account, MailConnectionError("timeout"))
    registry.set_syncing(sample_account)
    assert registry.set_idle(sample_account).status is SyncStatus.OFFLINE


def test_subscribers_see_snapshots(sample_account):
    registry = StatusRegistry()
    events = []
    registry.subscribe(events.append)

    registry.set_syncing(sample_account)
    registry.publish_download(DownloadProgress(7, DownloadState.IN_PROGRESS, 0.5))
    registry.unsubscribe(events.append)
    registry.record_success(sample_account)

    assert [type(e).__name__ for e in events] == ["AccountStatusSnapshot", "DownloadProgress"]
    assert events[0].status is SyncStatus.SYNCING


def test_snapshots_are_stable(sample_account):
    registry = StatusRegistry()
    before = registry.set_syncing(sample_account)

    registry.record_success(sample_account)

    assert before.status is SyncStatus.SYNCING
    assert registry.account_status(sample_account.name).status is SyncStatus.CONNECTED


def test_downloads():
    registry = StatusRegistry()
    assert registry.download(3).state is DownloadState.NOT_STARTED

    registry.publish_download(DownloadProgress(3, DownloadState.COMPLETE, 1.0))
    assert registry.download(3).is_complete
    assert set(registry.downloads()) == {3}

    registry.forget_download(3)
    assert registry.downloads() == {}


def test_forget_account(sample_account):
    registry = StatusRegistry()
    registry.set_syncing(sample_account)

    registry.forget_account(sample_account.name)

    assert registry.accounts() == {}
