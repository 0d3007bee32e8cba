# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Kestrel test suite.
#
# Network peers are replaced by in-memory fakes that speak the same Python
# interface as IMAPClient and SMTPClient. Storage is a real SQLite file in
# a temporary directory.
# =============================================================================

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import keyring
import pytest
from keyring.errors import PasswordDeleteError

from kestrel.attachments import AttachmentCache
from kestrel.config import SyncConfig
from kestrel.connections import ConnectionManager
from kestrel.core import (
    Account,
    Attachment,
    Folder,
    FolderType,
    MailConnectionError,
    Message,
    MessageFlags,
    NotFoundError,
)
from kestrel.core.message import flags_from_imap
from kestrel.credentials import CredentialStore
from kestrel.imap.client import ConnectionPhase, FolderStatus
from kestrel.status import StatusRegistry
from kestrel.storage import Database, Repository


# =============================================================================
# Fake IMAP server and client
# =============================================================================

@dataclass
class FakeMailbox:
    """Server-side state of one folder."""
    uidvalidity: int = 1
    uidnext: int = 1
    folder_type: FolderType = FolderType.CUSTOM
    selectable: bool = True
    messages: dict[int, Message] = field(default_factory=dict)
    parts: dict[tuple[int, str], bytes] = field(default_factory=dict)

    def append(self, message: Message) -> int:
        uid = self.uidnext
        message = copy.deepcopy(message)
        message.uid = uid
        self.messages[uid] = message
        self.uidnext += 1
        return uid


class FakeIMAPServer:
    def __init__(self) -> None:
        self.mailboxes: dict[str, FakeMailbox] = {}
        self.supports_copyuid = True

    def add_folder(self, path: str, **kwargs) -> FakeMailbox:
        mailbox = FakeMailbox(**kwargs)
        self.mailboxes[path] = mailbox
        return mailbox


class FakeIMAPClient:
    """Duck-typed IMAPClient backed by a FakeIMAPServer."""

    def __init__(self, server: FakeIMAPServer, account: Account | None = None) -> None:
        self.server = server
        self.account = account
        self.phase = ConnectionPhase.DISCONNECTED
        self.connect_calls = 0
        self.connect_errors: list[Exception] = []
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.fetch_gate: asyncio.Event | None = None

    @property
    def is_connected(self) -> bool:
        return self.phase is ConnectionPhase.READY

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            self.phase = ConnectionPhase.DISCONNECTED
            raise self.connect_errors.pop(0)
        self.phase = ConnectionPhase.READY

    async def disconnect(self) -> None:
        self.phase = ConnectionPhase.DISCONNECTED

    def _check(self, name: str) -> None:
        self.calls.append((name,))
        error = self.errors.pop(name, None)
        if error is not None:
            if isinstance(error, MailConnectionError):
                self.phase = ConnectionPhase.DISCONNECTED
            raise error

    def _mailbox(self, path: str) -> FakeMailbox:
        if path not in self.server.mailboxes:
            raise NotFoundError(path)
        return self.server.mailboxes[path]

    async def list_folders(self) -> list[Folder]:
        self._check("list_folders")
        folders = []
        for path, mailbox in self.server.mailboxes.items():
            folders.append(Folder(
                name=Folder.leaf_name(path, "/"),
                path=path,
                account_id=self.account.id if self.account else 0,
                folder_type=mailbox.folder_type,
                delimiter="/",
                is_selectable=mailbox.selectable,
            ))
        return folders

    async def select_folder(self, path: str, readonly: bool = False) -> FolderStatus:
        self._check("select_folder")
        mailbox = self._mailbox(path)
        return FolderStatus(len(mailbox.messages), mailbox.uidvalidity, mailbox.uidnext)

    async def fetch_flags(self, path: str, below_uid: int) -> dict[int, MessageFlags]:
        self._check("fetch_flags")
        mailbox = self._mailbox(path)
        return {uid: m.flags for uid, m in mailbox.messages.items() if uid < below_uid}

    async def fetch_messages(self, path: str, uids: list[int]) -> list[Message]:
        self._check("fetch_messages")
        self.calls.append(("fetch_messages", path, list(uids)))
        mailbox = self._mailbox(path)
        return [copy.deepcopy(mailbox.messages[uid]) for uid in uids if uid in mailbox.messages]

    async def fetch_attachment(self, path: str, uid: int, part_id: str, encoding: str = "") -> bytes:
        self._check("fetch_attachment")
        self.calls.append(("fetch_attachment", path, uid, part_id))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        mailbox = self._mailbox(path)
        if (uid, part_id) not in mailbox.parts:
            raise NotFoundError(f"Part {part_id} of {uid} not found")
        return mailbox.parts[(uid, part_id)]

    async def set_flags(self, path: str, uids: list[int], flags: list[str], *, add: bool = True) -> None:
        self._check("set_flags")
        mailbox = self._mailbox(path)
        change = flags_from_imap(flags)
        for uid in uids:
            message = mailbox.messages[uid]
            message.flags = (message.flags | change) if add else (message.flags & ~change)

    async def move_messages(self, source: str, destination: str, uids: list[int]) -> dict[int, int]:
        self._check("move_messages")
        src, dst = self._mailbox(source), self._mailbox(destination)
        uid_map = {}
        for uid in uids:
            uid_map[uid] = dst.append(src.messages.pop(uid))
        return uid_map if self.server.supports_copyuid else {}

    async def delete_messages(self, path: str, uids: list[int]) -> None:
        self._check("delete_messages")
        mailbox = self._mailbox(path)
        for uid in uids:
            mailbox.messages.pop(uid, None)


# =============================================================================
# Fake SMTP client
# =============================================================================

class FakeSMTPClient:
    """Duck-typed SMTPClient that records submissions."""

    def __init__(self) -> None:
        self.phase = ConnectionPhase.DISCONNECTED
        self.connect_calls = 0
        self.connect_errors: list[Exception] = []
        self.submit_errors: list[Exception] = []
        self.rejected: dict[str, str] = {}
        self.submissions: list[tuple[str, list[str], object]] = []
        self.attempts = 0

    @property
    def is_connected(self) -> bool:
        return self.phase is ConnectionPhase.READY

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.phase = ConnectionPhase.READY

    async def disconnect(self) -> None:
        self.phase = ConnectionPhase.DISCONNECTED

    async def submit(self, message, recipients: list[str]) -> dict[str, str]:
        self.attempts += 1
        if self.submit_errors:
            error = self.submit_errors.pop(0)
            if isinstance(error, MailConnectionError):
                self.phase = ConnectionPhase.DISCONNECTED
            raise error
        self.submissions.append((message["Message-ID"], list(recipients), message))
        return {r: self.rejected[r] for r in recipients if r in self.rejected}


# =============================================================================
# Keyring
# =============================================================================

@pytest.fixture
def memory_keyring(monkeypatch):
    """Replace the keyring backend calls with a dict."""
    store: dict[tuple[str, str], str] = {}

    def set_password(service, username, password):
        store[(service, username)] = password

    def get_password(service, username):
        return store.get((service, username))

    def delete_password(service, username):
        if (service, username) not in store:
            raise PasswordDeleteError("not found")
        del store[(service, username)]

    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return store


# =============================================================================
# Storage
# =============================================================================

@pytest.fixture
def temp_dir(tmp_path) -> Path:
    return tmp_path


@pytest.fixture
def xdg_home(tmp_path, monkeypatch) -> Path:
    """Point every XDG base directory into the test's temporary directory."""
    for name in ("CONFIG", "DATA", "CACHE", "STATE"):
        monkeypatch.setenv(f"XDG_{name}_HOME", str(tmp_path / name.lower()))
    return tmp_path


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "kestrel.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def repo(db) -> Repository:
    return Repository(db)


@pytest.fixture
def cache(tmp_path) -> AttachmentCache:
    return AttachmentCache(tmp_path / "attachments")


@pytest.fixture
def status() -> StatusRegistry:
    return StatusRegistry()


# =============================================================================
# Sample data
# =============================================================================

@pytest.fixture
def sample_account() -> Account:
    """Create a sample Account for testing."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_security="starttls",
    )


@pytest.fixture
async def account(repo, sample_account) -> Account:
    """The sample account, stored."""
    return await repo.save_account(sample_account)


def make_message(
    uid: int | None = None,
    message_id: str = "",
    *,
    subject: str = "Test Subject",
    flags: MessageFlags = MessageFlags.NONE,
    attachments: list[Attachment] | None = None,
) -> Message:
    """A parsed message as the IMAP client would return it."""
    return Message(
        uid=uid,
        message_id=message_id or f"<msg{uid}@example.com>",
        subject=subject,
        sender="sender@example.com",
        sender_name="Test Sender",
        recipients=["test@example.com"],
        date_sent=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        flags=flags,
        body_text="This is a test email body.",
        attachments=list(attachments or []),
        has_attachments=bool(attachments),
    )


@pytest.fixture
def imap_server() -> FakeIMAPServer:
    server = FakeIMAPServer()
    server.add_folder("INBOX", folder_type=FolderType.INBOX)
    server.add_folder("Sent", folder_type=FolderType.SENT)
    server.add_folder("Trash", folder_type=FolderType.TRASH)
    return server


@pytest.fixture
def imap_client(imap_server, account) -> FakeIMAPClient:
    return FakeIMAPClient(imap_server, account)


@pytest.fixture
def smtp_client() -> FakeSMTPClient:
    return FakeSMTPClient()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(max_attempts=3, backoff_initial=0.0, backoff_max=0.0, batch_size=2)


@pytest.fixture
def connections(imap_client, smtp_client, sync_config) -> ConnectionManager:
    async def no_sleep(delay: float) -> None:
        return None

    return ConnectionManager(
        CredentialStore(),
        sync_config,
        imap_factory=lambda account: imap_client,
        smtp_factory=lambda account: smtp_client,
        sleep=no_sleep,
    )
