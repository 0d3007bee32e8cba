"""Tests for IMAPClient response parsing, driven by a scripted aioimaplib stand-in."""

import asyncio
import base64
from collections import namedtuple
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from kestrel.core import (
    AuthenticationError,
    FolderType,
    MailConnectionError,
    MessageFlags,
    NotFoundError,
    ProtocolError,
)
from kestrel.credentials import CredentialStore
from kestrel.imap.client import (
    ConnectionPhase,
    FolderStatus,
    IMAPClient,
    _expand_uid_set,
    _quote_folder_name,
)

# Same shape as aioimaplib's response tuple
Response = namedtuple("Response", "result lines")

OK = Response("OK", [b"completed"])

RAW_MESSAGE = (
    b"From: Alice Example <alice@example.com>\r\n"
    b"To: test@example.com\r\n"
    b"Cc: =?utf-8?q?B=C3=B6b?= <bob@example.com>\r\n"
    b"Subject: =?utf-8?q?Q3_r=C3=A9sum=C3=A9?=\r\n"
    b"Message-ID: <report@example.com>\r\n"
    b"In-Reply-To: <root@example.com>\r\n"
    b"References: <root@example.com>\r\n"
    b"Date: Mon, 15 Jan 2024 10:30:00 +0100\r\n"
    b"MIME-Version: 1.0\r\n"
    b'Content-Type: multipart/mixed; boundary="XX"\r\n'
    b"\r\n"
    b"--XX\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"See attached.\r\n"
    b"--XX\r\n"
    b'Content-Type: application/pdf; name="q3.pdf"\r\n'
    b'Content-Disposition: attachment; filename="q3.pdf"\r\n'
    b"Content-Transfer-Encoding: base64\r\n"
    b"\r\n"
    b"JVBERi0=\r\n"
    b"--XX--\r\n"
)


class ScriptedIMAP:
    """Answers aioimaplib calls from a dict of command -> Response."""

    def __init__(self, **responses):
        self.responses = responses
        self.commands: list[tuple] = []
        self.protocol = SimpleNamespace(transport=None, capabilities=set())
        self.delay = 0.0

    async def _answer(self, command: str, *args):
        self.commands.append((command, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.responses.get(command, OK)

    async def list(self, reference, pattern):
        return await self._answer("LIST", reference, pattern)

    async def select(self, mailbox):
        return await self._answer("SELECT", mailbox)

    async def examine(self, mailbox):
        return await self._answer("EXAMINE", mailbox)

    async def uid(self, command, *args):
        return await self._answer(command.upper(), *args)

    async def expunge(self):
        return await self._answer("EXPUNGE")

    async def logout(self):
        return await self._answer("LOGOUT")


@pytest.fixture
def make_client(sample_account):
    def factory(server: ScriptedIMAP, *, selected: str | None = "INBOX", capabilities=()) -> IMAPClient:
        client = IMAPClient(sample_account, CredentialStore(), command_timeout=0.2)
        client._client = server
        client.phase = ConnectionPhase.READY
        client.selected_folder = selected
        client.capabilities = set(capabilities)
        return client

    return factory


class TestHelpers:
    def test_expand_uid_set(self):
        assert _expand_uid_set("304,319:320") == [304, 319, 320]
        assert _expand_uid_set("5") == [5]
        assert _expand_uid_set("12:10") == [12, 11, 10]

    def test_quote_folder_name(self):
        assert _quote_folder_name("INBOX") == "INBOX"
        assert _quote_folder_name("Sent Items") == '"Sent Items"'
        assert _quote_folder_name('My "Stuff"') == '"My \\"Stuff\\""'

    def test_decode_transfer(self):
        assert IMAPClient._decode_transfer(b"aGVsbG8=", "base64") == b"hello"
        assert IMAPClient._decode_transfer(b"caf=C3=A9", "Quoted-Printable") == "café".encode()
        assert IMAPClient._decode_transfer(b"raw", "7bit") == b"raw"

    def test_bad_base64_is_protocol_error(self):
        with pytest.raises(ProtocolError):
            IMAPClient._decode_transfer(b"a", "base64")

    def test_parse_copyuid(self):
        lines = [b"OK [COPYUID 7 10:11,15 20:22] Moved", b"UID MOVE completed"]

        assert IMAPClient._parse_copyuid(lines) == {10: 20, 11: 21, 15: 22}
        assert IMAPClient._parse_copyuid([b"OK Moved"]) == {}


class TestFolders:
    @pytest.mark.parametrize("line, path, name, folder_type, selectable", [
        (b'(\\HasNoChildren) "/" "INBOX"', "INBOX", "INBOX", FolderType.INBOX, True),
        (b'(\\HasNoChildren \\Sent) "/" "Sent Items"', "Sent Items", "Sent Items", FolderType.SENT, True),
        (b'(\\HasNoChildren) "." Work.Projects', "Work.Projects", "Projects", FolderType.CUSTOM, True),
        (b'(\\Noselect \\HasChildren) "/" "[Gmail]"', "[Gmail]", "[Gmail]", FolderType.CUSTOM, False),
        (b'(\\HasNoChildren \\Trash) "/" "[Gmail]/Bin"', "[Gmail]/Bin", "Bin", FolderType.TRASH, True),
    ])
    def test_parse_folder_line(self, make_client, line, path, name, folder_type, selectable):
        folder = make_client(ScriptedIMAP())._parse_folder_line(line)

        assert folder.path == path
        assert folder.name == name
        assert folder.folder_type is folder_type
        assert folder.is_selectable is selectable

    def test_unparseable_line_is_skipped(self, make_client):
        assert make_client(ScriptedIMAP())._parse_folder_line(b"LIST completed") is None

    @pytest.mark.asyncio
    async def test_list_folders(self, make_client):
        server = ScriptedIMAP(LIST=Response("OK", [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasChildren) "/" "Work"',
            b'(\\HasNoChildren) "/" "Work/Projects"',
            b"LIST completed",
        ]))

        folders = await make_client(server).list_folders()

        assert [f.path for f in folders] == ["INBOX", "Work", "Work/Projects"]
        assert folders[2].parent_path == "Work"

    @pytest.mark.asyncio
    async def test_select_reads_watermark(self, make_client):
        server = ScriptedIMAP(SELECT=Response("OK", [
            b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
            b"3 EXISTS",
            b"0 RECENT",
            b"OK [UIDVALIDITY 5] UIDs valid",
            b"OK [UIDNEXT 100] Predicted next UID",
            b"[READ-WRITE] SELECT completed",
        ]))
        client = make_client(server, selected=None)

        status = await client.select_folder("Sent Items")

        assert status == FolderStatus(exists=3, uidvalidity=5, uidnext=100)
        assert server.commands == [("SELECT", '"Sent Items"')]
        assert client.selected_folder == "Sent Items"

    @pytest.mark.asyncio
    async def test_select_without_watermark_is_protocol_error(self, make_client):
        server = ScriptedIMAP(SELECT=Response("OK", [b"3 EXISTS", b"SELECT completed"]))

        with pytest.raises(ProtocolError):
            await make_client(server).select_folder("INBOX")

    @pytest.mark.asyncio
    async def test_refused_select_keeps_connection(self, make_client):
        server = ScriptedIMAP(SELECT=Response("NO", [b"[NONEXISTENT] Unknown mailbox"]))
        client = make_client(server)

        with pytest.raises(ProtocolError, match="NONEXISTENT"):
            await client.select_folder("Gone")

        assert client.is_connected

    @pytest.mark.asyncio
    async def test_refused_select_forgets_previous_folder(self, make_client):
        server = ScriptedIMAP(SELECT=Response("NO", [b"[NONEXISTENT] Unknown mailbox"]))
        client = make_client(server, selected="INBOX")

        with pytest.raises(ProtocolError):
            await client.select_folder("Gone")
        assert client.selected_folder is None

        server.responses["SELECT"] = Response("OK", [
            b"OK [UIDVALIDITY 5] UIDs valid",
            b"OK [UIDNEXT 100] Predicted next UID",
            b"SELECT completed",
        ])
        await client.set_flags("INBOX", [1], ["\\Seen"])

        assert server.commands[1:] == [
            ("SELECT", "INBOX"),
            ("STORE", "1", "+FLAGS.SILENT (\\Seen)"),
        ]


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_flags(self, make_client):
        server = ScriptedIMAP(FETCH=Response("OK", [
            b"1 FETCH (UID 97 FLAGS ())",
            b"2 FETCH (UID 98 FLAGS (\\Seen \\Flagged))",
            b"3 FETCH (FLAGS (\\Seen $Forwarded) UID 99)",
            b"FETCH completed",
        ]))

        flags = await make_client(server).fetch_flags("INBOX", 100)

        assert flags == {
            97: MessageFlags.NONE,
            98: MessageFlags.SEEN | MessageFlags.FLAGGED,
            99: MessageFlags.SEEN,
        }
        assert server.commands == [("FETCH", "1:99", "(UID FLAGS)")]

    @pytest.mark.asyncio
    async def test_fetch_flags_of_empty_folder_sends_nothing(self, make_client):
        server = ScriptedIMAP()

        assert await make_client(server).fetch_flags("INBOX", 1) == {}
        assert server.commands == []

    @pytest.mark.asyncio
    async def test_fetch_messages_parses_literal(self, make_client, sample_account):
        server = ScriptedIMAP(FETCH=Response("OK", [
            b"1 FETCH (UID 42 FLAGS (\\Seen) RFC822.SIZE %d BODY[] {%d}" % (len(RAW_MESSAGE), len(RAW_MESSAGE)),
            bytearray(RAW_MESSAGE),
            b")",
            b"FETCH completed",
        ]))

        [message] = await make_client(server).fetch_messages("INBOX", [42])

        assert message.uid == 42
        assert message.is_read
        assert message.message_id == "<report@example.com>"
        assert message.in_reply_to == "<root@example.com>"
        assert message.references == ["<root@example.com>"]
        assert message.subject == "Q3 résumé"
        assert (message.sender, message.sender_name) == ("alice@example.com", "Alice Example")
        assert message.cc == ["bob@example.com"]
        assert message.date_sent == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
        assert message.body_text.strip() == "See attached."
        assert message.has_attachments

        [attachment] = message.attachments
        assert attachment.filename == "q3.pdf"
        assert attachment.content_type == "application/pdf"
        assert attachment.part_id == "2"
        assert attachment.encoding == "base64"
        assert attachment.size == 5

    @pytest.mark.asyncio
    async def test_fetch_attachment_decodes_part(self, make_client):
        encoded = base64.b64encode(b"%PDF-1.7")
        server = ScriptedIMAP(FETCH=Response("OK", [
            b"1 FETCH (UID 42 BODY[2] {%d}" % len(encoded),
            bytearray(encoded),
            b")",
            b"FETCH completed",
        ]))

        data = await make_client(server).fetch_attachment("INBOX", 42, "2", "base64")

        assert data == b"%PDF-1.7"
        assert server.commands == [("FETCH", "42", "(UID BODY.PEEK[2])")]

    @pytest.mark.asyncio
    async def test_missing_part_is_not_found(self, make_client):
        server = ScriptedIMAP(FETCH=Response("OK", [b"1 FETCH (UID 42)", b"FETCH completed"]))

        with pytest.raises(NotFoundError):
            await make_client(server).fetch_attachment("INBOX", 42, "3")

    @pytest.mark.asyncio
    async def test_fetch_selects_folder_first(self, make_client):
        server = ScriptedIMAP(SELECT=Response("OK", [b"OK [UIDVALIDITY 1]", b"OK [UIDNEXT 5]"]))

        await make_client(server, selected="INBOX").fetch_flags("Archive", 5)

        assert server.commands[0] == ("SELECT", "Archive")

    @pytest.mark.asyncio
    async def test_timeout_drops_connection(self, make_client):
        server = ScriptedIMAP()
        server.delay = 1.0
        client = make_client(server)

        with pytest.raises(MailConnectionError):
            await client.fetch_flags("INBOX", 10)

        assert client.phase is ConnectionPhase.DISCONNECTED
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_command_without_connection(self, make_client):
        client = make_client(ScriptedIMAP())
        client._drop()

        with pytest.raises(MailConnectionError):
            await client.fetch_flags("INBOX", 10)


class TestMutations:
    @pytest.mark.asyncio
    async def test_set_flags(self, make_client):
        server = ScriptedIMAP()

        await make_client(server).set_flags("INBOX", [1, 2], ["\\Seen"], add=False)

        assert server.commands == [("STORE", "1,2", "-FLAGS.SILENT (\\Seen)")]

    @pytest.mark.asyncio
    async def test_move_with_move_capability(self, make_client):
        server = ScriptedIMAP(MOVE=Response("OK", [b"OK [COPYUID 7 10:11 20:21] Moved", b"Done"]))

        uid_map = await make_client(server, capabilities={"MOVE"}).move_messages("INBOX", "Archive", [10, 11])

        assert uid_map == {10: 20, 11: 21}
        assert server.commands == [("MOVE", "10,11", "Archive")]

    @pytest.mark.asyncio
    async def test_move_falls_back_to_copy_and_expunge(self, make_client):
        server = ScriptedIMAP(COPY=Response("OK", [b"OK [COPYUID 7 10 20] Copied"]))

        uid_map = await make_client(server, capabilities={"UIDPLUS"}).move_messages("INBOX", "Archive", [10])

        assert uid_map == {10: 20}
        assert server.commands == [
            ("COPY", "10", "Archive"),
            ("STORE", "10", "+FLAGS.SILENT (\\Deleted)"),
            ("EXPUNGE", "10"),
        ]

    @pytest.mark.asyncio
    async def test_delete_without_uidplus_uses_plain_expunge(self, make_client):
        server = ScriptedIMAP()

        await make_client(server).delete_messages("INBOX", [3])

        assert server.commands == [("STORE", "3", "+FLAGS.SILENT (\\Deleted)"), ("EXPUNGE",)]


class TestConnection:
    @pytest.mark.asyncio
    async def test_missing_password_is_authentication_error(self, sample_account, memory_keyring):
        client = IMAPClient(sample_account, CredentialStore())

        with pytest.raises(AuthenticationError):
            await client.connect()

        assert client.phase is ConnectionPhase.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, make_client):
        server = ScriptedIMAP()
        client = make_client(server)

        await client.disconnect()
        await client.disconnect()

        assert server.commands == [("LOGOUT",)]
        assert client.phase is ConnectionPhase.DISCONNECTED
