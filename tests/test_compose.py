"""Tests for outgoing message composition and SMTP error mapping."""

from datetime import datetime, timezone

import aiosmtplib
import pytest

from kestrel.core import (
    AuthenticationError,
    MailConnectionError,
    Message,
    OutgoingAttachment,
    OutgoingMessage,
    ProtocolError,
    RejectedRecipientError,
)
from kestrel.credentials import CredentialStore
from kestrel.imap.client import ConnectionPhase
from kestrel.smtp import (
    SMTPClient,
    build_mime_message,
    create_forward,
    create_reply,
    generate_message_id,
    map_smtp_error,
)
from kestrel.smtp.compose import FORWARD_SEPARATOR, quote_body, thread_references


@pytest.fixture
def original() -> Message:
    return Message(
        message_id="<orig@example.com>",
        in_reply_to="<parent@example.com>",
        subject="Planning",
        sender="alice@example.com",
        sender_name="Alice",
        recipients=["test@example.com", "bob@example.com"],
        cc=["Carol@example.com", "TEST@example.com", "ALICE@example.com"],
        date_sent=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        body_text="Line one\nLine two",
    )


class TestMime:
    def test_text_only(self, sample_account):
        outgoing = OutgoingMessage(
            to=["alice@example.com"],
            cc=["bob@example.com"],
            bcc=["secret@example.com"],
            subject="Hi",
            body_text="Hello",
            message_id="<x@example.com>",
        )

        mime = build_mime_message(sample_account, outgoing)

        assert mime.get_content_type() == "text/plain"
        assert mime["From"] == "Test User <test@example.com>"
        assert mime["Cc"] == "bob@example.com"
        assert mime["Bcc"] is None
        assert mime["Message-ID"] == "<x@example.com>"
        assert mime["X-Mailer"].startswith("Kestrel ")

    def test_html_and_attachments(self, sample_account):
        outgoing = OutgoingMessage(
            to=["alice@example.com"],
            body_text="Hello",
            body_html="<p>Hello</p>",
            attachments=[OutgoingAttachment("data.csv", b"a,b\n1,2\n", "text/csv")],
            message_id="<x@example.com>",
        )

        mime = build_mime_message(sample_account, outgoing)

        assert mime.get_content_type() == "multipart/mixed"
        body, attachment = mime.get_payload()
        assert body.get_content_type() == "multipart/alternative"
        assert attachment.get_filename() == "data.csv"
        assert attachment.get_payload(decode=True) == b"a,b\n1,2\n"

    def test_requires_message_id(self, sample_account):
        with pytest.raises(ValueError):
            build_mime_message(sample_account, OutgoingMessage(to=["a@example.com"]))

    def test_generated_message_id_uses_account_domain(self, sample_account):
        message_id = generate_message_id(sample_account)

        assert message_id.startswith("<")
        assert message_id.endswith("@example.com>")
        assert generate_message_id(sample_account) != message_id


class TestReply:
    def test_reply_goes_to_sender(self, sample_account, original):
        reply = create_reply(sample_account, original, "Sounds good")

        assert reply.to == ["alice@example.com"]
        assert reply.cc == []
        assert reply.subject == "Re: Planning"
        assert reply.in_reply_to == "<orig@example.com>"
        assert reply.references == ["<parent@example.com>", "<orig@example.com>"]
        assert reply.body_text.startswith("Sounds good\n\nOn 2024-01-15 10:30, Alice wrote:\n")
        assert "> Line two" in reply.body_text

    def test_reply_prefers_reply_to(self, sample_account, original):
        original.reply_to = ["list@example.com"]

        assert create_reply(sample_account, original, "").to == ["list@example.com"]

    def test_reply_all_excludes_self_and_duplicates(self, sample_account, original):
        reply = create_reply(sample_account, original, "Noted", reply_all=True)

        assert reply.to == ["alice@example.com", "bob@example.com"]
        assert reply.cc == ["Carol@example.com"]

    def test_reply_to_own_message_goes_to_its_recipients(self, sample_account, original):
        original.sender = "TEST@example.com"
        original.recipients = ["bob@example.com", "dave@example.com"]

        reply = create_reply(sample_account, original, "Following up")
        assert reply.to == ["bob@example.com", "dave@example.com"]

        reply_all = create_reply(sample_account, original, "Following up", reply_all=True)
        assert reply_all.to == ["bob@example.com", "dave@example.com"]
        assert reply_all.cc == ["Carol@example.com", "ALICE@example.com"]

    def test_subject_prefix_is_not_repeated(self, sample_account, original):
        original.subject = "RE: Planning"

        assert create_reply(sample_account, original, "").subject == "RE: Planning"

    def test_thread_references_keep_existing_chain(self, original):
        original.references = ["<root@example.com>", "<parent@example.com>"]

        assert thread_references(original) == [
            "<root@example.com>", "<parent@example.com>", "<orig@example.com>",
        ]

    def test_quote_body(self, original):
        assert quote_body(original) == (
            "On 2024-01-15 10:30, Alice wrote:\n> Line one\n> Line two\n"
        )


class TestForward:
    def test_forward_carries_header_block(self, original):
        attachment = OutgoingAttachment("plan.txt", b"plan")

        forward = create_forward(original, ["dave@example.com"], "FYI", attachments=[attachment])

        assert forward.to == ["dave@example.com"]
        assert forward.subject == "Fwd: Planning"
        assert forward.body_text.startswith(f"FYI\n\n{FORWARD_SEPARATOR}\nFrom: Alice <alice@example.com>\n")
        assert "Cc: Carol@example.com, TEST@example.com, ALICE@example.com\n" in forward.body_text
        assert forward.body_text.endswith("Line one\nLine two")
        assert forward.attachments == [attachment]
        assert forward.references[-1] == "<orig@example.com>"


class TestSMTPErrors:
    def test_refused_recipients(self):
        error = aiosmtplib.SMTPRecipientsRefused([
            aiosmtplib.SMTPRecipientRefused(550, "No such user", "ghost@example.com"),
        ])

        mapped = map_smtp_error(error, "send")

        assert isinstance(mapped, RejectedRecipientError)
        assert mapped.rejected == {"ghost@example.com": "550 No such user"}

    def test_authentication(self):
        mapped = map_smtp_error(aiosmtplib.SMTPAuthenticationError(535, "bad credentials"), "login")

        assert isinstance(mapped, AuthenticationError)
        assert not mapped.retryable

    @pytest.mark.parametrize("error", [
        aiosmtplib.SMTPServerDisconnected("gone"),
        aiosmtplib.SMTPConnectError("refused"),
        aiosmtplib.SMTPTimeoutError("slow"),
        ConnectionResetError("reset"),
        aiosmtplib.SMTPResponseException(451, "try again later"),
    ])
    def test_transient_failures_are_retryable(self, error):
        mapped = map_smtp_error(error, "send")

        assert isinstance(mapped, MailConnectionError)
        assert mapped.retryable

    def test_permanent_reply(self):
        mapped = map_smtp_error(aiosmtplib.SMTPResponseException(552, "too large"), "send")

        assert isinstance(mapped, ProtocolError)
        assert "552" in str(mapped)

    @pytest.mark.asyncio
    async def test_client_without_password(self, sample_account, memory_keyring):
        client = SMTPClient(sample_account, CredentialStore())

        with pytest.raises(AuthenticationError):
            await client.connect()

        assert client.phase is ConnectionPhase.DISCONNECTED
        assert not client.is_connected
