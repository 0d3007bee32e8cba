# =============================================================================
# Message Dispatcher
# =============================================================================
# Sends outgoing messages and records the sent copy in the mirror.
#
# Flow:
#   1. Assign the Message-ID (once) and build the MIME message (once)
#   2. Submit over the account's SMTP connection, retrying transient failures
#      (connecting included) with backoff; every attempt submits the same bytes
#   3. Store the sent copy in the Sent folder as a pending row (uid NULL),
#      keyed by Message-ID so repeating a send never duplicates it. The
#      folder sync adopts the row once the server's copy shows up.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from kestrel.core import (
    Account,
    FolderType,
    KestrelError,
    Message,
    MessageFlags,
    OutgoingAttachment,
    OutgoingMessage,
    RejectedRecipientError,
)
from kestrel.retry import RetryPolicy, retry_async
from kestrel.smtp.compose import build_mime_message, create_forward, create_reply, generate_message_id

if TYPE_CHECKING:
    from kestrel.attachments.fetcher import AttachmentFetcher
    from kestrel.connections import ConnectionManager
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """
    Outcome of a successful submission.

    Attributes:
        message_id: Message-ID the message was sent with.
        accepted: Recipients the server accepted.
        rejected: Recipients the server refused, with its reply.
        sent_copy: The stored copy in the mirror.
        attempts: Submission attempts it took.
    """
    message_id: str
    accepted: list[str] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)
    sent_copy: Message | None = None
    attempts: int = 1

    @property
    def partially_rejected(self) -> bool:
        return bool(self.rejected)


class MessageDispatcher:
    """
    Submits messages over SMTP and mirrors what was sent.

    Usage:
        >>> dispatcher = MessageDispatcher(connections, repo)
        >>> result = await dispatcher.send(account, OutgoingMessage(to=[...], ...))
        >>> result.message_id
        '<...@example.com>'
    """

    def __init__(
        self,
        connections: "ConnectionManager",
        repo: "Repository",
        *,
        policy: RetryPolicy | None = None,
        fetcher: "AttachmentFetcher | None" = None,
    ) -> None:
        self.connections = connections
        self.repo = repo
        self.policy = policy or connections.policy
        self.fetcher = fetcher

    async def send(self, account: Account, outgoing: OutgoingMessage) -> DispatchResult:
        """
        Send a message.

        Args:
            account: Account to send from.
            outgoing: The message. Its message_id is filled in if empty.

        Returns:
            DispatchResult; `rejected` lists recipients refused while others
            were accepted.

        Raises:
            KestrelError: The message has no recipients.
            RejectedRecipientError: Every recipient was refused.
            AuthenticationError, MailConnectionError, ProtocolError: Submission
                failed; nothing was recorded.
            StoreError: Sent, but the sent copy could not be stored.
        """
        recipients = outgoing.all_recipients
        if not recipients:
            raise KestrelError("No recipients specified")

        if not outgoing.message_id:
            outgoing.message_id = generate_message_id(account)
        mime = build_mime_message(account, outgoing)

        attempts = 0

        async def submit() -> dict[str, str]:
            nonlocal attempts
            attempts += 1
            # Connect failures count against the same attempt budget
            async with self.connections.submission(account, retry=False) as smtp:
                return await smtp.submit(mime, recipients)

        logger.info(f"Sending {outgoing.message_id} from {account.name}")
        rejected = await retry_async(
            submit, self.policy, description=f"send {outgoing.message_id}"
        )
        accepted = [r for r in recipients if r not in rejected]
        if not accepted:
            raise RejectedRecipientError(rejected)

        sent_copy = await self._store_sent_copy(account, outgoing)
        logger.info(f"Sent {outgoing.message_id} to {len(accepted)} recipient(s)")
        return DispatchResult(
            message_id=outgoing.message_id,
            accepted=accepted,
            rejected=rejected,
            sent_copy=sent_copy,
            attempts=attempts,
        )

    async def _store_sent_copy(self, account: Account, outgoing: OutgoingMessage) -> Message:
        async with self.repo.transaction():
            existing = await self.repo.get_message_by_message_id(account.id, outgoing.message_id)
            if existing is not None:
                return existing

            sent = await self.repo.get_folder_by_type(account.id, FolderType.SENT)
            now = datetime.now(timezone.utc)
            copy = Message(
                account_id=account.id,
                folder_id=sent.id if sent else None,
                uid=None,
                message_id=outgoing.message_id,
                in_reply_to=outgoing.in_reply_to or "",
                references=list(outgoing.references),
                subject=outgoing.subject,
                sender=account.email,
                sender_name=account.display_name,
                recipients=list(outgoing.to),
                cc=list(outgoing.cc),
                bcc=list(outgoing.bcc),
                date_sent=now,
                date_received=now,
                flags=MessageFlags.SEEN,
                body_text=outgoing.body_text,
                body_html=outgoing.body_html or "",
                has_attachments=bool(outgoing.attachments),
            )
            await self.repo.save_message(copy)
            if sent is not None:
                await self.repo.recompute_folder_counts(sent)
        return copy

    # =========================================================================
    # Replies and Forwards
    # =========================================================================

    async def send_reply(
        self,
        account: Account,
        original: Message,
        body: str,
        *,
        html_body: str | None = None,
        reply_all: bool = False,
        attachments: list[OutgoingAttachment] | None = None,
    ) -> DispatchResult:
        """Reply (or reply to all) to a stored message."""
        outgoing = create_reply(account, original, body, html_body=html_body, reply_all=reply_all)
        outgoing.attachments = list(attachments or [])
        return await self.send(account, outgoing)

    async def forward(
        self,
        account: Account,
        original: Message,
        recipients: list[str],
        body: str = "",
    ) -> DispatchResult:
        """
        Forward a stored message with its attachments.

        Attachments not yet cached are downloaded first when a fetcher is
        available; otherwise only cached ones are included.
        """
        attachments = await self._original_attachments(original)
        outgoing = create_forward(original, recipients, body, attachments=attachments)
        return await self.send(account, outgoing)

    async def _original_attachments(self, original: Message) -> list[OutgoingAttachment]:
        stored = original.attachments
        if not stored and original.id is not None:
            stored = await self.repo.get_attachments(original.id)

        result = []
        for attachment in stored:
            if attachment.is_inline:
                continue
            if self.fetcher is not None:
                path = await self.fetcher.download(attachment, original)
            elif attachment.is_downloaded and attachment.local_path:
                path = attachment.local_path
            else:
                logger.info(f"Skipping {attachment.filename}: not downloaded")
                continue
            data = await asyncio.to_thread(_read_bytes, path)
            result.append(OutgoingAttachment(attachment.filename, data, attachment.content_type))
        return result


def _read_bytes(path) -> bytes:
    with open(path, "rb") as f:
        return f.read()
