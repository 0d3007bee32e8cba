# =============================================================================
# Message Model
# =============================================================================
# Represents a mirrored email message and its attachments, plus the ephemeral
# OutgoingMessage the dispatcher submits.
#
# A mirrored message is identified on the server by (folder, UIDVALIDITY, UID).
# The UID is None in two situations:
#   - a copy of a message we sent, recorded before the Sent folder is synced
#   - a message we moved when the server did not tell us its new UID
# The next sync of the folder adopts such rows by Message-ID.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntFlag
from pathlib import Path


class MessageFlags(IntFlag):
    """
    Email message flags, stored as a bitmask.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (usually shown as a star)
        - DELETED: Marked for deletion (will be purged on EXPUNGE)
        - DRAFT: Message is a draft

    Usage:
        msg.flags = MessageFlags.SEEN | MessageFlags.FLAGGED
        if msg.flags & MessageFlags.SEEN:
            ...
    """
    NONE = 0
    SEEN = 1 << 0
    ANSWERED = 1 << 1
    FLAGGED = 1 << 2
    DELETED = 1 << 3
    DRAFT = 1 << 4


# IMAP wire names, in bit order
IMAP_FLAG_NAMES = {
    MessageFlags.SEEN: "\\Seen",
    MessageFlags.ANSWERED: "\\Answered",
    MessageFlags.FLAGGED: "\\Flagged",
    MessageFlags.DELETED: "\\Deleted",
    MessageFlags.DRAFT: "\\Draft",
}


def flags_to_imap(flags: MessageFlags) -> list[str]:
    """Convert a flag bitmask to IMAP flag names."""
    return [name for flag, name in IMAP_FLAG_NAMES.items() if flags & flag]


def flags_from_imap(names: list[str]) -> MessageFlags:
    """Convert IMAP flag names (any case) to a bitmask. Unknown keywords are ignored."""
    lookup = {name.lower(): flag for flag, name in IMAP_FLAG_NAMES.items()}
    flags = MessageFlags.NONE
    for name in names:
        flags |= lookup.get(name.lower(), MessageFlags.NONE)
    return flags


@dataclass
class Attachment:
    """
    A file attached to a mirrored message.

    The payload is not stored in the database. Sync records the metadata and
    the IMAP body-section number; the attachment fetcher downloads the part
    on demand and records where the cached file lives.

    Attributes:
        filename: Original filename of the attachment.
        content_type: MIME type (e.g., "application/pdf").
        size: Decoded size in bytes, as far as the structure tells us.
        content_id: For inline images, the Content-ID referenced by the HTML.
        is_inline: True if embedded in the HTML body.
        part_id: IMAP body section (e.g., "2" or "1.2") holding the payload.
        encoding: Content-Transfer-Encoding of the part ("base64", ...).
        local_path: Cached file, once downloaded.
        is_downloaded: True when local_path holds the complete payload.
        id: Database primary key.
        message_id: Foreign key to the parent Message (database id).
    """
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0

    content_id: str | None = None
    is_inline: bool = False

    part_id: str = ""
    encoding: str = ""

    local_path: str | None = None
    is_downloaded: bool = False

    id: int | None = None
    message_id: int | None = None

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    @property
    def human_size(self) -> str:
        """
        Returns a human-readable file size.

        Examples:
            - 500 -> "500 B"
            - 1536 -> "1.5 KB"
        """
        size = float(self.size)
        for unit in ("B", "KB", "MB", "GB"):
            if size < 1024:
                return f"{size:.1f} {unit}" if size != int(size) else f"{int(size)} {unit}"
            size /= 1024
        return f"{size:.1f} TB"


@dataclass
class Message:
    """
    Represents a mirrored email message.

    Threading note:
        'message_id' is the RFC 5322 Message-ID header (not our database id).
        'in_reply_to' and 'references' carry the thread history.

    Attributes:
        account_id: Owning account.
        folder_id: Folder holding the message. None for a sent copy when the
                   account has no Sent folder.
        uid: IMAP UID within the folder, None while unknown (see module notes).
        reply_to: Reply-To addresses; replies go here instead of From.
        has_attachments: Stored separately so lists need not load attachments.
    """

    account_id: int | None = None
    folder_id: int | None = None
    uid: int | None = None

    # Threading
    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)

    # Envelope
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    reply_to: list[str] = field(default_factory=list)

    date_sent: datetime | None = None
    date_received: datetime | None = None

    flags: MessageFlags = MessageFlags.NONE

    body_text: str = ""
    body_html: str = ""

    has_attachments: bool = False
    attachments: list[Attachment] = field(default_factory=list)

    id: int | None = None

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_flagged(self) -> bool:
        return bool(self.flags & MessageFlags.FLAGGED)

    @property
    def is_deleted(self) -> bool:
        return bool(self.flags & MessageFlags.DELETED)

    @property
    def display_sender(self) -> str:
        return self.sender_name or self.sender

    @property
    def formatted_sender(self) -> str:
        """Sender as an RFC 5322 address, e.g. 'Alice <alice@example.com>'."""
        if self.sender_name:
            return f"{self.sender_name} <{self.sender}>"
        return self.sender

    def __str__(self) -> str:
        read_marker = " " if self.is_read else "*"
        flag_marker = "!" if self.is_flagged else " "
        return f"{read_marker}{flag_marker} {self.display_sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(uid={self.uid}, subject={self.subject!r}, "
            f"from={self.sender!r}, flags={self.flags!r})"
        )


@dataclass
class OutgoingAttachment:
    """A file to attach to an outgoing message."""
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path, content_type: str | None = None) -> "OutgoingAttachment":
        import mimetypes

        if content_type is None:
            content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            data=path.read_bytes(),
            content_type=content_type or "application/octet-stream",
        )


@dataclass
class OutgoingMessage:
    """
    An email to be submitted over SMTP.

    message_id is assigned once by the dispatcher before the first attempt
    and never changes afterwards, so a retried submission carries the same
    identity as the first one.
    """
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: str | None = None
    attachments: list[OutgoingAttachment] = field(default_factory=list)

    # Threading headers (set for replies and forwards)
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)

    message_id: str | None = None

    @property
    def all_recipients(self) -> list[str]:
        """Every envelope recipient (To, Cc and Bcc), without duplicates."""
        seen: set[str] = set()
        result = []
        for address in self.to + self.cc + self.bcc:
            key = address.lower()
            if key not in seen:
                seen.add(key)
                result.append(address)
        return result
