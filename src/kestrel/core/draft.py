# =============================================================================
# Draft Model
# =============================================================================
# A message being composed, kept in the local database until it is sent or
# discarded. Drafts never touch the server.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ReplyMode(Enum):
    """How a draft relates to the message it was started from."""
    REPLY = "reply"
    REPLY_ALL = "reply_all"
    FORWARD = "forward"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Draft:
    """
    An unsent message owned by one account.

    Attributes:
        account_id: Owning account.
        to: List of recipient email addresses.
        cc: List of CC recipients.
        bcc: List of BCC recipients.
        subject: Email subject line.
        body_text: Plain text body.
        body_html: HTML body (optional).
        attachment_paths: Local files attached when the draft is sent.
        in_reply_to: Message-ID we're replying to (for threading).
        references: References header (for threading).
        source_message_id: Mirror id of the message replied to or forwarded.
        reply_mode: Set when the draft was started from another message.
        created_at: When the draft was first stored.
        modified_at: When the draft was last written.
        id: Database primary key.
    """
    account_id: int | None = None

    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: str | None = None
    attachment_paths: list[str] = field(default_factory=list)

    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)
    source_message_id: int | None = None
    reply_mode: ReplyMode | None = None

    created_at: datetime = field(default_factory=_now)
    modified_at: datetime = field(default_factory=_now)

    id: int | None = None

    @property
    def is_empty(self) -> bool:
        """True when nothing has been typed or attached yet."""
        return not (
            self.to or self.cc or self.bcc or self.subject.strip()
            or self.body_text.strip() or self.attachment_paths
        )

    def touch(self) -> None:
        self.modified_at = _now()
