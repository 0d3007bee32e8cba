# =============================================================================
# Kestrel Core Module
# =============================================================================
# Pure dataclasses and enums with no third-party dependencies. Everything
# else in the package imports from here, never the other way around.
#
#   - Account: An email account (IMAP/SMTP endpoints, sync status)
#   - Folder: A mailbox folder with its UIDVALIDITY/UIDNEXT watermark
#   - Message: A mirrored email message
#   - Attachment: A file attached to a message, possibly cached on disk
#   - OutgoingMessage: An email about to be submitted
#   - Draft: A message being composed, stored locally
#   - errors: The error taxonomy shared by every component
# =============================================================================

from kestrel.core.account import Account, SyncStatus
from kestrel.core.draft import Draft, ReplyMode
from kestrel.core.errors import (
    AuthenticationError,
    BusyError,
    CredentialNotFoundError,
    KestrelError,
    MailConnectionError,
    NotFoundError,
    ProtocolError,
    RejectedRecipientError,
    StoreError,
)
from kestrel.core.folder import Folder, FolderType
from kestrel.core.message import (
    Attachment,
    Message,
    MessageFlags,
    OutgoingAttachment,
    OutgoingMessage,
)

__all__ = [
    "Account",
    "SyncStatus",
    "Folder",
    "FolderType",
    "Message",
    "MessageFlags",
    "Attachment",
    "OutgoingMessage",
    "OutgoingAttachment",
    "Draft",
    "ReplyMode",
    "KestrelError",
    "MailConnectionError",
    "AuthenticationError",
    "ProtocolError",
    "RejectedRecipientError",
    "NotFoundError",
    "CredentialNotFoundError",
    "StoreError",
    "BusyError",
]
