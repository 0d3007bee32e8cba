# =============================================================================
# Folder Model
# =============================================================================
# Represents a mailbox folder (IMAP "mailbox"). Besides its name and place in
# the hierarchy, a folder carries the sync watermark:
#
#   uidvalidity  The validity epoch. While it stays the same, a UID always
#                names the same message. When the server changes it, every
#                UID we cached for the folder is meaningless.
#   uidnext      The next-sequence counter. Every message the server adds
#                gets a UID >= this value, so [our uidnext, server uidnext)
#                is exactly the set of messages we have not seen yet.
#
# Both are None until the folder is synced for the first time.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class FolderType(Enum):
    """
    Folder roles that have special meaning in the sync core.

    These map to IMAP SPECIAL-USE attributes (RFC 6154) when the server
    announces them, or are inferred from common naming conventions.
    """
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    ALL = "all"
    CUSTOM = "custom"


# RFC 6154 attribute -> folder type
SPECIAL_USE_ATTRIBUTES = {
    "\\sent": FolderType.SENT,
    "\\drafts": FolderType.DRAFTS,
    "\\trash": FolderType.TRASH,
    "\\junk": FolderType.SPAM,
    "\\archive": FolderType.ARCHIVE,
    "\\all": FolderType.ALL,
}


@dataclass
class Folder:
    """
    Represents a mailbox folder in an email account.

    Attributes:
        name: The last path component, for display (e.g., "Alpha").
        path: The full hierarchical name used on the wire
              (e.g., "Work/Projects/Alpha").
        account_id: Foreign key to the owning Account.
        folder_type: The role of this folder (inbox, sent, trash...).
        delimiter: Hierarchy separator announced by the server.

        uidvalidity: Validity epoch recorded at the last sync.
        uidnext: Next-sequence counter recorded at the last sync.

        total_count: Number of mirrored messages in the folder.
        unread_count: Number of mirrored messages without \\Seen.

        parent_id: Folder id of the parent, None for top-level folders.
        is_selectable: False for \\Noselect containers that hold no mail.
        last_sync: Timestamp of the last successful reconciliation.
        id: Database primary key. None until saved to storage.
    """

    name: str
    account_id: int
    path: str = ""
    folder_type: FolderType = FolderType.CUSTOM
    delimiter: str = "/"

    # Sync watermark
    uidvalidity: int | None = None
    uidnext: int | None = None

    # Counters, recomputed from the mirror after every change
    total_count: int = 0
    unread_count: int = 0

    # Hierarchy
    parent_id: int | None = None
    is_selectable: bool = True

    last_sync: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.path:
            self.path = self.name

    @property
    def has_watermark(self) -> bool:
        """True once the folder has been synced at least once."""
        return self.uidvalidity is not None and self.uidnext is not None

    @property
    def parent_path(self) -> str | None:
        """
        Returns the parent folder path, or None if this is a top-level folder.

        Example:
            >>> Folder(name="Alpha", path="Work/Projects/Alpha", account_id=1).parent_path
            'Work/Projects'
        """
        if self.delimiter and self.delimiter in self.path:
            return self.path.rsplit(self.delimiter, 1)[0]
        return None

    @staticmethod
    def leaf_name(path: str, delimiter: str | None) -> str:
        if delimiter and delimiter in path:
            return path.rsplit(delimiter, 1)[1]
        return path

    @classmethod
    def detect_type(cls, path: str, attributes: list[str] | None = None) -> FolderType:
        """
        Determine the folder role from SPECIAL-USE attributes or the name.

        Args:
            path: The IMAP folder path.
            attributes: Flags from the LIST response, e.g. ["\\HasNoChildren", "\\Sent"].

        Returns:
            The detected FolderType, or CUSTOM if unrecognized.
        """
        if path.upper() == "INBOX":
            return FolderType.INBOX

        for attr in attributes or []:
            folder_type = SPECIAL_USE_ATTRIBUTES.get(attr.lower())
            if folder_type is not None:
                return folder_type

        # No SPECIAL-USE: fall back to naming conventions
        name_lower = path.lower()
        if "sent" in name_lower:
            return FolderType.SENT
        if "draft" in name_lower:
            return FolderType.DRAFTS
        if "trash" in name_lower or "deleted" in name_lower:
            return FolderType.TRASH
        if "spam" in name_lower or "junk" in name_lower:
            return FolderType.SPAM
        if "all mail" in name_lower:
            return FolderType.ALL
        if "archive" in name_lower:
            return FolderType.ARCHIVE
        return FolderType.CUSTOM

    def __str__(self) -> str:
        unread_indicator = f" ({self.unread_count})" if self.unread_count > 0 else ""
        return f"{self.path}{unread_indicator}"

    def __repr__(self) -> str:
        return (
            f"Folder(path={self.path!r}, type={self.folder_type.value}, "
            f"uidvalidity={self.uidvalidity}, uidnext={self.uidnext})"
        )
