# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - Connecting to IMAP servers with SSL/STARTTLS
#   - Fetching folder lists
#   - Syncing messages (full resync and incremental)
#   - Moving messages and managing flags (read, flagged, deleted)
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from kestrel.imap.actions import MailboxActions
from kestrel.imap.client import (
    ConnectionPhase,
    FolderStatus,
    IMAPClient,
)
from kestrel.imap.sync import (
    FolderReconciler,
    FolderSyncResult,
    SyncManager,
    SyncMode,
    SyncProgress,
    SyncResult,
)

__all__ = [
    # Client
    "IMAPClient",
    "ConnectionPhase",
    "FolderStatus",
    # Sync
    "FolderReconciler",
    "FolderSyncResult",
    "SyncManager",
    "SyncMode",
    "SyncProgress",
    "SyncResult",
    # Actions
    "MailboxActions",
]
