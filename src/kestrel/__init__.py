# =============================================================================
# Kestrel: Account Synchronization Core for a Desktop Mail Client
# =============================================================================
#
#   "Hovers over the mailbox, strikes only at what changed."
#
# Kestrel keeps a local SQLite mirror of one or more remote mailboxes. It
# speaks IMAP for retrieval and SMTP for submission, keeps the mirror
# consistent when the server changes underneath it, and caches attachments
# without duplicate transfers or half-written files.
#
# Features:
#   - Per-account connection lifecycle with retry and timeouts
#   - UIDVALIDITY / UIDNEXT aware incremental and full resync
#   - Send, Reply, Reply All, Forward with threading headers
#   - Single-flight attachment downloads into an atomic file cache
#   - Credentials kept in the system keyring, never in config files
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "kestrel"

# Main entry point - this is what gets called by the 'kestrel' command
from kestrel.app import main

__all__ = ["main", "__version__", "__app_name__"]
