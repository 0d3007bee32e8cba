# =============================================================================
# Storage Module
# =============================================================================
# The local mirror, stored in SQLite through aiosqlite.
#
# Provides:
#   - Database initialization and schema versioning
#   - Transactional CRUD for accounts, folders, messages, attachments
#   - Explicit cascading deletes
#
# The database lives in the XDG data directory (~/.local/share/kestrel/).
# =============================================================================

from kestrel.storage.database import Database
from kestrel.storage.repository import Repository

__all__ = ["Database", "Repository"]
