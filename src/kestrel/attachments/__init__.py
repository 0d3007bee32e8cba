# =============================================================================
# Attachments Module
# =============================================================================
# On-demand attachment downloads into an on-disk cache.
#
#   - cache: atomic file store keyed by message and attachment id
#   - fetcher: one transfer per attachment, cancellable, with progress
# =============================================================================

from kestrel.attachments.cache import AttachmentCache, sanitize_filename
from kestrel.attachments.fetcher import AttachmentFetcher

__all__ = [
    "AttachmentCache",
    "AttachmentFetcher",
    "sanitize_filename",
]
