# =============================================================================
# Attachment Cache
# =============================================================================
# On-disk store for downloaded attachments.
#
# Layout:
#   <root>/<message id>/<attachment id>-<sanitized filename>
#
# Files are written to a hidden ".part" sibling and renamed into place, so a
# path under the cache either holds the complete payload or does not exist.
# =============================================================================

import asyncio
import logging
import os
import re
import shutil
import uuid
from pathlib import Path

from kestrel.core import Attachment, StoreError

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r'[:/\\?%*|"<>\x00-\x1f]')
PARTIAL_SUFFIX = ".part"


def sanitize_filename(filename: str) -> str:
    """
    Make an attachment filename safe to use as a single path component.

    >>> sanitize_filename('report: "Q3"/final?.pdf')
    'report_ _Q3__final_.pdf'
    """
    cleaned = UNSAFE_FILENAME_CHARS.sub("_", filename).strip().lstrip(".")
    return cleaned or "attachment"


def _discard_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove partial file {path}: {e}")


class AttachmentCache:
    """
    Directory of cached attachment payloads.

    Args:
        root: Cache directory; created on first write.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def message_dir(self, message_id: int) -> Path:
        return self.root / str(message_id)

    def path_for(self, attachment: Attachment) -> Path:
        if attachment.id is None or attachment.message_id is None:
            raise ValueError("Attachment must be stored before it can be cached")
        return self.message_dir(attachment.message_id) / (
            f"{attachment.id}-{sanitize_filename(attachment.filename)}"
        )

    def is_cached(self, attachment: Attachment) -> bool:
        """True when the attachment is marked downloaded and its file exists."""
        return bool(
            attachment.is_downloaded
            and attachment.local_path
            and Path(attachment.local_path).is_file()
        )

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    async def write(self, attachment: Attachment, data: bytes) -> Path:
        """
        Store an attachment payload atomically.

        Returns:
            Final path of the cached file.

        Raises:
            StoreError: If the file cannot be written.
        """
        final = self.path_for(attachment)
        partial = final.with_name(f".{final.name}.{uuid.uuid4().hex[:8]}{PARTIAL_SUFFIX}")

        writing = asyncio.ensure_future(asyncio.to_thread(self._write_partial, partial, data))
        try:
            await asyncio.shield(writing)
        except asyncio.CancelledError:
            # The thread cannot be interrupted; remove its output when it ends
            writing.add_done_callback(lambda _: _discard_partial(partial))
            raise
        except OSError as e:
            _discard_partial(partial)
            raise StoreError(f"Could not write {final}: {e}") from e

        try:
            os.replace(partial, final)
        except OSError as e:
            _discard_partial(partial)
            raise StoreError(f"Could not move {partial.name} into place: {e}") from e

        logger.debug(f"Cached {len(data)} bytes at {final}")
        return final

    @staticmethod
    def _write_partial(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    def remove(self, path: Path) -> None:
        """Remove one cached file, and its message directory once empty."""
        _discard_partial(path)
        directory = path.parent
        try:
            if directory != self.root and directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
        except OSError as e:
            logger.debug(f"Kept {directory}: {e}")

    def discard(self, attachment: Attachment) -> None:
        """Remove the cached file of one attachment, if present."""
        if attachment.local_path:
            Path(attachment.local_path).unlink(missing_ok=True)

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def cleanup(self, message_id: int) -> None:
        """Remove every cached file of a message."""
        directory = self.message_dir(message_id)
        if directory.exists():
            await asyncio.to_thread(shutil.rmtree, directory, True)
            logger.debug(f"Removed cached attachments of message {message_id}")

    async def cleanup_many(self, message_ids: list[int]) -> None:
        for message_id in message_ids:
            await self.cleanup(message_id)

    async def clear_all(self) -> None:
        """Empty the cache directory."""
        if self.root.exists():
            await asyncio.to_thread(shutil.rmtree, self.root, True)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cleared attachment cache at {self.root}")

    def size(self) -> int:
        """Total bytes held by the cache."""
        if not self.root.exists():
            return 0
        return sum(p.stat().st_size for p in self.root.rglob("*") if p.is_file())
