# =============================================================================
# Draft Service
# =============================================================================
# Create, edit, autosave, send and discard drafts.
#
# Drafts live only in the local database. Autosave is debounced per draft:
#
#   drafts.schedule_autosave(draft)   # called on every edit
#   ...                               # written once edits pause for
#                                     # autosave_delay seconds
#   await drafts.flush()              # write whatever is still pending
#
# A draft started from a stored message takes its addressing, subject,
# quoted body and threading headers from the same helpers that build
# replies and forwards for sending.
# =============================================================================

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from kestrel.core import (
    Account,
    Draft,
    KestrelError,
    Message,
    NotFoundError,
    OutgoingAttachment,
    OutgoingMessage,
    ReplyMode,
)
from kestrel.smtp.compose import create_forward, create_reply

if TYPE_CHECKING:
    from kestrel.smtp.dispatcher import DispatchResult, MessageDispatcher
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)

AUTOSAVE_DELAY = 3.0

# Fields save() may change
EDITABLE_FIELDS = frozenset({
    "to", "cc", "bcc", "subject", "body_text", "body_html", "attachment_paths",
})


class DraftService:
    """
    Per-account drafts with debounced autosave.

    Args:
        repo: Where drafts are stored.
        dispatcher: Used by send(); drafts cannot be sent without one.
        autosave_delay: Seconds of quiet before a scheduled autosave runs.
        sleep: Autosave timer, injected for tests.
    """

    def __init__(
        self,
        repo: "Repository",
        *,
        dispatcher: "MessageDispatcher | None" = None,
        autosave_delay: float = AUTOSAVE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repo = repo
        self.dispatcher = dispatcher
        self.autosave_delay = autosave_delay
        self._sleep = sleep
        self._pending: dict[int, Draft] = {}
        self._timers: dict[int, asyncio.Task] = {}

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(
        self,
        account: Account,
        *,
        source: Message | None = None,
        mode: ReplyMode | None = None,
    ) -> Draft:
        """
        Store a new draft for an account.

        Args:
            account: Stored account that will send the draft.
            source: Message being replied to or forwarded, if any.
            mode: How the draft answers source (REPLY when omitted).

        Raises:
            NotFoundError: The account has not been stored.
            ValueError: A mode was given without a source message.
        """
        if account.id is None:
            raise NotFoundError(f"Account {account.name} has not been stored")
        draft = Draft(account_id=account.id)

        if source is not None:
            mode = mode or ReplyMode.REPLY
            if mode is ReplyMode.FORWARD:
                template = create_forward(source, [])
                draft.attachment_paths = await self._cached_attachment_paths(source)
            else:
                template = create_reply(account, source, "", reply_all=mode is ReplyMode.REPLY_ALL)
            _fill_from(draft, template)
            draft.source_message_id = source.id
            draft.reply_mode = mode
        elif mode is not None:
            raise ValueError(f"A {mode.value} draft needs a source message")

        await self.repo.save_draft(draft)
        logger.debug(f"Created draft {draft.id} for {account.name}")
        return draft

    async def _cached_attachment_paths(self, source: Message) -> list[str]:
        attachments = source.attachments
        if not attachments and source.id is not None:
            attachments = await self.repo.get_attachments(source.id)
        return [
            a.local_path for a in attachments
            if a.is_downloaded and a.local_path and not a.is_inline
        ]

    async def get(self, draft_id: int) -> Draft:
        """
        Load a draft, preferring edits that are waiting for autosave.

        Raises:
            NotFoundError: No such draft.
        """
        pending = self._pending.get(draft_id)
        if pending is not None:
            return pending
        draft = await self.repo.get_draft(draft_id)
        if draft is None:
            raise NotFoundError(f"Draft {draft_id} does not exist")
        return draft

    async def list_drafts(self, account: Account | None = None) -> list[Draft]:
        """Drafts of an account (or every draft), most recently modified first."""
        if account is not None and account.id is None:
            return []
        return await self.repo.get_drafts(account.id if account else None)

    async def update(self, draft: Draft) -> Draft:
        """
        Write a draft now, replacing any autosave scheduled for it.

        Raises:
            NotFoundError: The draft was deleted.
        """
        if draft.id is not None:
            self._cancel_timer(draft.id)
            self._pending.pop(draft.id, None)
        return await self._write(draft)

    async def save(self, draft_id: int, **changes) -> Draft:
        """
        Change some fields of a stored draft and write it.

        Example:
            >>> await drafts.save(draft.id, to=["bob@example.com"], subject="Hi")

        Raises:
            NotFoundError: No such draft.
            ValueError: A field that cannot be edited was named.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit draft field(s): {', '.join(sorted(unknown))}")
        draft = await self.get(draft_id)
        for name, value in changes.items():
            setattr(draft, name, value)
        return await self.update(draft)

    async def delete(self, draft_id: int) -> bool:
        """Discard a draft. Returns False if it did not exist."""
        self._cancel_timer(draft_id)
        self._pending.pop(draft_id, None)
        deleted = await self.repo.delete_draft(draft_id)
        if deleted:
            logger.debug(f"Deleted draft {draft_id}")
        return deleted

    async def delete_all(self, account: Account | None = None) -> int:
        """Discard every draft of an account, or every draft when account is None."""
        if account is not None and account.id is None:
            return 0
        account_id = account.id if account else None
        for draft_id, draft in list(self._pending.items()):
            if account_id is None or draft.account_id == account_id:
                self._cancel_timer(draft_id)
                del self._pending[draft_id]
        count = await self.repo.delete_drafts(account_id)
        logger.info(f"Deleted {count} draft(s)")
        return count

    async def _write(self, draft: Draft) -> Draft:
        draft.touch()
        return await self.repo.save_draft(draft)

    # =========================================================================
    # Autosave
    # =========================================================================

    def has_pending(self, draft_id: int) -> bool:
        return draft_id in self._pending

    def schedule_autosave(self, draft: Draft) -> None:
        """
        Remember the latest edit of a draft and write it once edits pause.

        Each call restarts the draft's timer; only the last edit is written.

        Raises:
            ValueError: The draft has not been stored yet.
        """
        if draft.id is None:
            raise ValueError("Create the draft before scheduling autosave")
        self._pending[draft.id] = draft
        self._cancel_timer(draft.id)
        self._timers[draft.id] = asyncio.create_task(self._autosave_later(draft.id))

    async def _autosave_later(self, draft_id: int) -> None:
        await self._sleep(self.autosave_delay)
        if self._timers.get(draft_id) is asyncio.current_task():
            del self._timers[draft_id]
        draft = self._pending.pop(draft_id, None)
        if draft is None:
            return
        try:
            await self._write(draft)
        except (KestrelError, asyncio.CancelledError) as e:
            # Left pending so flush() writes it and reports failures
            self._pending.setdefault(draft_id, draft)
            if isinstance(e, asyncio.CancelledError):
                raise
            logger.error(f"Autosave of draft {draft_id} failed: {e}")
        else:
            logger.debug(f"Autosaved draft {draft_id}")

    def _cancel_timer(self, draft_id: int) -> None:
        timer = self._timers.pop(draft_id, None)
        if timer is not None:
            timer.cancel()

    async def flush(self) -> None:
        """
        Write every pending edit now.

        Raises:
            NotFoundError, StoreError: A draft could not be written; it and
                the drafts after it stay pending.
        """
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        for draft_id in list(self._pending):
            await self._write(self._pending[draft_id])
            del self._pending[draft_id]

    async def close(self) -> None:
        await self.flush()

    # =========================================================================
    # Sending
    # =========================================================================

    async def to_outgoing(self, draft: Draft) -> OutgoingMessage:
        """
        Build the message a draft would send.

        Raises:
            NotFoundError: An attached file no longer exists.
        """
        attachments = []
        for path in draft.attachment_paths:
            try:
                attachments.append(await asyncio.to_thread(OutgoingAttachment.from_path, Path(path)))
            except FileNotFoundError as e:
                raise NotFoundError(f"Attachment {path} no longer exists") from e
        return OutgoingMessage(
            to=list(draft.to),
            cc=list(draft.cc),
            bcc=list(draft.bcc),
            subject=draft.subject,
            body_text=draft.body_text,
            body_html=draft.body_html,
            attachments=attachments,
            in_reply_to=draft.in_reply_to or None,
            references=list(draft.references),
        )

    async def send(self, account: Account, draft_id: int) -> "DispatchResult":
        """
        Send a draft and discard it once the server has accepted it.

        A failed send keeps the draft.

        Raises:
            KestrelError: No dispatcher is configured.
            ValueError: The draft belongs to another account.
            NotFoundError: No such draft, or an attached file vanished.
            MailConnectionError, AuthenticationError, RejectedRecipientError:
                From the dispatcher.
        """
        if self.dispatcher is None:
            raise KestrelError("Drafts cannot be sent without a dispatcher")
        draft = await self.get(draft_id)
        if draft.account_id != account.id:
            raise ValueError(f"Draft {draft_id} does not belong to {account.name}")
        if self.has_pending(draft_id):
            await self.update(draft)

        result = await self.dispatcher.send(account, await self.to_outgoing(draft))
        await self.repo.delete_draft(draft_id)
        logger.info(f"Sent draft {draft_id} as {result.message_id}")
        return result


def _fill_from(draft: Draft, template: OutgoingMessage) -> None:
    draft.to = list(template.to)
    draft.cc = list(template.cc)
    draft.subject = template.subject
    draft.body_text = template.body_text
    draft.in_reply_to = template.in_reply_to or ""
    draft.references = list(template.references)
