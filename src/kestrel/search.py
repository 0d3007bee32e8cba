# =============================================================================
# Local Search
# =============================================================================
# Case-insensitive search over the local mirror, plus a short history of
# recent queries.
#
# Scopes:
#   - ALL: subject, sender address, sender name and body text
#   - FOLDER: the same fields, within one folder
#   - SUBJECT / SENDER / BODY: a single field
#   - ATTACHMENTS / UNREAD / STARRED: messages with that property; a query,
#     when given, narrows them further
#
# Nothing is sent to the server.
# =============================================================================

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from kestrel.core import Account, Folder, Message
from kestrel.storage.repository import TEXT_COLUMNS

if TYPE_CHECKING:
    from kestrel.storage import Repository

logger = logging.getLogger(__name__)

RESULT_LIMIT = 100
HISTORY_SIZE = 20

# Characters of body text shown around a match
SNIPPET_BEFORE = 30
SNIPPET_AFTER = 70
SNIPPET_LENGTH = 100


class SearchScope(Enum):
    ALL = "all"
    FOLDER = "folder"
    SUBJECT = "subject"
    SENDER = "sender"
    BODY = "body"
    ATTACHMENTS = "attachments"
    UNREAD = "unread"
    STARRED = "starred"


SCOPE_COLUMNS: dict[SearchScope, tuple[str, ...]] = {
    SearchScope.SUBJECT: ("subject",),
    SearchScope.SENDER: ("sender", "sender_name"),
    SearchScope.BODY: ("body_text",),
}

PROPERTY_SCOPES = {
    SearchScope.ATTACHMENTS: ("has_attachments", "Has Attachments"),
    SearchScope.UNREAD: ("unread", "Unread"),
    SearchScope.STARRED: ("flagged", "Starred"),
}


@dataclass
class SearchResult:
    """
    One matching message.

    Attributes:
        message: The mirrored message (attachments not loaded).
        match_field: Where the query matched ("Subject", "Sender", "Body"),
            or the property the scope selects on.
        snippet: Body text around the first match, or the start of the body.
    """
    message: Message
    match_field: str
    snippet: str


def match_field(message: Message, query: str, scope: SearchScope) -> str:
    if scope is SearchScope.SUBJECT:
        return "Subject"
    if scope is SearchScope.SENDER:
        return "Sender"
    if scope is SearchScope.BODY:
        return "Body"
    if not query and scope in PROPERTY_SCOPES:
        return PROPERTY_SCOPES[scope][1]

    needle = query.casefold()
    if needle in message.subject.casefold():
        return "Subject"
    if needle in message.sender.casefold() or needle in message.sender_name.casefold():
        return "Sender"
    return "Body"


def make_snippet(body: str, query: str) -> str:
    """
    Body text around the first occurrence of query, on one line.

    >>> make_snippet("Hello there, the report is attached.", "report")
    'Hello there, the report is attached.'
    """
    body = body or ""
    position = body.lower().find(query.lower()) if query else -1
    if position < 0:
        snippet = body[:SNIPPET_LENGTH]
        suffix = "..." if len(body) > SNIPPET_LENGTH else ""
        return " ".join(snippet.split()) + suffix

    start = max(0, position - SNIPPET_BEFORE)
    end = min(len(body), position + len(query) + SNIPPET_AFTER)
    snippet = " ".join(body[start:end].split())
    if start > 0:
        snippet = "..." + snippet
    if end < len(body):
        snippet += "..."
    return snippet


class SearchService:
    """
    Searches the local mirror and remembers recent queries.

    Usage:
        >>> results = await search.search("invoice", SearchScope.SUBJECT, account=account)
        >>> await search.history()
        ['invoice']
    """

    def __init__(
        self,
        repo: "Repository",
        *,
        limit: int = RESULT_LIMIT,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self.repo = repo
        self.limit = limit
        self.history_size = history_size
        self._last_recorded: datetime | None = None

    async def search(
        self,
        query: str,
        scope: SearchScope = SearchScope.ALL,
        *,
        account: Account | None = None,
        folder: Folder | None = None,
        limit: int | None = None,
        record: bool = True,
    ) -> list[SearchResult]:
        """
        Search mirrored messages, newest first.

        Args:
            query: Text to look for, case-insensitively. Blank queries return
                nothing except in the property scopes.
            scope: Which fields or property to search.
            account: Only this account's messages.
            folder: The folder searched by FOLDER scope. In other scopes it
                limits the search to the folder's account.
            limit: Maximum number of results (default self.limit).
            record: Add a non-blank query to the search history.

        Raises:
            ValueError: FOLDER scope without a stored folder.
        """
        query = query.strip()
        if not query and scope not in PROPERTY_SCOPES:
            return []

        filters: dict[str, Any] = {}
        if scope is SearchScope.FOLDER:
            if folder is None or folder.id is None:
                raise ValueError("Searching a folder needs a stored folder")
            filters["folder_id"] = folder.id
        elif account is not None or folder is not None:
            account_id = account.id if account is not None else folder.account_id
            if account_id is None:
                return []
            filters["account_id"] = account_id

        if scope in PROPERTY_SCOPES:
            filters[PROPERTY_SCOPES[scope][0]] = True
        if query:
            filters["text"] = query
            filters["text_columns"] = SCOPE_COLUMNS.get(scope, TEXT_COLUMNS)

        messages = await self.repo.query_messages(**filters, limit=limit or self.limit)
        if query and record:
            await self.record(query)
        logger.debug(f"Search {query!r} in {scope.value}: {len(messages)} result(s)")

        return [
            SearchResult(m, match_field(m, query, scope), make_snippet(m.body_text, query))
            for m in messages
        ]

    # =========================================================================
    # History
    # =========================================================================

    async def record(self, query: str) -> None:
        """Put a query at the front of the history."""
        query = query.strip()
        if not query:
            return
        now = datetime.now(timezone.utc)
        if self._last_recorded is not None and now <= self._last_recorded:
            now = self._last_recorded + timedelta(microseconds=1)
        self._last_recorded = now
        await self.repo.record_search(query, now, self.history_size)

    async def history(self) -> list[str]:
        """Recent queries, newest first."""
        return await self.repo.get_search_history()

    async def clear_history(self) -> None:
        await self.repo.clear_search_history()
        logger.info("Cleared search history")
