"""Tests for local search and the search history."""

from datetime import datetime, timezone

import pytest

from conftest import make_message
from kestrel.core import Account, Attachment, Folder, FolderType, MessageFlags
from kestrel.search import SearchScope, SearchService, make_snippet


@pytest.fixture
async def inbox(repo, account) -> Folder:
    return await repo.save_folder(Folder(name="INBOX", account_id=account.id, folder_type=FolderType.INBOX))


@pytest.fixture
async def archive(repo, account) -> Folder:
    return await repo.save_folder(Folder(name="Archive", account_id=account.id))


@pytest.fixture
def search(repo) -> SearchService:
    return SearchService(repo)


async def store(repo, folder, uid, *, day=1, **fields):
    attachments = fields.pop("attachments", None)
    flags = fields.pop("flags", MessageFlags.NONE)
    message = make_message(uid, attachments=attachments, flags=flags)
    message.account_id = folder.account_id
    message.folder_id = folder.id
    message.date_sent = datetime(2024, 3, day, 9, 0, tzinfo=timezone.utc)
    for name, value in fields.items():
        setattr(message, name, value)
    return await repo.save_message(message)


@pytest.fixture
async def mailbox(repo, inbox, archive):
    return {
        "invoice": await store(
            repo, inbox, 1, day=1, subject="Invoice March",
            sender="billing@shop.example", sender_name="Shop Billing",
            body_text="Please find the invoice attached.",
            attachments=[Attachment(filename="invoice.pdf", part_id="2")],
        ),
        "lunch": await store(
            repo, inbox, 2, day=2, subject="Lunch?",
            sender="bob@example.com", sender_name="Bob Müller",
            body_text="Are you free for lunch on Friday?",
            flags=MessageFlags.SEEN | MessageFlags.FLAGGED,
        ),
        "report": await store(
            repo, archive, 1, day=3, subject="Quarterly numbers",
            sender="carol@example.com", sender_name="Carol",
            body_text="The INVOICE totals are in the report.",
            flags=MessageFlags.SEEN,
        ),
    }


def subjects(results):
    return [r.message.subject for r in results]


class TestSearch:
    @pytest.mark.asyncio
    async def test_all_fields_case_insensitive(self, search, account, mailbox):
        results = await search.search("invoice", account=account)

        assert subjects(results) == ["Quarterly numbers", "Invoice March"]
        assert [r.match_field for r in results] == ["Body", "Subject"]

    @pytest.mark.asyncio
    async def test_sender_name_with_non_ascii_case(self, search, mailbox):
        results = await search.search("MÜLLER", SearchScope.SENDER)

        assert subjects(results) == ["Lunch?"]
        assert results[0].match_field == "Sender"

    @pytest.mark.asyncio
    async def test_single_field_scopes(self, search, mailbox):
        assert subjects(await search.search("invoice", SearchScope.SUBJECT)) == ["Invoice March"]
        assert subjects(await search.search("invoice", SearchScope.BODY)) == [
            "Quarterly numbers", "Invoice March",
        ]
        assert subjects(await search.search("shop.example", SearchScope.SENDER)) == ["Invoice March"]

    @pytest.mark.asyncio
    async def test_folder_scope(self, search, archive, mailbox):
        results = await search.search("invoice", SearchScope.FOLDER, folder=archive)

        assert subjects(results) == ["Quarterly numbers"]

    @pytest.mark.asyncio
    async def test_folder_scope_needs_stored_folder(self, search):
        with pytest.raises(ValueError):
            await search.search("invoice", SearchScope.FOLDER)

    @pytest.mark.asyncio
    async def test_property_scopes_without_query(self, search, mailbox):
        assert subjects(await search.search("", SearchScope.ATTACHMENTS)) == ["Invoice March"]
        assert subjects(await search.search("", SearchScope.STARRED)) == ["Lunch?"]
        unread = await search.search("", SearchScope.UNREAD)
        assert subjects(unread) == ["Invoice March"]
        assert unread[0].match_field == "Unread"

    @pytest.mark.asyncio
    async def test_query_narrows_property_scope(self, search, mailbox):
        assert await search.search("lunch", SearchScope.UNREAD) == []
        assert subjects(await search.search("lunch", SearchScope.STARRED)) == ["Lunch?"]

    @pytest.mark.asyncio
    async def test_blank_query_finds_nothing(self, search, mailbox):
        assert await search.search("   ") == []
        assert await search.history() == []

    @pytest.mark.asyncio
    async def test_other_account_is_excluded(self, search, repo, mailbox):
        other = await repo.save_account(Account(name="other", email="o@example.com"))

        assert await search.search("invoice", account=other) == []
        assert await search.search("invoice", account=Account(name="unsaved", email="u@example.com")) == []

    @pytest.mark.asyncio
    async def test_limit(self, search, mailbox):
        assert len(await search.search("example", limit=1)) == 1


class TestSnippet:
    def test_context_around_match(self):
        body = "x" * 50 + " the needle is here " + "y" * 100

        snippet = make_snippet(body, "NEEDLE")

        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "the needle is here" in snippet

    def test_start_of_body_without_match(self):
        assert make_snippet("Line one\nLine two", "absent") == "Line one Line two"
        assert make_snippet("z" * 150, "").endswith("...")
        assert make_snippet("", "anything") == ""


class TestHistory:
    @pytest.mark.asyncio
    async def test_recent_queries_first_without_duplicates(self, search, mailbox):
        await search.search("invoice")
        await search.search("lunch")
        await search.search("invoice")

        assert await search.history() == ["invoice", "lunch"]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, repo):
        search = SearchService(repo, history_size=3)
        for query in ["a", "b", "c", "d"]:
            await search.record(query)

        assert await search.history() == ["d", "c", "b"]

    @pytest.mark.asyncio
    async def test_search_without_recording(self, search, mailbox):
        await search.search("invoice", record=False)

        assert await search.history() == []

    @pytest.mark.asyncio
    async def test_clear_history(self, search):
        await search.record("invoice")

        await search.clear_history()

        assert await search.history() == []
