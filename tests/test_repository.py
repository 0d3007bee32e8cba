"""Tests for the SQLite mirror repository."""

import pytest

from conftest import make_message
from kestrel.core import Attachment, Draft, Folder, FolderType, MessageFlags, NotFoundError, StoreError
from kestrel.storage import Database
from kestrel.storage.database import SCHEMA_VERSION


@pytest.fixture
async def inbox(repo, account) -> Folder:
    return await repo.save_folder(Folder(name="INBOX", account_id=account.id, folder_type=FolderType.INBOX))


async def store(repo, account, folder, uid, **kwargs):
    message = make_message(uid, **kwargs)
    message.account_id = account.id
    message.folder_id = folder.id
    return await repo.save_message(message)


class TestAccounts:
    @pytest.mark.asyncio
    async def test_save_account_upserts_by_name(self, repo, account, sample_account):
        original_id = account.id
        sample_account.id = None
        sample_account.imap_host = "mail.example.com"

        saved = await repo.save_account(sample_account)

        assert saved.id == original_id
        assert [a.imap_host for a in await repo.get_all_accounts()] == ["mail.example.com"]

    @pytest.mark.asyncio
    async def test_delete_account_removes_everything(self, repo, account, inbox):
        attachment = Attachment(filename="a.pdf", part_id="2")
        first = await store(repo, account, inbox, 1, attachments=[attachment])
        second = await store(repo, account, inbox, 2)

        deleted = await repo.delete_account(account.id)

        assert sorted(deleted) == sorted([first.id, second.id])
        assert await repo.get_account(account.id) is None
        assert await repo.get_folders(account.id) == []
        assert await repo.get_attachment(attachment.id) is None


class TestFolders:
    @pytest.mark.asyncio
    async def test_save_folder_upserts_by_path(self, repo, account, inbox):
        again = await repo.save_folder(Folder(name="INBOX", account_id=account.id, uidvalidity=9))

        assert again.id == inbox.id
        assert (await repo.get_folder(inbox.id)).uidvalidity == 9

    @pytest.mark.asyncio
    async def test_delete_folder_takes_subtree(self, repo, account, inbox):
        work = await repo.save_folder(Folder(name="Work", account_id=account.id))
        projects = await repo.save_folder(
            Folder(name="Projects", path="Work/Projects", account_id=account.id, parent_id=work.id)
        )
        kept = await store(repo, account, inbox, 1)
        gone = await store(repo, account, projects, 1)

        deleted = await repo.delete_folder(work.id)

        assert deleted == [gone.id]
        assert [f.path for f in await repo.get_folders(account.id)] == ["INBOX"]
        assert await repo.get_message(kept.id) is not None

    @pytest.mark.asyncio
    async def test_get_folder_by_type(self, repo, account, inbox):
        assert (await repo.get_folder_by_type(account.id, FolderType.INBOX)).id == inbox.id
        assert await repo.get_folder_by_type(account.id, FolderType.TRASH) is None

    @pytest.mark.asyncio
    async def test_recompute_counts(self, repo, account, inbox):
        await store(repo, account, inbox, 1, flags=MessageFlags.SEEN)
        await store(repo, account, inbox, 2)
        await store(repo, account, inbox, 3, flags=MessageFlags.FLAGGED)

        counted = await repo.recompute_folder_counts(inbox)

        assert (counted.total_count, counted.unread_count) == (3, 2)
        stored = await repo.get_folder(inbox.id)
        assert (stored.total_count, stored.unread_count) == (3, 2)


class TestMessages:
    @pytest.mark.asyncio
    async def test_save_message_upserts_by_uid(self, repo, account, inbox):
        first = await store(repo, account, inbox, 7, subject="Old")
        second = await store(repo, account, inbox, 7, subject="New")

        assert second.id == first.id
        assert (await repo.get_message(first.id)).subject == "New"
        assert await repo.get_message_count(inbox.id) == 1

    @pytest.mark.asyncio
    async def test_message_roundtrip_keeps_attachments(self, repo, account, inbox):
        attachment = Attachment(filename="report.pdf", content_type="application/pdf", size=5, part_id="2")
        saved = await store(repo, account, inbox, 1, attachments=[attachment])

        loaded = await repo.get_message(saved.id)

        assert loaded.has_attachments
        assert loaded.recipients == ["test@example.com"]
        assert loaded.date_sent == saved.date_sent
        assert [(a.filename, a.part_id) for a in loaded.attachments] == [("report.pdf", "2")]

    @pytest.mark.asyncio
    async def test_query_filters(self, repo, account, inbox):
        await store(repo, account, inbox, 1, flags=MessageFlags.SEEN)
        await store(repo, account, inbox, 2, flags=MessageFlags.FLAGGED)
        await store(repo, account, inbox, None, message_id="<pending@example.com>")

        def uids(messages):
            return [m.uid for m in messages]

        assert uids(await repo.query_messages(folder_id=inbox.id, unread=True, sort="uid", descending=False)) == [None, 2]
        assert uids(await repo.query_messages(folder_id=inbox.id, flagged=True)) == [2]
        assert uids(await repo.query_messages(folder_id=inbox.id, pending_uid=True)) == [None]
        assert uids(await repo.query_messages(folder_id=inbox.id, pending_uid=False, sort="uid", descending=False)) == [1, 2]
        assert len(await repo.query_messages(account_id=account.id, limit=2)) == 2

    @pytest.mark.asyncio
    async def test_unknown_sort_column(self, repo):
        with pytest.raises(ValueError):
            await repo.query_messages(sort="flags; DROP TABLE messages")

    @pytest.mark.asyncio
    async def test_text_filter_folds_case(self, repo, account, inbox):
        await store(repo, account, inbox, 1, subject="Straße closed")
        await store(repo, account, inbox, 2, subject="Weekly update")

        def subjects(messages):
            return [m.subject for m in messages]

        assert subjects(await repo.query_messages(text="STRASSE")) == ["Straße closed"]
        assert subjects(await repo.query_messages(text="weekly", text_columns=["subject"])) == ["Weekly update"]
        assert await repo.query_messages(text="weekly", text_columns=["sender"]) == []
        assert len(await repo.query_messages(text="test sender", text_columns=["sender_name"])) == 2
        assert await repo.query_messages(text="") == []

    @pytest.mark.asyncio
    async def test_unknown_text_column(self, repo):
        with pytest.raises(ValueError):
            await repo.query_messages(text="x", text_columns=["subject", "flags"])
        with pytest.raises(ValueError):
            await repo.query_messages(text="x", text_columns=[])

    @pytest.mark.asyncio
    async def test_find_pending_message(self, repo, account, inbox):
        pending = await store(repo, account, inbox, None, message_id="<sent@example.com>")
        await store(repo, account, inbox, 4, message_id="<sent@example.com>")

        found = await repo.find_pending_message(inbox.id, "<sent@example.com>")

        assert found.id == pending.id
        assert await repo.find_pending_message(inbox.id, "") is None

    @pytest.mark.asyncio
    async def test_sync_helpers(self, repo, account, inbox):
        await store(repo, account, inbox, 1)
        await store(repo, account, inbox, 2)
        await store(repo, account, inbox, 3)
        await store(repo, account, inbox, None, message_id="<pending@example.com>")

        await repo.update_flags_bulk(inbox.id, {2: MessageFlags.SEEN})
        assert (await repo.get_local_flags(inbox.id))[2] == MessageFlags.SEEN
        assert await repo.get_local_uids(inbox.id) == {1, 2, 3}

        assert len(await repo.delete_messages_by_uids(inbox.id, {1, 99})) == 1
        assert len(await repo.delete_all_messages_in_folder(inbox.id)) == 3
        assert await repo.get_message_count(inbox.id) == 0


class TestTransactions:
    @pytest.mark.asyncio
    async def test_failed_block_rolls_back(self, repo, account, inbox):
        with pytest.raises(RuntimeError):
            async with repo.transaction():
                await store(repo, account, inbox, 1)
                await repo.save_folder(Folder(name="Archive", account_id=account.id))
                raise RuntimeError("interrupted")

        assert await repo.get_message_count(inbox.id) == 0
        assert await repo.get_folder_by_path(account.id, "Archive") is None

    @pytest.mark.asyncio
    async def test_nested_blocks_join(self, repo, account, inbox):
        async with repo.transaction():
            assert repo.in_transaction
            async with repo.transaction():
                await store(repo, account, inbox, 1)

        assert not repo.in_transaction
        assert await repo.get_message_count(inbox.id) == 1

    @pytest.mark.asyncio
    async def test_constraint_violation_is_store_error(self, repo, account, inbox):
        orphan = make_message(2)
        orphan.account_id = account.id
        orphan.folder_id = 9999

        with pytest.raises(StoreError):
            await repo.save_message(orphan)

        assert await repo.get_message_count(inbox.id) == 0


class TestAttachments:
    @pytest.mark.asyncio
    async def test_updating_a_deleted_attachment_is_not_found(self, repo, account, inbox):
        message = await store(repo, account, inbox, 1, attachments=[Attachment(filename="a.pdf", part_id="2")])
        attachment = message.attachments[0]
        await repo.delete_message(message.id)

        attachment.is_downloaded = True
        attachment.local_path = "/tmp/a.pdf"
        with pytest.raises(NotFoundError):
            await repo.save_attachment(attachment)

        assert await repo.get_attachment(attachment.id) is None


class TestDrafts:
    @pytest.mark.asyncio
    async def test_draft_roundtrip(self, repo, account):
        draft = await repo.save_draft(Draft(
            account_id=account.id,
            to=["bob@example.com"],
            subject="Re: Lunch",
            references=["<a@example.com>", "<b@example.com>"],
            attachment_paths=["/tmp/menu.pdf"],
        ))

        loaded = await repo.get_draft(draft.id)
        assert loaded.to == ["bob@example.com"]
        assert loaded.references == ["<a@example.com>", "<b@example.com>"]
        assert loaded.attachment_paths == ["/tmp/menu.pdf"]
        assert loaded.body_html is None
        assert loaded.modified_at == draft.modified_at

    @pytest.mark.asyncio
    async def test_updating_a_deleted_draft_is_not_found(self, repo, account):
        draft = await repo.save_draft(Draft(account_id=account.id))
        assert await repo.delete_draft(draft.id)

        with pytest.raises(NotFoundError):
            await repo.save_draft(draft)

    @pytest.mark.asyncio
    async def test_delete_account_takes_drafts(self, repo, account):
        draft = await repo.save_draft(Draft(account_id=account.id))

        await repo.delete_account(account.id)

        assert await repo.get_draft(draft.id) is None


class TestSchema:
    @pytest.mark.asyncio
    async def test_version_one_database_gains_new_tables(self, tmp_path):
        path = tmp_path / "old.db"
        db = Database(path)
        await db.connect()
        await db.conn.executescript(
            "DROP TABLE drafts; DROP TABLE search_history;"
            "DELETE FROM schema_version; INSERT INTO schema_version (version) VALUES (1);"
        )
        await db.conn.commit()
        await db.close()

        db = Database(path)
        await db.connect()
        try:
            async with db.conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
                assert (await cursor.fetchone())[0] == SCHEMA_VERSION
            async with db.conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name IN ('drafts', 'search_history')"
            ) as cursor:
                assert sorted(row[0] for row in await cursor.fetchall()) == ["drafts", "search_history"]
        finally:
            await db.close()
