"""
End-to-end tests for an order edit session over SQLite and local blobs.

Run with: pytest tests/test_session.py -v
"""
import asyncio

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import CountingStore, order_values
from core.errors import ValidationFailure
from core.mutations import AcceptOutcome, SubmitOutcome
from core.session import OrderEditSession
from models import OrderStatus, Role, Viewer
from models.converters import order_from_row

WORKER = Viewer(user_id="u-worker", role=Role.WORKER, company_id="c1")


def _session(store, blobs=None, cache=None, feed=None, viewer=WORKER):
    return OrderEditSession("ord-1", viewer, store, blobs=blobs, cache=cache, feed=feed, debounce_s=0.01)


class TestOpen:
    def test_first_open_by_assignee_starts_work(self, sqlite_store, cache):
        sqlite_store.create_order(order_values(status=OrderStatus.NEW))
        sqlite_store.upsert_profile("u-worker", full_name="Sidorov Sidor")

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            await session.close()
            return session

        session = asyncio.run(scenario())
        assert session.order.status == OrderStatus.IN_PROGRESS
        assert session.assignee_name == "Sidorov Sidor"
        assert not session.is_dirty
        assert session.expected_updated_at == session.order.updated_at

    def test_other_viewer_does_not_start_work(self, sqlite_store, cache):
        sqlite_store.create_order(order_values(status=OrderStatus.NEW))
        viewer = Viewer(user_id="u-dispatcher", role=Role.DISPATCHER, company_id="c1")

        async def scenario():
            return await _session(sqlite_store, cache=cache, viewer=viewer).open()

        assert asyncio.run(scenario()).order.status == OrderStatus.NEW

    def test_reopen_keeps_unsaved_edits(self, sqlite_store, cache, feed):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache, feed=feed).open()
            session.set_field("title", "Unsaved edit")
            await session.open()
            subscribers = feed.subscriber_count("orders", "c1")
            await session.close()
            return session, subscribers

        session, subscribers = asyncio.run(scenario())
        assert session.form["title"] == "Unsaved edit"
        assert session.is_dirty
        assert subscribers == 1
        assert feed.channel_count() == 0

    def test_reopen_dirty_form_merges_remote_change(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            loaded_token = session.expected_updated_at
            session.set_field("title", "Unsaved edit")
            sqlite_store.update_order_if_version("ord-1", {"city": "Tver"}, loaded_token)
            await session.open()
            return session, loaded_token

        session, loaded_token = asyncio.run(scenario())
        assert session.form["title"] == "Unsaved edit"
        assert session.form["city"] == "Tver"
        assert session.expected_updated_at == loaded_token

    def test_reopen_clean_form_rehydrates(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            sqlite_store.update_order_if_version("ord-1", {"title": "Remote"}, session.expected_updated_at)
            await session.open()
            return session

        session = asyncio.run(scenario())
        assert session.form["title"] == "Remote"
        assert not session.is_dirty
        assert session.expected_updated_at == sqlite_store.get_order("ord-1")["updated_at"]


class TestEditing:
    def test_assigning_feed_order_starts_work(self, sqlite_store, cache):
        sqlite_store.create_order(order_values(assigned_to=None, status=OrderStatus.IN_FEED))
        viewer = Viewer(user_id="u-disp", role=Role.DISPATCHER, company_id="c1")

        async def scenario():
            session = await _session(sqlite_store, cache=cache, viewer=viewer).open()
            assert session.form["to_feed"] is True
            session.set_field("assigned_to", "u-worker")
            return session, await session.submit()

        session, result = asyncio.run(scenario())
        assert result.ok
        stored = order_from_row(sqlite_store.get_order("ord-1"))
        assert stored.assigned_to == "u-worker"
        assert stored.status == OrderStatus.IN_PROGRESS
        assert session.form["to_feed"] is False

    def test_phone_saved_in_e164(self, sqlite_store, cache):
        sqlite_store.create_order(order_values(phone=""))

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            session.set_field("phone", "89991234567")
            display = session.phone_display
            result = await session.submit()
            return session, result, display

        session, result, display = asyncio.run(scenario())
        assert display == "+7 (999) 123-45-67"
        assert result.ok
        assert sqlite_store.get_order("ord-1")["phone"] == "+79991234567"
        assert not session.is_dirty
        assert session.notices[-1].message == "Saved"

    def test_empty_title_blocks_submit_without_store_call(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())
        store = CountingStore(sqlite_store)

        async def scenario():
            session = await _session(store, cache=cache).open()
            session.set_field("title", "")
            return session, await session.submit()

        session, result = asyncio.run(scenario())
        assert result.outcome == SubmitOutcome.FAILURE
        assert [(v.field, v.code) for v in result.violations] == [("title", "required")]
        assert store.writes == 0
        assert session.notices[-1].level == "error"
        assert "title" in session.notices[-1].message
        assert session.form["title"] == ""

    def test_finance_field_not_owned_by_worker(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            return await _session(sqlite_store, cache=cache).open()

        session = asyncio.run(scenario())
        with pytest.raises(ValidationFailure):
            session.set_field("price", "100")

    def test_send_to_feed(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            return await session.send_to_feed()

        result = asyncio.run(scenario())
        assert result.ok
        stored = order_from_row(sqlite_store.get_order("ord-1"))
        assert stored.assigned_to is None
        assert stored.status == OrderStatus.IN_FEED

    def test_discard_changes(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            session.set_field("city", "Tver")
            dirty = session.is_dirty
            session.discard_changes()
            return dirty, session

        dirty, session = asyncio.run(scenario())
        assert dirty
        assert not session.is_dirty
        assert session.form["city"] == "Khimki"


class TestConflicts:
    def test_submit_conflict_keeps_edits(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            # someone else saves first
            sqlite_store.update_order_if_version("ord-1", {"comment": "Call before arrival"}, session.expected_updated_at)
            session.set_field("city", "Tver")
            first = await session.submit()
            form_after_conflict = dict(session.form)
            second = await session.submit()
            return first, second, form_after_conflict

        first, second, form = asyncio.run(scenario())
        assert first.outcome == SubmitOutcome.CONFLICT
        assert form["city"] == "Tver"
        assert form["comment"] == "Call before arrival"
        assert second.ok
        stored = sqlite_store.get_order("ord-1")
        assert stored["city"] == "Tver"
        assert stored["comment"] == "Call before arrival"

    def test_remote_change_on_clean_form_rehydrates(self, sqlite_store, cache, feed):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache, feed=feed).open()
            sqlite_store.update_order_if_version("ord-1", {"title": "Remote"}, session.expected_updated_at)
            await session.wait_idle()
            state = (session.form["title"], session.is_dirty, session.expected_updated_at)
            await session.close()
            return state

        title, dirty, token = asyncio.run(scenario())
        assert title == "Remote"
        assert not dirty
        assert token == sqlite_store.get_order("ord-1")["updated_at"]

    def test_remote_change_on_dirty_form_merges(self, sqlite_store, cache, feed):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache, feed=feed).open()
            loaded_token = session.expected_updated_at
            session.set_field("city", "Tver")
            sqlite_store.update_order_if_version("ord-1", {"title": "Remote"}, loaded_token)
            await session.wait_idle()
            merged = dict(session.form)
            token_after_merge = session.expected_updated_at
            first = await session.submit()
            second = await session.submit()
            await session.close()
            return loaded_token, merged, token_after_merge, first, second

        loaded_token, merged, token_after_merge, first, second = asyncio.run(scenario())
        assert merged["title"] == "Remote"
        assert merged["city"] == "Tver"
        assert token_after_merge == loaded_token
        assert first.outcome == SubmitOutcome.CONFLICT
        assert second.ok
        stored = sqlite_store.get_order("ord-1")
        assert (stored["title"], stored["city"]) == ("Remote", "Tver")


class TestLifecycle:
    def test_accept_from_feed(self, sqlite_store, cache):
        sqlite_store.create_order(order_values(assigned_to=None, status=OrderStatus.IN_FEED))
        sqlite_store.upsert_profile("u-worker", email="worker@example.com")

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            return session, await session.accept()

        session, result = asyncio.run(scenario())
        assert result.outcome == AcceptOutcome.ACCEPTED
        assert session.order.status == OrderStatus.IN_PROGRESS
        assert session.form["assigned_to"] == "u-worker"
        assert session.assignee_name == "worker@example.com"

    def test_accept_already_taken(self, sqlite_store, cache):
        sqlite_store.create_order(order_values(assigned_to=None, status=OrderStatus.IN_FEED))

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            sqlite_store.accept_order("ord-1", "u-other")
            return session, await session.accept()

        session, result = asyncio.run(scenario())
        assert result.outcome == AcceptOutcome.ALREADY_TAKEN
        assert session.order.assigned_to == "u-other"
        assert session.notices[-1].level == "warning"

    def test_finish_blocked_by_missing_category(self, sqlite_store, blobs, cache):
        sqlite_store.create_order(order_values())
        store = CountingStore(sqlite_store)

        async def scenario():
            session = await _session(store, blobs=blobs, cache=cache).open()
            for cat in ("contract_file", "photo_before", "photo_after"):
                assert await session.upload_attachment(cat, b"img", "image/jpeg")
            writes_before = store.writes
            result = await session.finish()
            return session, result, store.writes - writes_before

        session, result, extra_writes = asyncio.run(scenario())
        assert result.outcome == SubmitOutcome.FAILURE
        assert result.error.code == "ATTACHMENTS_MISSING"
        assert result.error.detail == {"missing": ["act_file"]}
        assert "act_file" in session.notices[-1].message
        assert extra_writes == 0
        assert len(session.attachment_urls["photo_after"]) == 1

    def test_finish_with_all_categories(self, sqlite_store, blobs, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, blobs=blobs, cache=cache).open()
            for cat in ("contract_file", "photo_before", "photo_after", "act_file"):
                await session.upload_attachment(cat, b"img", "image/jpeg")
            return await session.finish()

        result = asyncio.run(scenario())
        assert result.ok
        assert result.order.status == OrderStatus.COMPLETED

    def test_upload_keeps_unsaved_edits(self, sqlite_store, blobs, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, blobs=blobs, cache=cache).open()
            session.set_field("house", "7A")
            await session.upload_attachment("photo_before", b"img", "image/jpeg")
            return session

        session = asyncio.run(scenario())
        assert session.form["house"] == "7A"
        assert session.is_dirty
        assert session.expected_updated_at == session.order.updated_at

    def test_delete_removes_blobs(self, sqlite_store, blobs, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, blobs=blobs, cache=cache).open()
            await session.upload_attachment("act_file", b"pdf", "application/pdf")
            return await session.delete()

        assert asyncio.run(scenario()) is True
        assert sqlite_store.get_order("ord-1") is None
        assert blobs.list("orders/ord-1/act_file") == []

    def test_change_status_to_new_rejected(self, sqlite_store, cache):
        sqlite_store.create_order(order_values())

        async def scenario():
            session = await _session(sqlite_store, cache=cache).open()
            return await session.change_status(OrderStatus.NEW)

        result = asyncio.run(scenario())
        assert result.outcome == SubmitOutcome.FAILURE
        assert result.error.code == "INVALID_TRANSITION"
