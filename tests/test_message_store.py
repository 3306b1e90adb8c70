"""Tests for message store backends."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from chatguard.app.db.async_session import create_engine_for_url, create_session_maker, init_db
from chatguard.app.exceptions import MessageNotFoundError
from chatguard.app.services.message_store import (
    ChatMessage,
    InMemoryMessageStore,
    SqlMessageStore,
    live_messages,
    utcnow,
)


def message_fields(channel="general", content="Hello everyone", offset_seconds=0, ttl_hours=24):
    created_at = utcnow() + timedelta(seconds=offset_seconds)
    return {
        "channel": channel,
        "username": "alice",
        "content": content,
        "created_at": created_at,
        "expire_at": created_at + timedelta(hours=ttl_hours),
        "reported": False,
        "report_count": 0,
    }


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryMessageStore()
        return

    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    await init_db(engine)
    sql_store = SqlMessageStore(create_session_maker(engine))
    yield sql_store
    await sql_store.close()
    await engine.dispose()


class TestMessageStore:
    """Behaviour shared by every backend."""

    @pytest.mark.asyncio
    async def test_append_and_get(self, store):
        message = await store.append_record(message_fields())

        assert message.id
        fetched = await store.get_record(message.id)
        assert fetched.content == "Hello everyone"
        assert fetched.channel == "general"
        assert fetched.reported is False
        assert fetched.report_count == 0

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, store):
        assert await store.get_record("missing") is None

    @pytest.mark.asyncio
    async def test_query_orders_by_created_at(self, store):
        await store.append_record(message_fields(content="second", offset_seconds=10))
        await store.append_record(message_fields(content="first", offset_seconds=0))
        await store.append_record(message_fields(channel="other", content="elsewhere"))

        messages = await store.query_channel("general")
        assert [m.content for m in messages] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_expired_records_filtered(self, store):
        expired = await store.append_record(
            message_fields(content="old", offset_seconds=-7200, ttl_hours=1)
        )
        await store.append_record(message_fields(content="fresh"))

        assert [m.content for m in await store.query_channel("general")] == ["fresh"]
        assert await store.get_record(expired.id) is None

    @pytest.mark.asyncio
    async def test_increment_counter(self, store):
        message = await store.append_record(message_fields())

        await store.increment_counter_field(message.id, "report_count")
        updated = await store.increment_counter_field(message.id, "report_count")

        assert updated.report_count == 2
        assert (await store.get_record(message.id)).report_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_increments_not_lost(self, store):
        message = await store.append_record(message_fields())

        await asyncio.gather(*(
            store.increment_counter_field(message.id, "report_count") for _ in range(5)
        ))

        assert (await store.get_record(message.id)).report_count == 5

    @pytest.mark.asyncio
    async def test_increment_unknown_record(self, store):
        with pytest.raises(MessageNotFoundError):
            await store.increment_counter_field("missing", "report_count")

    @pytest.mark.asyncio
    async def test_only_counter_fields_incrementable(self, store):
        message = await store.append_record(message_fields())
        with pytest.raises(ValueError):
            await store.increment_counter_field(message.id, "content")

    @pytest.mark.asyncio
    async def test_update_fields(self, store):
        message = await store.append_record(message_fields())

        updated = await store.update_fields(message.id, {"reported": True})

        assert updated.reported is True
        assert (await store.get_record(message.id)).reported is True

    @pytest.mark.asyncio
    async def test_update_rejects_protected_fields(self, store):
        message = await store.append_record(message_fields())
        with pytest.raises(ValueError):
            await store.update_fields(message.id, {"content": "rewritten"})

    @pytest.mark.asyncio
    async def test_returned_messages_are_detached(self, store):
        message = await store.append_record(message_fields())
        message.content = "tampered"
        message.report_count = 99

        fetched = await store.get_record(message.id)
        fetched.reported = True
        (await store.query_channel("general"))[0].username = "mallory"
        (await store.increment_counter_field(message.id, "report_count")).content = "x"

        stored = await store.get_record(message.id)
        assert stored.content == "Hello everyone"
        assert stored.report_count == 1
        assert stored.reported is False
        assert stored.username == "alice"

    @pytest.mark.asyncio
    async def test_subscribe_yields_snapshot_per_change(self, store):
        await store.append_record(message_fields(content="before"))
        stream = store.subscribe("general")

        initial = await stream.__anext__()
        assert [m.content for m in initial] == ["before"]
        assert store.subscriber_count("general") == 1

        await store.append_record(message_fields(content="after", offset_seconds=1))
        update = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert [m.content for m in update] == ["before", "after"]

        await stream.aclose()
        assert store.subscriber_count("general") == 0

    @pytest.mark.asyncio
    async def test_subscribe_ignores_other_channels(self, store):
        stream = store.subscribe("general")
        assert await stream.__anext__() == []

        await store.append_record(message_fields(channel="random"))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(stream.__anext__(), timeout=0.05)
        assert store.subscriber_count("general") == 0


def test_live_messages_sorts_and_filters():
    now = utcnow()
    messages = [
        ChatMessage(id="b", channel="c", username="u", content="b", created_at=now),
        ChatMessage(id="a", channel="c", username="u", content="a",
                    created_at=now - timedelta(seconds=5)),
        ChatMessage(id="x", channel="c", username="u", content="x",
                    created_at=now - timedelta(hours=2), expire_at=now - timedelta(hours=1)),
    ]
    assert [m.id for m in live_messages(messages, now)] == ["a", "b"]
