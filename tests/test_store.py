"""Tests for SQLite subscription persistence."""

import asyncio

from artale_relay.models import KeywordFilter, MessageType
from artale_relay.store import SubscriptionStore

SWORD = KeywordFilter(keyword="劍", message_types=[MessageType.BUY])
SHIELD = KeywordFilter(keyword="Shield", message_types=[MessageType.SELL, MessageType.BUY])


async def test_subscription_crud(store: SubscriptionStore):
    assert await store.get("u1") is None

    saved = await store.upsert("u1", "c1", [SWORD, SHIELD])
    assert saved.user_id == "u1"
    assert saved.channel_id == "c1"
    assert saved.keyword_filters == [SWORD, SHIELD]
    assert saved.receive_all is False

    fetched = await store.get("u1")
    assert fetched == saved

    assert await store.delete("u1") is True
    assert await store.get("u1") is None
    assert await store.delete("u1") is False


async def test_upsert_replaces_filters_and_keeps_created_at(store: SubscriptionStore):
    first = await store.upsert("u1", "c1", [SWORD])
    await asyncio.sleep(0.01)
    second = await store.upsert("u1", "c2", [SHIELD], receive_all=True)

    assert second.channel_id == "c2"
    assert second.keyword_filters == [SHIELD]
    assert second.receive_all is True
    assert second.created_at == first.created_at
    assert second.updated_at > first.updated_at


async def test_list_all_and_count(store: SubscriptionStore):
    await store.upsert("u1", "c1", [SWORD])
    await store.upsert("u2", "c1", [], receive_all=True)
    await store.upsert("u3", "c2", [SHIELD])

    records = await store.list_all()
    assert {r.user_id for r in records} == {"u1", "u2", "u3"}
    assert await store.count() == 3


async def test_records_survive_reopen(tmp_path):
    path = str(tmp_path / "nested" / "subs.db")
    s = SubscriptionStore(path)
    await s.open()
    await s.upsert("u1", "c1", [SHIELD])
    await s.close()

    s = SubscriptionStore(path)
    await s.open()
    record = await s.get("u1")
    await s.close()
    assert record is not None
    assert record.keyword_filters[0].keyword == "Shield"
    assert record.keyword_filters[0].message_types == [MessageType.SELL, MessageType.BUY]
