"""Tests for broadcast and filter models."""

from artale_relay.models import BroadcastEvent, KeywordFilter, MessageType


def _event(**overrides) -> BroadcastEvent:
    data = {
        "message_type": "buy",
        "channel": "CH1",
        "player_name": "Mushroom",
        "player_id": "1001",
        "content": "收 劍 +10",
    }
    data.update(overrides)
    return BroadcastEvent.model_validate(data)


def test_dedup_key_is_stable_for_same_content():
    assert _event().dedup_key == _event().dedup_key


def test_dedup_key_ignores_player_name():
    assert _event(player_name="Other").dedup_key == _event().dedup_key


def test_dedup_key_changes_with_identity_fields():
    base = _event().dedup_key
    assert _event(player_id="1002").dedup_key != base
    assert _event(content="收 盾").dedup_key != base
    assert _event(message_type="sell").dedup_key != base
    assert _event(channel="CH2").dedup_key != base


def test_player_display():
    assert _event().player == "Mushroom#1001"


def test_keyword_filter_describe():
    f = KeywordFilter(keyword="劍", message_types=[MessageType.BUY, MessageType.SELL])
    assert f.describe() == "劍 (收購, 販售)"
