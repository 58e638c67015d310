"""
Slash-command handling for /subscribe, /unsubscribe and /status.

Translates parsed command options into SubscriptionEngine calls and builds
the reply text. Kept free of discord.py types so it can be exercised
without a gateway connection; discord_bot.py wires it to interactions.
"""

from __future__ import annotations

from typing import Optional

import structlog

from .models import KeywordFilter, MessageType, Subscription, SubscriptionRequest
from .subscriptions import SubscriptionEngine

log = structlog.get_logger()

PRODUCT_NAME = "MapleStory Artale 廣播訊息"

TYPE_CHOICES: dict[str, list[MessageType]] = {
    "buy": [MessageType.BUY],
    "sell": [MessageType.SELL],
    "both": [MessageType.BUY, MessageType.SELL],
}

REPLY_NEED_KEYWORD = "❌ 請提供至少一個關鍵字來訂閱特定內容"
REPLY_UNSUBSCRIBED = f"❌ 已取消訂閱 {PRODUCT_NAME}"
REPLY_NOT_SUBSCRIBED = "❓ 您尚未訂閱任何廣播訊息"
REPLY_NOTHING_REMOVED = "❓ 沒有找到匹配的訂閱內容可以取消"
REPLY_ALL_REMOVED = "🔴 已完全取消所有訂閱"
REPLY_COMMAND_FAILED = "❌ 指令執行時發生錯誤，請稍後再試"
REPLY_STATUS_FAILED = "❌ 查詢狀態時發生錯誤"


def parse_keywords(raw: Optional[str]) -> list[str]:
    """Split a comma-separated option, trimming and dropping blanks."""
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


def parse_types(raw: Optional[str], default: list[MessageType]) -> list[MessageType]:
    if not raw:
        return list(default)
    return list(TYPE_CHOICES.get(raw, default))


def describe_filters(subscription: Subscription) -> str:
    if subscription.keyword_filters:
        return "🔍 關鍵字過濾器: " + ", ".join(
            f.describe() for f in subscription.keyword_filters
        )
    return "📢 接收所有訊息"


class CommandHandler:
    """Builds replies for the three slash commands."""

    def __init__(self, engine: SubscriptionEngine):
        self._engine = engine

    async def subscribe(
        self,
        user_id: str,
        channel_id: str,
        keywords: Optional[str],
        types: Optional[str] = None,
    ) -> str:
        words = parse_keywords(keywords)
        if not words:
            return REPLY_NEED_KEYWORD

        message_types = parse_types(types, TYPE_CHOICES["both"])
        request = SubscriptionRequest.model_validate({
            "user_id": user_id,
            "channel_id": channel_id,
            "keyword_filters": [
                {"keyword": w, "message_types": [t.value for t in message_types]}
                for w in words
            ],
        })
        result = self._engine.validate(request, strict=True)
        if not result.is_valid:
            return "❌ " + "; ".join(result.errors)

        was_subscribed = await self._engine.is_subscribed(user_id)
        final = await self._engine.subscribe(
            user_id,
            channel_id,
            [KeywordFilter(keyword=w, message_types=message_types) for w in words],
        )
        action = "更新" if was_subscribed else "訂閱"
        return f"✅ 已成功{action} {PRODUCT_NAME}！\n{describe_filters(final)}"

    async def unsubscribe(
        self,
        user_id: str,
        keywords: Optional[str] = None,
        types: Optional[str] = None,
    ) -> str:
        if not keywords and not types:
            if await self._engine.unsubscribe(user_id):
                return REPLY_UNSUBSCRIBED
            return REPLY_NOT_SUBSCRIBED

        result = await self._engine.partial_unsubscribe(
            user_id,
            parse_keywords(keywords),
            [t.value for t in parse_types(types, [])],
        )
        if not result.success:
            return REPLY_NOTHING_REMOVED

        message = f"✅ 已成功取消訂閱：{', '.join(result.removed_items)}"
        if result.remaining_count == 0:
            # A receive-everything record outlives its last keyword
            remaining_record = await self._engine.get_subscription(user_id)
            if remaining_record is not None and remaining_record.receive_all:
                return f"{message}\n{describe_filters(remaining_record)}"
            return f"{message}\n{REPLY_ALL_REMOVED}"
        remaining = "\n🔍 ".join(f.describe() for f in result.remaining_filters)
        return f"{message}\n\n📋 剩餘訂閱：\n🔍 {remaining}"

    async def status(self, user_id: str) -> str:
        subscription = await self._engine.get_subscription(user_id)
        if subscription is None:
            return "❌ 未訂閱"
        return f"✅ 已訂閱\n{describe_filters(subscription)}"
