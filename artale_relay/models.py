"""
Subscription and broadcast data models.

Pydantic models shared by the store, the subscription engine, the feed
listener and the dispatcher, plus the localized labels used in replies and
notifications.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    BUY = "buy"
    SELL = "sell"


VALID_MESSAGE_TYPES: list[str] = [t.value for t in MessageType]

TYPE_LABELS: dict[MessageType, str] = {
    MessageType.BUY: "收購",
    MessageType.SELL: "販售",
}

TYPE_ICONS: dict[MessageType, str] = {
    MessageType.BUY: "🛒",
    MessageType.SELL: "💰",
}

TYPE_COLORS: dict[MessageType, int] = {
    MessageType.BUY: 0x3498DB,
    MessageType.SELL: 0xE74C3C,
}

ALL_MESSAGES_LABEL = "全部訊息"


def type_label(message_type: MessageType | str) -> str:
    return TYPE_LABELS[MessageType(message_type)]


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class KeywordFilter(BaseModel):
    """A keyword paired with the message types it applies to."""
    keyword: str
    message_types: List[MessageType] = Field(default_factory=list)

    def describe(self) -> str:
        """Render as ``keyword (收購, 販售)`` for confirmation replies."""
        names = ", ".join(type_label(t) for t in self.message_types)
        return f"{self.keyword} ({names})"


class Subscription(BaseModel):
    """One user's persisted subscription record."""
    user_id: str
    channel_id: str
    keyword_filters: List[KeywordFilter] = Field(default_factory=list)
    receive_all: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FilterSpec(BaseModel):
    """Unvalidated keyword filter as supplied by a caller."""
    keyword: str = ""
    message_types: List[str] = Field(default_factory=list)


class SubscriptionRequest(BaseModel):
    """Unvalidated subscribe request; see SubscriptionEngine.validate."""
    user_id: Optional[str] = None
    channel_id: Optional[str] = None
    keyword_filters: Optional[List[FilterSpec]] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class UnsubscribeResult(BaseModel):
    success: bool
    remaining_count: int
    removed_items: List[str] = Field(default_factory=list)
    remaining_filters: List[KeywordFilter] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Broadcasts
# ---------------------------------------------------------------------------

class BroadcastEvent(BaseModel):
    """A marketplace announcement received from the feed."""
    message_type: MessageType
    channel: str
    player_name: str
    player_id: str
    content: str

    @property
    def dedup_key(self) -> str:
        """Content hash over (player_id, content, message_type, channel)."""
        identity = json.dumps(
            [self.player_id, self.content, self.message_type.value, self.channel],
            ensure_ascii=False,
        )
        return hashlib.sha256(identity.encode("utf-8")).hexdigest()

    @property
    def player(self) -> str:
        return f"{self.player_name}#{self.player_id}"


class FeedFrame(BaseModel):
    """A decoded inbound feed frame."""
    type: str
    payload: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None
