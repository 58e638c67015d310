"""
Fan-out of feed broadcasts to subscribed Discord channels.

For each unique broadcast:
- evaluate every subscription's keyword filters against the event
- group matching users by destination channel, with per-user reasons
- render one notification per channel and deliver it
Delivery failures are isolated per channel.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from .errors import StoreError, error_fields
from .metrics import MetricsCollector
from .models import (
    ALL_MESSAGES_LABEL,
    TYPE_COLORS,
    TYPE_ICONS,
    BroadcastEvent,
    Subscription,
    type_label,
)
from .store import SubscriptionStore

log = structlog.get_logger()

CONTENT_PREVIEW_CHARS = 100


@dataclass
class EmbedSpec:
    title: str
    description: str
    field_name: str
    field_value: str
    color: int


@dataclass
class Notification:
    """One outbound channel message: mention lines plus a summary embed."""
    text_body: str
    embed: EmbedSpec
    mention_count: int = 0


@dataclass
class Recipient:
    user_id: str
    reasons: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons)


class Delivery(Protocol):
    """Sends a rendered notification to a channel; raises DeliveryError."""

    async def send(self, channel_id: str, notification: Notification) -> None: ...


def match_reasons(subscription: Subscription, event: BroadcastEvent) -> list[str]:
    """Describe every filter of a subscription that matches the event."""
    label = type_label(event.message_type)
    reasons: list[str] = []
    if subscription.receive_all:
        reasons.append(f"{ALL_MESSAGES_LABEL} ({label})")

    content = event.content.lower()
    for f in subscription.keyword_filters:
        if event.message_type in f.message_types and f.keyword.lower() in content:
            reasons.append(f"{f.keyword} ({label})")
    return reasons


def group_by_channel(
    subscriptions: list[Subscription],
    event: BroadcastEvent,
) -> dict[str, list[Recipient]]:
    groups: dict[str, list[Recipient]] = {}
    for sub in subscriptions:
        reasons = match_reasons(sub, event)
        if reasons:
            groups.setdefault(sub.channel_id, []).append(
                Recipient(user_id=sub.user_id, reasons=reasons)
            )
    return groups


def render_notification(event: BroadcastEvent, recipients: list[Recipient]) -> Notification:
    label = type_label(event.message_type)
    icon = TYPE_ICONS[event.message_type]
    body = "\n".join(f"<@{r.user_id}> - {r.reason}" for r in recipients)
    embed = EmbedSpec(
        title=f"{icon} {label} - {event.channel}",
        description=f"### {event.content}",
        field_name="Player",
        field_value=event.player,
        color=TYPE_COLORS[event.message_type],
    )
    return Notification(text_body=body, embed=embed, mention_count=len(recipients))


class FanOutDispatcher:
    """Matches broadcasts against all subscriptions and notifies each channel once."""

    def __init__(
        self,
        store: SubscriptionStore,
        delivery: Delivery,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._delivery = delivery
        self._metrics = metrics

    async def broadcast(self, event: BroadcastEvent) -> dict[str, bool]:
        """Dispatch one event; returns delivery success per channel."""
        try:
            subscriptions = await self._store.list_all()
        except StoreError as exc:
            log.error(
                "dispatch.load_subscriptions_failed",
                message_type=event.message_type.value,
                **exc.log_fields(),
            )
            return {}

        groups = group_by_channel(subscriptions, event)
        if not groups:
            log.debug(
                "dispatch.no_matches",
                message_type=event.message_type.value,
                subscriptions=len(subscriptions),
            )
            return {}

        channel_ids = list(groups)
        outcomes = await asyncio.gather(
            *(self._deliver(cid, event, groups[cid]) for cid in channel_ids)
        )
        return dict(zip(channel_ids, outcomes))

    async def _deliver(
        self,
        channel_id: str,
        event: BroadcastEvent,
        recipients: list[Recipient],
    ) -> bool:
        notification = render_notification(event, recipients)
        try:
            await self._delivery.send(channel_id, notification)
        except Exception as exc:
            fields = error_fields(exc)
            log.error(
                "dispatch.delivery_failed",
                channel_id=channel_id,
                message_type=event.message_type.value,
                source_channel=event.channel,
                player=event.player_name,
                content_preview=event.content[:CONTENT_PREVIEW_CHARS],
                mention_count=len(recipients),
                **fields,
            )
            if self._metrics:
                self._metrics.inc("notifications_failed_total", code=fields["error_code"])
            return False

        if self._metrics:
            self._metrics.inc("notifications_sent_total")
        log.info(
            "dispatch.sent",
            channel_id=channel_id,
            mention_count=len(recipients),
            message_type=event.message_type.value,
        )
        return True
