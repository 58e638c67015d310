"""
Subscription engine: merge, partial removal and validation of keyword filters.

The engine holds no state of its own. Every operation reads the current record
from the SubscriptionStore before mutating it, so concurrent command handlers
and the dispatcher always see the last written record.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

import structlog

from .models import (
    VALID_MESSAGE_TYPES,
    KeywordFilter,
    MessageType,
    Subscription,
    SubscriptionRequest,
    UnsubscribeResult,
    ValidationResult,
    type_label,
)
from .store import SubscriptionStore

log = structlog.get_logger()


def merge_keyword_filters(
    existing: Sequence[KeywordFilter],
    requested: Sequence[KeywordFilter],
) -> list[KeywordFilter]:
    """
    Union requested filters into existing ones, keyed by lower-cased keyword.

    Message types are unioned, never replaced. Existing keywords come first with
    their original casing, followed by new keywords in request order.
    """
    types_by_keyword: dict[str, dict[MessageType, None]] = {}
    casing: dict[str, str] = {}

    for f in [*existing, *requested]:
        key = f.keyword.lower()
        casing.setdefault(key, f.keyword)
        bucket = types_by_keyword.setdefault(key, {})
        for t in f.message_types:
            bucket[MessageType(t)] = None

    return [
        KeywordFilter(keyword=casing[key], message_types=list(types))
        for key, types in types_by_keyword.items()
    ]


def _parse_types(message_types: Iterable[str | MessageType]) -> list[MessageType]:
    parsed: list[MessageType] = []
    for t in message_types:
        value = t.value if isinstance(t, MessageType) else str(t).strip().lower()
        if value in VALID_MESSAGE_TYPES and MessageType(value) not in parsed:
            parsed.append(MessageType(value))
    return parsed


class SubscriptionEngine:
    """Subscribe/unsubscribe operations over the subscription store."""

    def __init__(self, store: SubscriptionStore):
        self._store = store

    async def subscribe(
        self,
        user_id: str,
        channel_id: str,
        keyword_filters: Sequence[KeywordFilter],
    ) -> Subscription:
        """
        Create or merge a user's subscription and return the stored record.

        An empty filter list turns on receive-everything; it never clears
        existing keyword filters. The destination channel is always replaced.
        """
        existing = await self._store.get(user_id)

        if existing is None:
            final_filters = merge_keyword_filters([], keyword_filters)
            receive_all = not final_filters
            log.info(
                "subscriptions.created",
                user_id=user_id,
                channel_id=channel_id,
                filters=[f.describe() for f in final_filters],
                receive_all=receive_all,
            )
        else:
            final_filters = merge_keyword_filters(existing.keyword_filters, keyword_filters)
            receive_all = existing.receive_all or not keyword_filters
            log.info(
                "subscriptions.merged",
                user_id=user_id,
                channel_id=channel_id,
                existing=[f.describe() for f in existing.keyword_filters],
                requested=[f.describe() for f in keyword_filters],
                final=[f.describe() for f in final_filters],
                receive_all=receive_all,
            )

        return await self._store.upsert(user_id, channel_id, final_filters, receive_all)

    async def unsubscribe(self, user_id: str) -> bool:
        removed = await self._store.delete(user_id)
        if removed:
            log.info("subscriptions.unsubscribed", user_id=user_id)
        else:
            log.warning("subscriptions.unsubscribe_unknown_user", user_id=user_id)
        return removed

    async def reset(self, user_id: str) -> bool:
        removed = await self._store.delete(user_id)
        if removed:
            log.info("subscriptions.reset", user_id=user_id)
        else:
            log.warning("subscriptions.reset_unknown_user", user_id=user_id)
        return removed

    async def partial_unsubscribe(
        self,
        user_id: str,
        keywords: Sequence[str],
        message_types: Sequence[str | MessageType],
    ) -> UnsubscribeResult:
        """
        Remove keywords, message types, or message types within keywords.

        - keywords only: drop those keyword filters entirely
        - message types only: subtract the types from every filter
        - both: subtract the types from the named keywords only

        A filter whose type set becomes empty is dropped. When nothing remains
        the record is deleted, unless it receives everything, in which case it
        is kept with no filters.
        """
        existing = await self._store.get(user_id)
        if existing is None:
            return UnsubscribeResult(success=False, remaining_count=0)

        unchanged = UnsubscribeResult(
            success=False,
            remaining_count=len(existing.keyword_filters),
            remaining_filters=existing.keyword_filters,
        )

        wanted = {k.strip().lower() for k in keywords if k.strip()}
        # Any requested type, even an unknown one, means subtract rather than drop
        subtract = any(
            isinstance(t, MessageType) or str(t).strip() for t in message_types
        )
        types_to_remove = _parse_types(message_types)
        if not wanted and not subtract:
            return unchanged
        if subtract and not types_to_remove:
            return unchanged

        remaining: list[KeywordFilter] = []
        removed_items: list[str] = []

        for f in existing.keyword_filters:
            if wanted and f.keyword.lower() not in wanted:
                remaining.append(f)
                continue

            if not subtract:
                removed_items.append(f"{f.keyword} (all)")
                continue

            dropped = [t for t in f.message_types if t in types_to_remove]
            if not dropped:
                remaining.append(f)
                continue

            kept = [t for t in f.message_types if t not in types_to_remove]
            if kept:
                remaining.append(KeywordFilter(keyword=f.keyword, message_types=kept))
            removed_items.append(
                f"{f.keyword} ({', '.join(type_label(t) for t in dropped)})"
            )

        if not removed_items:
            return unchanged

        if not remaining and not existing.receive_all:
            await self._store.delete(user_id)
            log.info(
                "subscriptions.partial_unsubscribe_emptied",
                user_id=user_id,
                removed=removed_items,
            )
        else:
            await self._store.upsert(
                user_id, existing.channel_id, remaining, existing.receive_all
            )
            log.info(
                "subscriptions.partial_unsubscribe",
                user_id=user_id,
                removed=removed_items,
                remaining=len(remaining),
            )

        return UnsubscribeResult(
            success=True,
            remaining_count=len(remaining),
            removed_items=removed_items,
            remaining_filters=remaining,
        )

    async def get_subscription(self, user_id: str) -> Subscription | None:
        return await self._store.get(user_id)

    async def is_subscribed(self, user_id: str) -> bool:
        return await self._store.get(user_id) is not None

    async def all_subscriptions(self) -> list[Subscription]:
        return await self._store.list_all()

    @staticmethod
    def validate(
        request: SubscriptionRequest | dict[str, Any],
        strict: bool = True,
    ) -> ValidationResult:
        """
        Check a subscribe request before it reaches the store.

        Errors are collected rather than raised; filter positions are 1-indexed.
        Non-strict callers may omit filters to receive everything.
        """
        if isinstance(request, dict):
            request = SubscriptionRequest.model_validate(request)

        errors: list[str] = []
        if not request.user_id:
            errors.append("user_id is required")
        if not request.channel_id:
            errors.append("channel_id is required")

        filters = request.keyword_filters
        if filters is None:
            if strict:
                errors.append("keyword_filters is required")
            filters = []
        elif not filters and strict:
            errors.append("at least one keyword filter is required")

        for index, f in enumerate(filters, start=1):
            if not f.keyword or not f.keyword.strip():
                errors.append(f"keyword is required for filter {index}")
            if not f.message_types:
                errors.append(f"at least one message type is required for filter {index}")
                continue
            invalid = [t for t in f.message_types if t not in VALID_MESSAGE_TYPES]
            if invalid:
                errors.append(
                    f"invalid message types for filter {index}: {', '.join(invalid)}"
                )

        return ValidationResult(is_valid=not errors, errors=errors)
