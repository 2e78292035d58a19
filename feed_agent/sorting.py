"""
Event ordering configuration and the stable multi-key sort built on it.

An ordering is a list of `[expression, type, descending]` rules. Each
expression is interpolated per event (payload keys plus `_index_`, `_id_`
and `_created_at_`) and coerced by type before comparison.
"""

from __future__ import annotations

import email.utils
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence

from .models import Event
from .templating import interpolate


SORT_TYPES = ("string", "number", "time")

# Newest first: the reverse of the order events entered the window.
DEFAULT_EVENTS_LIST_ORDER = [["{{_index_}}", "number", True]]


class InvalidEventsOrder(ValueError):
    """Raised when an ordering configuration cannot be parsed."""


@dataclass(frozen=True)
class OrderRule:
    expression: str
    type: str = "string"
    descending: bool = False


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    lowered = str(value).strip().lower()
    if lowered in {"true", "1", "yes"}:
        return True
    if lowered in {"false", "0", "no", ""}:
        return False
    return None


def parse_events_order(raw: Any) -> List[OrderRule]:
    """Turn a configured ordering into rules; None or [] means "keep input order"."""
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise InvalidEventsOrder("events order must be a list of [expression, type, descending] rules")

    rules: List[OrderRule] = []
    for position, item in enumerate(raw):
        if isinstance(item, str):
            item = [item]
        if not isinstance(item, (list, tuple)) or not 1 <= len(item) <= 3:
            raise InvalidEventsOrder(f"rule {position} must be a list of 1 to 3 elements")
        expression = item[0]
        if not isinstance(expression, str) or not expression:
            raise InvalidEventsOrder(f"rule {position}: expression must be a non-empty string")
        sort_type = (item[1] if len(item) > 1 else None) or "string"
        if sort_type not in SORT_TYPES:
            raise InvalidEventsOrder(f"rule {position}: type must be one of {', '.join(SORT_TYPES)}")
        descending = _parse_bool(item[2] if len(item) > 2 else False)
        if descending is None:
            raise InvalidEventsOrder(f"rule {position}: descending must be a boolean")
        rules.append(OrderRule(expression=expression, type=sort_type, descending=descending))
    return rules


def order_fingerprint(rules: Sequence[OrderRule]) -> List[List[Any]]:
    """JSON-friendly form of an ordering, recorded in memory to detect changes."""
    return [[rule.expression, rule.type, rule.descending] for rule in rules]


def event_context(event: Event, index: int) -> Dict[str, Any]:
    context: Dict[str, Any] = dict(event.payload)
    context["_index_"] = index
    context["_id_"] = event.id
    context["_created_at_"] = event.created_at
    return context


def parse_time(text: str) -> Optional[datetime]:
    """ISO-8601 first, RFC 2822 second; naive results are taken as UTC."""
    text = text.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = email.utils.parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sort_value(text: str, sort_type: str) -> Any:
    if sort_type == "number":
        try:
            number = float(text.strip())
        except ValueError:
            return None
        return None if math.isnan(number) else number
    if sort_type == "time":
        return parse_time(text)
    return text


def _compare(left: Any, right: Any) -> int:
    # Missing values rank below present ones.
    if left is None and right is None:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1
    if left == right:
        return 0
    return -1 if left < right else 1


def sort_events(events: Sequence[Event], rules: Sequence[OrderRule]) -> List[Event]:
    """
    Stable sort of `events` by `rules`.

    Ties on every rule keep the input order.
    """
    if not rules:
        return list(events)

    keyed = []
    for index, event in enumerate(events):
        context = event_context(event, index)
        values = [_sort_value(interpolate(rule.expression, context), rule.type) for rule in rules]
        keyed.append((values, index, event))

    def compare(left, right) -> int:
        for position, rule in enumerate(rules):
            result = _compare(left[0][position], right[0][position])
            if result:
                return -result if rule.descending else result
        return left[1] - right[1]

    return [event for _, _, event in sorted(keyed, key=cmp_to_key(compare))]
