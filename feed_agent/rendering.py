"""
Feed serializers: iCalendar, RSS 2.0 and JSON.

Every renderer takes the window already in list order and never touches the
stored window state. Malformed event fields raise FeedRenderError.
"""

from __future__ import annotations

import email.utils
import json
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from xml.etree import ElementTree as ET

import icalendar
from pydantic import ValidationError

from .models import CalendarEntry, Event
from .options_loader import AgentOptions
from .sorting import event_context, parse_time
from .templating import interpolate, interpolate_structure

NAMESPACES = {
    "atom": "http://www.w3.org/2005/Atom",
    "dc": "http://purl.org/dc/elements/1.1/",
    "media": "http://search.yahoo.com/mrss/",
    "itunes": "http://www.itunes.com/dtds/podcast-1.0.dtd",
}

DEFAULT_ITEM_TEMPLATE = {
    "title": "{{title}}",
    "description": "{{description}}",
    "link": "{{url}}",
}

PRODID = "-//calendar-feed//feed_agent//EN"


class FeedRenderError(ValueError):
    """Raised when an event in the window cannot be serialized."""


def _created_at(event: Event) -> datetime:
    parsed = parse_time(event.created_at)
    if parsed is None:
        raise FeedRenderError(f"event {event.id}: unparsable created_at {event.created_at!r}")
    return parsed.astimezone(timezone.utc)


def _rfc822(value: datetime) -> str:
    return email.utils.format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _calendar_entry(event: Event) -> CalendarEntry:
    try:
        return CalendarEntry.model_validate(event.payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise FeedRenderError(f"event {event.id}: {problems}") from exc


def _last_updated_key(event: Event) -> Tuple[int, float, str]:
    # Missing < numbers < other text; numeric strings compare as numbers.
    value = event.payload.get("lastUpdated")
    if value is None or value == "":
        return (0, 0.0, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, float(value), "")
    text = str(value)
    try:
        number = float(text.strip())
    except ValueError:
        return (2, 0.0, text)
    if math.isnan(number):
        return (2, 0.0, text)
    return (1, number, "")


def render_ical(events: Sequence[Event], options: AgentOptions) -> str:
    """
    One VEVENT per payload guid.

    When several events share a guid, the one with the greatest
    `lastUpdated` wins; the first of equals is kept.
    """
    groups: Dict[Any, List[Event]] = {}
    for event in events:
        guid = event.payload.get("guid")
        if isinstance(guid, (dict, list)):
            raise FeedRenderError(f"event {event.id}: guid must be a string or number")
        groups.setdefault(guid, []).append(event)

    calendar = icalendar.Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    duration = timedelta(minutes=options.event_duration_minutes)

    for group in groups.values():
        latest = max(group, key=_last_updated_key)
        entry = _calendar_entry(latest)
        vevent = icalendar.Event()
        vevent.add("uid", entry.guid)
        vevent.add("dtstamp", _created_at(latest))
        vevent.add("dtstart", entry.event_time)
        vevent.add("dtend", entry.event_time + duration)
        if entry.category is not None:
            vevent.add("summary", entry.category)
        if entry.agenda:
            vevent.add("url", entry.agenda)
        calendar.add_component(vevent)

    return calendar.to_ical().decode("utf-8")


def _item_fields(event: Event, index: int, options: AgentOptions) -> Dict[str, Any]:
    template = options.template.get("item") or DEFAULT_ITEM_TEMPLATE
    fields = interpolate_structure(template, event_context(event, index))
    if not isinstance(fields, dict):
        raise FeedRenderError("template.item must be a mapping")
    if not fields.get("pubDate"):
        fields["pubDate"] = _rfc822(_created_at(event))
    return fields


def _channel_fields(events: Sequence[Event], options: AgentOptions) -> Dict[str, Any]:
    template = options.template
    context = {"events_count": len(events)}
    newest: Optional[datetime] = max((_created_at(e) for e in events), default=None)
    return {
        "title": interpolate(str(template.get("title") or ""), context),
        "description": interpolate(str(template.get("description") or ""), context),
        "link": interpolate(str(template.get("link") or ""), context),
        "icon": interpolate(str(template.get("icon") or ""), context),
        "self": interpolate(str(template.get("self") or ""), context),
        "pubDate": _rfc822(newest) if newest else None,
    }


def _append_value(parent: ET.Element, tag: str, value: Any) -> None:
    if isinstance(value, list):
        for item in value:
            _append_value(parent, tag, item)
        return
    element = ET.SubElement(parent, tag)
    if isinstance(value, dict):
        for name, attr in (value.get("_attributes") or {}).items():
            element.set(str(name), str(attr))
        if value.get("_contents") is not None:
            element.text = str(value["_contents"])
        for key, child in value.items():
            if key not in ("_attributes", "_contents"):
                _append_value(element, str(key), child)
    elif value is not None:
        element.text = str(value)


def render_rss(events: Sequence[Event], options: AgentOptions) -> str:
    rss = ET.Element("rss", {"version": "2.0", "xmlns:atom": NAMESPACES["atom"]})
    for prefix, enabled in (("dc", options.ns_dc), ("media", options.ns_media), ("itunes", options.ns_itunes)):
        if enabled:
            rss.set(f"xmlns:{prefix}", NAMESPACES[prefix])

    channel_fields = _channel_fields(events, options)
    channel = ET.SubElement(rss, "channel")
    if channel_fields["self"]:
        ET.SubElement(
            channel,
            "atom:link",
            {"href": channel_fields["self"], "rel": "self", "type": options.rss_content_type},
        )
    if channel_fields["icon"]:
        _append_value(
            channel,
            "image",
            {"url": channel_fields["icon"], "title": channel_fields["title"], "link": channel_fields["link"]},
        )
    for key in ("title", "description", "link"):
        _append_value(channel, key, channel_fields[key])
    if channel_fields["pubDate"]:
        _append_value(channel, "lastBuildDate", channel_fields["pubDate"])
        _append_value(channel, "pubDate", channel_fields["pubDate"])
    _append_value(channel, "ttl", options.ttl)

    for index, event in enumerate(events):
        item = ET.SubElement(channel, "item")
        for key, value in _item_fields(event, index, options).items():
            _append_value(item, str(key), value)

    body = ET.tostring(rss, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8" ?>\n' + body + "\n"


def render_json(events: Sequence[Event], options: AgentOptions) -> str:
    channel_fields = _channel_fields(events, options)
    payload = {
        "title": channel_fields["title"],
        "description": channel_fields["description"],
        "pubDate": channel_fields["pubDate"],
        "items": [_item_fields(event, index, options) for index, event in enumerate(events)],
    }
    return json.dumps(payload, sort_keys=True)
