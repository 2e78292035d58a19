from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator

from .config import get_settings
from .sorting import DEFAULT_EVENTS_LIST_ORDER, InvalidEventsOrder, OrderRule, parse_events_order
from .window import DEFAULT_COLD_START_FANOUT, DEFAULT_EVENTS_TO_SHOW, WindowConfig

logger = logging.getLogger("calendar-feed")

_SECRET_FORBIDDEN_RE = re.compile(r"[/.]")

# Shape checks; the semantic checks live in validate_options.
OPTIONS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "secrets": {"type": "array"},
        "expected_receive_period_in_days": {"type": ["integer", "string"]},
        "events_to_show": {"type": ["integer", "string", "null"]},
        "events_order": {"type": ["array", "null"]},
        "events_list_order": {"type": ["array", "null"]},
        "cold_start_fanout": {"type": ["integer", "null"]},
        "ttl": {"type": ["integer", "string", "null"]},
        "template": {"type": ["object", "null"]},
        "ns_dc": {"type": ["boolean", "string", "null"]},
        "ns_media": {"type": ["boolean", "string", "null"]},
        "ns_itunes": {"type": ["boolean", "string", "null"]},
        "rss_content_type": {"type": ["string", "null"]},
        "response_headers": {"type": ["object", "null"], "additionalProperties": {"type": "string"}},
        "event_duration_minutes": {"type": ["integer", "null"], "minimum": 1},
    },
}


@dataclass
class AgentOptions:
    agent_id: str
    secrets: List[str]
    expected_receive_period_in_days: int
    events_to_show: int = DEFAULT_EVENTS_TO_SHOW
    events_order: List[OrderRule] = field(default_factory=list)
    events_list_order: List[OrderRule] = field(default_factory=list)
    cold_start_fanout: int = DEFAULT_COLD_START_FANOUT
    ttl: int = 60
    template: Dict[str, Any] = field(default_factory=dict)
    ns_dc: bool = False
    ns_media: bool = False
    ns_itunes: bool = False
    rss_content_type: str = "application/rss+xml"
    response_headers: Dict[str, str] = field(default_factory=dict)
    event_duration_minutes: int = 90

    def window_config(self) -> WindowConfig:
        return WindowConfig(
            events_to_show=self.events_to_show,
            events_order=list(self.events_order),
            cold_start_fanout=self.cold_start_fanout,
        )


class OptionsLoadError(RuntimeError):
    """Raised when the agent options cannot be loaded or validated."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"true", "1", "yes"}


def validate_options(raw: Dict[str, Any]) -> List[str]:
    """Return every problem with `raw`; an empty list means the options are usable."""
    errors = [
        f"{'.'.join(str(p) for p in err.path) or 'options'}: {err.message}"
        for err in Draft7Validator(OPTIONS_SCHEMA).iter_errors(raw)
    ]

    secrets = raw.get("secrets")
    if isinstance(secrets, list) and secrets:
        for secret in secrets:
            if not isinstance(secret, str):
                errors.append("secret must be a string")
            elif _SECRET_FORBIDDEN_RE.search(secret):
                errors.append("secret may not contain a slash or dot")
    else:
        errors.append("Please specify one or more secrets for 'authenticating' incoming feed requests")

    period = _as_int(raw.get("expected_receive_period_in_days"))
    if period is None or period <= 0:
        errors.append(
            "Please provide 'expected_receive_period_in_days' to indicate how many days can pass "
            "before this Agent is considered to be not working"
        )

    if raw.get("events_to_show") not in (None, ""):
        events_to_show = _as_int(raw.get("events_to_show"))
        if events_to_show is None or events_to_show <= 0:
            errors.append("events_to_show must be a positive integer")

    if raw.get("cold_start_fanout") is not None:
        fanout = _as_int(raw.get("cold_start_fanout"))
        if fanout is None or fanout <= 0:
            errors.append("cold_start_fanout must be a positive integer")

    for key in ("events_order", "events_list_order"):
        try:
            parse_events_order(raw.get(key))
        except InvalidEventsOrder as exc:
            errors.append(f"{key}: {exc}")

    return errors


def _read_options_yaml(agent_id: str) -> Dict[str, Any]:
    options_path = Path(get_settings().options_dir) / f"{agent_id}.yaml"
    if not options_path.exists():
        raise OptionsLoadError(f"Options file not found: {options_path}")

    with options_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise OptionsLoadError("Options YAML must deserialize to a mapping")

    return data


def load_options(agent_id: str) -> AgentOptions:
    """Load and validate the options of a feed agent by id."""
    raw = _read_options_yaml(agent_id)

    errors = validate_options(raw)
    if errors:
        logger.warning("options for agent=%s rejected: %s", agent_id, errors)
        raise OptionsLoadError(f"Invalid options for agent '{agent_id}': {'; '.join(errors)}", errors)

    list_order = raw.get("events_list_order")
    return AgentOptions(
        agent_id=agent_id,
        secrets=list(raw["secrets"]),
        expected_receive_period_in_days=int(raw["expected_receive_period_in_days"]),
        events_to_show=_as_int(raw.get("events_to_show")) or DEFAULT_EVENTS_TO_SHOW,
        events_order=parse_events_order(raw.get("events_order")),
        events_list_order=parse_events_order(DEFAULT_EVENTS_LIST_ORDER if list_order is None else list_order),
        cold_start_fanout=_as_int(raw.get("cold_start_fanout")) or DEFAULT_COLD_START_FANOUT,
        ttl=_as_int(raw.get("ttl")) or 60,
        template=dict(raw.get("template") or {}),
        ns_dc=_as_bool(raw.get("ns_dc")),
        ns_media=_as_bool(raw.get("ns_media")),
        ns_itunes=_as_bool(raw.get("ns_itunes")),
        rss_content_type=raw.get("rss_content_type") or "application/rss+xml",
        response_headers=dict(raw.get("response_headers") or {}),
        event_duration_minutes=int(raw.get("event_duration_minutes") or 90),
    )


def get_active_options() -> AgentOptions:
    """Resolve the options of the agent selected by AGENT_ID."""
    return load_options(get_settings().agent_id)


def list_agent_ids() -> List[str]:
    """Discover agent ids from <options_dir>/*.yaml (filename stem = id). Returns sorted list."""
    options_dir = Path(get_settings().options_dir)
    if not options_dir.exists():
        return []
    return sorted(p.stem for p in options_dir.glob("*.yaml") if p.is_file())
