"""Calendar feed agent: a bounded event window served as iCalendar, RSS or JSON."""

__version__ = "0.1.0"
