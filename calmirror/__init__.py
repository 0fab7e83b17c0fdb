"""Calendar mirror: clone events from source calendars into destination calendars."""

__version__ = "1.0.0"
