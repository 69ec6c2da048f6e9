"""Event bus and change journal."""

from casegraph.events.bus import Event, EventBus
from casegraph.events.journal import ChangeEvent, ChangeJournal

__all__ = [
    "Event",
    "EventBus",
    "ChangeEvent",
    "ChangeJournal",
]
