"""Google Calendar tools: batch codec, conflict detection, and recurring-event editing."""

__version__ = "0.1.0"
