"""Alert deduplication and escalation decision engine."""

__version__ = "0.1.0"
