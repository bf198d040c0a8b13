"""Models package."""

__all__ = [
    "base",
    "user",
    "session",
    "clinic",
    "specialist",
    "appointment",
    "work_queue",
    "shift",
    "medical",
    "review",
    "notification",
    "compliance",
]
