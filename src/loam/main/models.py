from enum import Enum


class OnUnavailable(str, Enum):
    """What a lease holder does when the shared store cannot be reached."""

    PROCEED_UNLOCKED = "proceed_unlocked"
    SKIP = "skip"


class ScheduledEmailStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class ImportSessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class OAuthProvider(str, Enum):
    GARMIN = "garmin"
    STRAVA = "strava"
    WHOOP = "whoop"
