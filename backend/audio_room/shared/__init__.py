"""Shared DTOs and small async utilities used across the audio room packages.

Only lightweight helpers live here. Do not place WebRTC, Redis or database
logic in this package.
"""

from .dto import (
    Role,
    Participant,
    SignalEnvelope,
    JoinRequest,
    SessionSnapshot,
    RoomStatus,
)
from .debounce import Debouncer
from .cleanup import CleanupReport, run_best_effort

__all__ = [
    "Role",
    "Participant",
    "SignalEnvelope",
    "JoinRequest",
    "SessionSnapshot",
    "RoomStatus",
    "Debouncer",
    "CleanupReport",
    "run_best_effort",
]
