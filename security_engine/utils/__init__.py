# Utilities module

from .keyed_lock import KeyedLock
from .time_utils import Clock, seconds_until, utcnow

__all__ = [
    "Clock",
    "KeyedLock",
    "seconds_until",
    "utcnow",
]
