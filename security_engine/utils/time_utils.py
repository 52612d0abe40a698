"""Time helpers shared by the managers and stores."""

import math
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def seconds_until(deadline: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` until ``deadline``, rounded up, never negative."""
    return max(0, math.ceil((deadline - now).total_seconds()))
