import time
from collections import deque
from typing import List, Optional

from const import HISTORY_LENGTH, LBS_TO_KG, UNIT_KG, UNIT_LBS, UNITS


def convert(value: float, unit: str = UNIT_LBS) -> float:
    """
    Convert a reading from pounds for display.

    Args:
        value: Reading in pounds
        unit: "lbs" or "kg"
    """
    if unit not in UNITS:
        raise ValueError(f"Unknown unit: {unit}")
    if unit == UNIT_KG:
        return value * LBS_TO_KG
    return value


class ReadingHistory:
    """Rolling buffer of recent adjusted readings, oldest dropped first."""

    def __init__(self, maxlen: int = HISTORY_LENGTH):
        self._points = deque(maxlen=maxlen)

    def append(self, value: float, timestamp: Optional[float] = None):
        if timestamp is None:
            timestamp = time.time()
        self._points.append((timestamp, value))

    def clear(self):
        self._points.clear()

    def recent(self, limit: Optional[int] = None, unit: str = UNIT_LBS) -> List[dict]:
        """
        Get recent readings, oldest first.
        """
        points = list(self._points)
        if limit is not None:
            points = points[-limit:] if limit > 0 else []
        return [
            {
                "timestamp": ts,
                "time": time.strftime("%H:%M:%S", time.localtime(ts)),
                "value": convert(value, unit),
            }
            for ts, value in points
        ]

    def __len__(self):
        return len(self._points)
