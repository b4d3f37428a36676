from dataclasses import dataclass


@dataclass(frozen=True)
class Reading:
    """A single calibrated sample"""
    raw: float
    adjusted: float


@dataclass
class CalibrationState:
    """
    Tare offset and running maximum for one connected session.

    `max_adjusted` only grows between resets. `tare_offset` only changes
    through tare() and reset_max(), never from streaming data.
    """
    tare_offset: float = 0.0
    max_adjusted: float = 0.0
    current: float = 0.0        # Last adjusted value, zeroed by tare

    def apply(self, raw: float) -> Reading:
        """Adjust a raw value by the tare offset and track the maximum."""
        adjusted = raw - self.tare_offset
        self.current = adjusted
        if adjusted > self.max_adjusted:
            self.max_adjusted = adjusted
        return Reading(raw=raw, adjusted=adjusted)

    def tare(self):
        """Make the current value the new zero."""
        self.tare_offset += self.current
        self.current = 0.0

    def reset_max(self):
        """Clear the maximum and re-zero the live reading."""
        self.max_adjusted = 0.0
        self.tare()

    def reset(self):
        self.tare_offset = 0.0
        self.max_adjusted = 0.0
        self.current = 0.0

    def on_connect(self):
        self.reset()

    def on_disconnect(self):
        self.reset()
