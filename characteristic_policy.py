"""
Delivery mode selection for discovered characteristics.

    notify or indicate  -> NOTIFY
    read only           -> periodic poll every POLL_INTERVAL_MS
    neither             -> not subscribable (ignored)

A rejected notify subscription falls back to polling once, when the
characteristic can be read.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from const import POLL_INTERVAL_MS


class DeliveryKind(Enum):
    NOTIFY = "notify"
    PERIODIC_POLL = "periodic_poll"


@dataclass(frozen=True)
class DeliveryMode:
    kind: DeliveryKind
    interval_ms: Optional[int] = None

    @property
    def is_polling(self) -> bool:
        return self.kind is DeliveryKind.PERIODIC_POLL

    def __str__(self):
        if self.is_polling:
            return f"poll/{self.interval_ms}ms"
        return self.kind.value


NOTIFY = DeliveryMode(DeliveryKind.NOTIFY)


def periodic_poll(interval_ms: int = POLL_INTERVAL_MS) -> DeliveryMode:
    return DeliveryMode(DeliveryKind.PERIODIC_POLL, interval_ms)


@dataclass(frozen=True)
class CharProperties:
    """Declared capabilities of a characteristic"""
    notify: bool = False
    indicate: bool = False
    read: bool = False

    @classmethod
    def from_bleak(cls, properties: Iterable[str]) -> "CharProperties":
        """Build from bleak's property names (e.g. ["read", "notify"])"""
        names = {p.lower() for p in properties}
        return cls(
            notify="notify" in names,
            indicate="indicate" in names,
            read="read" in names,
        )


def choose(props: CharProperties, interval_ms: int = POLL_INTERVAL_MS) -> Optional[DeliveryMode]:
    """
    Pick how values should be delivered for a characteristic.

    Returns None when the characteristic can be neither subscribed nor read.
    """
    if props.notify or props.indicate:
        return NOTIFY
    if props.read:
        return periodic_poll(interval_ms)
    return None


def fallback(props: CharProperties, interval_ms: int = POLL_INTERVAL_MS) -> Optional[DeliveryMode]:
    """Mode to use after a notify subscription was rejected, or None if unusable."""
    if props.read:
        return periodic_poll(interval_ms)
    return None
