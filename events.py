"""
Transport events consumed by the device session and commands it issues.

Events arrive from the radio (via the transport) or from the poll scheduler.
Commands are returned by the session and executed by the transport, except
SchedulePoll/CancelPoll which go to the poll scheduler.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from ble_device import PeripheralIdentity
from characteristic_policy import CharProperties


class PowerState(Enum):
    ON = "on"
    OFF = "off"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"
    RESETTING = "resetting"
    UNKNOWN = "unknown"


# ============================================================================
# Events (transport -> session)
# ============================================================================

@dataclass(frozen=True)
class PoweredStateChanged:
    state: PowerState


@dataclass(frozen=True)
class ScanFailed:
    """The scanner could not start, the radio itself is still usable"""
    reason: str = "Unknown error"


@dataclass(frozen=True)
class DeviceDiscovered:
    identity: PeripheralIdentity


@dataclass(frozen=True)
class ConnectSucceeded:
    identity: PeripheralIdentity


@dataclass(frozen=True)
class ConnectFailed:
    identity: PeripheralIdentity
    reason: str = "Unknown error"


@dataclass(frozen=True)
class ServicesDiscovered:
    identity: PeripheralIdentity
    service_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    service_id: str
    characteristics: Tuple[Tuple[str, CharProperties], ...] = ()


@dataclass(frozen=True)
class SubscriptionConfirmed:
    characteristic_id: str


@dataclass(frozen=True)
class SubscriptionFailed:
    characteristic_id: str
    reason: str = "Unknown error"


@dataclass(frozen=True)
class ValueUpdated:
    characteristic_id: str
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class ReadFailed:
    characteristic_id: str
    reason: str = "Unknown error"


@dataclass(frozen=True)
class Disconnected:
    identity: PeripheralIdentity
    reason: Optional[str] = None


@dataclass(frozen=True)
class PollTick:
    """A poll timer fired for a characteristic"""
    characteristic_id: str


# ============================================================================
# Commands (session -> transport / scheduler)
# ============================================================================

@dataclass(frozen=True)
class StartScan:
    pass


@dataclass(frozen=True)
class StopScan:
    pass


@dataclass(frozen=True)
class Connect:
    identity: PeripheralIdentity


@dataclass(frozen=True)
class Disconnect:
    identity: PeripheralIdentity


@dataclass(frozen=True)
class DiscoverServices:
    identity: PeripheralIdentity


@dataclass(frozen=True)
class DiscoverCharacteristics:
    service_id: str


@dataclass(frozen=True)
class Subscribe:
    characteristic_id: str


@dataclass(frozen=True)
class ReadValue:
    characteristic_id: str


@dataclass(frozen=True)
class SchedulePoll:
    characteristic_id: str
    interval_ms: int


@dataclass(frozen=True)
class CancelPoll:
    characteristic_id: str
