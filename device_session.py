"""
Device session state machine.

DeviceSession is a reducer: every transport event and every user command is
applied through it, and each call returns the list of commands the caller
must issue to the transport or poll scheduler. It never performs I/O and
never raises for transport conditions; failures end up in `last_error`.

    IDLE -> SCANNING -> CONNECTING -> NEGOTIATING -> STREAMING
                 \\________________________________________/
                            DISCONNECTING -> IDLE
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from ble_device import PeripheralIdentity
from calibration import CalibrationState, Reading
from characteristic_policy import CharProperties, DeliveryMode, choose, fallback
from const import (
    FALLBACK_ADVISORY,
    POLL_INTERVAL_MS,
    POWER_STATE_MESSAGES,
    READ_NOT_PERMITTED,
)
from events import (
    CancelPoll,
    CharacteristicsDiscovered,
    Connect,
    ConnectFailed,
    ConnectSucceeded,
    DeviceDiscovered,
    Disconnect,
    Disconnected,
    DiscoverCharacteristics,
    DiscoverServices,
    PollTick,
    PoweredStateChanged,
    PowerState,
    ReadFailed,
    ReadValue,
    ScanFailed,
    SchedulePoll,
    ServicesDiscovered,
    StartScan,
    StopScan,
    Subscribe,
    SubscriptionConfirmed,
    SubscriptionFailed,
    ValueUpdated,
)
from payload_decoder import DecodeError, decode
from scan_registry import ScanRegistry

_LOGGER = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    STREAMING = "streaming"
    DISCONNECTING = "disconnecting"


CONNECTED_PHASES = (Phase.NEGOTIATING, Phase.STREAMING)
LINKED_PHASES = (Phase.CONNECTING, Phase.NEGOTIATING, Phase.STREAMING)


@dataclass(frozen=True)
class SessionState:
    phase: Phase = Phase.IDLE
    target: Optional[PeripheralIdentity] = None
    delivery_mode: Optional[DeliveryMode] = None


@dataclass
class CharacteristicStream:
    """Delivery bookkeeping for one characteristic of the connected peripheral"""
    characteristic_id: str
    service_id: str
    properties: CharProperties
    mode: Optional[DeliveryMode] = None
    notifying: bool = False
    fell_back: bool = False
    read_pending: bool = False


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view published after every processed event."""
    state: SessionState
    current_reading: float = 0.0
    max_reading: float = 0.0
    last_error: Optional[str] = None
    advisory: Optional[str] = None
    known_devices: Tuple[PeripheralIdentity, ...] = ()
    power_state: PowerState = PowerState.UNKNOWN
    streams: Dict[str, str] = field(default_factory=dict)

    @property
    def is_scanning(self) -> bool:
        return self.state.phase is Phase.SCANNING

    @property
    def is_connected(self) -> bool:
        return self.state.phase in CONNECTED_PHASES

    @property
    def device_name(self) -> Optional[str]:
        if not self.is_connected:
            return None
        return self.state.target.display_name

    def to_dict(self) -> dict:
        target = self.state.target
        return {
            "state": self.state.phase.value,
            "delivery_mode": str(self.state.delivery_mode) if self.state.delivery_mode else None,
            "connected": self.is_connected,
            "scanning": self.is_scanning,
            "device_name": self.device_name,
            "device_id": target.identifier if target else None,
            "current_reading": self.current_reading,
            "max_reading": self.max_reading,
            "last_error": self.last_error,
            "advisory": self.advisory,
            "power_state": self.power_state.value,
            "streams": dict(self.streams),
            "known_devices": [
                {"identifier": d.identifier, "name": d.name} for d in self.known_devices
            ],
        }


class DeviceSession:
    """
    Connection lifecycle, characteristic negotiation and calibration for a
    single peripheral.
    """

    def __init__(self, poll_interval_ms: int = POLL_INTERVAL_MS):
        self.poll_interval_ms = poll_interval_ms
        self.state = SessionState()
        self.registry = ScanRegistry()
        self.calibration = CalibrationState()
        self.power_state = PowerState.UNKNOWN
        self.last_error: Optional[str] = None
        self.advisory: Optional[str] = None
        self.last_reading: Optional[Reading] = None
        self.streams: Dict[str, CharacteristicStream] = {}

        self._handlers = {
            PoweredStateChanged: self._on_powered_state,
            ScanFailed: self._on_scan_failed,
            DeviceDiscovered: self._on_device_discovered,
            ConnectSucceeded: self._on_connect_succeeded,
            ConnectFailed: self._on_connect_failed,
            ServicesDiscovered: self._on_services_discovered,
            CharacteristicsDiscovered: self._on_characteristics_discovered,
            SubscriptionConfirmed: self._on_subscription_confirmed,
            SubscriptionFailed: self._on_subscription_failed,
            ValueUpdated: self._on_value_updated,
            ReadFailed: self._on_read_failed,
            Disconnected: self._on_disconnected,
            PollTick: self._on_poll_tick,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def target(self) -> Optional[PeripheralIdentity]:
        return self.state.target

    @property
    def is_connected(self) -> bool:
        return self.state.phase in CONNECTED_PHASES

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state,
            current_reading=self.calibration.current,
            max_reading=self.calibration.max_adjusted,
            last_error=self.last_error,
            advisory=self.advisory,
            known_devices=tuple(self.registry.devices()),
            power_state=self.power_state,
            streams={
                cid: str(stream.mode) for cid, stream in self.streams.items() if stream.mode
            },
        )

    # ------------------------------------------------------------------
    # User commands
    # ------------------------------------------------------------------

    def _radio_ready(self, action: str) -> bool:
        if self.power_state is PowerState.ON:
            return True
        self.last_error = POWER_STATE_MESSAGES.get(
            self.power_state.value, POWER_STATE_MESSAGES["unknown"]
        )
        _LOGGER.warning("Cannot %s: %s", action, self.last_error)
        return False

    def start_scan(self) -> list:
        if not self._radio_ready("scan"):
            return []
        if self.phase is Phase.SCANNING:
            return []
        if self.phase is not Phase.IDLE:
            _LOGGER.warning("Ignoring scan request while %s", self.phase.value)
            return []

        self.registry.clear()
        self.last_error = None
        self.state = SessionState(Phase.SCANNING)
        _LOGGER.info("Scanning for peripherals")
        return [StartScan()]

    def stop_scan(self) -> list:
        if self.phase is not Phase.SCANNING:
            return []
        self.state = SessionState(Phase.IDLE)
        _LOGGER.info("Scan stopped, %d device(s) known", len(self.registry))
        return [StopScan()]

    def connect(self, identity: PeripheralIdentity) -> list:
        if self.phase not in (Phase.IDLE, Phase.SCANNING):
            _LOGGER.warning("Ignoring connect to %s while %s", identity, self.phase.value)
            return []
        if not self._radio_ready("connect"):
            return []

        commands = self.stop_scan()
        self.state = SessionState(Phase.CONNECTING, identity)
        _LOGGER.info("Connecting to %s", identity)
        commands.append(Connect(identity))
        return commands

    def disconnect(self) -> list:
        if self.phase not in LINKED_PHASES:
            _LOGGER.debug("Disconnect requested while %s, nothing to do", self.phase.value)
            return []

        target = self.target
        commands = []
        # Timers must be gone before the disconnect request goes out
        for stream in self.streams.values():
            if stream.mode and stream.mode.is_polling:
                commands.append(CancelPoll(stream.characteristic_id))
            stream.mode = None
            stream.notifying = False
        self.state = SessionState(Phase.DISCONNECTING, target)
        _LOGGER.info("Disconnecting from %s", target)
        commands.append(Disconnect(target))
        return commands

    def tare(self) -> list:
        if not self.is_connected:
            _LOGGER.warning("Tare ignored, no device connected")
            return []
        self.calibration.tare()
        _LOGGER.info("Tared, offset is now %.3f", self.calibration.tare_offset)
        return []

    def reset_max(self) -> list:
        if not self.is_connected:
            _LOGGER.warning("Reset max ignored, no device connected")
            return []
        self.calibration.reset_max()
        _LOGGER.info("Max reset, offset is now %.3f", self.calibration.tare_offset)
        return []

    def acknowledge_error(self) -> list:
        self.last_error = None
        self.advisory = None
        return []

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def handle_event(self, event) -> list:
        """Apply one transport event. Returns commands to issue."""
        handler = self._handlers.get(type(event))
        if handler is None:
            _LOGGER.warning("Unhandled event: %r", event)
            return []
        return handler(event)

    def _on_powered_state(self, event: PoweredStateChanged) -> list:
        self.power_state = event.state
        if event.state is PowerState.ON:
            self.last_error = None
            return []

        self.last_error = POWER_STATE_MESSAGES.get(event.state.value)
        _LOGGER.warning("Bluetooth %s: %s", event.state.value, self.last_error)
        if event.state is not PowerState.OFF:
            return []

        commands = [CancelPoll(cid) for cid in self.streams]
        self._drop_connection()
        return commands

    def _on_scan_failed(self, event: ScanFailed) -> list:
        if self.phase is not Phase.SCANNING:
            return []
        self.last_error = f"Scan failed: {event.reason}"
        _LOGGER.error("Scan failed: %s", event.reason)
        self.state = SessionState(Phase.IDLE)
        return []

    def _on_device_discovered(self, event: DeviceDiscovered) -> list:
        if self.phase is not Phase.SCANNING:
            return []
        if self.registry.add(event.identity):
            _LOGGER.info("Discovered %s", event.identity)
        return []

    def _on_connect_succeeded(self, event: ConnectSucceeded) -> list:
        if not self._is_current(event.identity, Phase.CONNECTING):
            return []
        self.calibration.on_connect()
        self.last_reading = None
        self.streams.clear()
        self.last_error = None
        self.advisory = None
        self.state = SessionState(Phase.NEGOTIATING, self.target)
        _LOGGER.info("Connected to %s", self.target)
        return [DiscoverServices(self.target)]

    def _on_connect_failed(self, event: ConnectFailed) -> list:
        # A disconnect requested mid-connect still gets to see the failure
        if not self._is_current(event.identity, Phase.CONNECTING, Phase.DISCONNECTING):
            return []
        self.last_error = f"Failed to connect: {event.reason}"
        _LOGGER.error("Connection to %s failed: %s", event.identity, event.reason)
        self.state = SessionState(Phase.IDLE)
        return []

    def _on_services_discovered(self, event: ServicesDiscovered) -> list:
        if not self.is_connected or event.identity.identifier != self.target.identifier:
            return []
        if not event.service_ids:
            _LOGGER.warning("%s exposes no services", self.target)
        # Firmware varies, so every service is a candidate
        return [DiscoverCharacteristics(sid) for sid in event.service_ids]

    def _on_characteristics_discovered(self, event: CharacteristicsDiscovered) -> list:
        if not self.is_connected:
            return []

        commands = []
        for cid, props in event.characteristics:
            mode = choose(props, self.poll_interval_ms)
            if mode is None:
                _LOGGER.debug("Skipping %s: not readable or subscribable", cid)
                continue

            stream = CharacteristicStream(cid, event.service_id, props)
            self.streams[cid] = stream
            if mode.is_polling:
                commands.extend(self._start_polling(stream, mode))
            else:
                _LOGGER.debug("Subscribing to %s", cid)
                commands.append(Subscribe(cid))
        return commands

    def _on_subscription_confirmed(self, event: SubscriptionConfirmed) -> list:
        stream = self._stream(event.characteristic_id)
        if stream is None or (stream.mode and stream.mode.is_polling):
            return []

        mode = choose(stream.properties, self.poll_interval_ms)
        stream.mode = mode
        stream.notifying = True
        self._enter_streaming(mode)
        _LOGGER.info("Notifications enabled on %s", stream.characteristic_id)

        # Notifications may not fire until the next sample, seed the value
        if stream.properties.read:
            return [ReadValue(stream.characteristic_id)]
        return []

    def _on_subscription_failed(self, event: SubscriptionFailed) -> list:
        stream = self._stream(event.characteristic_id)
        if stream is None or stream.fell_back:
            return []

        stream.notifying = False
        mode = fallback(stream.properties, self.poll_interval_ms)
        if mode is None:
            self.last_error = f"Failed to subscribe to notifications: {event.reason}"
            _LOGGER.warning("%s unusable: %s", stream.characteristic_id, event.reason)
            del self.streams[stream.characteristic_id]
            return []

        stream.fell_back = True
        self.advisory = FALLBACK_ADVISORY
        _LOGGER.warning(
            "Subscribe to %s failed (%s), falling back to polling",
            stream.characteristic_id, event.reason,
        )
        return self._start_polling(stream, mode)

    def _on_value_updated(self, event: ValueUpdated) -> list:
        if not self.is_connected:
            _LOGGER.debug("Dropping value from %s, not connected", event.characteristic_id)
            return []
        self._read_done(event.characteristic_id)
        try:
            raw = decode(event.data)
        except DecodeError as e:
            _LOGGER.debug("%s: %s", event.characteristic_id, e)
            return []
        self.last_reading = self.calibration.apply(raw)
        return []

    def _on_read_failed(self, event: ReadFailed) -> list:
        if not self.is_connected:
            return []
        self._read_done(event.characteristic_id)
        stream = self.streams.get(event.characteristic_id)
        if READ_NOT_PERMITTED in event.reason.lower() and stream and stream.notifying:
            _LOGGER.debug("Read refused on notifying %s, ignoring", event.characteristic_id)
            return []
        self.last_error = f"Error reading value: {event.reason}"
        _LOGGER.warning("Read of %s failed: %s", event.characteristic_id, event.reason)
        return []

    def _on_disconnected(self, event: Disconnected) -> list:
        target = self.target
        if target is None or event.identity.identifier != target.identifier:
            _LOGGER.debug("Ignoring disconnect of %s", event.identity)
            return []

        commands = [CancelPoll(cid) for cid in self.streams]
        self._drop_connection()
        if event.reason:
            self.last_error = f"Disconnected: {event.reason}"
            _LOGGER.warning("Disconnected from %s: %s", target, event.reason)
        else:
            _LOGGER.info("Disconnected from %s", target)
        return commands

    def _on_poll_tick(self, event: PollTick) -> list:
        stream = self._stream(event.characteristic_id)
        if stream is None or not (stream.mode and stream.mode.is_polling):
            # Timer outlived its stream
            return [CancelPoll(event.characteristic_id)]
        if stream.read_pending:
            _LOGGER.debug("Read of %s still pending, skipping tick", event.characteristic_id)
            return []
        stream.read_pending = True
        return [ReadValue(event.characteristic_id)]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_current(self, identity: PeripheralIdentity, *phases: Phase) -> bool:
        if self.phase not in phases or identity.identifier != self.target.identifier:
            _LOGGER.debug("Ignoring stale event for %s while %s", identity, self.phase.value)
            return False
        return True

    def _stream(self, characteristic_id: str) -> Optional[CharacteristicStream]:
        if not self.is_connected:
            return None
        return self.streams.get(characteristic_id)

    def _read_done(self, characteristic_id: str):
        stream = self.streams.get(characteristic_id)
        if stream:
            stream.read_pending = False

    def _start_polling(self, stream: CharacteristicStream, mode: DeliveryMode) -> list:
        cid = stream.characteristic_id
        stream.mode = mode
        self._enter_streaming(mode)
        _LOGGER.info("Polling %s every %dms", cid, mode.interval_ms)
        stream.read_pending = True
        return [CancelPoll(cid), ReadValue(cid), SchedulePoll(cid, mode.interval_ms)]

    def _enter_streaming(self, mode: DeliveryMode):
        if self.is_connected:
            self.state = SessionState(Phase.STREAMING, self.target, mode)

    def _drop_connection(self):
        self.streams.clear()
        self.calibration.on_disconnect()
        self.last_reading = None
        self.state = SessionState(Phase.IDLE)
