"""
Bleak transport for the device session.

BleakTransport executes session commands against the local Bluetooth adapter
and reports every outcome as an event through the `emit` callback. Commands
run one at a time on a worker task, so `submit` never blocks the caller.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import (
    BleakBluetoothNotAvailableError,
    BleakBluetoothNotAvailableReason,
    BleakError,
)

from ble_device import PeripheralIdentity
from characteristic_policy import CharProperties
from const import ADAPTER_RECHECK_INTERVAL
from events import (
    CharacteristicsDiscovered,
    Connect,
    ConnectFailed,
    ConnectSucceeded,
    DeviceDiscovered,
    Disconnect,
    Disconnected,
    DiscoverCharacteristics,
    DiscoverServices,
    PoweredStateChanged,
    PowerState,
    ReadFailed,
    ReadValue,
    ScanFailed,
    ServicesDiscovered,
    StartScan,
    StopScan,
    Subscribe,
    SubscriptionConfirmed,
    SubscriptionFailed,
    ValueUpdated,
)

_LOGGER = logging.getLogger(__name__)

TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError, OSError)

UNAVAILABLE_STATES = {
    BleakBluetoothNotAvailableReason.NO_BLUETOOTH: PowerState.UNSUPPORTED,
    BleakBluetoothNotAvailableReason.NO_BLE_CENTRAL_ROLE: PowerState.UNSUPPORTED,
    BleakBluetoothNotAvailableReason.POWERED_OFF: PowerState.OFF,
    BleakBluetoothNotAvailableReason.DENIED_BY_USER: PowerState.UNAUTHORIZED,
    BleakBluetoothNotAvailableReason.DENIED_BY_SYSTEM: PowerState.UNAUTHORIZED,
    BleakBluetoothNotAvailableReason.DENIED_BY_UNKNOWN: PowerState.UNAUTHORIZED,
}


class BleakTransport:
    """Runs scan/connect/GATT commands with bleak and emits their results."""

    def __init__(
        self,
        emit: Callable[[object], None],
        recheck_interval: float = ADAPTER_RECHECK_INTERVAL,
    ):
        self._emit = emit
        self._recheck_interval = recheck_interval
        self._recheck: Optional[asyncio.Task] = None
        self._power = PowerState.UNKNOWN
        self._commands: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._scanner: Optional[BleakScanner] = None
        self._client: Optional[BleakClient] = None
        self._identity: Optional[PeripheralIdentity] = None
        self._closing = False
        self._seen: Dict[str, BLEDevice] = {}
        self._services: Dict[str, BleakGATTService] = {}
        self._characteristics: Dict[str, BleakGATTCharacteristic] = {}

        self._executors = {
            StartScan: self._start_scan,
            StopScan: self._stop_scan,
            Connect: self._connect,
            Disconnect: self._disconnect,
            DiscoverServices: self._discover_services,
            DiscoverCharacteristics: self._discover_characteristics,
            Subscribe: self._subscribe,
            ReadValue: self._read_value,
        }

    async def open(self):
        """Start the command worker."""
        self._worker = asyncio.create_task(self._run())
        # Bleak has no radio state callback. The adapter is assumed usable
        # until a scanner start says otherwise
        self._set_power(PowerState.ON)

    async def close(self):
        """Stop scanning, drop the connection and stop the worker."""
        if self._recheck:
            self._recheck.cancel()
            self._recheck = None
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self._stop_scan(StopScan())
        if self._client:
            await self._disconnect(Disconnect(self._identity))

    def submit(self, command):
        self._commands.put_nowait(command)

    async def _run(self):
        while True:
            command = await self._commands.get()
            executor = self._executors.get(type(command))
            if executor is None:
                _LOGGER.warning("Transport cannot execute %r", command)
                continue
            try:
                await executor(command)
            except asyncio.CancelledError:
                raise
            except Exception:
                _LOGGER.exception("Unexpected error executing %r", command)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _on_detection(self, device: BLEDevice, adv_data: AdvertisementData):
        self._seen[device.address] = device
        name = device.name or adv_data.local_name
        self._emit(DeviceDiscovered(PeripheralIdentity(device.address, name)))

    async def _start_scan(self, command: StartScan):
        if self._scanner:
            return
        scanner = BleakScanner(detection_callback=self._on_detection)
        try:
            await scanner.start()
        except BleakBluetoothNotAvailableError as e:
            _LOGGER.error("Bluetooth not available: %s", e.args[0])
            self._set_power(UNAVAILABLE_STATES.get(e.reason, PowerState.UNKNOWN))
            return
        except TRANSPORT_ERRORS as e:
            _LOGGER.error("Scanner failed to start: %s", e)
            self._emit(ScanFailed(str(e) or type(e).__name__))
            return
        self._scanner = scanner
        self._set_power(PowerState.ON)

    def _set_power(self, state: PowerState):
        if state is self._power:
            return
        self._power = state
        self._emit(PoweredStateChanged(state))
        if state is not PowerState.ON and self._recheck is None:
            self._recheck = asyncio.create_task(self._watch_adapter())

    async def _watch_adapter(self):
        """Retry a scanner start until the adapter is usable again"""
        while True:
            await asyncio.sleep(self._recheck_interval)
            scanner = BleakScanner()
            try:
                await scanner.start()
            except BleakBluetoothNotAvailableError as e:
                self._set_power(UNAVAILABLE_STATES.get(e.reason, PowerState.UNKNOWN))
                continue
            except TRANSPORT_ERRORS as e:
                _LOGGER.debug("Adapter check failed: %s", e)
                continue
            try:
                await scanner.stop()
            except TRANSPORT_ERRORS as e:
                _LOGGER.warning("Scanner stop error: %s", e)
            break

        self._recheck = None
        _LOGGER.info("Bluetooth is available again")
        self._set_power(PowerState.ON)

    async def _stop_scan(self, command: StopScan):
        if not self._scanner:
            return
        scanner, self._scanner = self._scanner, None
        try:
            await scanner.stop()
        except TRANSPORT_ERRORS as e:
            _LOGGER.warning("Scanner stop error: %s", e)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _on_disconnected(self, client: BleakClient):
        if client is not self._client:
            return
        reason = None if self._closing else "connection lost"
        self._forget_client()
        self._emit(Disconnected(self._identity, reason))

    def _forget_client(self):
        self._client = None
        self._services.clear()
        self._characteristics.clear()

    async def _connect(self, command: Connect):
        identity = command.identity
        device = self._seen.get(identity.identifier, identity.identifier)
        client = BleakClient(device, disconnected_callback=self._on_disconnected)
        self._identity = identity
        self._closing = False
        self._client = client
        try:
            await client.connect()
        except TRANSPORT_ERRORS as e:
            self._forget_client()
            self._emit(ConnectFailed(identity, str(e) or type(e).__name__))
            return
        self._emit(ConnectSucceeded(identity))

    async def _disconnect(self, command: Disconnect):
        client = self._client
        if client is None:
            self._emit(Disconnected(command.identity))
            return

        self._closing = True
        try:
            if client.is_connected:
                await client.disconnect()
        except EOFError:
            # D-Bus connection already closed
            pass
        except TRANSPORT_ERRORS as e:
            _LOGGER.warning("Disconnect error: %s", e)

        # The disconnected callback may not fire if the link was already gone
        if self._client is client:
            self._forget_client()
            self._emit(Disconnected(command.identity))

    # ------------------------------------------------------------------
    # GATT
    # ------------------------------------------------------------------

    async def _discover_services(self, command: DiscoverServices):
        if self._client is None:
            return
        # Bleak resolves the GATT table while connecting
        self._services = {str(service.uuid): service for service in self._client.services}
        self._emit(ServicesDiscovered(command.identity, tuple(self._services)))

    async def _discover_characteristics(self, command: DiscoverCharacteristics):
        service = self._services.get(command.service_id)
        if service is None:
            return
        found = []
        for char in service.characteristics:
            cid = str(char.uuid)
            self._characteristics[cid] = char
            found.append((cid, CharProperties.from_bleak(char.properties)))
        self._emit(CharacteristicsDiscovered(command.service_id, tuple(found)))

    async def _subscribe(self, command: Subscribe):
        cid = command.characteristic_id
        char = self._characteristics.get(cid)
        if self._client is None or char is None:
            self._emit(SubscriptionFailed(cid, "characteristic not available"))
            return

        def notify_handler(sender, data: bytearray):
            self._emit(ValueUpdated(cid, bytes(data)))

        try:
            await self._client.start_notify(char, notify_handler)
        except TRANSPORT_ERRORS as e:
            self._emit(SubscriptionFailed(cid, str(e) or type(e).__name__))
            return
        self._emit(SubscriptionConfirmed(cid))

    async def _read_value(self, command: ReadValue):
        cid = command.characteristic_id
        char = self._characteristics.get(cid)
        if self._client is None or char is None:
            self._emit(ReadFailed(cid, "characteristic not available"))
            return
        try:
            data = await self._client.read_gatt_char(char)
        except TRANSPORT_ERRORS as e:
            self._emit(ReadFailed(cid, str(e) or type(e).__name__))
            return
        self._emit(ValueUpdated(cid, bytes(data)))
