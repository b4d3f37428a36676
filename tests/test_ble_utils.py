import asyncio
from types import SimpleNamespace

from bleak.exc import (
    BleakBluetoothNotAvailableError,
    BleakBluetoothNotAvailableReason,
    BleakError,
)

import ble_utils
from ble_device import PeripheralIdentity
from characteristic_policy import CharProperties
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
    Subscribe,
    SubscriptionConfirmed,
    SubscriptionFailed,
    ValueUpdated,
)

DEVICE = PeripheralIdentity("AA:BB:CC:DD:EE:01", "Gauge")

FORCE = SimpleNamespace(uuid="force", properties=["read", "notify"])
STATUS = SimpleNamespace(uuid="status", properties=["read"])
SERVICE = SimpleNamespace(uuid="svc", characteristics=[FORCE, STATUS])


class FakeClient:
    fail_connect = False
    fail_notify = False

    def __init__(self, device, disconnected_callback=None):
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.services = [SERVICE]
        self.notify_handler = None

    async def connect(self):
        if self.fail_connect:
            raise BleakError("Device not found")
        self.is_connected = True

    async def disconnect(self):
        self.is_connected = False
        self.disconnected_callback(self)

    async def start_notify(self, char, handler):
        if self.fail_notify:
            raise BleakError("Notify not permitted")
        self.notify_handler = handler

    async def read_gatt_char(self, char):
        if char is STATUS:
            raise BleakError("Read failed")
        return bytearray(b"12.5")


class FakeScanner:
    fail_start = False

    def __init__(self, detection_callback=None):
        self.detection_callback = detection_callback

    async def start(self):
        if self.fail_start:
            raise BleakError("No Bluetooth adapters found")

    async def stop(self):
        pass


def run_transport(monkeypatch, commands, client_cls=FakeClient, scanner_cls=FakeScanner):
    monkeypatch.setattr(ble_utils, "BleakClient", client_cls)
    monkeypatch.setattr(ble_utils, "BleakScanner", scanner_cls)
    events = []

    async def main():
        transport = ble_utils.BleakTransport(events.append)
        await transport.open()
        for command in commands:
            transport.submit(command)
        await asyncio.sleep(0.05)
        await transport.close()
        return transport

    transport = asyncio.run(main())
    return transport, events


def test_open_reports_power_on(monkeypatch):
    _, events = run_transport(monkeypatch, [])
    assert events == [PoweredStateChanged(PowerState.ON)]


def test_scanner_failing_once_does_not_turn_radio_off(monkeypatch):
    class FlakyScanner(FakeScanner):
        starts = 0

        async def start(self):
            FlakyScanner.starts += 1
            if FlakyScanner.starts == 1:
                raise BleakError("org.bluez.Error.InProgress")

    _, events = run_transport(
        monkeypatch, [StartScan(), StartScan()], scanner_cls=FlakyScanner
    )
    assert events == [
        PoweredStateChanged(PowerState.ON),
        ScanFailed("org.bluez.Error.InProgress"),
    ]
    assert FlakyScanner.starts == 2


def test_unavailable_adapter_reported_until_it_returns(monkeypatch):
    class SwitchedOffScanner(FakeScanner):
        powered = False

        async def start(self):
            if not SwitchedOffScanner.powered:
                raise BleakBluetoothNotAvailableError(
                    "Bluetooth is off", BleakBluetoothNotAvailableReason.POWERED_OFF
                )

    monkeypatch.setattr(ble_utils, "BleakScanner", SwitchedOffScanner)
    events = []

    async def main():
        transport = ble_utils.BleakTransport(events.append, recheck_interval=0.01)
        await transport.open()
        transport.submit(StartScan())
        await asyncio.sleep(0.03)
        assert events[-1] == PoweredStateChanged(PowerState.OFF)
        SwitchedOffScanner.powered = True
        await asyncio.sleep(0.05)
        await transport.close()

    asyncio.run(main())
    assert events == [
        PoweredStateChanged(PowerState.ON),
        PoweredStateChanged(PowerState.OFF),
        PoweredStateChanged(PowerState.ON),
    ]


def test_denied_adapter_is_unauthorized(monkeypatch):
    class DeniedScanner(FakeScanner):
        async def start(self):
            raise BleakBluetoothNotAvailableError(
                "denied", BleakBluetoothNotAvailableReason.DENIED_BY_USER
            )

    _, events = run_transport(monkeypatch, [StartScan()], scanner_cls=DeniedScanner)
    assert events[1] == PoweredStateChanged(PowerState.UNAUTHORIZED)


def test_detection_emits_discovery(monkeypatch):
    monkeypatch.setattr(ble_utils, "BleakScanner", FakeScanner)
    events = []
    transport = ble_utils.BleakTransport(events.append)
    device = SimpleNamespace(address="11:22", name=None)
    transport._on_detection(device, SimpleNamespace(local_name="Force"))
    assert events == [DeviceDiscovered(PeripheralIdentity("11:22", "Force"))]


def test_full_negotiation(monkeypatch):
    transport, events = run_transport(monkeypatch, [
        Connect(DEVICE),
        DiscoverServices(DEVICE),
        DiscoverCharacteristics("svc"),
        Subscribe("force"),
        ReadValue("force"),
        ReadValue("status"),
        Disconnect(DEVICE),
    ])
    assert events[1:] == [
        ConnectSucceeded(DEVICE),
        ServicesDiscovered(DEVICE, ("svc",)),
        CharacteristicsDiscovered("svc", (
            ("force", CharProperties(notify=True, read=True)),
            ("status", CharProperties(read=True)),
        )),
        SubscriptionConfirmed("force"),
        ValueUpdated("force", b"12.5"),
        ReadFailed("status", "Read failed"),
        Disconnected(DEVICE, None),
    ]


def test_connect_failure(monkeypatch):
    class BrokenClient(FakeClient):
        fail_connect = True

    _, events = run_transport(monkeypatch, [Connect(DEVICE)], client_cls=BrokenClient)
    assert events[-1] == ConnectFailed(DEVICE, "Device not found")


def test_subscribe_failure(monkeypatch):
    class NoNotifyClient(FakeClient):
        fail_notify = True

    _, events = run_transport(monkeypatch, [
        Connect(DEVICE),
        DiscoverServices(DEVICE),
        DiscoverCharacteristics("svc"),
        Subscribe("force"),
    ], client_cls=NoNotifyClient)
    assert SubscriptionFailed("force", "Notify not permitted") in events


def test_unexpected_link_loss(monkeypatch):
    monkeypatch.setattr(ble_utils, "BleakClient", FakeClient)
    events = []

    async def main():
        transport = ble_utils.BleakTransport(events.append)
        await transport.open()
        transport.submit(Connect(DEVICE))
        await asyncio.sleep(0.01)
        client = transport._client
        client.disconnected_callback(client)
        await transport.close()

    asyncio.run(main())
    assert events[-1] == Disconnected(DEVICE, "connection lost")


def test_read_of_unknown_characteristic_fails(monkeypatch):
    _, events = run_transport(monkeypatch, [Connect(DEVICE), ReadValue("missing")])
    assert events[-1] == ReadFailed("missing", "characteristic not available")
