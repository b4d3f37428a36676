import pytest

from ble_device import PeripheralIdentity
from device_session import DeviceSession
from events import ConnectSucceeded, PoweredStateChanged, PowerState, ReadValue, ValueUpdated

GAUGE = PeripheralIdentity("AA:BB:CC:DD:EE:01", "ESP32 Force Gauge")
OTHER = PeripheralIdentity("AA:BB:CC:DD:EE:02", None)


class FakeTransport:
    """In-memory transport recording every command it is asked to run"""

    # Payload returned for every ReadValue, None leaves reads unanswered
    read_payload = None

    def __init__(self, emit):
        self.emit = emit
        self.commands = []
        self.opened = False
        self.closed = False

    async def open(self):
        self.opened = True
        self.emit(PoweredStateChanged(PowerState.ON))

    async def close(self):
        self.closed = True

    def submit(self, command):
        self.commands.append(command)
        if isinstance(command, ReadValue) and self.read_payload is not None:
            self.emit(ValueUpdated(command.characteristic_id, self.read_payload))


class AnsweringTransport(FakeTransport):
    read_payload = b"1.0"


@pytest.fixture
def session():
    s = DeviceSession()
    s.handle_event(PoweredStateChanged(PowerState.ON))
    return s


@pytest.fixture
def connected(session):
    session.connect(GAUGE)
    session.handle_event(ConnectSucceeded(GAUGE))
    return session
