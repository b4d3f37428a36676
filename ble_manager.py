"""
Force gauge manager.

Owns the device session and is the single place where it is mutated:
transport events, poll ticks and user requests all go through one queue and
are applied in arrival order by one task. After each item the session's
snapshot is republished to listeners.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ble_device import PeripheralIdentity
from ble_utils import BleakTransport
from const import POLL_INTERVAL_MS
from device_session import DeviceSession, SessionSnapshot
from events import CancelPoll, PollTick, SchedulePoll
from notification_handler import ReadingHistory

_LOGGER = logging.getLogger(__name__)

SnapshotListener = Callable[[SessionSnapshot], None]


class PollScheduler:
    """One repeating timer per characteristic, each tick is emitted as a PollTick."""

    def __init__(self, emit: Callable[[object], None]):
        self._emit = emit
        self._timers: Dict[str, asyncio.Task] = {}

    def schedule(self, characteristic_id: str, interval_ms: int):
        self.cancel(characteristic_id)
        self._timers[characteristic_id] = asyncio.create_task(
            self._tick(characteristic_id, interval_ms / 1000.0)
        )

    def cancel(self, characteristic_id: str):
        timer = self._timers.pop(characteristic_id, None)
        if timer:
            timer.cancel()

    def cancel_all(self):
        for characteristic_id in list(self._timers):
            self.cancel(characteristic_id)

    def active(self) -> List[str]:
        return list(self._timers)

    async def _tick(self, characteristic_id: str, interval: float):
        while True:
            await asyncio.sleep(interval)
            self._emit(PollTick(characteristic_id))


@dataclass
class _Request:
    action: Callable[[], list]
    future: asyncio.Future


class ForceGaugeManager:
    """
    Runs a DeviceSession against a transport.

    Args:
        transport_factory: Callable taking an `emit` callback and returning a
            transport with `open()`, `close()` and `submit(command)`
        poll_interval_ms: Interval for characteristics that only support reads
    """

    def __init__(self, transport_factory=BleakTransport, poll_interval_ms: int = POLL_INTERVAL_MS):
        self.session = DeviceSession(poll_interval_ms)
        self.history = ReadingHistory()
        self.snapshot: SessionSnapshot = self.session.snapshot()
        self.transport = transport_factory(self.post_event)
        self.scheduler = PollScheduler(self.post_event)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._listeners: List[SnapshotListener] = []
        self._last_reading = None
        self._running = False

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def post_event(self, event):
        """Queue a transport or timer event. Must be called on the loop thread."""
        self._queue.put_nowait(event)

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot callback. Returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def run(self):
        """Process events until close() is called."""
        self._running = True
        await self.transport.open()
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    break
                self._process(item)
        finally:
            self._running = False
            self.scheduler.cancel_all()
            await self.transport.close()

    async def close(self):
        self._queue.put_nowait(None)

    def _process(self, item):
        if isinstance(item, _Request):
            try:
                commands = item.action()
            except Exception as e:
                item.future.set_exception(e)
                return
        else:
            commands = self.session.handle_event(item)

        self._dispatch(commands)
        self._publish()
        if isinstance(item, _Request) and not item.future.done():
            item.future.set_result(self.snapshot)

    def _dispatch(self, commands: list):
        for command in commands:
            if isinstance(command, SchedulePoll):
                self.scheduler.schedule(command.characteristic_id, command.interval_ms)
            elif isinstance(command, CancelPoll):
                self.scheduler.cancel(command.characteristic_id)
            else:
                self.transport.submit(command)

    def _publish(self):
        previous = self.snapshot
        self.snapshot = self.session.snapshot()
        reading = self.session.last_reading
        if reading is not None and reading is not self._last_reading:
            self.history.append(reading.adjusted, time.time())
        self._last_reading = reading
        if previous.is_connected and not self.snapshot.is_connected:
            self.history.clear()

        for listener in list(self._listeners):
            try:
                listener(self.snapshot)
            except Exception:
                _LOGGER.exception("Snapshot listener failed")

    # ------------------------------------------------------------------
    # User requests
    # ------------------------------------------------------------------

    async def _submit(self, action: Callable[[], list]) -> SessionSnapshot:
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Request(action, future))
        return await future

    async def start_scan(self) -> SessionSnapshot:
        return await self._submit(self.session.start_scan)

    async def stop_scan(self) -> SessionSnapshot:
        return await self._submit(self.session.stop_scan)

    async def connect(self, identity: PeripheralIdentity) -> SessionSnapshot:
        return await self._submit(lambda: self.session.connect(identity))

    async def connect_to(self, identifier: str) -> Optional[SessionSnapshot]:
        """Connect to a device from the scan registry by identifier."""
        identity = self.session.registry.get(identifier)
        if identity is None:
            return None
        return await self.connect(identity)

    async def disconnect(self) -> SessionSnapshot:
        return await self._submit(self.session.disconnect)

    async def tare(self) -> SessionSnapshot:
        return await self._submit(self.session.tare)

    async def reset_max(self) -> SessionSnapshot:
        return await self._submit(self.session.reset_max)

    async def acknowledge_error(self) -> SessionSnapshot:
        return await self._submit(self.session.acknowledge_error)

    async def sync(self) -> SessionSnapshot:
        """Wait until everything queued so far has been processed."""
        return await self._submit(list)
