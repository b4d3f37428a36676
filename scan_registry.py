from typing import Dict, List, Optional

from ble_device import PeripheralIdentity


class ScanRegistry:
    """Discovered-but-unconnected peripherals, deduplicated by identifier."""

    def __init__(self):
        self._devices: Dict[str, PeripheralIdentity] = {}

    def add(self, identity: PeripheralIdentity) -> bool:
        """Register a device. Returns False if the identifier was already known."""
        if identity.identifier in self._devices:
            return False
        self._devices[identity.identifier] = identity
        return True

    def get(self, identifier: str) -> Optional[PeripheralIdentity]:
        return self._devices.get(identifier)

    def clear(self):
        self._devices.clear()

    def devices(self) -> List[PeripheralIdentity]:
        return list(self._devices.values())

    def __contains__(self, identifier):
        return identifier in self._devices

    def __len__(self):
        return len(self._devices)
