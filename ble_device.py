from dataclasses import dataclass
from typing import Optional

from const import UNKNOWN_DEVICE_NAME


@dataclass(frozen=True)
class PeripheralIdentity:
    """Represents a discovered BLE peripheral."""

    identifier: str                 # BLE address or platform UUID
    name: Optional[str] = None      # Advertised name, if any

    @property
    def display_name(self) -> str:
        return self.name or UNKNOWN_DEVICE_NAME

    def __str__(self):
        return f"{self.display_name} ({self.identifier})"
